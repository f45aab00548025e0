"""Gmail API client for searching and batch fetching messages."""

from __future__ import annotations

import logging
import random
import time
from typing import Any

from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError
from googleapiclient.http import BatchHttpRequest

from supply_sync.core.exceptions import MailAccessError, RateLimitError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


def _is_rate_limit_error(exc: Exception) -> bool:
    """Check whether an exception represents a Gmail API 429 rate limit."""
    if isinstance(exc, HttpError) and exc.status_code == 429:
        return True
    error_str = str(exc)
    return "429" in error_str or "rateLimitExceeded" in error_str


class GmailClient:
    """Thin wrapper around the Gmail API for message search and batch fetch."""

    def __init__(
        self,
        service: Resource,
        user_id: str = "me",
        *,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        num_retries: int = 3,
    ) -> None:
        self._service = service
        self._user_id = user_id
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._num_retries = num_retries

    def _sleep_backoff(self, backoff: float, context: str, attempt: int) -> float:
        """Sleep a jittered interval and return the next backoff."""
        sleep_time = min(backoff, self._max_backoff)
        jitter = random.uniform(0, sleep_time)
        logger.warning(
            "Rate limited during %s (attempt %d/%d), sleeping %.2fs",
            context, attempt + 1, self._max_retries, jitter,
        )
        time.sleep(jitter)
        return min(backoff * 2, self._max_backoff)

    def _execute_with_retry(self, request: Any, context: str) -> Any:
        """Execute a single API request with exponential backoff on 429 errors.

        Raises:
            RateLimitError: When retries are exhausted on 429 errors.
            MailAccessError: On non-rate-limit API errors.
        """
        backoff = self._initial_backoff

        for attempt in range(self._max_retries + 1):
            try:
                return request.execute(num_retries=self._num_retries)
            except Exception as e:
                if not _is_rate_limit_error(e):
                    raise MailAccessError(f"Failed to {context}: {e}") from e
                if attempt >= self._max_retries:
                    raise RateLimitError(
                        f"Rate limited during {context} after {self._max_retries} retries: {e}"
                    ) from e
                backoff = self._sleep_backoff(backoff, context, attempt)

        raise RateLimitError(f"Rate limited during {context} after {self._max_retries} retries")

    def search_message_ids(self, query: str, max_results: int) -> list[str]:
        """Return up to ``max_results`` message IDs matching a Gmail search query."""
        message_ids: list[str] = []
        page_token: str | None = None

        while len(message_ids) < max_results:
            kwargs: dict[str, Any] = {
                "userId": self._user_id,
                "q": query,
                "maxResults": min(max_results - len(message_ids), MAX_PAGE_SIZE),
            }
            if page_token:
                kwargs["pageToken"] = page_token

            request = self._service.users().messages().list(**kwargs)
            response = self._execute_with_retry(request, "search messages")

            messages = response.get("messages", [])
            message_ids.extend(msg["id"] for msg in messages)

            page_token = response.get("nextPageToken")
            if not messages or not page_token:
                break

        logger.debug("Search matched %d message IDs", len(message_ids))
        return message_ids[:max_results]

    def fetch_messages_batch(self, message_ids: list[str]) -> list[dict[str, Any]]:
        """Fetch full message bodies in a single batch request.

        Returns:
            List of raw Gmail API message dicts, in completion order.
        """
        if not message_ids:
            return []

        backoff = self._initial_backoff

        for attempt in range(self._max_retries + 1):
            results: list[dict[str, Any]] = []
            errors: list[str] = []
            rate_limited = False

            def _callback(
                request_id: str,
                response: dict[str, Any] | None,
                exception: Exception | None,
            ) -> None:
                nonlocal rate_limited
                if exception:
                    if _is_rate_limit_error(exception):
                        rate_limited = True
                        errors.append(f"Rate limited for {request_id}: {exception}")
                    else:
                        logger.warning("Batch fetch error for %s: %s", request_id, exception)
                        errors.append(f"Error for {request_id}: {exception}")
                elif response:
                    results.append(response)

            batch: BatchHttpRequest = self._service.new_batch_http_request(callback=_callback)
            for msg_id in message_ids:
                batch.add(
                    self._service.users()
                    .messages()
                    .get(userId=self._user_id, id=msg_id, format="full")
                )

            try:
                batch.execute()
            except Exception as e:
                if _is_rate_limit_error(e):
                    rate_limited = True
                else:
                    raise MailAccessError(f"Batch request failed: {e}") from e

            if rate_limited:
                if attempt >= self._max_retries:
                    raise RateLimitError(
                        f"Rate limited during batch fetch after {self._max_retries} retries"
                    )
                backoff = self._sleep_backoff(backoff, "batch fetch", attempt)
                continue

            if errors:
                logger.warning(
                    "Batch had %d errors out of %d requests", len(errors), len(message_ids)
                )
            return results

        raise RateLimitError(f"Rate limited during batch fetch after {self._max_retries} retries")
