"""Mail access collaborator: the protocol the sync pass consumes and its Gmail adapter."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import httplib2
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import Resource, build

from supply_sync.config.settings import SupplySyncSettings
from supply_sync.core.exceptions import AuthenticationError, MailAccessError, ParseError
from supply_sync.core.gmail_client import GmailClient
from supply_sync.core.models import RawEmail
from supply_sync.core.parser import GmailParser

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


class MailAccess(Protocol):
    """Yields a user's raw emails matching an opaque search query."""

    def search_emails(self, query: str, max_results: int) -> list[RawEmail]: ...


MailAccessFactory = Callable[[str], MailAccess]


def build_gmail_service(token_path: Path, timeout: float = 30.0) -> Resource:
    """Build a Gmail API service from a previously authorized token file.

    Token acquisition happens outside this package; a missing or unusable
    token is reported, never repaired here.

    Raises:
        AuthenticationError: If the token file is missing or unusable.
    """
    if not token_path.exists():
        raise AuthenticationError(f"Gmail token not found: {token_path}")

    try:
        creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
    except (ValueError, OSError) as e:
        raise AuthenticationError(f"Invalid Gmail token {token_path}: {e}") from e

    if not creds.valid and not (creds.expired and creds.refresh_token):
        raise AuthenticationError(f"Gmail token expired and not refreshable: {token_path}")

    http = AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout))
    return build("gmail", "v1", http=http, cache_discovery=False)


class GmailMailbox:
    """MailAccess backed by the Gmail API."""

    def __init__(
        self,
        client: GmailClient,
        parser: GmailParser | None = None,
        *,
        batch_size: int = 50,
    ) -> None:
        self._client = client
        self._parser = parser or GmailParser()
        self._batch_size = batch_size

    def search_emails(self, query: str, max_results: int) -> list[RawEmail]:
        """Search, batch fetch and decode matching messages.

        Messages that fail MIME parsing are skipped with a warning.

        Raises:
            MailAccessError: If the search or a batch fetch fails.
        """
        try:
            message_ids = self._client.search_message_ids(query, max_results)
        except MailAccessError:
            raise
        except Exception as e:
            raise MailAccessError(f"Gmail search failed: {e}") from e

        emails: list[RawEmail] = []
        for start in range(0, len(message_ids), self._batch_size):
            batch_ids = message_ids[start : start + self._batch_size]
            try:
                raw_messages = self._client.fetch_messages_batch(batch_ids)
            except MailAccessError:
                raise
            except Exception as e:
                raise MailAccessError(f"Gmail fetch failed: {e}") from e

            for raw in raw_messages:
                try:
                    emails.append(self._parser.parse(raw))
                except ParseError as e:
                    logger.warning("Skipping undecodable message: %s", e)

        logger.info("Fetched %d of %d matching messages", len(emails), len(message_ids))
        return emails


def gmail_mailbox_factory(settings: SupplySyncSettings) -> MailAccessFactory:
    """Return a factory building a GmailMailbox from each user's cached token."""

    def _factory(user_id: str) -> MailAccess:
        service = build_gmail_service(
            settings.token_path_for(user_id), timeout=settings.mail_timeout_seconds
        )
        client = GmailClient(
            service,
            max_retries=settings.max_retries,
            initial_backoff_seconds=settings.initial_backoff_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
            num_retries=settings.num_retries,
        )
        return GmailMailbox(client)

    return _factory
