"""Gmail message parser: MIME tree walking, base64url decoding, header extraction."""

from __future__ import annotations

import base64
import logging
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import trafilatura

from supply_sync.core.exceptions import ParseError
from supply_sync.core.models import RawEmail

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class GmailParser:
    """Parses raw Gmail API message dicts into RawEmail objects."""

    def parse(self, raw_message: dict[str, Any]) -> RawEmail:
        """Parse a raw Gmail API message dict (format=full).

        Raises:
            ParseError: If the message structure is invalid.
        """
        try:
            message_id = raw_message["id"]
            payload = raw_message.get("payload", {})
            headers = self._extract_headers(payload)
            plain_text, html = self._extract_body(payload)
            snippet = raw_message.get("snippet", "")

            return RawEmail(
                message_id=message_id,
                sender=headers.get("from", ""),
                subject=headers.get("subject", "(no subject)"),
                body=self._body_text(plain_text, html) or snippet,
                received_at=self._received_at(headers.get("date", ""), raw_message),
                snippet=snippet,
            )
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Failed to parse message {raw_message.get('id', '?')}: {e}") from e

    @staticmethod
    def _extract_headers(payload: dict[str, Any]) -> dict[str, str]:
        headers: dict[str, str] = {}
        for h in payload.get("headers", []):
            name = h.get("name", "").lower()
            if name in ("subject", "from", "date"):
                headers[name] = h.get("value", "")
        return headers

    def _extract_body(self, payload: dict[str, Any]) -> tuple[str | None, str | None]:
        """Return (plain_text, html) from the MIME tree; either may be None."""
        plain_text, html = self._walk_parts(payload)

        if plain_text is None and html is None:
            body_data = payload.get("body", {}).get("data")
            if body_data:
                decoded = self._decode_body(body_data)
                if "html" in payload.get("mimeType", ""):
                    html = decoded
                else:
                    plain_text = decoded

        return plain_text, html

    def _walk_parts(self, part: dict[str, Any]) -> tuple[str | None, str | None]:
        """Recursively walk MIME parts to find text/plain and text/html."""
        plain_text: str | None = None
        html: str | None = None
        mime_type = part.get("mimeType", "")

        if mime_type == "text/plain":
            data = part.get("body", {}).get("data")
            if data:
                plain_text = self._decode_body(data)
        elif mime_type == "text/html":
            data = part.get("body", {}).get("data")
            if data:
                html = self._decode_body(data)
        elif mime_type.startswith("multipart/"):
            for sub_part in part.get("parts", []):
                # Skip attachments
                if sub_part.get("filename"):
                    continue

                sub_plain, sub_html = self._walk_parts(sub_part)
                if sub_plain and not plain_text:
                    plain_text = sub_plain
                if sub_html and not html:
                    html = sub_html

        return plain_text, html

    @staticmethod
    def _body_text(plain_text: str | None, html: str | None) -> str:
        """Prefer the text/plain part; otherwise extract text from HTML via trafilatura."""
        if plain_text:
            return plain_text
        if not html:
            return ""
        try:
            extracted = trafilatura.extract(
                html,
                output_format="txt",
                favor_recall=True,
                include_tables=True,
            )
        except Exception as e:
            logger.warning("Trafilatura extraction failed: %s", e)
            extracted = None
        return extracted or ""

    @staticmethod
    def _decode_body(data: str) -> str:
        """Decode base64url-encoded body data."""
        # Gmail uses base64url encoding (RFC 4648 §5)
        padded = data + "=" * (4 - len(data) % 4) if len(data) % 4 else data
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")

    @staticmethod
    def _received_at(date_str: str, raw_message: dict[str, Any]) -> datetime:
        """Date header, else Gmail's internalDate, else the epoch. Always timezone-aware."""
        if date_str:
            try:
                parsed = parsedate_to_datetime(date_str)
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
            except (TypeError, ValueError):
                logger.warning("Failed to parse date: %s", date_str)

        internal = raw_message.get("internalDate")
        if internal:
            return datetime.fromtimestamp(int(internal) / 1000, tz=UTC)
        return EPOCH
