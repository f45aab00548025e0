"""Shared fixtures for Supply Sync tests."""

from __future__ import annotations

import base64
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from supply_sync.core.models import RawEmail
from supply_sync.storage.audit import EmailRecordStore
from supply_sync.storage.ledger import OrderLedger

DEFAULT_RECEIVED_AT = datetime(2024, 3, 10, 14, 0, 0, tzinfo=UTC)


def make_email(
    message_id: str = "msg_001",
    *,
    sender: str = "orders@cvs.com",
    subject: str = "Your order has shipped",
    body: str = "",
    received_at: datetime = DEFAULT_RECEIVED_AT,
) -> RawEmail:
    """Build a RawEmail with sensible defaults."""
    return RawEmail(
        message_id=message_id,
        sender=sender,
        subject=subject,
        body=body,
        received_at=received_at,
        snippet=body[:100],
    )


def encode_body(text: str) -> str:
    """Base64url-encode text the way the Gmail API does (padding stripped)."""
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def make_raw_message(
    message_id: str = "msg_raw_001",
    *,
    subject: str = "Your order has shipped",
    sender: str = "CVS Pharmacy <orders@cvs.com>",
    date: str = "Mon, 15 Jan 2024 10:30:00 -0500",
    plain_text: str | None = "Hello, this is plain text.",
    html: str | None = None,
    snippet: str = "Hello, this is plain text.",
    internal_date: str | None = None,
) -> dict[str, Any]:
    """Build a raw Gmail API message dict (format=full)."""
    headers = [{"name": "Subject", "value": subject}, {"name": "From", "value": sender}]
    if date:
        headers.append({"name": "Date", "value": date})

    parts = []
    if plain_text is not None:
        parts.append({"mimeType": "text/plain", "body": {"data": encode_body(plain_text)}})
    if html is not None:
        parts.append({"mimeType": "text/html", "body": {"data": encode_body(html)}})

    raw: dict[str, Any] = {
        "id": message_id,
        "threadId": f"thread_{message_id}",
        "snippet": snippet,
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": headers,
            "parts": parts,
        },
    }
    if internal_date is not None:
        raw["internalDate"] = internal_date
    return raw


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


@pytest.fixture
def ledger(tmp_db_path: Path) -> Iterator[OrderLedger]:
    """Connected order ledger with an empty catalog."""
    store = OrderLedger(tmp_db_path, timeout=1.0)
    store.connect()
    yield store
    store.close()


@pytest.fixture
def catalog(ledger: OrderLedger) -> dict[str, int]:
    """Seed the product catalog. Returns name -> product id."""
    names = [
        ("Dexcom G6 Sensor", "cgm_sensor"),
        ("Dexcom G7 Sensor", "cgm_sensor"),
        ("Omnipod 5 Pods", "pump_supply"),
        ("Contour Next Test Strips", "test_strips"),
    ]
    return {name: ledger.add_product(name, category) for name, category in names}


@pytest.fixture
def records(tmp_db_path: Path) -> Iterator[EmailRecordStore]:
    """Connected audit store sharing the ledger's database file."""
    store = EmailRecordStore(tmp_db_path, timeout=1.0)
    store.connect()
    yield store
    store.close()
