"""Frozen dataclasses for the Supply Order Sync domain model."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Generic, TypeVar

T = TypeVar("T")

# Status ordering: ordered → shipped → delivered, never backwards
ORDER_STATUSES = ("ordered", "shipped", "delivered")
_STATUS_RANK = {status: rank for rank, status in enumerate(ORDER_STATUSES)}

PARSE_STATUSES = {"success", "failed"}
MATCH_ACTIONS = {"created", "updated", "skipped"}


def is_forward_transition(current: str, candidate: str) -> bool:
    """Return True if moving from ``current`` to ``candidate`` advances the order.

    Raises:
        ValueError: If either status is unknown.
    """
    try:
        return _STATUS_RANK[candidate] > _STATUS_RANK[current]
    except KeyError as e:
        raise ValueError(f"Invalid order status: {e.args[0]}") from None


@dataclass(frozen=True)
class RawEmail:
    """An email as handed over by the mail collaborator."""

    message_id: str
    sender: str
    subject: str
    body: str
    received_at: datetime
    snippet: str = ""


@dataclass(frozen=True)
class Extracted(Generic[T]):
    """Outcome of extracting one field: present, absent, or present but invalid."""

    state: str = "absent"
    value: T | None = None
    raw: str = ""

    @classmethod
    def found(cls, value: T, raw: str = "") -> Extracted[T]:
        return cls(state="present", value=value, raw=raw)

    @classmethod
    def missing(cls) -> Extracted[T]:
        return cls()

    @classmethod
    def invalid(cls, raw: str) -> Extracted[T]:
        return cls(state="invalid", raw=raw)

    @property
    def present(self) -> bool:
        return self.state == "present"

    def value_or(self, default: T) -> T:
        return self.value if self.present and self.value is not None else default


@dataclass(frozen=True)
class CandidateOrder:
    """An extracted, not yet reconciled order record."""

    supplier: str
    order_date: datetime
    status: str
    quantity: int
    order_number: str | None = None
    tracking_number: str | None = None
    items: tuple[str, ...] = field(default_factory=tuple)
    item_categories: tuple[str, ...] = field(default_factory=tuple)
    confidence: float = 0.0
    fallback_key: str | None = None
    expected_delivery_date: date | None = None
    fields: Mapping[str, Extracted[Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status not in _STATUS_RANK:
            raise ValueError(f"Invalid order status: {self.status}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence out of range: {self.confidence}")

    @property
    def quantity_defaulted(self) -> bool:
        extracted = self.fields.get("quantity")
        return extracted is None or not extracted.present

    def to_payload(self) -> dict[str, Any]:
        """JSON-serialisable representation for the audit record."""
        return {
            "supplier": self.supplier,
            "order_date": self.order_date.isoformat(),
            "status": self.status,
            "quantity": self.quantity,
            "order_number": self.order_number,
            "tracking_number": self.tracking_number,
            "items": list(self.items),
            "item_categories": list(self.item_categories),
            "confidence": self.confidence,
            "fallback_key": self.fallback_key,
            "expected_delivery_date": (
                self.expected_delivery_date.isoformat() if self.expected_delivery_date else None
            ),
            "fields": {name: extracted.state for name, extracted in self.fields.items()},
        }


@dataclass(frozen=True)
class Order:
    """Snapshot of a persisted ledger order."""

    id: int
    user_id: str
    order_date: date
    quantity: int
    supplier: str
    status: str
    order_number: str | None = None
    tracking_number: str | None = None
    product_id: int | None = None
    actual_delivery_date: date | None = None
    expected_delivery_date: date | None = None
    inventory_credited: bool = False


@dataclass(frozen=True)
class Product:
    """Catalog entry used to resolve an order's product reference."""

    id: int
    name: str
    category: str


@dataclass(frozen=True)
class MatchResult:
    """Outcome of reconciling one candidate against the ledger."""

    action: str
    order_id: int | None
    reason: str = ""


@dataclass(frozen=True)
class SyncItemResult:
    """Per-email outcome reported by a sync pass."""

    message_id: str
    supplier: str
    status: str
    action: str
    reason: str = ""
    order_id: int | None = None


@dataclass(frozen=True)
class UnparsedEmail:
    """An email no parser could interpret, surfaced for manual triage."""

    message_id: str
    subject: str
    sender: str


@dataclass
class SyncResult:
    """Mutable accumulator for one user's sync pass."""

    user_id: str
    processed: int = 0
    total_found: int = 0
    failed: int = 0
    cancelled: bool = False
    run_id: int = 0
    results: list[SyncItemResult] = field(default_factory=list)
    unparsed: list[UnparsedEmail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "processed": self.processed,
            "total_found": self.total_found,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "run_id": self.run_id,
            "results": [
                {
                    "message_id": r.message_id,
                    "supplier": r.supplier,
                    "status": r.status,
                    "action": r.action,
                    "reason": r.reason,
                    "order_id": r.order_id,
                }
                for r in self.results
            ],
            "unparsed": [
                {"message_id": u.message_id, "subject": u.subject, "sender": u.sender}
                for u in self.unparsed
            ],
        }
