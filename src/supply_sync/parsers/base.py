"""Vendor parser contract and the keyword-driven template most vendors share."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from supply_sync.core.exceptions import ExtractionError
from supply_sync.core.models import CandidateOrder, RawEmail
from supply_sync.parsers.extraction import (
    DEFAULT_ITEM_RULES,
    TRACKING_PATTERNS,
    ItemRule,
    extract_delivery_date,
    extract_items,
    extract_quantity,
    first_match,
    has_supply_indicator,
    score_confidence,
)

logger = logging.getLogger(__name__)

DELIVERED_BODY_PHRASES = ("has been delivered", "was delivered", "has arrived")
SHIPPED_BODY_PHRASES = ("has shipped", "have shipped", "is on its way", "are on their way")


@runtime_checkable
class VendorParser(Protocol):
    """Two-phase contract: a cheap predicate, then the actual extraction."""

    name: str

    def can_parse(self, email: RawEmail) -> bool: ...

    def parse(self, email: RawEmail) -> CandidateOrder | None: ...


class KeywordVendorParser:
    """Template for vendors whose emails follow the usual notice layout.

    Subclasses set the class attributes; a few override ``_accepts_items``
    or ``detect_status`` where their format differs.
    """

    name: str = ""
    supplier: str = ""
    key_prefix: str = ""
    sender_domains: tuple[str, ...] = ()
    subject_pattern: re.Pattern[str] | None = None
    order_number_patterns: tuple[re.Pattern[str], ...] = ()
    tracking_patterns: tuple[re.Pattern[str], ...] = TRACKING_PATTERNS
    item_rules: Sequence[ItemRule] = DEFAULT_ITEM_RULES
    pack_size: int = 3

    delivered_keywords: tuple[str, ...] = ("delivered",)
    shipped_keywords: tuple[str, ...] = ("shipped", "shipping", "on its way", "on the way")

    def can_parse(self, email: RawEmail) -> bool:
        """Sender domain match OR vendor subject pattern match."""
        sender = email.sender.lower()
        if any(domain in sender for domain in self.sender_domains):
            return True
        return bool(self.subject_pattern and self.subject_pattern.search(email.subject))

    def parse(self, email: RawEmail) -> CandidateOrder | None:
        """Extract a candidate order, or None if the email holds no usable order.

        Raises:
            ExtractionError: If extraction fails unexpectedly.
        """
        try:
            return self._extract(email)
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(
                f"{self.name} parser failed on message {email.message_id}: {e}"
            ) from e

    def detect_status(self, subject: str, body: str) -> str:
        """Delivered beats shipped beats ordered when keywords co-occur."""
        subject_lower = subject.lower()
        body_lower = body.lower()
        if any(k in subject_lower for k in self.delivered_keywords) or any(
            p in body_lower for p in DELIVERED_BODY_PHRASES
        ):
            return "delivered"
        if any(k in subject_lower for k in self.shipped_keywords) or any(
            p in body_lower for p in SHIPPED_BODY_PHRASES
        ):
            return "shipped"
        return "ordered"

    def _accepts_items(self, items: list[tuple[str, str]], email: RawEmail) -> bool:
        """Whether the email concerns diabetes supplies at all."""
        return bool(items) or has_supply_indicator(email.subject, email.body)

    def _extract(self, email: RawEmail) -> CandidateOrder | None:
        subject, body = email.subject, email.body

        items = extract_items(f"{subject}\n{body}", self.item_rules)
        if not self._accepts_items(items, email):
            logger.debug("%s: no supply indicator in %s", self.name, email.message_id)
            return None

        status = self.detect_status(subject, body)
        order_number = first_match(self.order_number_patterns, body, subject)
        tracking_number = first_match(self.tracking_patterns, body, subject)
        quantity = extract_quantity(body)
        delivery_date = extract_delivery_date(body)

        fallback_key = None
        if not order_number.present:
            fallback_key = f"{self.key_prefix}-{int(email.received_at.timestamp() * 1000)}"

        confidence = score_confidence(
            has_order_number=order_number.present,
            has_items=bool(items),
            has_shipping_tracking=tracking_number.present and status == "shipped",
        )

        return CandidateOrder(
            supplier=self.supplier,
            order_date=email.received_at,
            status=status,
            quantity=quantity.value_or(self.pack_size),
            order_number=order_number.value,
            tracking_number=tracking_number.value,
            items=tuple(name for name, _ in items),
            item_categories=tuple(category for _, category in items),
            confidence=confidence,
            fallback_key=fallback_key,
            expected_delivery_date=delivery_date.value,
            fields={
                "order_number": order_number,
                "tracking_number": tracking_number,
                "quantity": quantity,
                "expected_delivery_date": delivery_date,
            },
        )
