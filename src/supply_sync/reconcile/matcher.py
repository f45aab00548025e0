"""Reconcile extracted candidate orders against a user's order ledger.

Decision sequence, each stage either resolves the candidate or falls through:

1. Exact match on (user, order number).
2. Fuzzy match on supplier and recency when the candidate has no order number.
3. Duplicate guard on identical (user, supplier, order date, quantity).
4. Create a new order.

Inventory is credited only when an order's status becomes ``delivered`` and
only if the order has not been credited before.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from supply_sync.config.settings import SupplySyncSettings
from supply_sync.core.exceptions import LedgerError, ReconciliationError
from supply_sync.core.models import (
    CandidateOrder,
    MatchResult,
    Order,
    Product,
    is_forward_transition,
)
from supply_sync.storage.ledger import OrderLedger

logger = logging.getLogger(__name__)

FUZZY_STATUSES = ("ordered", "shipped")

REASON_NEW = "new order"
REASON_ADVANCED = "status advanced"
REASON_NO_NEW_INFO = "no new info"
REASON_FUZZY = "fuzzy matched by supplier and date"
REASON_DUPLICATE_UPDATED = "matched by supplier, date and quantity"
REASON_DUPLICATE = "duplicate order"


@dataclass
class _Attempt:
    """What the matcher was doing when a ledger call failed."""

    action: str = "lookup"


class OrderMatcher:
    """Turns candidate orders into ledger creations, updates, or skips."""

    def __init__(
        self,
        ledger: OrderLedger,
        *,
        default_pack_size: int = 3,
        lookback_days: int = 7,
        window_days: int = 5,
        default_product_keyword: str = "Dexcom",
    ) -> None:
        self._ledger = ledger
        self._default_pack_size = default_pack_size
        self._lookback_days = lookback_days
        self._window_days = window_days
        self._default_product_keyword = default_product_keyword

    @classmethod
    def from_settings(cls, ledger: OrderLedger, settings: SupplySyncSettings) -> OrderMatcher:
        return cls(
            ledger,
            default_pack_size=settings.default_pack_size,
            lookback_days=settings.fuzzy_lookback_days,
            window_days=settings.fuzzy_window_days,
            default_product_keyword=settings.default_product_keyword,
        )

    def reconcile(self, user_id: str, candidate: CandidateOrder) -> MatchResult:
        """Create, update, or skip an order for ``candidate`` in one transaction.

        Raises:
            ReconciliationError: If a ledger operation fails. The transaction is
                rolled back, so no partial update or inventory credit remains.
        """
        attempt = _Attempt()
        try:
            with self._ledger.transaction():
                result = self._reconcile(user_id, candidate, attempt)
        except LedgerError as e:
            raise ReconciliationError(
                f"Reconciliation failed during {attempt.action} for user {user_id}: {e}",
                action=attempt.action,
                payload=candidate.to_payload(),
            ) from e

        logger.info(
            "Reconciled %s %s order for %s: %s (%s)",
            candidate.supplier, candidate.status, user_id, result.action, result.reason,
        )
        return result

    def _reconcile(self, user_id: str, candidate: CandidateOrder, attempt: _Attempt) -> MatchResult:
        if candidate.order_number:
            attempt.action = "exact_match"
            existing = self._ledger.get_by_order_number(user_id, candidate.order_number)
            if existing is not None:
                if not is_forward_transition(existing.status, candidate.status):
                    return MatchResult("skipped", existing.id, REASON_NO_NEW_INFO)
                self._advance(existing, candidate, attempt)
                return MatchResult("updated", existing.id, REASON_ADVANCED)
        else:
            attempt.action = "fuzzy_match"
            fuzzy = self._find_fuzzy_match(user_id, candidate)
            if fuzzy is not None:
                self._advance(fuzzy, candidate, attempt)
                return MatchResult("updated", fuzzy.id, REASON_FUZZY)

        attempt.action = "duplicate_check"
        quantity = self._quantity(candidate)
        duplicate = self._ledger.find_duplicate(
            user_id,
            candidate.supplier,
            candidate.order_date.date(),
            quantity,
            candidate.order_number,
        )
        if duplicate is not None:
            logger.debug("Found order %s by supplier/date/quantity", duplicate.id)
            if not is_forward_transition(duplicate.status, candidate.status):
                if candidate.order_number and not duplicate.order_number:
                    attempt.action = "update"
                    self._ledger.update_order(duplicate.id, order_number=candidate.order_number)
                return MatchResult("skipped", duplicate.id, REASON_DUPLICATE)
            self._advance(duplicate, candidate, attempt)
            return MatchResult("updated", duplicate.id, REASON_DUPLICATE_UPDATED)

        attempt.action = "create"
        order = self._create(user_id, candidate, attempt)
        return MatchResult("created", order.id, REASON_NEW)

    def _find_fuzzy_match(self, user_id: str, candidate: CandidateOrder) -> Order | None:
        """Most recent open order placed 0..window days before the email."""
        email_date = candidate.order_date.date()
        recent = self._ledger.find_recent(
            user_id,
            candidate.supplier,
            FUZZY_STATUSES,
            since=email_date - timedelta(days=self._lookback_days),
            until=email_date,
        )
        for order in recent:
            gap = (email_date - order.order_date).days
            if 0 <= gap <= self._window_days and is_forward_transition(order.status, candidate.status):
                return order
        return None

    def _advance(self, order: Order, candidate: CandidateOrder, attempt: _Attempt) -> None:
        """Apply a forward status transition, crediting inventory on delivery."""
        attempt.action = "update"
        updates: dict[str, object] = {"status": candidate.status}
        if candidate.tracking_number and not order.tracking_number:
            updates["tracking_number"] = candidate.tracking_number
        if candidate.order_number and not order.order_number:
            updates["order_number"] = candidate.order_number
        if candidate.expected_delivery_date and not order.expected_delivery_date:
            updates["expected_delivery_date"] = candidate.expected_delivery_date

        if candidate.status == "delivered":
            updates["actual_delivery_date"] = candidate.order_date.date()
            product_id = order.product_id
            if product_id is None:
                product = self._resolve_product(candidate)
                if product is not None:
                    product_id = product.id
                    updates["product_id"] = product_id
            if not order.inventory_credited:
                attempt.action = "credit_inventory"
                updates["inventory_credited"] = self._credit_inventory(
                    order.user_id, product_id, order.quantity, order.id
                )

        attempt.action = "update"
        self._ledger.update_order(order.id, **updates)
        logger.debug("Order %s: %s -> %s", order.id, order.status, candidate.status)

    def _create(self, user_id: str, candidate: CandidateOrder, attempt: _Attempt) -> Order:
        product = self._resolve_product(candidate)
        product_id = product.id if product else None
        delivered = candidate.status == "delivered"
        order = self._ledger.insert_order(
            user_id,
            order_date=candidate.order_date.date(),
            quantity=self._quantity(candidate),
            supplier=candidate.supplier,
            status=candidate.status,
            order_number=candidate.order_number,
            tracking_number=candidate.tracking_number,
            product_id=product_id,
            actual_delivery_date=candidate.order_date.date() if delivered else None,
            expected_delivery_date=candidate.expected_delivery_date,
        )
        if delivered:
            # No prior state to transition from: credit once, together with creation
            attempt.action = "credit_inventory"
            if self._credit_inventory(user_id, product_id, order.quantity, order.id):
                order = self._ledger.update_order(order.id, inventory_credited=True)
        return order

    def _credit_inventory(
        self, user_id: str, product_id: int | None, quantity: int, order_id: int
    ) -> bool:
        """Increment on-hand stock. Returns True if a credit was applied."""
        if product_id is None:
            logger.warning(
                "Order %s delivered without a product reference; inventory not credited",
                order_id,
            )
            return False
        on_hand = self._ledger.increment_inventory(user_id, product_id, quantity)
        logger.info(
            "Credited %d units of product %s to %s for order %s (on hand: %d)",
            quantity, product_id, user_id, order_id, on_hand,
        )
        return True

    def _resolve_product(self, candidate: CandidateOrder) -> Product | None:
        """Best-effort catalog lookup: item names first, then the default keyword."""
        for item in candidate.items:
            product = self._ledger.match_product(item)
            if product is not None:
                return product
        if candidate.item_categories and "cgm_sensor" not in candidate.item_categories:
            return None
        return self._ledger.find_product(self._default_product_keyword)

    def _quantity(self, candidate: CandidateOrder) -> int:
        return candidate.quantity if candidate.quantity > 0 else self._default_pack_size
