"""Supply Sync - Reconcile supply order emails into an order ledger and inventory."""

from supply_sync.core.models import (
    CandidateOrder,
    Order,
    RawEmail,
    SyncItemResult,
    SyncResult,
    UnparsedEmail,
)
from supply_sync.parsers.registry import ParserRegistry
from supply_sync.pipeline.sync import SyncOrchestrator
from supply_sync.reconcile.matcher import OrderMatcher

__all__ = [
    "CandidateOrder",
    "Order",
    "OrderMatcher",
    "ParserRegistry",
    "RawEmail",
    "SyncItemResult",
    "SyncOrchestrator",
    "SyncResult",
    "UnparsedEmail",
]
