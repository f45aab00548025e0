"""Tests for SyncOrchestrator: end-to-end passes over a fake mailbox."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from conftest import DEFAULT_RECEIVED_AT, make_email

from supply_sync.config.settings import SupplySyncSettings
from supply_sync.core.exceptions import (
    AuthenticationError,
    MailAccessError,
    ReconciliationError,
    SyncInProgressError,
)
from supply_sync.core.models import MatchResult, RawEmail
from supply_sync.parsers.registry import ParserRegistry, RegistryMatch
from supply_sync.pipeline.locks import UserLockRegistry
from supply_sync.pipeline.sync import SyncOrchestrator
from supply_sync.reconcile.matcher import OrderMatcher
from supply_sync.storage.audit import EmailRecordStore
from supply_sync.storage.ledger import OrderLedger

USER = "user_1"

SHIPPED_BODY = "Tracking Number: 1Z999, Items: Dexcom G6 Sensor (3-pack)"


class FakeMailbox:
    """In-memory MailAccess."""

    def __init__(self, emails: list[RawEmail]) -> None:
        self.emails = list(emails)
        self.queries: list[tuple[str, int]] = []

    def search_emails(self, query: str, max_results: int) -> list[RawEmail]:
        self.queries.append((query, max_results))
        return list(self.emails)


def _factory(mailboxes: dict[str, FakeMailbox]) -> Callable[[str], FakeMailbox]:
    return lambda user_id: mailboxes[user_id]


@pytest.fixture
def settings(tmp_db_path: Path, tmp_path: Path) -> SupplySyncSettings:
    return SupplySyncSettings(
        database_path=tmp_db_path,
        token_dir=tmp_path / "tokens",
        lock_timeout_seconds=0.05,
        max_results=25,
    )


@pytest.fixture
def mailboxes() -> dict[str, FakeMailbox]:
    return {USER: FakeMailbox([])}


@pytest.fixture
def orchestrator(
    settings: SupplySyncSettings,
    ledger: OrderLedger,
    records: EmailRecordStore,
    catalog: dict[str, int],
    mailboxes: dict[str, FakeMailbox],
) -> SyncOrchestrator:
    return SyncOrchestrator(
        settings,
        mail_factory=_factory(mailboxes),
        ledger=ledger,
        records=records,
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSyncUser:
    def test_shipping_notice_creates_order(
        self,
        orchestrator: SyncOrchestrator,
        mailboxes: dict[str, FakeMailbox],
        ledger: OrderLedger,
        records: EmailRecordStore,
        catalog: dict[str, int],
    ) -> None:
        mailboxes[USER].emails = [make_email("m1", body=SHIPPED_BODY)]

        result = orchestrator.sync_user(USER)

        assert result.processed == 1
        assert result.total_found == 1
        assert result.failed == 0
        assert result.unparsed == []
        item = result.results[0]
        assert (item.supplier, item.status, item.action) == ("CVS", "shipped", "created")

        order = ledger.get_order(item.order_id)
        assert order is not None
        assert order.quantity == 3
        assert order.tracking_number == "1Z999"
        assert ledger.get_inventory(USER, catalog["Dexcom G6 Sensor"]) == 0

        record = records.get_record("m1")
        assert record is not None
        assert record.linked_success
        assert record.parser_name == "CVS Pharmacy"
        assert record.payload is not None
        assert record.payload["tracking_number"] == "1Z999"

    def test_passes_query_and_limit(
        self, orchestrator: SyncOrchestrator, mailboxes: dict[str, FakeMailbox],
        settings: SupplySyncSettings,
    ) -> None:
        orchestrator.sync_user(USER)
        assert mailboxes[USER].queries == [(settings.search_query, 25)]

    def test_second_pass_is_idempotent(
        self,
        orchestrator: SyncOrchestrator,
        mailboxes: dict[str, FakeMailbox],
        ledger: OrderLedger,
        catalog: dict[str, int],
    ) -> None:
        mailboxes[USER].emails = [
            make_email("m1", subject="Your order has been delivered", body="Dexcom G6 Sensor"),
        ]
        orchestrator.sync_user(USER)
        second = orchestrator.sync_user(USER)

        assert [r.action for r in second.results] == ["skipped"]
        assert second.results[0].reason == "already processed"
        assert second.results[0].supplier == "CVS"
        assert len(ledger.list_orders(USER)) == 1
        assert ledger.get_inventory(USER, catalog["Dexcom G6 Sensor"]) == 3

    def test_emails_processed_oldest_first(
        self, orchestrator: SyncOrchestrator, mailboxes: dict[str, FakeMailbox],
        ledger: OrderLedger,
    ) -> None:
        ordered = make_email(
            "m_ordered", subject="Thanks for your order", body="Dexcom G6 Sensor",
        )
        shipped = make_email(
            "m_shipped", body=SHIPPED_BODY, received_at=DEFAULT_RECEIVED_AT + timedelta(days=2),
        )
        mailboxes[USER].emails = [shipped, ordered]

        result = orchestrator.sync_user(USER)

        assert [r.message_id for r in result.results] == ["m_ordered", "m_shipped"]
        assert [r.action for r in result.results] == ["created", "updated"]
        orders = ledger.list_orders(USER)
        assert len(orders) == 1
        assert orders[0].status == "shipped"

    def test_unparsed_emails_surface(
        self, orchestrator: SyncOrchestrator, mailboxes: dict[str, FakeMailbox],
        ledger: OrderLedger, records: EmailRecordStore,
    ) -> None:
        mailboxes[USER].emails = [
            make_email("m_friend", sender="friend@example.com", subject="Dinner?", body="Friday?"),
        ]

        result = orchestrator.sync_user(USER)

        assert result.processed == 1
        assert result.results == []
        assert [u.message_id for u in result.unparsed] == ["m_friend"]
        assert ledger.list_orders(USER) == []
        record = records.get_record("m_friend")
        assert record is not None
        assert record.parse_status == "failed"
        assert record.order_id is None

    def test_records_run(
        self, orchestrator: SyncOrchestrator, mailboxes: dict[str, FakeMailbox],
        records: EmailRecordStore,
    ) -> None:
        mailboxes[USER].emails = [
            make_email("m1", body=SHIPPED_BODY),
            make_email("m2", sender="friend@example.com", subject="Hi", body="Hello"),
        ]
        result = orchestrator.sync_user(USER)
        run = records.last_run(USER)
        assert run is not None
        assert run["run_id"] == result.run_id
        assert run["emails_found"] == 2
        assert run["emails_processed"] == 2
        assert run["emails_unparsed"] == 1
        assert run["emails_failed"] == 0

    def test_get_status(
        self, orchestrator: SyncOrchestrator, mailboxes: dict[str, FakeMailbox]
    ) -> None:
        mailboxes[USER].emails = [
            make_email("m1", body=SHIPPED_BODY),
            make_email("m2", sender="friend@example.com", subject="Hi", body="Hello"),
        ]
        orchestrator.sync_user(USER)
        assert orchestrator.get_status(USER) == {"success": 1, "failed": 1}


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailureIsolation:
    """One bad email never aborts the batch."""

    @pytest.fixture
    def flaky_matcher(self) -> MagicMock:
        matcher = MagicMock(spec=OrderMatcher)
        matcher.reconcile.side_effect = [
            ReconciliationError("disk full", action="credit_inventory"),
            MatchResult("created", 42, "new order"),
        ]
        return matcher

    def test_failure_recorded_and_batch_continues(
        self,
        settings: SupplySyncSettings,
        ledger: OrderLedger,
        records: EmailRecordStore,
        mailboxes: dict[str, FakeMailbox],
        flaky_matcher: MagicMock,
    ) -> None:
        mailboxes[USER].emails = [
            make_email("m1", body=SHIPPED_BODY),
            make_email("m2", body=SHIPPED_BODY, received_at=DEFAULT_RECEIVED_AT + timedelta(days=1)),
        ]
        orchestrator = SyncOrchestrator(
            settings,
            mail_factory=_factory(mailboxes),
            ledger=ledger,
            records=records,
            matcher=flaky_matcher,
        )

        result = orchestrator.sync_user(USER)

        assert result.processed == 2
        assert result.failed == 1
        assert [r.action for r in result.results] == ["failed", "created"]
        assert result.results[0].supplier == "CVS"

        failed = records.get_record("m1")
        assert failed is not None
        assert failed.parse_status == "failed"
        assert "disk full" in failed.error_message

        errors = records.recent_errors(USER)
        assert len(errors) == 1
        assert errors[0]["category"] == "inventory_update"
        assert errors[0]["message_id"] == "m1"
        assert errors[0]["details"]["attempted_action"] == "credit_inventory"

    def test_failed_email_retried_next_pass(
        self,
        settings: SupplySyncSettings,
        ledger: OrderLedger,
        records: EmailRecordStore,
        mailboxes: dict[str, FakeMailbox],
    ) -> None:
        matcher = MagicMock(spec=OrderMatcher)
        matcher.reconcile.side_effect = [
            ReconciliationError("locked", action="create"),
            MatchResult("created", 7, "new order"),
        ]
        mailboxes[USER].emails = [make_email("m1", body=SHIPPED_BODY)]
        orchestrator = SyncOrchestrator(
            settings, mail_factory=_factory(mailboxes), ledger=ledger, records=records,
            matcher=matcher,
        )

        first = orchestrator.sync_user(USER)
        second = orchestrator.sync_user(USER)

        assert first.results[0].action == "failed"
        assert second.results[0].action == "created"
        assert records.recent_errors(USER)[0]["category"] == "order_matching"
        record = records.get_record("m1")
        assert record is not None
        assert record.linked_success

    def test_raising_parser_does_not_abort_pass(
        self,
        settings: SupplySyncSettings,
        ledger: OrderLedger,
        records: EmailRecordStore,
        catalog: dict[str, int],
        mailboxes: dict[str, FakeMailbox],
    ) -> None:
        class _BuggyParser:
            name = "Buggy"

            def can_parse(self, email: RawEmail) -> bool:
                return True

            def parse(self, email: RawEmail) -> None:
                raise ValueError("boom")

        mailboxes[USER].emails = [
            make_email("m1", body=SHIPPED_BODY),
            make_email("m2", body="Order #: 87654321 Dexcom G6 Sensor",
                       received_at=DEFAULT_RECEIVED_AT + timedelta(days=1)),
        ]
        registry = ParserRegistry([_BuggyParser(), *ParserRegistry.default().parsers])
        orchestrator = SyncOrchestrator(
            settings, mail_factory=_factory(mailboxes), ledger=ledger, records=records,
            registry=registry,
        )

        result = orchestrator.sync_user(USER)

        assert result.processed == 2
        assert result.failed == 0
        assert [r.action for r in result.results] == ["created", "created"]

    def test_registry_failure_recorded_as_parsing_error(
        self,
        settings: SupplySyncSettings,
        ledger: OrderLedger,
        records: EmailRecordStore,
        catalog: dict[str, int],
        mailboxes: dict[str, FakeMailbox],
    ) -> None:
        real_registry = ParserRegistry.default()

        def _parse(email: RawEmail) -> RegistryMatch | None:
            if email.message_id == "m1":
                raise RuntimeError("registry exploded")
            return real_registry.parse(email)

        registry = MagicMock(spec=ParserRegistry)
        registry.parse.side_effect = _parse
        mailboxes[USER].emails = [
            make_email("m1", body=SHIPPED_BODY),
            make_email("m2", body=SHIPPED_BODY, received_at=DEFAULT_RECEIVED_AT + timedelta(days=1)),
        ]
        orchestrator = SyncOrchestrator(
            settings, mail_factory=_factory(mailboxes), ledger=ledger, records=records,
            registry=registry,
        )

        result = orchestrator.sync_user(USER)

        assert result.processed == 2
        assert result.failed == 1
        assert [r.action for r in result.results] == ["failed", "created"]
        failed = records.get_record("m1")
        assert failed is not None
        assert failed.parse_status == "failed"
        assert "registry exploded" in failed.error_message
        errors = records.recent_errors(USER)
        assert len(errors) == 1
        assert errors[0]["category"] == "email_parsing"

    def test_mail_failure_aborts_pass(
        self,
        settings: SupplySyncSettings,
        ledger: OrderLedger,
        records: EmailRecordStore,
    ) -> None:
        def _factory_fails(user_id: str) -> FakeMailbox:
            raise AuthenticationError("token expired")

        orchestrator = SyncOrchestrator(
            settings, mail_factory=_factory_fails, ledger=ledger, records=records
        )

        with pytest.raises(AuthenticationError):
            orchestrator.sync_user(USER)

        assert records.recent_errors(USER)[0]["category"] == "gmail_api"
        run = records.last_run(USER)
        assert run is not None
        assert "token expired" in run["error_message"]

    def test_unexpected_mail_error_wrapped(
        self,
        settings: SupplySyncSettings,
        ledger: OrderLedger,
        records: EmailRecordStore,
    ) -> None:
        mailbox = MagicMock()
        mailbox.search_emails.side_effect = TimeoutError("timed out")
        orchestrator = SyncOrchestrator(
            settings, mail_factory=lambda user_id: mailbox, ledger=ledger, records=records
        )

        with pytest.raises(MailAccessError, match="timed out"):
            orchestrator.sync_user(USER)


# ---------------------------------------------------------------------------
# Cancellation and locking
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancel_before_start(
        self, orchestrator: SyncOrchestrator, mailboxes: dict[str, FakeMailbox]
    ) -> None:
        mailboxes[USER].emails = [make_email("m1", body=SHIPPED_BODY)]
        cancel = threading.Event()
        cancel.set()

        result = orchestrator.sync_user(USER, cancel_event=cancel)

        assert result.cancelled is True
        assert result.processed == 0
        assert result.total_found == 1

    def test_cancel_mid_batch_keeps_completed_work(
        self,
        settings: SupplySyncSettings,
        ledger: OrderLedger,
        records: EmailRecordStore,
        catalog: dict[str, int],
        mailboxes: dict[str, FakeMailbox],
    ) -> None:
        cancel = threading.Event()
        real_registry = ParserRegistry.default()

        def _parse_then_cancel(email: RawEmail):
            cancel.set()
            return real_registry.parse(email)

        registry = MagicMock(spec=ParserRegistry)
        registry.parse.side_effect = _parse_then_cancel
        mailboxes[USER].emails = [
            make_email("m1", body=SHIPPED_BODY),
            make_email("m2", body="Order #: 12345678 Dexcom G7 Sensor",
                       received_at=DEFAULT_RECEIVED_AT + timedelta(days=1)),
        ]
        orchestrator = SyncOrchestrator(
            settings, mail_factory=_factory(mailboxes), registry=registry,
            ledger=ledger, records=records,
        )

        result = orchestrator.sync_user(USER, cancel_event=cancel)

        assert result.cancelled is True
        assert result.processed == 1
        assert [r.message_id for r in result.results] == ["m1"]
        assert len(ledger.list_orders(USER)) == 1
        run = records.last_run(USER)
        assert run is not None
        assert run["error_message"] == "cancelled"


class TestLocking:
    def test_concurrent_pass_for_same_user_rejected(
        self,
        settings: SupplySyncSettings,
        ledger: OrderLedger,
        records: EmailRecordStore,
        mailboxes: dict[str, FakeMailbox],
    ) -> None:
        locks = UserLockRegistry(timeout=0.05)
        orchestrator = SyncOrchestrator(
            settings, mail_factory=_factory(mailboxes), ledger=ledger, records=records,
            locks=locks,
        )
        with locks.hold(USER):
            with pytest.raises(SyncInProgressError):
                orchestrator.sync_user(USER)

    def test_lock_released_after_failure(
        self,
        settings: SupplySyncSettings,
        ledger: OrderLedger,
        records: EmailRecordStore,
    ) -> None:
        locks = UserLockRegistry(timeout=0.05)

        def _factory_fails(user_id: str) -> FakeMailbox:
            raise MailAccessError("offline")

        orchestrator = SyncOrchestrator(
            settings, mail_factory=_factory_fails, ledger=ledger, records=records, locks=locks
        )
        with pytest.raises(MailAccessError):
            orchestrator.sync_user(USER)
        assert not locks.is_locked(USER)


class TestSyncUsers:
    """Independent users sync in parallel; one failure never hides the others."""

    def test_parallel_users(
        self,
        settings: SupplySyncSettings,
        ledger: OrderLedger,
        records: EmailRecordStore,
        catalog: dict[str, int],
    ) -> None:
        users = [f"user_{i}" for i in range(4)]
        mailboxes = {
            user_id: FakeMailbox(
                [
                    make_email(f"{user_id}_m1", body="Order #: 12345678 Dexcom G6 Sensor"),
                    make_email(
                        f"{user_id}_m2",
                        subject="Your order has been delivered",
                        body="Order #: 12345678 Dexcom G6 Sensor",
                        received_at=DEFAULT_RECEIVED_AT + timedelta(days=3),
                    ),
                ]
            )
            for user_id in users
        }
        orchestrator = SyncOrchestrator(
            settings, mail_factory=_factory(mailboxes), ledger=ledger, records=records
        )

        outcome = orchestrator.sync_users(users, max_workers=4)

        assert outcome.errors == {}
        assert set(outcome.results) == set(users)
        for user_id in users:
            orders = ledger.list_orders(user_id)
            assert len(orders) == 1
            assert orders[0].status == "delivered"
            assert ledger.get_inventory(user_id, catalog["Dexcom G6 Sensor"]) == 3

    def test_failure_isolated_per_user(
        self,
        settings: SupplySyncSettings,
        ledger: OrderLedger,
        records: EmailRecordStore,
    ) -> None:
        mailboxes = {"good": FakeMailbox([make_email("g1", body=SHIPPED_BODY)])}
        orchestrator = SyncOrchestrator(
            settings, mail_factory=_factory(mailboxes), ledger=ledger, records=records
        )

        outcome = orchestrator.sync_users(["good", "missing"])

        assert set(outcome.results) == {"good"}
        assert "missing" in outcome.errors

    def test_empty_user_list(self, orchestrator: SyncOrchestrator) -> None:
        outcome = orchestrator.sync_users([])
        assert outcome.results == {}
        assert outcome.errors == {}
