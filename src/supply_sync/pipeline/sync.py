"""Sync orchestrator: fetch → parse → reconcile → record, one user at a time."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any

from supply_sync.config.settings import SupplySyncSettings
from supply_sync.core.exceptions import LedgerError, MailAccessError, ReconciliationError
from supply_sync.core.mailbox import MailAccessFactory, gmail_mailbox_factory
from supply_sync.core.models import (
    RawEmail,
    SyncItemResult,
    SyncResult,
    UnparsedEmail,
)
from supply_sync.parsers.registry import ParserRegistry
from supply_sync.pipeline.locks import UserLockRegistry
from supply_sync.reconcile.matcher import OrderMatcher
from supply_sync.storage.audit import EmailProcessingRecord, EmailRecordStore
from supply_sync.storage.ledger import OrderLedger

logger = logging.getLogger(__name__)

_SEVERITY_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass
class BatchSyncOutcome:
    """Results of syncing several users; a failed user never hides the others."""

    results: dict[str, SyncResult] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


class SyncOrchestrator:
    """Drives sync passes over users' supply emails.

    Per email:
    - skip if an earlier pass already linked it to an order
    - run the parser registry; no match is recorded as unparsed
    - reconcile the candidate; failures are recorded and the batch continues

    Emails are reconciled oldest first, so an order confirmation earlier in the
    batch is visible to a shipping notice later in the same batch.
    """

    def __init__(
        self,
        settings: SupplySyncSettings | None = None,
        *,
        mail_factory: MailAccessFactory | None = None,
        registry: ParserRegistry | None = None,
        ledger: OrderLedger | None = None,
        records: EmailRecordStore | None = None,
        matcher: OrderMatcher | None = None,
        locks: UserLockRegistry | None = None,
    ) -> None:
        self._settings = settings or SupplySyncSettings()
        self._mail_factory = mail_factory
        self._registry = registry or ParserRegistry.default()
        self._ledger = ledger
        self._records = records
        self._matcher = matcher
        self._locks = locks or UserLockRegistry(self._settings.lock_timeout_seconds)
        self._owned: list[OrderLedger | EmailRecordStore] = []

    def _ensure_initialized(
        self,
    ) -> tuple[MailAccessFactory, OrderLedger, EmailRecordStore, OrderMatcher]:
        """Initialize all components if not already done."""
        if self._mail_factory is None:
            self._mail_factory = gmail_mailbox_factory(self._settings)

        if self._ledger is None or self._records is None:
            self._settings.ensure_directories()

        if self._ledger is None:
            self._ledger = OrderLedger(
                self._settings.database_path, timeout=self._settings.ledger_timeout_seconds
            )
            self._ledger.connect()
            self._owned.append(self._ledger)

        if self._records is None:
            self._records = EmailRecordStore(
                self._settings.database_path, timeout=self._settings.ledger_timeout_seconds
            )
            self._records.connect()
            self._owned.append(self._records)

        if self._matcher is None:
            self._matcher = OrderMatcher.from_settings(self._ledger, self._settings)

        return self._mail_factory, self._ledger, self._records, self._matcher

    def sync_user(
        self, user_id: str, *, cancel_event: threading.Event | None = None
    ) -> SyncResult:
        """Run one sync pass for a user.

        Args:
            user_id: The user whose mailbox and ledger are synced.
            cancel_event: When set, remaining emails are abandoned; completed
                results are kept and ``cancelled`` is reported.

        Returns:
            SyncResult with per-email outcomes and the unparsed list.

        Raises:
            MailAccessError: If emails could not be retrieved at all.
            SyncInProgressError: If another pass for this user holds the lock.
        """
        mail_factory, _, records, _ = self._ensure_initialized()

        with self._locks.hold(user_id):
            result = SyncResult(user_id=user_id)
            result.run_id = records.start_run(user_id)

            try:
                emails = self._fetch_emails(mail_factory, records, user_id)
            except MailAccessError as e:
                records.complete_run(result.run_id, error_message=str(e))
                raise

            result.total_found = len(emails)
            for email in emails:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info(
                        "Sync for %s cancelled after %d of %d emails",
                        user_id, result.processed, result.total_found,
                    )
                    result.cancelled = True
                    break
                self._process_email(user_id, email, result)

            records.complete_run(
                result.run_id,
                emails_found=result.total_found,
                emails_processed=result.processed,
                emails_unparsed=len(result.unparsed),
                emails_failed=result.failed,
                error_message="cancelled" if result.cancelled else "",
            )

        logger.info(
            "Sync for %s: %d processed, %d unparsed, %d failed",
            user_id, result.processed, len(result.unparsed), result.failed,
        )
        return result

    def sync_users(
        self,
        user_ids: Iterable[str],
        *,
        max_workers: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BatchSyncOutcome:
        """Sync independent users in parallel."""
        self._ensure_initialized()
        outcome = BatchSyncOutcome()
        unique_ids = list(dict.fromkeys(user_ids))
        if not unique_ids:
            return outcome

        workers = max_workers or self._settings.sync_workers
        with ThreadPoolExecutor(max_workers=min(workers, len(unique_ids))) as executor:
            future_to_user = {
                executor.submit(self.sync_user, user_id, cancel_event=cancel_event): user_id
                for user_id in unique_ids
            }
            for future in as_completed(future_to_user):
                user_id = future_to_user[future]
                try:
                    outcome.results[user_id] = future.result()
                except Exception as e:
                    logger.error("Sync failed for %s: %s", user_id, e)
                    outcome.errors[user_id] = str(e)

        return outcome

    def _fetch_emails(
        self, mail_factory: MailAccessFactory, records: EmailRecordStore, user_id: str
    ) -> list[RawEmail]:
        try:
            mailbox = mail_factory(user_id)
            emails = mailbox.search_emails(self._settings.search_query, self._settings.max_results)
        except Exception as e:
            self._log_error(
                records, user_id, "gmail_api", "error",
                f"Mail access failed: {e}",
                details={"operation": "search_emails"},
            )
            if isinstance(e, MailAccessError):
                raise
            raise MailAccessError(f"Mail access failed for {user_id}: {e}") from e

        return sorted(emails, key=lambda email: email.received_at)

    def _process_email(self, user_id: str, email: RawEmail, result: SyncResult) -> None:
        """Parse and reconcile one email. Never raises."""
        _, _, records, matcher = self._ensure_initialized()
        result.processed += 1

        try:
            existing = records.get_record(email.message_id)
        except LedgerError as e:
            self._fail(records, user_id, email, result, "database", e)
            return

        if existing is not None and existing.linked_success:
            logger.debug("Skipping already processed email: %s", email.message_id)
            payload = existing.payload or {}
            result.results.append(
                SyncItemResult(
                    message_id=email.message_id,
                    supplier=payload.get("supplier", ""),
                    status=payload.get("status", ""),
                    action="skipped",
                    reason="already processed",
                    order_id=existing.order_id,
                )
            )
            return

        try:
            match = self._registry.parse(email)
        except Exception as e:
            self._fail(records, user_id, email, result, "email_parsing", e)
            return
        if match is None:
            self._save_record(
                records,
                self._record(user_id, email, "failed", error_message="no parser matched"),
            )
            result.unparsed.append(
                UnparsedEmail(message_id=email.message_id, subject=email.subject, sender=email.sender)
            )
            return

        candidate = match.candidate
        try:
            outcome = matcher.reconcile(user_id, candidate)
        except Exception as e:
            category = (
                "inventory_update"
                if isinstance(e, ReconciliationError) and e.action == "credit_inventory"
                else "order_matching"
            )
            self._fail(
                records, user_id, email, result, category, e,
                parser_name=match.parser_name,
                payload=candidate.to_payload(),
                confidence=candidate.confidence,
            )
            return

        self._save_record(
            records,
            self._record(
                user_id,
                email,
                "success",
                parser_name=match.parser_name,
                payload=candidate.to_payload(),
                confidence=candidate.confidence,
                order_id=outcome.order_id,
            ),
        )
        result.results.append(
            SyncItemResult(
                message_id=email.message_id,
                supplier=candidate.supplier,
                status=candidate.status,
                action=outcome.action,
                reason=outcome.reason,
                order_id=outcome.order_id,
            )
        )

    def _fail(
        self,
        records: EmailRecordStore,
        user_id: str,
        email: RawEmail,
        result: SyncResult,
        category: str,
        error: Exception,
        *,
        parser_name: str = "",
        payload: dict[str, Any] | None = None,
        confidence: float | None = None,
    ) -> None:
        """Record a per-email failure so the next pass retries the email."""
        action = getattr(error, "action", "")
        self._log_error(
            records, user_id, category, "error",
            f"Failed to process email {email.message_id}: {error}",
            details={"candidate": payload, "attempted_action": action},
            message_id=email.message_id,
        )
        self._save_record(
            records,
            self._record(
                user_id,
                email,
                "failed",
                parser_name=parser_name,
                payload=payload,
                confidence=confidence,
                error_message=str(error),
            ),
        )
        result.failed += 1
        result.results.append(
            SyncItemResult(
                message_id=email.message_id,
                supplier=(payload or {}).get("supplier", ""),
                status=(payload or {}).get("status", ""),
                action="failed",
                reason=str(error),
            )
        )

    @staticmethod
    def _record(
        user_id: str,
        email: RawEmail,
        parse_status: str,
        *,
        parser_name: str = "",
        payload: dict[str, Any] | None = None,
        confidence: float | None = None,
        order_id: int | None = None,
        error_message: str = "",
    ) -> EmailProcessingRecord:
        return EmailProcessingRecord(
            message_id=email.message_id,
            user_id=user_id,
            parse_status=parse_status,
            confidence=confidence,
            order_id=order_id,
            parser_name=parser_name,
            payload=payload,
            subject=email.subject,
            sender=email.sender,
            received_at=email.received_at.isoformat(),
            error_message=error_message,
        )

    @staticmethod
    def _save_record(records: EmailRecordStore, record: EmailProcessingRecord) -> None:
        try:
            records.upsert_record(record)
        except LedgerError as e:
            logger.error("Could not save processing record for %s: %s", record.message_id, e)

    @staticmethod
    def _log_error(
        records: EmailRecordStore,
        user_id: str,
        category: str,
        severity: str,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> None:
        """Log to the module logger and persist to the sync error table."""
        logger.log(
            _SEVERITY_LEVELS.get(severity, logging.ERROR),
            "[%s] %s %s", category, message, details or "",
        )
        try:
            records.log_error(
                user_id, category, severity, message, details=details, message_id=message_id
            )
        except LedgerError as e:
            logger.warning("Could not persist sync error: %s", e)

    def get_status(self, user_id: str | None = None) -> dict[str, int]:
        """Email record counts by parse status."""
        _, _, records, _ = self._ensure_initialized()
        return records.count_by_status(user_id)

    def close(self) -> None:
        """Close stores this orchestrator opened itself."""
        for store in self._owned:
            store.close()
        self._owned.clear()
