"""SQLite audit trail: per-email processing records, sync runs and sync errors."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from supply_sync.core.models import PARSE_STATUSES
from supply_sync.storage.base import SQLiteStore

logger = logging.getLogger(__name__)

ERROR_CATEGORIES = {
    "email_parsing",
    "order_matching",
    "inventory_update",
    "gmail_api",
    "database",
    "unknown",
}
ERROR_SEVERITIES = {"info", "warning", "error", "critical"}


@dataclass(frozen=True)
class EmailProcessingRecord:
    """Audit row for one message id."""

    message_id: str
    user_id: str
    parse_status: str
    confidence: float | None = None
    order_id: int | None = None
    parser_name: str = ""
    payload: dict[str, Any] | None = None
    subject: str = ""
    sender: str = ""
    received_at: str = ""
    error_message: str = ""

    @property
    def linked_success(self) -> bool:
        """True when this message already produced or matched an order."""
        return self.parse_status == "success" and self.order_id is not None


class EmailRecordStore(SQLiteStore):
    """Tracks what each sync pass did with each email.

    Tables:
    - email_records: upsert-by-message-id processing outcome
    - sync_runs: audit log of sync passes
    - sync_errors: categorised error log
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS email_records (
            message_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            parse_status TEXT NOT NULL CHECK (parse_status IN ('success', 'failed')),
            confidence REAL,
            order_id INTEGER,
            parser_name TEXT DEFAULT '',
            payload TEXT,
            subject TEXT DEFAULT '',
            sender TEXT DEFAULT '',
            received_at TEXT DEFAULT '',
            error_message TEXT DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_email_records_user ON email_records(user_id);
        CREATE INDEX IF NOT EXISTS idx_email_records_status ON email_records(parse_status);

        CREATE TABLE IF NOT EXISTS sync_runs (
            run_id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT,
            emails_found INTEGER DEFAULT 0,
            emails_processed INTEGER DEFAULT 0,
            emails_unparsed INTEGER DEFAULT 0,
            emails_failed INTEGER DEFAULT 0,
            error_message TEXT DEFAULT ''
        );

        CREATE TABLE IF NOT EXISTS sync_errors (
            error_id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            category TEXT NOT NULL,
            severity TEXT NOT NULL,
            message TEXT NOT NULL,
            details TEXT DEFAULT '{}',
            message_id TEXT,
            order_id INTEGER,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_sync_errors_user ON sync_errors(user_id, created_at);
    """

    # ---------- email records ----------

    def get_record(self, message_id: str) -> EmailProcessingRecord | None:
        row = self._fetchone("SELECT * FROM email_records WHERE message_id = ?", (message_id,))
        if row is None:
            return None
        return EmailProcessingRecord(
            message_id=row["message_id"],
            user_id=row["user_id"],
            parse_status=row["parse_status"],
            confidence=row["confidence"],
            order_id=row["order_id"],
            parser_name=row["parser_name"] or "",
            payload=json.loads(row["payload"]) if row["payload"] else None,
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            received_at=row["received_at"] or "",
            error_message=row["error_message"] or "",
        )

    def upsert_record(self, record: EmailProcessingRecord) -> None:
        """Insert or replace the record for ``record.message_id``."""
        if record.parse_status not in PARSE_STATUSES:
            raise ValueError(f"Invalid parse status: {record.parse_status}")

        now = datetime.now(UTC).isoformat()
        self._execute(
            """INSERT INTO email_records
               (message_id, user_id, parse_status, confidence, order_id, parser_name,
                payload, subject, sender, received_at, error_message, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(message_id) DO UPDATE SET
                   user_id = excluded.user_id,
                   parse_status = excluded.parse_status,
                   confidence = excluded.confidence,
                   order_id = excluded.order_id,
                   parser_name = excluded.parser_name,
                   payload = excluded.payload,
                   subject = excluded.subject,
                   sender = excluded.sender,
                   received_at = excluded.received_at,
                   error_message = excluded.error_message,
                   updated_at = excluded.updated_at""",
            (
                record.message_id,
                record.user_id,
                record.parse_status,
                record.confidence,
                record.order_id,
                record.parser_name,
                json.dumps(record.payload) if record.payload is not None else None,
                record.subject,
                record.sender,
                record.received_at,
                record.error_message,
                now,
                now,
            ),
        )

    def count_by_status(self, user_id: str | None = None) -> dict[str, int]:
        """Get count of email records grouped by parse status."""
        if user_id is None:
            rows = self._fetchall(
                "SELECT parse_status, COUNT(*) as cnt FROM email_records GROUP BY parse_status"
            )
        else:
            rows = self._fetchall(
                "SELECT parse_status, COUNT(*) as cnt FROM email_records "
                "WHERE user_id = ? GROUP BY parse_status",
                (user_id,),
            )
        return {row["parse_status"]: row["cnt"] for row in rows}

    # ---------- sync runs ----------

    def start_run(self, user_id: str) -> int:
        """Record the start of a sync pass. Returns the run_id."""
        cursor = self._execute(
            "INSERT INTO sync_runs (user_id, started_at) VALUES (?, ?)",
            (user_id, datetime.now(UTC).isoformat()),
        )
        return cursor.lastrowid or 0

    def complete_run(
        self,
        run_id: int,
        emails_found: int = 0,
        emails_processed: int = 0,
        emails_unparsed: int = 0,
        emails_failed: int = 0,
        error_message: str = "",
    ) -> None:
        """Record the completion of a sync pass."""
        self._execute(
            """UPDATE sync_runs SET
               completed_at = ?, emails_found = ?, emails_processed = ?,
               emails_unparsed = ?, emails_failed = ?, error_message = ?
               WHERE run_id = ?""",
            (
                datetime.now(UTC).isoformat(),
                emails_found,
                emails_processed,
                emails_unparsed,
                emails_failed,
                error_message,
                run_id,
            ),
        )

    def last_run(self, user_id: str) -> dict | None:
        row = self._fetchone(
            "SELECT * FROM sync_runs WHERE user_id = ? ORDER BY run_id DESC LIMIT 1",
            (user_id,),
        )
        return dict(row) if row else None

    # ---------- sync errors ----------

    def log_error(
        self,
        user_id: str,
        category: str,
        severity: str,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        message_id: str | None = None,
        order_id: int | None = None,
    ) -> None:
        """Persist a categorised sync error."""
        if category not in ERROR_CATEGORIES:
            category = "unknown"
        if severity not in ERROR_SEVERITIES:
            raise ValueError(f"Invalid severity: {severity}")

        self._execute(
            """INSERT INTO sync_errors
               (user_id, category, severity, message, details, message_id, order_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                user_id,
                category,
                severity,
                message,
                json.dumps(details or {}, default=str),
                message_id,
                order_id,
                datetime.now(UTC).isoformat(),
            ),
        )

    def recent_errors(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent errors for a user, newest first."""
        rows = self._fetchall(
            "SELECT * FROM sync_errors WHERE user_id = ? "
            "ORDER BY created_at DESC, error_id DESC LIMIT ?",
            (user_id, limit),
        )
        errors = []
        for row in rows:
            error = dict(row)
            error["details"] = json.loads(error["details"] or "{}")
            errors.append(error)
        return errors

    def error_stats(self, user_id: str, days: int = 7) -> dict[str, Any]:
        """Error counts by category and severity over the last ``days`` days."""
        since = (datetime.now(UTC) - timedelta(days=days)).isoformat()
        rows = self._fetchall(
            "SELECT category, severity FROM sync_errors WHERE user_id = ? AND created_at >= ?",
            (user_id, since),
        )
        by_category: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for row in rows:
            by_category[row["category"]] = by_category.get(row["category"], 0) + 1
            by_severity[row["severity"]] = by_severity.get(row["severity"], 0) + 1
        return {"total": len(rows), "by_category": by_category, "by_severity": by_severity}

    def clear_old_errors(self, user_id: str, days_to_keep: int = 30) -> int:
        """Delete errors older than ``days_to_keep`` days. Returns rows removed."""
        cutoff = (datetime.now(UTC) - timedelta(days=days_to_keep)).isoformat()
        cursor = self._execute(
            "DELETE FROM sync_errors WHERE user_id = ? AND created_at < ?",
            (user_id, cutoff),
        )
        return cursor.rowcount
