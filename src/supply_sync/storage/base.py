"""Shared SQLite connection handling for the ledger and audit stores."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from supply_sync.core.exceptions import LedgerError

logger = logging.getLogger(__name__)


class SQLiteStore:
    """Owns one SQLite connection in autocommit mode.

    Statements outside ``transaction()`` commit immediately. ``transaction()``
    opens ``BEGIN IMMEDIATE`` so a read-decide-write sequence holds the write
    lock from its first read. The connection is shared between threads, so an
    ``RLock`` serialises access to it.
    """

    SCHEMA = ""

    def __init__(self, db_path: Path, *, timeout: float = 10.0) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._in_transaction = False

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self._db_path),
            timeout=self._timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        if self.SCHEMA:
            self._conn.executescript(self.SCHEMA)

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> SQLiteStore:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed statements as one immediate transaction.

        Nested calls join the outer transaction.

        Raises:
            LedgerError: If the transaction cannot be started or committed.
        """
        with self._lock:
            if self._in_transaction:
                yield
                return

            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise LedgerError(f"Could not start transaction: {e}") from e

            self._in_transaction = True
            try:
                yield
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                try:
                    self.conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self.conn.execute("ROLLBACK")
                    raise LedgerError(f"Could not commit transaction: {e}") from e
            finally:
                self._in_transaction = False

    def _execute(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> sqlite3.Cursor:
        """Execute one statement, wrapping driver errors in LedgerError."""
        with self._lock:
            try:
                return self.conn.execute(sql, params)
            except sqlite3.Error as e:
                logger.error("SQLite statement failed: %s", e)
                raise LedgerError(str(e)) from e

    def _fetchone(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._execute(sql, params).fetchall()
