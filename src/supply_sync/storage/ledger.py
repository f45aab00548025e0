"""SQLite-backed order ledger, product catalog and inventory counters."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from datetime import UTC, date, datetime
from typing import Any

from supply_sync.core.exceptions import LedgerError
from supply_sync.core.models import ORDER_STATUSES, Order, Product
from supply_sync.storage.base import SQLiteStore

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "status",
    "order_number",
    "tracking_number",
    "actual_delivery_date",
    "expected_delivery_date",
    "inventory_credited",
    "product_id",
}


def _to_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def _iso(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


class OrderLedger(SQLiteStore):
    """Tracks supply orders per user.

    Tables:
    - products: catalog used to resolve an order's product reference
    - orders: one row per logical purchase, status monotonic
    - inventory: on-hand counter per (user, product)
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS products (
            product_id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            category TEXT NOT NULL DEFAULT ''
        );

        CREATE TABLE IF NOT EXISTS orders (
            order_id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            order_date TEXT NOT NULL,
            quantity INTEGER NOT NULL,
            supplier TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('ordered', 'shipped', 'delivered')),
            order_number TEXT,
            tracking_number TEXT,
            product_id INTEGER REFERENCES products(product_id),
            actual_delivery_date TEXT,
            expected_delivery_date TEXT,
            inventory_credited INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_user_number
            ON orders(user_id, order_number) WHERE order_number IS NOT NULL;
        CREATE INDEX IF NOT EXISTS idx_orders_user_supplier
            ON orders(user_id, supplier, order_date);

        CREATE TABLE IF NOT EXISTS inventory (
            user_id TEXT NOT NULL,
            product_id INTEGER NOT NULL REFERENCES products(product_id),
            on_hand INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, product_id)
        );
    """

    # ---------- products ----------

    def add_product(self, name: str, category: str = "") -> int:
        """Insert a catalog product, returning its id (existing id if already present)."""
        self._execute(
            "INSERT OR IGNORE INTO products (name, category) VALUES (?, ?)",
            (name, category),
        )
        row = self._fetchone("SELECT product_id FROM products WHERE name = ?", (name,))
        return int(row["product_id"])

    def find_product(self, keyword: str) -> Product | None:
        """Case-insensitive substring lookup; earliest-added product wins."""
        row = self._fetchone(
            "SELECT * FROM products WHERE name LIKE ? ORDER BY product_id LIMIT 1",
            (f"%{keyword}%",),
        )
        if row is None:
            return None
        return Product(id=row["product_id"], name=row["name"], category=row["category"])

    def match_product(self, text: str) -> Product | None:
        """Longest catalog name contained in ``text`` (e.g. "Dexcom G6" in "Dexcom G6 Sensor")."""
        row = self._fetchone(
            """SELECT * FROM products
               WHERE lower(?) LIKE '%' || lower(name) || '%'
               ORDER BY length(name) DESC, product_id LIMIT 1""",
            (text,),
        )
        if row is None:
            return None
        return Product(id=row["product_id"], name=row["name"], category=row["category"])

    # ---------- orders ----------

    def get_order(self, order_id: int) -> Order | None:
        row = self._fetchone("SELECT * FROM orders WHERE order_id = ?", (order_id,))
        return self._row_to_order(row) if row else None

    def get_by_order_number(self, user_id: str, order_number: str) -> Order | None:
        """Exact lookup by the vendor-assigned order number."""
        row = self._fetchone(
            "SELECT * FROM orders WHERE user_id = ? AND order_number = ?",
            (user_id, order_number),
        )
        return self._row_to_order(row) if row else None

    def find_recent(
        self,
        user_id: str,
        supplier: str,
        statuses: Iterable[str],
        since: date,
        until: date,
        limit: int = 10,
    ) -> list[Order]:
        """Orders for a supplier dated within [since, until], most recent first."""
        status_list = list(statuses)
        placeholders = ", ".join("?" for _ in status_list)
        rows = self._fetchall(
            f"""SELECT * FROM orders
                WHERE user_id = ? AND supplier = ?
                  AND order_date >= ? AND order_date <= ?
                  AND status IN ({placeholders})
                ORDER BY order_date DESC, order_id DESC
                LIMIT ?""",
            [user_id, supplier, since.isoformat(), until.isoformat(), *status_list, limit],
        )
        return [self._row_to_order(row) for row in rows]

    def find_duplicate(
        self,
        user_id: str,
        supplier: str,
        order_date: date,
        quantity: int,
        order_number: str | None = None,
    ) -> Order | None:
        """Find an order with identical supplier, date and quantity.

        Orders carrying a different vendor order number are never duplicates.
        """
        rows = self._fetchall(
            """SELECT * FROM orders
               WHERE user_id = ? AND supplier = ? AND order_date = ? AND quantity = ?
               ORDER BY order_id""",
            (user_id, supplier, order_date.isoformat(), quantity),
        )
        for row in rows:
            if row["order_number"] is None or row["order_number"] == order_number:
                return self._row_to_order(row)
        return None

    def insert_order(
        self,
        user_id: str,
        *,
        order_date: date,
        quantity: int,
        supplier: str,
        status: str,
        order_number: str | None = None,
        tracking_number: str | None = None,
        product_id: int | None = None,
        actual_delivery_date: date | None = None,
        expected_delivery_date: date | None = None,
        inventory_credited: bool = False,
    ) -> Order:
        """Insert a new order and return its snapshot."""
        if status not in ORDER_STATUSES:
            raise ValueError(f"Invalid status: {status}")

        now = datetime.now(UTC).isoformat()
        cursor = self._execute(
            """INSERT INTO orders
               (user_id, order_date, quantity, supplier, status, order_number,
                tracking_number, product_id, actual_delivery_date,
                expected_delivery_date, inventory_credited, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                user_id,
                order_date.isoformat(),
                quantity,
                supplier,
                status,
                order_number,
                tracking_number,
                product_id,
                _iso(actual_delivery_date),
                _iso(expected_delivery_date),
                int(inventory_credited),
                now,
                now,
            ),
        )
        order_id = cursor.lastrowid
        logger.debug("Inserted order %s for user %s", order_id, user_id)
        order = self.get_order(order_id) if order_id else None
        if order is None:
            raise LedgerError("Inserted order could not be read back")
        return order

    def update_order(self, order_id: int, **fields: Any) -> Order:
        """Update whitelisted columns of an order."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        if "status" in fields and fields["status"] not in ORDER_STATUSES:
            raise ValueError(f"Invalid status: {fields['status']}")

        sets = ["updated_at = ?"]
        params: list[Any] = [datetime.now(UTC).isoformat()]
        for name, value in fields.items():
            sets.append(f"{name} = ?")
            params.append(_iso(value))
        params.append(order_id)

        self._execute(f"UPDATE orders SET {', '.join(sets)} WHERE order_id = ?", params)
        order = self.get_order(order_id)
        if order is None:
            raise LedgerError(f"Order {order_id} not found")
        return order

    def list_orders(self, user_id: str) -> list[Order]:
        rows = self._fetchall(
            "SELECT * FROM orders WHERE user_id = ? ORDER BY order_date DESC, order_id DESC",
            (user_id,),
        )
        return [self._row_to_order(row) for row in rows]

    # ---------- inventory ----------

    def increment_inventory(self, user_id: str, product_id: int, quantity: int) -> int:
        """Atomically add ``quantity`` to the user's on-hand count. Returns the new count."""
        now = datetime.now(UTC).isoformat()
        self._execute(
            """INSERT INTO inventory (user_id, product_id, on_hand, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(user_id, product_id) DO UPDATE SET
                   on_hand = on_hand + excluded.on_hand,
                   updated_at = excluded.updated_at""",
            (user_id, product_id, quantity, now),
        )
        return self.get_inventory(user_id, product_id)

    def get_inventory(self, user_id: str, product_id: int) -> int:
        row = self._fetchone(
            "SELECT on_hand FROM inventory WHERE user_id = ? AND product_id = ?",
            (user_id, product_id),
        )
        return int(row["on_hand"]) if row else 0

    @staticmethod
    def _row_to_order(row: sqlite3.Row) -> Order:
        return Order(
            id=row["order_id"],
            user_id=row["user_id"],
            order_date=date.fromisoformat(row["order_date"]),
            quantity=row["quantity"],
            supplier=row["supplier"],
            status=row["status"],
            order_number=row["order_number"],
            tracking_number=row["tracking_number"],
            product_id=row["product_id"],
            actual_delivery_date=_to_date(row["actual_delivery_date"]),
            expected_delivery_date=_to_date(row["expected_delivery_date"]),
            inventory_credited=bool(row["inventory_credited"]),
        )
