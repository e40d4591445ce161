"""SQLite database interface for the checkout ledger.

Holds order → receiver bindings, checkout sessions persisted across the
wallet redirect, confirmed sales and product stock. Idempotency is enforced
by unique indexes, never by application locks: concurrent pollers and
duplicate browser tabs converge on the same rows.
"""

import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional

import aiosqlite

from src.config import config
from src.logging_utils import get_logger
from src.models import CheckoutSession, OrderBinding, SaleItem, SaleRecord

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
-- One receiver per order; receiver_url is NULL while a checkout is creating it
CREATE TABLE IF NOT EXISTS orders (
    order_id TEXT PRIMARY KEY,
    receiver_url TEXT,
    expected_minor INTEGER NOT NULL,
    asset_code TEXT NOT NULL,
    asset_scale INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'paid')),
    outgoing_payment_id TEXT,
    payer_wallet TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Line items of an order (used when a confirmation carries no items)
CREATE TABLE IF NOT EXISTS order_items (
    order_id TEXT NOT NULL,
    product_id INTEGER NOT NULL,
    quantity INTEGER NOT NULL,
    unit_price REAL NOT NULL,
    PRIMARY KEY (order_id, product_id)
);

-- Checkout sessions waiting for the wallet redirect to come back
CREATE TABLE IF NOT EXISTS checkout_sessions (
    session_id TEXT PRIMARY KEY,
    order_id TEXT,
    receiver_url TEXT NOT NULL,
    continue_uri TEXT NOT NULL UNIQUE,
    continue_access_token TEXT NOT NULL,
    customer_wallet_address_url TEXT NOT NULL,
    expected_minor INTEGER NOT NULL,
    asset_code TEXT NOT NULL,
    asset_scale INTEGER NOT NULL,
    finish_nonce TEXT,
    created_at TEXT NOT NULL
);

-- Confirmed sales, exactly one per receiver
CREATE TABLE IF NOT EXISTS sales (
    sale_id INTEGER PRIMARY KEY AUTOINCREMENT,
    receiver_url TEXT NOT NULL,
    amount_minor INTEGER NOT NULL,
    asset_code TEXT NOT NULL,
    asset_scale INTEGER NOT NULL,
    total REAL NOT NULL,
    payer_wallet TEXT,
    order_id TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sale_items (
    sale_id INTEGER NOT NULL,
    product_id INTEGER NOT NULL,
    quantity INTEGER NOT NULL,
    unit_price REAL NOT NULL,
    subtotal REAL NOT NULL,
    FOREIGN KEY (sale_id) REFERENCES sales(sale_id)
);

CREATE TABLE IF NOT EXISTS products (
    product_id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    stock INTEGER NOT NULL DEFAULT 0 CHECK(stock >= 0)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_sales_receiver ON sales(receiver_url);
CREATE INDEX IF NOT EXISTS idx_sessions_order_id ON checkout_sessions(order_id);
CREATE INDEX IF NOT EXISTS idx_orders_receiver ON orders(receiver_url);
"""


def _now() -> str:
    return datetime.utcnow().isoformat()


class Database:
    """Async database interface for the checkout ledger."""

    def __init__(self, db_path: str = None):
        """Initialize database connection settings.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Order operations
    async def get_order(self, order_id: str) -> Optional[OrderBinding]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM orders WHERE order_id = ?", (order_id,))
            row = await cursor.fetchone()

            if row:
                return OrderBinding(
                    order_id=row["order_id"],
                    receiver_url=row["receiver_url"],
                    expected_minor=row["expected_minor"],
                    asset_code=row["asset_code"],
                    asset_scale=row["asset_scale"],
                    status=row["status"],
                    outgoing_payment_id=row["outgoing_payment_id"],
                    payer_wallet=row["payer_wallet"],
                )
            return None

    async def reserve_order(self, binding: OrderBinding, stale_after_seconds: float) -> bool:
        """Claim an order before its receiver is created.

        A reservation that never got a receiver within ``stale_after_seconds``
        (its checkout died mid-way) may be taken over.

        Returns:
            True if the caller now owns the order, False if another checkout does.
        """
        cutoff = (datetime.utcnow() - timedelta(seconds=stale_after_seconds)).isoformat()
        async with aiosqlite.connect(self.db_path) as db:
            try:
                await db.execute(
                    """
                    INSERT INTO orders
                    (order_id, receiver_url, expected_minor, asset_code, asset_scale,
                     status, created_at, updated_at)
                    VALUES (?, NULL, ?, ?, ?, 'pending', ?, ?)
                    """,
                    (
                        binding.order_id,
                        binding.expected_minor,
                        binding.asset_code,
                        binding.asset_scale,
                        _now(),
                        _now(),
                    ),
                )
            except sqlite3.IntegrityError:
                cursor = await db.execute(
                    """
                    UPDATE orders
                    SET expected_minor = ?, asset_code = ?, asset_scale = ?, updated_at = ?
                    WHERE order_id = ? AND receiver_url IS NULL AND updated_at < ?
                    """,
                    (
                        binding.expected_minor,
                        binding.asset_code,
                        binding.asset_scale,
                        _now(),
                        binding.order_id,
                        cutoff,
                    ),
                )
                if cursor.rowcount != 1:
                    logger.info(f"Order {binding.order_id} is already reserved")
                    return False
                logger.warning(f"Taking over stale reservation of order {binding.order_id}")
            await db.commit()
        return True

    async def set_order_receiver(self, order_id: str, receiver_url: str) -> bool:
        """Attach the receiver to a reserved order.

        Returns:
            True if bound, False if the order already has a receiver.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE orders SET receiver_url = ?, updated_at = ? WHERE order_id = ? AND receiver_url IS NULL",
                (receiver_url, _now(), order_id),
            )
            await db.commit()
            bound = cursor.rowcount == 1
        if bound:
            logger.info(f"Order {order_id} bound to receiver {receiver_url}")
        else:
            logger.warning(f"Order {order_id} already has a receiver")
        return bound

    async def release_order_reservation(self, order_id: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM orders WHERE order_id = ? AND receiver_url IS NULL", (order_id,))
            await db.commit()

    async def set_order_outgoing_payment(self, order_id: str, outgoing_payment_id: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE orders SET outgoing_payment_id = ?, updated_at = ? WHERE order_id = ?",
                (outgoing_payment_id, _now(), order_id),
            )
            await db.commit()

    async def mark_order_paid(self, order_id: str, receiver_url: str, payer_wallet: Optional[str]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE orders
                SET status = 'paid', payer_wallet = COALESCE(?, payer_wallet), updated_at = ?
                WHERE order_id = ? AND receiver_url = ?
                """,
                (payer_wallet, _now(), order_id, receiver_url),
            )
            await db.commit()
        logger.info(f"Order {order_id} marked as paid")

    async def add_order_items(self, order_id: str, items: List[SaleItem]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.executemany(
                """
                INSERT OR REPLACE INTO order_items (order_id, product_id, quantity, unit_price)
                VALUES (?, ?, ?, ?)
                """,
                [(order_id, it.product_id, it.quantity, it.unit_price) for it in items],
            )
            await db.commit()

    async def get_order_items(self, order_id: str) -> List[SaleItem]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM order_items WHERE order_id = ? ORDER BY product_id",
                (order_id,),
            )
            rows = await cursor.fetchall()
        return [
            SaleItem(product_id=r["product_id"], quantity=r["quantity"], unit_price=r["unit_price"])
            for r in rows
        ]

    # Checkout session operations
    async def save_checkout_session(self, session: CheckoutSession) -> None:
        """Persist a pending session, replacing an earlier one with the same id."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO checkout_sessions
                (session_id, order_id, receiver_url, continue_uri, continue_access_token,
                 customer_wallet_address_url, expected_minor, asset_code, asset_scale,
                 finish_nonce, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.session_id,
                    session.order_id,
                    session.receiver_url,
                    session.continue_uri,
                    session.continue_access_token,
                    session.customer_wallet_address_url,
                    session.expected_minor,
                    session.asset_code,
                    session.asset_scale,
                    session.finish_nonce,
                    session.created_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info(f"Saved checkout session {session.session_id}")

    async def get_checkout_session(self, continue_uri: str) -> Optional[CheckoutSession]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM checkout_sessions WHERE continue_uri = ?",
                (continue_uri,),
            )
            row = await cursor.fetchone()

            if row:
                return CheckoutSession(
                    session_id=row["session_id"],
                    order_id=row["order_id"],
                    receiver_url=row["receiver_url"],
                    continue_uri=row["continue_uri"],
                    continue_access_token=row["continue_access_token"],
                    customer_wallet_address_url=row["customer_wallet_address_url"],
                    expected_minor=row["expected_minor"],
                    asset_code=row["asset_code"],
                    asset_scale=row["asset_scale"],
                    finish_nonce=row["finish_nonce"],
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
            return None

    async def delete_checkout_session(self, session_id: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM checkout_sessions WHERE session_id = ?", (session_id,))
            await db.commit()
        logger.info(f"Deleted checkout session {session_id}")

    async def delete_sessions_for_order(self, order_id: str) -> int:
        """Drop pending sessions of an order that is being restarted."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM checkout_sessions WHERE order_id = ?", (order_id,))
            await db.commit()
            return cursor.rowcount

    # Sale operations
    async def insert_sale(self, sale: SaleRecord) -> Optional[int]:
        """Insert a sale and its items in one transaction.

        Returns:
            The new sale id, or None when a sale already exists for the receiver.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    INSERT INTO sales
                    (receiver_url, amount_minor, asset_code, asset_scale, total,
                     payer_wallet, order_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        sale.receiver_url,
                        sale.amount_minor,
                        sale.asset_code,
                        sale.asset_scale,
                        sale.total,
                        sale.payer_wallet,
                        sale.order_id,
                        sale.created_at.isoformat(),
                    ),
                )
                sale_id = cursor.lastrowid
                if sale.items:
                    await db.executemany(
                        """
                        INSERT INTO sale_items (sale_id, product_id, quantity, unit_price, subtotal)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                sale_id,
                                it.product_id,
                                it.quantity,
                                it.unit_price,
                                round(it.quantity * it.unit_price, 2),
                            )
                            for it in sale.items
                        ],
                    )
                await db.commit()
            logger.info(f"Created sale {sale_id} for receiver {sale.receiver_url}")
            return sale_id
        except sqlite3.IntegrityError:
            logger.info(f"Sale already recorded for receiver {sale.receiver_url}")
            return None

    async def get_sale_by_receiver(self, receiver_url: str) -> Optional[SaleRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM sales WHERE receiver_url = ?", (receiver_url,))
            row = await cursor.fetchone()
            if not row:
                return None

            cursor = await db.execute(
                "SELECT * FROM sale_items WHERE sale_id = ? ORDER BY product_id",
                (row["sale_id"],),
            )
            item_rows = await cursor.fetchall()

        return SaleRecord(
            sale_id=row["sale_id"],
            receiver_url=row["receiver_url"],
            amount_minor=row["amount_minor"],
            asset_code=row["asset_code"],
            asset_scale=row["asset_scale"],
            total=row["total"],
            payer_wallet=row["payer_wallet"],
            order_id=row["order_id"],
            items=[
                SaleItem(product_id=r["product_id"], quantity=r["quantity"], unit_price=r["unit_price"])
                for r in item_rows
            ],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def count_sales_for_receiver(self, receiver_url: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM sales WHERE receiver_url = ?", (receiver_url,)
            )
            (count,) = await cursor.fetchone()
            return count

    # Product operations
    async def upsert_product(self, product_id: int, name: str, stock: int) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO products (product_id, name, stock) VALUES (?, ?, ?)",
                (product_id, name, stock),
            )
            await db.commit()

    async def get_stock(self, product_id: int) -> Optional[int]:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT stock FROM products WHERE product_id = ?", (product_id,))
            row = await cursor.fetchone()
            return row[0] if row else None

    async def decrement_stock(self, product_id: int, quantity: int) -> bool:
        """Decrease stock atomically, never below zero.

        Returns:
            True if the row was updated, False if the product is unknown or short.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE products SET stock = stock - ? WHERE product_id = ? AND stock >= ?",
                (quantity, product_id, quantity),
            )
            await db.commit()
            updated = cursor.rowcount == 1

        if updated:
            logger.info(f"Decremented stock of product {product_id} by {quantity}")
        else:
            logger.warning(f"Stock not decremented for product {product_id} (unknown or insufficient)")
        return updated


# Global database instance
db = Database()
