"""
Order Service — database engine and schema

All access goes through raw SQL (sqlalchemy.text) on an async engine.
The DDL below sticks to types that both PostgreSQL and SQLite accept, so the
same schema serves production (asyncpg) and local runs/tests (aiosqlite).

Timestamps are stored as ISO-8601 strings and JSON documents as TEXT.

Tables:
    products          catalog (price, stock, sold, variants)
    user_addresses    saved addresses, one JSON document per address
    coupons           coupon definitions and usage counters
    orders            order read model (one row per order)
    order_items       immutable line-item snapshots
    order_notes       internal staff notes on an order
    payments          payment captured at checkout
    payment_refunds   refunds issued against a payment
    inventory_logs    one row per stock mutation
    event_store       append-only order history (optimistic locking by version)
    store_settings    single settings document (id = 1)
"""

from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id                  TEXT PRIMARY KEY,
        name                TEXT NOT NULL,
        slug                TEXT,
        main_image          TEXT,
        price_mrp           NUMERIC(12, 2) NOT NULL DEFAULT 0,
        price_selling       NUMERIC(12, 2) NOT NULL DEFAULT 0,
        stock               INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        sold                INTEGER NOT NULL DEFAULT 0,
        low_stock_threshold INTEGER NOT NULL DEFAULT 10,
        stock_status        TEXT NOT NULL DEFAULT 'in_stock',
        colors              TEXT NOT NULL DEFAULT '[]',
        sizes               TEXT NOT NULL DEFAULT '[]',
        status              TEXT NOT NULL DEFAULT 'active',
        created_at          TEXT,
        updated_at          TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_addresses (
        id          TEXT PRIMARY KEY,
        user_id     TEXT NOT NULL,
        data        TEXT NOT NULL,
        is_default  BOOLEAN NOT NULL DEFAULT FALSE,
        created_at  TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_user_addresses_user ON user_addresses (user_id)",
    """
    CREATE TABLE IF NOT EXISTS coupons (
        id              TEXT PRIMARY KEY,
        code            TEXT NOT NULL UNIQUE,
        type            TEXT NOT NULL,
        value           NUMERIC(12, 2) NOT NULL,
        min_cart_value  NUMERIC(12, 2) NOT NULL DEFAULT 0,
        max_discount    NUMERIC(12, 2),
        usage_limit     INTEGER,
        used_count      INTEGER NOT NULL DEFAULT 0,
        valid_from      TEXT NOT NULL,
        valid_till      TEXT NOT NULL,
        is_active       BOOLEAN NOT NULL DEFAULT TRUE,
        description     TEXT,
        created_at      TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                TEXT PRIMARY KEY,
        order_number      TEXT NOT NULL UNIQUE,
        user_id           TEXT NOT NULL,
        customer_name     TEXT NOT NULL,
        shipping_address  TEXT NOT NULL,
        payment_method    TEXT NOT NULL,
        payment_status    TEXT NOT NULL DEFAULT 'pending',
        is_paid           BOOLEAN NOT NULL DEFAULT FALSE,
        paid_at           TEXT,
        transaction_id    TEXT,
        gateway_order_id  TEXT,
        items_price       NUMERIC(12, 2) NOT NULL DEFAULT 0,
        shipping_price    NUMERIC(12, 2) NOT NULL DEFAULT 0,
        tax_price         NUMERIC(12, 2) NOT NULL DEFAULT 0,
        discount          NUMERIC(12, 2) NOT NULL DEFAULT 0,
        total_price       NUMERIC(12, 2) NOT NULL DEFAULT 0,
        coupon_code       TEXT,
        coupon_discount   NUMERIC(12, 2) NOT NULL DEFAULT 0,
        order_status      TEXT NOT NULL DEFAULT 'placed',
        is_delivered      BOOLEAN NOT NULL DEFAULT FALSE,
        delivered_at      TEXT,
        tracking_id       TEXT,
        courier_name      TEXT,
        stock_restored    BOOLEAN NOT NULL DEFAULT FALSE,
        version           INTEGER NOT NULL DEFAULT 1,
        created_at        TEXT,
        updated_at        TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders (order_status)",
    """
    CREATE TABLE IF NOT EXISTS order_items (
        order_id        TEXT NOT NULL,
        line_no         INTEGER NOT NULL,
        product_id      TEXT NOT NULL,
        name            TEXT,
        image           TEXT,
        unit_price      NUMERIC(12, 2) NOT NULL,
        quantity        INTEGER NOT NULL CHECK (quantity >= 1),
        selected_color  TEXT NOT NULL DEFAULT '',
        selected_size   TEXT NOT NULL DEFAULT '',
        PRIMARY KEY (order_id, line_no)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_notes (
        id          TEXT PRIMARY KEY,
        order_id    TEXT NOT NULL,
        message     TEXT NOT NULL,
        created_by  TEXT,
        created_at  TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_order_notes_order ON order_notes (order_id)",
    """
    CREATE TABLE IF NOT EXISTS payments (
        id                TEXT PRIMARY KEY,
        order_id          TEXT NOT NULL UNIQUE,
        amount            NUMERIC(12, 2) NOT NULL,
        currency          TEXT NOT NULL DEFAULT 'INR',
        status            TEXT NOT NULL DEFAULT 'pending',
        method            TEXT NOT NULL,
        transaction_id    TEXT,
        gateway_order_id  TEXT,
        refunded_amount   NUMERIC(12, 2) NOT NULL DEFAULT 0,
        created_at        TEXT,
        updated_at        TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_refunds (
        id           TEXT PRIMARY KEY,
        payment_id   TEXT NOT NULL,
        amount       NUMERIC(12, 2) NOT NULL,
        reason       TEXT,
        status       TEXT NOT NULL,
        refunded_at  TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_logs (
        id              TEXT PRIMARY KEY,
        product_id      TEXT NOT NULL,
        action          TEXT NOT NULL,
        quantity        INTEGER NOT NULL,
        previous_stock  INTEGER NOT NULL,
        new_stock       INTEGER NOT NULL,
        reason          TEXT NOT NULL,
        related_order   TEXT,
        performed_by    TEXT,
        created_at      TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_inventory_logs_product ON inventory_logs (product_id)",
    """
    CREATE TABLE IF NOT EXISTS event_store (
        id              TEXT PRIMARY KEY,
        aggregate_id    TEXT NOT NULL,
        aggregate_type  TEXT NOT NULL,
        event_type      TEXT NOT NULL,
        event_data      TEXT NOT NULL,
        version         INTEGER NOT NULL,
        created_at      TEXT NOT NULL,
        UNIQUE (aggregate_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS store_settings (
        id          INTEGER PRIMARY KEY,
        data        TEXT NOT NULL,
        updated_at  TEXT
    )
    """,
]

# PostgreSQL serialization_failure / deadlock_detected / lock_not_available
_RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine. SQLite gets a fresh connection per session."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo, poolclass=NullPool)
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)


async def init_schema(engine: AsyncEngine) -> None:
    """Create all tables and indexes if they do not exist yet."""
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_conflict(exc: DBAPIError) -> bool:
    """
    True when a database error means "another writer got there first":
    a unique/check constraint race, a PostgreSQL serialization failure,
    or SQLite's writer lock.
    """
    if isinstance(exc, IntegrityError):
        return True
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()
