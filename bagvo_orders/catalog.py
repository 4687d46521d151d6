"""
Order Service — product catalog and stock

Read access to products plus the two stock mutations of the order flow:

    take_stock     stock -= q, sold += q   (order placed)
    restore_stock  stock += q, sold -= q   (order cancelled / refunded)

Both are single conditional UPDATE statements, so the check and the write
cannot be separated by another request. Every mutation is written to
inventory_logs in the caller's transaction.
"""

import json
import logging
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import utcnow
from .errors import ConcurrentModificationError

logger = logging.getLogger(__name__)

_STOCK_STATUS = """
    CASE
        WHEN {new_stock} <= 0 THEN 'out_of_stock'
        WHEN {new_stock} <= low_stock_threshold THEN 'low_stock'
        ELSE 'in_stock'
    END
"""


def normalize_variants(values) -> list[str]:
    """
    Flatten a colour/size list into plain strings.

    Older products stored their colours as JSON-encoded arrays inside the
    array (``['["Red","Blue"]', 'Black']``); those are unpacked, and empty
    placeholders (``''``, ``'[]'``, ``'{}'``) dropped.
    """
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]

    flat: list[str] = []
    for value in values:
        if isinstance(value, (list, tuple)):
            flat.extend(normalize_variants(value))
            continue
        value = str(value).strip()
        if value.startswith("[") or value.startswith("{"):
            try:
                parsed = json.loads(value)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                flat.extend(normalize_variants(parsed))
                continue
        if value and value not in ("[]", "{}"):
            flat.append(value)
    return flat


def variant_available(selected: str, options: list[str]) -> bool:
    wanted = selected.strip().lower()
    return any(option.lower() == wanted for option in options)


def _product_from_row(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "slug": row.slug,
        "main_image": row.main_image,
        "price": {
            "mrp": float(row.price_mrp),
            "selling": float(row.price_selling),
        },
        "stock": row.stock,
        "sold": row.sold,
        "low_stock_threshold": row.low_stock_threshold,
        "stock_status": row.stock_status,
        "attributes": {
            "colors": normalize_variants(json.loads(row.colors or "[]")),
            "sizes": normalize_variants(json.loads(row.sizes or "[]")),
        },
        "status": row.status,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM products WHERE id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _product_from_row(row)


async def create_product(
    session: AsyncSession,
    name: str,
    selling_price: float,
    stock: int,
    mrp: float | None = None,
    colors: list | None = None,
    sizes: list | None = None,
    main_image: str | None = None,
    low_stock_threshold: int = 10,
    product_id: str | None = None,
) -> str:
    """Insert a catalog product. Used by seeding and tests; not part of checkout."""
    product_id = product_id or str(uuid4())
    now = utcnow()
    if stock <= 0:
        stock_status = "out_of_stock"
    elif stock <= low_stock_threshold:
        stock_status = "low_stock"
    else:
        stock_status = "in_stock"
    await session.execute(
        text("""
            INSERT INTO products
                (id, name, slug, main_image, price_mrp, price_selling, stock, sold,
                 low_stock_threshold, stock_status, colors, sizes, status, created_at, updated_at)
            VALUES
                (:id, :name, :slug, :image, :mrp, :selling, :stock, 0,
                 :threshold, :stock_status, :colors, :sizes, 'active', :now, :now)
        """),
        {
            "id": product_id,
            "name": name,
            "slug": "-".join(name.lower().split()),
            "image": main_image,
            "mrp": mrp if mrp is not None else selling_price,
            "selling": selling_price,
            "stock": stock,
            "threshold": low_stock_threshold,
            "stock_status": stock_status,
            "colors": json.dumps(colors or []),
            "sizes": json.dumps(sizes or []),
            "now": now,
        },
    )
    await session.commit()
    return product_id


async def take_stock(
    session: AsyncSession,
    product: dict,
    quantity: int,
    order_id: str,
    performed_by: str | None = None,
) -> int:
    """
    Decrement stock only if enough is left. Returns the new stock level.

    Zero rows updated means someone else took the stock after the caller
    read the product, so the whole order must be retried.
    """
    now = utcnow()
    result = await session.execute(
        text(f"""
            UPDATE products
            SET stock = stock - :qty,
                sold = sold + :qty,
                stock_status = {_STOCK_STATUS.format(new_stock="stock - :qty")},
                updated_at = :now
            WHERE id = :id AND stock >= :qty
            RETURNING stock
        """),
        {"id": product["id"], "qty": quantity, "now": now},
    )
    row = result.fetchone()
    if row is None:
        raise ConcurrentModificationError(
            f"Stock for {product['name']} changed while the order was being placed"
        )
    new_stock = row.stock
    await _log_inventory(
        session, product["id"], "reduce", quantity, new_stock + quantity, new_stock,
        "Order placed", order_id, performed_by, now,
    )
    return new_stock


async def restore_stock(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    order_id: str,
    reason: str,
    performed_by: str | None = None,
) -> int | None:
    """Give stock back. Returns the new stock, or None if the product is gone."""
    now = utcnow()
    result = await session.execute(
        text(f"""
            UPDATE products
            SET stock = stock + :qty,
                sold = CASE WHEN sold >= :qty THEN sold - :qty ELSE 0 END,
                stock_status = {_STOCK_STATUS.format(new_stock="stock + :qty")},
                updated_at = :now
            WHERE id = :id
            RETURNING stock
        """),
        {"id": product_id, "qty": quantity, "now": now},
    )
    row = result.fetchone()
    if row is None:
        logger.warning(f"[Order: {order_id}] Product {product_id} no longer exists; stock not restored")
        return None
    new_stock = row.stock
    await _log_inventory(
        session, product_id, "add", quantity, new_stock - quantity, new_stock,
        reason, order_id, performed_by, now,
    )
    return new_stock


async def _log_inventory(
    session: AsyncSession,
    product_id: str,
    action: str,
    quantity: int,
    previous_stock: int,
    new_stock: int,
    reason: str,
    order_id: str | None,
    performed_by: str | None,
    now: str,
) -> None:
    await session.execute(
        text("""
            INSERT INTO inventory_logs
                (id, product_id, action, quantity, previous_stock, new_stock,
                 reason, related_order, performed_by, created_at)
            VALUES
                (:id, :product_id, :action, :qty, :prev, :new, :reason, :order_id, :by, :now)
        """),
        {
            "id": str(uuid4()),
            "product_id": product_id,
            "action": action,
            "qty": quantity,
            "prev": previous_stock,
            "new": new_stock,
            "reason": reason,
            "order_id": order_id,
            "by": performed_by,
            "now": now,
        },
    )


async def list_inventory_logs(
    session: AsyncSession, product_id: str | None = None, limit: int = 100
) -> list[dict]:
    query = "SELECT * FROM inventory_logs"
    params: dict = {"limit": limit}
    if product_id:
        query += " WHERE product_id = :product_id"
        params["product_id"] = product_id
    query += " ORDER BY created_at DESC LIMIT :limit"
    result = await session.execute(text(query), params)
    return [
        {
            "id": row.id,
            "product_id": row.product_id,
            "action": row.action,
            "quantity": row.quantity,
            "previous_stock": row.previous_stock,
            "new_stock": row.new_stock,
            "reason": row.reason,
            "related_order": row.related_order,
            "performed_by": row.performed_by,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
