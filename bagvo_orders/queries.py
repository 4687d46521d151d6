"""
Order Service — query handlers (read side)

Reads come from the orders read model and its line items. Only the status
history is taken from the event stream, replayed through OrderAggregate.
Internal notes live in order_notes and only appear on the single-order view.
"""

import json

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .aggregate import OrderAggregate


def _money(value) -> float:
    return float(value) if value is not None else 0.0


def _item_from_row(row) -> dict:
    return {
        "product_id": row.product_id,
        "name": row.name,
        "image": row.image,
        "price": _money(row.unit_price),
        "quantity": row.quantity,
        "selected_color": row.selected_color,
        "selected_size": row.selected_size,
    }


def _order_from_row(row, items: list[dict]) -> dict:
    return {
        "id": row.id,
        "order_number": row.order_number,
        "user_id": row.user_id,
        "customer_name": row.customer_name,
        "items": items,
        "shipping_address": json.loads(row.shipping_address),
        "payment_method": row.payment_method,
        "payment_info": {
            "status": row.payment_status,
            "is_paid": bool(row.is_paid),
            "paid_at": row.paid_at,
            "transaction_id": row.transaction_id,
            "gateway_order_id": row.gateway_order_id,
        },
        "items_price": _money(row.items_price),
        "shipping_price": _money(row.shipping_price),
        "tax_price": _money(row.tax_price),
        "discount": _money(row.discount),
        "total_price": _money(row.total_price),
        "coupon_applied": (
            {"code": row.coupon_code, "discount": _money(row.coupon_discount)}
            if row.coupon_code
            else None
        ),
        "order_status": row.order_status,
        "is_delivered": bool(row.is_delivered),
        "delivered_at": row.delivered_at,
        "tracking_id": row.tracking_id,
        "courier_name": row.courier_name,
        "stock_restored": bool(row.stock_restored),
        "version": row.version,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def _items_for(session: AsyncSession, order_ids: list[str]) -> dict[str, list[dict]]:
    if not order_ids:
        return {}
    result = await session.execute(
        text("""
            SELECT * FROM order_items
            WHERE order_id IN :order_ids
            ORDER BY order_id, line_no
        """).bindparams(bindparam("order_ids", expanding=True)),
        {"order_ids": order_ids},
    )
    items: dict[str, list[dict]] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        items[row.order_id].append(_item_from_row(row))
    return items


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """One order with its line items, status history and internal notes."""
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    items = await _items_for(session, [order_id])
    order = _order_from_row(row, items[order_id])
    order["status_history"] = await get_order_history(session, order_id) or []
    order["notes"] = await _notes_for(session, order_id)
    return order


async def _notes_for(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM order_notes WHERE order_id = :order_id ORDER BY created_at, id"),
        {"order_id": order_id},
    )
    return [
        {"message": row.message, "created_by": row.created_by, "created_at": row.created_at}
        for row in result.fetchall()
    ]


async def get_order_history(session: AsyncSession, order_id: str) -> list[dict] | None:
    events = await event_store.load_events(session, order_id)
    if not events:
        return None
    return OrderAggregate.from_events(events).history


async def list_orders(
    session: AsyncSession,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """Admin listing, newest first. search matches order number or customer name."""
    page = max(page, 1)
    limit = min(max(limit, 1), 100)

    conditions = []
    params: dict = {}
    if status:
        conditions.append("order_status = :status")
        params["status"] = status.strip().lower()
    if search and search.strip():
        conditions.append("(LOWER(order_number) LIKE :search OR LOWER(customer_name) LIKE :search)")
        params["search"] = f"%{search.strip().lower()}%"
    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

    count = await session.execute(text(f"SELECT COUNT(*) FROM orders {where}"), params)
    total = count.scalar_one()

    result = await session.execute(
        text(f"""
            SELECT * FROM orders {where}
            ORDER BY created_at DESC
            LIMIT :limit OFFSET :offset
        """),
        {**params, "limit": limit, "offset": (page - 1) * limit},
    )
    rows = result.fetchall()
    items = await _items_for(session, [row.id for row in rows])
    return {
        "orders": [_order_from_row(row, items[row.id]) for row in rows],
        "total": total,
        "page": page,
        "pages": (total + limit - 1) // limit,
    }


_STATS_GROUPS = {
    "by_status": "order_status",
    "by_payment_status": "payment_status",
    "by_payment_method": "payment_method",
}


async def order_stats(session: AsyncSession) -> dict:
    """Order counts and amounts grouped by status, payment status and payment method."""
    stats: dict = {}
    for key, column in _STATS_GROUPS.items():
        result = await session.execute(
            text(f"""
                SELECT {column} AS group_value, COUNT(*) AS order_count, SUM(total_price) AS total_amount
                FROM orders
                GROUP BY {column}
                ORDER BY order_count DESC, group_value
            """)
        )
        stats[key] = [
            {"value": row.group_value, "count": row.order_count, "total_amount": round(_money(row.total_amount), 2)}
            for row in result.fetchall()
        ]

    result = await session.execute(
        text("SELECT COUNT(*) AS order_count, SUM(total_price) AS total_revenue FROM orders")
    )
    row = result.fetchone()
    stats["total"] = {"count": row.order_count, "total_revenue": round(_money(row.total_revenue), 2)}
    return stats


async def list_user_orders(session: AsyncSession, user_id: str) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM orders WHERE user_id = :user_id ORDER BY created_at DESC"),
        {"user_id": user_id},
    )
    rows = result.fetchall()
    items = await _items_for(session, [row.id for row in rows])
    return [_order_from_row(row, items[row.id]) for row in rows]


async def get_payment(session: AsyncSession, order_id: str) -> dict | None:
    """The payment captured for an order, with the refunds issued against it."""
    result = await session.execute(
        text("SELECT * FROM payments WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    refunds = await session.execute(
        text("SELECT * FROM payment_refunds WHERE payment_id = :id ORDER BY refunded_at"),
        {"id": row.id},
    )
    return {
        "id": row.id,
        "order_id": row.order_id,
        "amount": _money(row.amount),
        "currency": row.currency,
        "status": row.status,
        "method": row.method,
        "transaction_id": row.transaction_id,
        "gateway_order_id": row.gateway_order_id,
        "refunded_amount": _money(row.refunded_amount),
        "refunds": [
            {
                "id": refund.id,
                "amount": _money(refund.amount),
                "reason": refund.reason,
                "status": refund.status,
                "refunded_at": refund.refunded_at,
            }
            for refund in refunds.fetchall()
        ],
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }
