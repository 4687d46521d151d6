"""
Order Service — command handlers (write side)

Every command runs as one database transaction:

    place_order          address → payment method → per item (product, variant,
                         stock check, catalog price, conditional stock decrement)
                         → coupon → totals → order / items / payment / OrderPlaced
    update_order_status  forward along placed → … → delivered
    cancel_order         placed / confirmed / packed → cancelled, stock given back
    refund_order         money back against the payment, stock given back once
    add_tracking         tracking details, moves the order to shipped
    add_note             internal staff note, no status change
    bulk_update_status   update_order_status for many ids, one transaction each

If anything fails the whole transaction is rolled back, so a failing third
item never leaves the first two items' stock decremented. Write conflicts
(conditional update missed, unique key race, database lock) are retried with
exponential backoff; when the attempts run out the caller gets a
ConcurrentModificationError, which is safe to retry.

Events are published to Redis only after the commit.
"""

import asyncio
import json
import logging
import random
import time
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import Numeric, bindparam, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, config, coupons, customers, event_store, pricing, queries
from .aggregate import CLOSED_STATUSES, OrderAggregate
from .db import is_conflict, utcnow
from .errors import (
    AuthorizationError,
    ConcurrentModificationError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    RefundExceedsBalanceError,
    StorefrontError,
    ValidationError,
)
from .events import OrderCancelled, OrderLine, OrderPlaced, OrderRefunded, OrderStatusChanged
from .models import CouponRequest, PlaceOrderRequest
from .publisher import EventPublisher
from .settings_store import StoreSettingsService

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Order"


# ── Transactions and retries ──────────────────────


async def _in_transaction(session: AsyncSession, work):
    """Run work() and commit, or roll back everything it wrote."""
    try:
        result = await work()
        await session.commit()
    except DBAPIError as e:
        await session.rollback()
        if is_conflict(e):
            raise ConcurrentModificationError(
                "The order was modified by another request; please retry"
            ) from e
        raise
    except Exception:
        await session.rollback()
        raise
    return result


async def _with_retries(log_prefix: str, attempt_once):
    max_attempts = max(config.ORDER_MAX_ATTEMPTS, 1)
    for attempt in range(1, max_attempts + 1):
        try:
            return await attempt_once()
        except ConcurrentModificationError as e:
            if attempt == max_attempts:
                logger.error(f"{log_prefix} Giving up after {attempt} attempts: {e}")
                raise
            delay = config.ORDER_RETRY_BASE_DELAY * 2 ** (attempt - 1)
            delay += random.uniform(0, delay)
            logger.warning(
                f"{log_prefix} Write conflict on attempt {attempt}/{max_attempts} ({e}); "
                f"retrying in {delay:.3f}s"
            )
            await asyncio.sleep(delay)


# ── Order placement ───────────────────────────────


def generate_order_number() -> str:
    """ORD + last 8 digits of the millisecond clock + 3 random digits."""
    timestamp = str(int(time.time() * 1000))[-8:]
    return f"ORD{timestamp}{random.randint(0, 999):03d}"


async def _unused_order_number(session: AsyncSession) -> str:
    for _ in range(config.ORDER_NUMBER_ATTEMPTS):
        candidate = generate_order_number()
        result = await session.execute(
            text("SELECT 1 FROM orders WHERE order_number = :number"),
            {"number": candidate},
        )
        if result.fetchone() is None:
            return candidate
    raise ConcurrentModificationError("Could not allocate a unique order number")


def _validate_request(request: PlaceOrderRequest) -> None:
    if not request.address:
        raise ValidationError("Missing address")
    if not request.payment_method:
        raise ValidationError("Missing paymentMethod")
    if not request.items:
        raise ValidationError("No items to order")
    for index, item in enumerate(request.items, start=1):
        if not item.product_id:
            raise ValidationError(f"Missing product for item {index}")
        if item.quantity < 1:
            raise ValidationError(f"Invalid quantity for item {index}")


def _check_variant(
    log_prefix: str, product: dict, kind: str, selected: str, options: list[str], strict: bool
) -> None:
    if not selected or catalog.variant_available(selected, options):
        return
    message = f"Selected {kind} '{selected}' is not available for product {product['name']}"
    if strict:
        raise ValidationError(message)
    logger.warning(f"{log_prefix} {message}; accepting the order anyway")


async def _apply_coupon(
    session: AsyncSession,
    coupon: str | CouponRequest | None,
    items_price: float,
    now: datetime,
    log_prefix: str,
) -> tuple[str | None, float]:
    if coupon is None:
        return None, 0.0
    code = coupon if isinstance(coupon, str) else coupon.code
    if not code.strip():
        return None, 0.0

    found, discount = await coupons.check_coupon(session, code, items_price, now)
    client_discount = None if isinstance(coupon, str) else coupon.discount
    if client_discount is not None and client_discount != discount:
        logger.warning(
            f"{log_prefix} Client discount {client_discount} for coupon {found.code} "
            f"replaced by {discount}"
        )
    await coupons.redeem(session, found)
    return found.code, discount


async def _place_order_once(
    session: AsyncSession,
    settings_service: StoreSettingsService,
    user_id: str,
    request: PlaceOrderRequest,
) -> tuple[str, dict]:
    document = await customers.find_address(session, user_id, request.address)
    if document is None:
        raise NotFoundError("Address not found")
    shipping_address = customers.map_shipping_address(document)
    if customers.missing_address_fields(shipping_address):
        raise ValidationError("Incomplete address information")

    payment_method = pricing.normalize_payment_method(request.payment_method)
    if payment_method not in pricing.PAYMENT_METHODS:
        raise ValidationError(f"Unsupported payment method: {request.payment_method}")

    store = await settings_service.get(session)
    order_id = str(uuid4())
    now = datetime.now(timezone.utc)
    log_prefix = f"[Order: {order_id}]"

    lines: list[dict] = []
    items_price = 0.0
    for item in request.items:
        product = await catalog.get_product(session, item.product_id)
        if product is None:
            snapshot_name = item.product_snapshot.name if item.product_snapshot else None
            raise NotFoundError(f"Product {snapshot_name or item.product_id} not found")

        selected_color = (item.selected_color or "").strip()
        selected_size = (item.selected_size or "").strip()
        strict = store.strict_variant_validation
        _check_variant(log_prefix, product, "color", selected_color, product["attributes"]["colors"], strict)
        _check_variant(log_prefix, product, "size", selected_size, product["attributes"]["sizes"], strict)

        if product["stock"] < item.quantity:
            raise InsufficientStockError(product["name"], item.quantity, product["stock"])

        unit_price = product["price"]["selling"] or product["price"]["mrp"]
        snapshot = item.product_snapshot
        if snapshot is not None and snapshot.price is not None and snapshot.price != unit_price:
            logger.info(
                f"{log_prefix} Client price {snapshot.price} for {product['name']} ignored; "
                f"catalog price is {unit_price}"
            )

        lines.append(
            {
                "product_id": product["id"],
                "name": product["name"],
                "image": product["main_image"],
                "unit_price": unit_price,
                "quantity": item.quantity,
                "selected_color": selected_color,
                "selected_size": selected_size,
            }
        )
        items_price += round(unit_price * item.quantity, 2)
        await catalog.take_stock(session, product, item.quantity, order_id, performed_by=user_id)

    coupon_code, discount = await _apply_coupon(session, request.coupon, items_price, now, log_prefix)
    totals = pricing.compute_totals(
        items_price,
        discount,
        store.free_shipping_threshold,
        store.shipping_charge,
        store.tax_percentage,
    )

    order_number = await _unused_order_number(session)
    details = request.payment_details
    is_paid = details is not None
    stamp = now.isoformat()

    await session.execute(
        text("""
            INSERT INTO orders
                (id, order_number, user_id, customer_name, shipping_address,
                 payment_method, payment_status, is_paid, paid_at, transaction_id, gateway_order_id,
                 items_price, shipping_price, tax_price, discount, total_price,
                 coupon_code, coupon_discount, order_status, is_delivered, stock_restored,
                 version, created_at, updated_at)
            VALUES
                (:id, :order_number, :user_id, :customer_name, :shipping_address,
                 :payment_method, :payment_status, :is_paid, :paid_at, :transaction_id, :gateway_order_id,
                 :items_price, :shipping_price, :tax_price, :discount, :total_price,
                 :coupon_code, :coupon_discount, 'placed', FALSE, FALSE,
                 1, :now, :now)
        """),
        {
            "id": order_id,
            "order_number": order_number,
            "user_id": user_id,
            "customer_name": shipping_address["full_name"],
            "shipping_address": json.dumps(shipping_address),
            "payment_method": payment_method,
            "payment_status": "paid" if is_paid else "pending",
            "is_paid": is_paid,
            "paid_at": stamp if is_paid else None,
            "transaction_id": details.transaction_id if details else None,
            "gateway_order_id": details.gateway_order_id if details else None,
            "items_price": totals.items_price,
            "shipping_price": totals.shipping_price,
            "tax_price": totals.tax_price,
            "discount": totals.discount,
            "total_price": totals.total_price,
            "coupon_code": coupon_code,
            "coupon_discount": totals.discount if coupon_code else 0,
            "now": stamp,
        },
    )

    for line_no, line in enumerate(lines, start=1):
        await session.execute(
            text("""
                INSERT INTO order_items
                    (order_id, line_no, product_id, name, image, unit_price, quantity,
                     selected_color, selected_size)
                VALUES
                    (:order_id, :line_no, :product_id, :name, :image, :unit_price, :quantity,
                     :selected_color, :selected_size)
            """),
            {"order_id": order_id, "line_no": line_no, **line},
        )

    if is_paid:
        await session.execute(
            text("""
                INSERT INTO payments
                    (id, order_id, amount, currency, status, method, transaction_id,
                     gateway_order_id, refunded_amount, created_at, updated_at)
                VALUES
                    (:id, :order_id, :amount, :currency, 'success', 'gateway', :transaction_id,
                     :gateway_order_id, 0, :now, :now)
            """),
            {
                "id": str(uuid4()),
                "order_id": order_id,
                "amount": totals.total_price,
                "currency": store.currency,
                "transaction_id": details.transaction_id,
                "gateway_order_id": details.gateway_order_id,
                "now": stamp,
            },
        )

    event = OrderPlaced(
        order_id=order_id,
        order_number=order_number,
        user_id=user_id,
        items=[OrderLine(product_id=line["product_id"], quantity=line["quantity"]) for line in lines],
        payment_method=payment_method,
        total_price=totals.total_price,
        is_paid=is_paid,
        actor=user_id,
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")
    await event_store.append_event(session, order_id, AGGREGATE_TYPE, "OrderPlaced", event_data, 0)
    return order_id, event_data


async def place_order(
    session: AsyncSession,
    publisher: EventPublisher,
    settings_service: StoreSettingsService,
    user_id: str,
    request: PlaceOrderRequest,
) -> dict:
    """
    Place an order for user_id and return it.

    Prices come from the catalog, never from the client's cart snapshot.
    Stock, coupon usage and the order itself are written in one transaction.
    """
    _validate_request(request)
    order_id, event_data = await _with_retries(
        f"[User: {user_id}]",
        lambda: _in_transaction(
            session, lambda: _place_order_once(session, settings_service, user_id, request)
        ),
    )
    order = await queries.get_order(session, order_id)
    logger.info(
        f"[Order: {order['order_number']}] Placed by {user_id}: {len(order['items'])} item(s), "
        f"total {order['total_price']:.2f} via {order['payment_method']}"
    )
    await publisher.publish("OrderPlaced", event_data)
    return order


# ── Status transitions ────────────────────────────


async def _load_order(session: AsyncSession, order_id: str) -> OrderAggregate:
    events = await event_store.load_events(session, order_id)
    if not events:
        raise NotFoundError("Order not found")
    return OrderAggregate.from_events(events)


async def _record(
    session: AsyncSession,
    agg: OrderAggregate,
    event_type: str,
    event: BaseModel,
    changes: dict,
) -> dict:
    """Append the event and project it onto the orders row, guarded by version."""
    event_data = event.model_dump(mode="json")
    version = await event_store.append_event(
        session, agg.id, AGGREGATE_TYPE, event_type, event_data, agg.version
    )
    assignments = ", ".join(f"{column} = :{column}" for column in changes)
    result = await session.execute(
        text(f"""
            UPDATE orders
            SET {assignments}, version = :new_version, updated_at = :updated_at
            WHERE id = :order_id AND version = :expected_version
        """),
        {
            **changes,
            "new_version": version,
            "expected_version": agg.version,
            "updated_at": utcnow(),
            "order_id": agg.id,
        },
    )
    if result.rowcount == 0:
        raise ConcurrentModificationError(f"Order {agg.order_number} changed concurrently")
    return event_data


async def _restore_stock(
    session: AsyncSession, agg: OrderAggregate, reason: str, actor_id: str
) -> bool:
    """Give every line's quantity back, unless an earlier event already did."""
    if agg.stock_restored:
        return False
    for line in agg.items:
        await catalog.restore_stock(
            session, line["product_id"], line["quantity"], agg.id, reason, performed_by=actor_id
        )
    return True


async def update_order_status(
    session: AsyncSession,
    publisher: EventPublisher,
    order_id: str,
    actor_id: str,
    status: str,
    note: str = "",
) -> dict:
    status = status.strip().lower()

    async def attempt() -> dict:
        agg = await _load_order(session, order_id)
        agg.ensure_can_advance_to(status)
        now = datetime.now(timezone.utc)
        changes: dict = {"order_status": status}
        if status == "delivered":
            changes.update(is_delivered=True, delivered_at=now.isoformat())
        event = OrderStatusChanged(
            order_id=order_id,
            from_status=agg.status,
            status=status,
            actor=actor_id,
            note=note,
            timestamp=now,
        )
        if note:
            await _add_note(
                session, order_id, f"Status changed from {agg.status} to {status}. {note}", actor_id
            )
        return await _record(session, agg, "OrderStatusChanged", event, changes)

    log_prefix = f"[Order: {order_id}]"
    event_data = await _with_retries(log_prefix, lambda: _in_transaction(session, attempt))
    logger.info(f"{log_prefix} Status {event_data['from_status']} → {status} by {actor_id}")
    await publisher.publish("OrderStatusChanged", event_data)
    return await queries.get_order(session, order_id)


async def cancel_order(
    session: AsyncSession,
    publisher: EventPublisher,
    order_id: str,
    actor_id: str,
    reason: str = "",
    owner_id: str | None = None,
) -> dict:
    """
    Cancel an order that has not shipped yet and give its stock back.
    With owner_id set, only that user's own order can be cancelled.
    """

    async def attempt() -> dict:
        agg = await _load_order(session, order_id)
        if owner_id is not None and agg.user_id != owner_id:
            raise AuthorizationError("Not authorized to cancel this order")
        agg.ensure_cancellable()
        restored = await _restore_stock(session, agg, "Order cancelled", actor_id)
        event = OrderCancelled(
            order_id=order_id,
            from_status=agg.status,
            reason=reason,
            actor=actor_id,
            stock_restored=restored,
            timestamp=datetime.now(timezone.utc),
        )
        changes: dict = {"order_status": "cancelled"}
        if restored:
            changes["stock_restored"] = True
        return await _record(session, agg, "OrderCancelled", event, changes)

    log_prefix = f"[Order: {order_id}]"
    event_data = await _with_retries(log_prefix, lambda: _in_transaction(session, attempt))
    logger.info(f"{log_prefix} Cancelled by {actor_id} (was {event_data['from_status']}). Reason: {reason or '-'}")
    await publisher.publish("OrderCancelled", event_data)
    return await queries.get_order(session, order_id)


async def refund_order(
    session: AsyncSession,
    publisher: EventPublisher,
    order_id: str,
    actor_id: str,
    amount: float,
    reason: str = "",
) -> dict:
    """Refund part or all of the order's payment. Returns the order and the payment."""
    amount = round(amount, 2)
    if amount <= 0:
        raise ValidationError("Refund amount must be greater than zero")

    async def attempt() -> dict:
        agg = await _load_order(session, order_id)
        payment = await queries.get_payment(session, order_id)
        if payment is None:
            raise NotFoundError("Payment not found")

        available = round(payment["amount"] - payment["refunded_amount"], 2)
        if amount > available:
            raise RefundExceedsBalanceError(amount, available)

        # balance re-checked in SQL; a concurrent refund may have used it up
        now = utcnow()
        result = await session.execute(
            text("""
                UPDATE payments
                SET refunded_amount = ROUND(refunded_amount + :amount, 2),
                    status = CASE
                        WHEN ROUND(refunded_amount + :amount, 2) >= amount THEN 'refunded'
                        ELSE 'partially_refunded'
                    END,
                    updated_at = :now
                WHERE id = :id AND ROUND(refunded_amount + :amount, 2) <= amount
                RETURNING refunded_amount
            """).bindparams(bindparam("amount", type_=Numeric(12, 2))),
            {"id": payment["id"], "amount": Decimal(str(amount)), "now": now},
        )
        if result.fetchone() is None:
            raise ConcurrentModificationError(f"Payment for order {agg.order_number} changed concurrently")
        await session.execute(
            text("""
                INSERT INTO payment_refunds (id, payment_id, amount, reason, status, refunded_at)
                VALUES (:id, :payment_id, :amount, :reason, 'processed', :now)
            """).bindparams(bindparam("amount", type_=Numeric(12, 2))),
            {
                "id": str(uuid4()),
                "payment_id": payment["id"],
                "amount": Decimal(str(amount)),
                "reason": reason,
                "now": now,
            },
        )

        restored = await _restore_stock(session, agg, "Order refunded", actor_id)
        event = OrderRefunded(
            order_id=order_id,
            from_status=agg.status,
            amount=amount,
            reason=reason,
            actor=actor_id,
            stock_restored=restored,
            timestamp=datetime.now(timezone.utc),
        )
        changes: dict = {"order_status": "refunded", "payment_status": "refunded"}
        if restored:
            changes["stock_restored"] = True
        return await _record(session, agg, "OrderRefunded", event, changes)

    log_prefix = f"[Order: {order_id}]"
    event_data = await _with_retries(log_prefix, lambda: _in_transaction(session, attempt))
    logger.info(f"{log_prefix} Refunded {amount:.2f} by {actor_id}. Reason: {reason or '-'}")
    await publisher.publish("OrderRefunded", event_data)
    return {
        "order": await queries.get_order(session, order_id),
        "payment": await queries.get_payment(session, order_id),
    }


async def add_tracking(
    session: AsyncSession,
    publisher: EventPublisher,
    order_id: str,
    actor_id: str,
    tracking_id: str,
    courier_name: str = "",
) -> dict:
    """Store tracking details; an order that has not shipped yet becomes shipped."""
    tracking_id = tracking_id.strip()
    if not tracking_id:
        raise ValidationError("Missing trackingId")

    async def attempt() -> dict | None:
        agg = await _load_order(session, order_id)
        if agg.status in CLOSED_STATUSES:
            raise InvalidStateError(f"Cannot add tracking to a {agg.status} order", agg.status)
        tracking_note = f"Tracking ID {tracking_id} added. Courier: {courier_name or '-'}"
        await _add_note(session, order_id, tracking_note, actor_id)
        changes: dict = {"tracking_id": tracking_id, "courier_name": courier_name}
        if agg.status in ("shipped", "delivered"):
            await session.execute(
                text("""
                    UPDATE orders
                    SET tracking_id = :tracking_id, courier_name = :courier_name, updated_at = :now
                    WHERE id = :id
                """),
                {**changes, "now": utcnow(), "id": order_id},
            )
            return None
        event = OrderStatusChanged(
            order_id=order_id,
            from_status=agg.status,
            status="shipped",
            actor=actor_id,
            note=tracking_note,
            timestamp=datetime.now(timezone.utc),
        )
        changes["order_status"] = "shipped"
        return await _record(session, agg, "OrderStatusChanged", event, changes)

    log_prefix = f"[Order: {order_id}]"
    event_data = await _with_retries(log_prefix, lambda: _in_transaction(session, attempt))
    logger.info(f"{log_prefix} Tracking {tracking_id} ({courier_name or 'no courier'}) added by {actor_id}")
    if event_data is not None:
        await publisher.publish("OrderStatusChanged", event_data)
    return await queries.get_order(session, order_id)


# ── Internal notes ────────────────────────────────


async def _add_note(session: AsyncSession, order_id: str, message: str, actor_id: str) -> None:
    await session.execute(
        text("""
            INSERT INTO order_notes (id, order_id, message, created_by, created_at)
            VALUES (:id, :order_id, :message, :created_by, :now)
        """),
        {
            "id": str(uuid4()),
            "order_id": order_id,
            "message": message,
            "created_by": actor_id,
            "now": utcnow(),
        },
    )


async def add_note(session: AsyncSession, order_id: str, actor_id: str, message: str) -> dict:
    """Attach an internal (staff only) note to an order. Does not touch its status."""
    message = (message or "").strip()
    if not message:
        raise ValidationError("Note message is required")

    async def attempt() -> None:
        await _load_order(session, order_id)
        await _add_note(session, order_id, message, actor_id)

    await _in_transaction(session, attempt)
    logger.info(f"[Order: {order_id}] Note added by {actor_id}")
    return await queries.get_order(session, order_id)


# ── Bulk updates ──────────────────────────────────


async def bulk_update_status(
    session: AsyncSession,
    publisher: EventPublisher,
    order_ids: list[str] | None,
    actor_id: str,
    status: str,
    note: str = "",
) -> dict:
    """
    Move several orders to one status. Each order goes through
    update_order_status in its own transaction, so one order breaking a
    transition rule does not stop the others; the outcome is reported per id.
    """
    if not order_ids:
        raise ValidationError("Order IDs array is required")

    results = []
    for order_id in dict.fromkeys(order_ids):
        try:
            order = await update_order_status(
                session, publisher, order_id, actor_id, status,
                f"Bulk status update: {note}" if note else "",
            )
        except StorefrontError as e:
            results.append({"order_id": order_id, "success": False, "message": e.message})
            continue
        results.append({"order_id": order_id, "success": True, "order_status": order["order_status"]})

    updated = sum(1 for result in results if result["success"])
    logger.info(f"Bulk status update to {status} by {actor_id}: {updated}/{len(results)} orders updated")
    return {"updated": updated, "failed": len(results) - updated, "results": results}
