"""
Order Service — FastAPI entry point

Commands (POST / PUT / PATCH) go through commands.py, reads through
queries.py. Every response uses the storefront envelope:

    success:  {"success": true,  "data": ...}
    failure:  {"success": false, "message": ...}

The caller is identified by the X-User-Id header set by the gateway;
admin routes also require X-User-Role: admin.
"""

import logging
from contextlib import asynccontextmanager
from typing import NamedTuple

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import catalog, commands, config, coupons, customers, queries
from .db import create_engine, init_schema
from .errors import (
    AuthenticationError,
    AuthorizationError,
    InsufficientStockError,
    NotFoundError,
    StorefrontError,
    ValidationError,
)
from .logging_config import setup_logging
from .models import (
    AddressRequest,
    BulkStatusRequest,
    CancelOrderRequest,
    CouponCheckRequest,
    NoteRequest,
    PlaceOrderRequest,
    RefundRequest,
    TrackingRequest,
    UpdateStatusRequest,
)
from .publisher import EventPublisher
from .settings_store import StoreSettingsService, StoreSettingsUpdate

logger = logging.getLogger(__name__)

engine = create_engine(config.DATABASE_URL)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
settings_service = StoreSettingsService()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    setup_logging()
    await init_schema(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    logger.info("Order service started")
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Dependencies ─────────────────────────────────


class Caller(NamedTuple):
    user_id: str
    is_admin: bool


async def get_session():
    async with async_session() as session:
        yield session


def get_publisher() -> EventPublisher:
    return EventPublisher(redis_pool)


def get_settings_service() -> StoreSettingsService:
    return settings_service


def current_caller(
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
) -> Caller:
    if not x_user_id:
        raise AuthenticationError()
    return Caller(x_user_id, (x_user_role or "").lower() == "admin")


def require_admin(caller: Caller = Depends(current_caller)) -> Caller:
    if not caller.is_admin:
        raise AuthorizationError()
    return caller


def ok(data) -> dict:
    return {"success": True, "data": data}


def customer_view(order: dict) -> dict:
    """Internal notes are for staff only."""
    return {key: value for key, value in order.items() if key != "notes"}


# ── Error handlers ───────────────────────────────


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    body = {"success": False, "message": exc.message}
    if exc.retryable:
        body["retryable"] = True
    if isinstance(exc, InsufficientStockError):
        body.update(product=exc.product_name, requested=exc.requested, available=exc.available)
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first["loc"][1:]) or "request"
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": f"Invalid {field}: {first['msg']}"},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# ── Order commands ───────────────────────────────


@app.post("/api/orders", status_code=201)
async def create_order(
    req: PlaceOrderRequest,
    caller: Caller = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
    store: StoreSettingsService = Depends(get_settings_service),
):
    order = await commands.place_order(session, publisher, store, caller.user_id, req)
    return ok(customer_view(order))


@app.put("/api/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    req: UpdateStatusRequest,
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
):
    order = await commands.update_order_status(
        session, publisher, order_id, caller.user_id, req.status, req.note
    )
    return ok(order)


@app.post("/api/user/orders/{order_id}/cancel")
async def cancel_my_order(
    order_id: str,
    req: CancelOrderRequest | None = None,
    caller: Caller = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
):
    reason = req.reason if req else ""
    order = await commands.cancel_order(
        session, publisher, order_id, caller.user_id, reason or "Cancelled by customer",
        owner_id=caller.user_id,
    )
    return ok(customer_view(order))


@app.patch("/api/admin/orders/{order_id}/cancel")
async def admin_cancel_order(
    order_id: str,
    req: CancelOrderRequest,
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
):
    order = await commands.cancel_order(session, publisher, order_id, caller.user_id, req.reason)
    return ok(order)


@app.post("/api/admin/orders/{order_id}/refund")
async def refund_order(
    order_id: str,
    req: RefundRequest,
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
):
    result = await commands.refund_order(
        session, publisher, order_id, caller.user_id, req.amount, req.reason
    )
    return ok(result)


@app.put("/api/admin/orders/{order_id}/tracking")
async def add_tracking(
    order_id: str,
    req: TrackingRequest,
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
):
    order = await commands.add_tracking(
        session, publisher, order_id, caller.user_id, req.tracking_id, req.courier_name
    )
    return ok(order)


@app.post("/api/admin/orders/{order_id}/notes")
async def add_note(
    order_id: str,
    req: NoteRequest,
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return ok(await commands.add_note(session, order_id, caller.user_id, req.message))


@app.patch("/api/admin/orders/bulk/status")
async def bulk_update_status(
    req: BulkStatusRequest,
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
):
    result = await commands.bulk_update_status(
        session, publisher, req.order_ids, caller.user_id, req.status, req.note
    )
    return ok(result)


# ── Order queries ────────────────────────────────


async def _visible_order(session: AsyncSession, order_id: str, caller: Caller) -> dict:
    order = await queries.get_order(session, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if caller.is_admin:
        return order
    if order["user_id"] != caller.user_id:
        raise AuthorizationError("Not authorized to view this order")
    return customer_view(order)


@app.get("/api/orders")
async def list_orders(
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return ok(await queries.list_orders(session, status, search, page, limit))


@app.get("/api/admin/orders/stats/overview")
async def order_stats(
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return ok(await queries.order_stats(session))


@app.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    caller: Caller = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
):
    return ok(await _visible_order(session, order_id, caller))


@app.get("/api/orders/{order_id}/history")
async def get_order_history(
    order_id: str,
    caller: Caller = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
):
    order = await _visible_order(session, order_id, caller)
    return ok(order["status_history"])


@app.get("/api/user/orders")
async def list_my_orders(
    caller: Caller = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
):
    return ok(await queries.list_user_orders(session, caller.user_id))


@app.get("/api/user/orders/{order_id}")
async def get_my_order(
    order_id: str,
    caller: Caller = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
):
    order = await queries.get_order(session, order_id)
    if order is None or order["user_id"] != caller.user_id:
        raise NotFoundError("Order not found")
    return ok(customer_view(order))


# ── Address book ─────────────────────────────────


@app.get("/api/user/addresses")
async def list_my_addresses(
    caller: Caller = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
):
    return ok(await customers.list_addresses(session, caller.user_id))


@app.post("/api/user/addresses", status_code=201)
async def add_my_address(
    req: AddressRequest,
    caller: Caller = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
):
    document = req.model_dump(by_alias=True, exclude={"is_default"}, exclude_none=True)
    if customers.missing_address_fields(customers.map_shipping_address(document)):
        raise ValidationError("Please provide all required address fields")
    address_id = await customers.add_address(session, caller.user_id, document, req.is_default)
    return ok({**document, "_id": address_id})


# ── Catalog, coupons, settings ───────────────────


@app.get("/api/products/{product_id}")
async def get_product(product_id: str, session: AsyncSession = Depends(get_session)):
    product = await catalog.get_product(session, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return ok(product)


@app.get("/api/admin/inventory-logs")
async def list_inventory_logs(
    product: str | None = None,
    limit: int = 100,
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return ok(await catalog.list_inventory_logs(session, product, min(max(limit, 1), 500)))


@app.post("/api/coupons/validate")
async def validate_coupon(
    req: CouponCheckRequest,
    caller: Caller = Depends(current_caller),
    session: AsyncSession = Depends(get_session),
):
    coupon, discount = await coupons.check_coupon(session, req.code, req.cart_value)
    return ok(
        {
            "code": coupon.code,
            "type": coupon.type,
            "value": coupon.value,
            "description": coupon.description,
            "discount": discount,
            "final_amount": round(req.cart_value - discount, 2),
        }
    )


@app.get("/api/admin/settings")
async def get_settings(
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    store: StoreSettingsService = Depends(get_settings_service),
):
    settings = await store.get(session)
    await session.commit()
    return ok(settings.model_dump())


@app.put("/api/admin/settings")
async def update_settings(
    req: StoreSettingsUpdate,
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    store: StoreSettingsService = Depends(get_settings_service),
):
    settings = await store.update(session, req)
    return ok(settings.model_dump())


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
