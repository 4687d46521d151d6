"""
Order Service — coupons

A coupon is checked against the store before its discount is trusted:

    valid = is_active and valid_from <= now <= valid_till
            and (usage_limit is None or used_count < usage_limit)

The discount is always computed here from the coupon definition; whatever
discount the client sends along with the code is ignored.
"""

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import utcnow
from .errors import ConcurrentModificationError, NotFoundError, ValidationError


class Coupon(BaseModel):
    id: str
    code: str
    type: str  # "flat" | "percentage"
    value: float
    min_cart_value: float = 0
    max_discount: float | None = None
    usage_limit: int | None = None
    used_count: int = 0
    valid_from: datetime
    valid_till: datetime
    is_active: bool = True
    description: str | None = None

    def is_valid(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (
            self.is_active
            and self.valid_from <= now <= self.valid_till
            and (self.usage_limit is None or self.used_count < self.usage_limit)
        )

    def discount_for(self, cart_value: float) -> float:
        if self.type == "percentage":
            discount = cart_value * self.value / 100
            if self.max_discount is not None:
                discount = min(discount, self.max_discount)
        else:
            discount = self.value
        return round(min(discount, cart_value), 2)


def _aware(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def get_coupon(session: AsyncSession, code: str) -> Coupon | None:
    result = await session.execute(
        text("SELECT * FROM coupons WHERE code = :code"),
        {"code": code.strip().upper()},
    )
    row = result.fetchone()
    if not row:
        return None
    return Coupon(
        id=row.id,
        code=row.code,
        type=row.type,
        value=float(row.value),
        min_cart_value=float(row.min_cart_value or 0),
        max_discount=float(row.max_discount) if row.max_discount is not None else None,
        usage_limit=row.usage_limit,
        used_count=row.used_count,
        valid_from=_aware(row.valid_from),
        valid_till=_aware(row.valid_till),
        is_active=bool(row.is_active),
        description=row.description,
    )


async def create_coupon(
    session: AsyncSession,
    code: str,
    coupon_type: str,
    value: float,
    valid_from: datetime,
    valid_till: datetime,
    min_cart_value: float = 0,
    max_discount: float | None = None,
    usage_limit: int | None = None,
    is_active: bool = True,
    description: str | None = None,
) -> str:
    if coupon_type not in ("flat", "percentage"):
        raise ValidationError(f"Invalid coupon type: {coupon_type}")
    coupon_id = str(uuid4())
    await session.execute(
        text("""
            INSERT INTO coupons
                (id, code, type, value, min_cart_value, max_discount, usage_limit,
                 used_count, valid_from, valid_till, is_active, description, created_at)
            VALUES
                (:id, :code, :type, :value, :min_cart, :max_discount, :usage_limit,
                 0, :valid_from, :valid_till, :is_active, :description, :now)
        """),
        {
            "id": coupon_id,
            "code": code.strip().upper(),
            "type": coupon_type,
            "value": value,
            "min_cart": min_cart_value,
            "max_discount": max_discount,
            "usage_limit": usage_limit,
            "valid_from": valid_from.isoformat(),
            "valid_till": valid_till.isoformat(),
            "is_active": is_active,
            "description": description,
            "now": utcnow(),
        },
    )
    await session.commit()
    return coupon_id


async def check_coupon(
    session: AsyncSession, code: str, cart_value: float, now: datetime | None = None
) -> tuple[Coupon, float]:
    """Resolve a code and compute its discount for cart_value, without using it up."""
    coupon = await get_coupon(session, code)
    if coupon is None:
        raise NotFoundError("Coupon not found")
    if not coupon.is_valid(now):
        raise ValidationError("Coupon is not valid")
    if cart_value < coupon.min_cart_value:
        raise ValidationError("Coupon is not valid")
    return coupon, coupon.discount_for(cart_value)


async def redeem(session: AsyncSession, coupon: Coupon) -> None:
    """
    Count one use. Conditional on the usage limit, so two orders cannot both
    take the last use. Runs inside the caller's transaction.
    """
    result = await session.execute(
        text("""
            UPDATE coupons
            SET used_count = used_count + 1
            WHERE id = :id AND (usage_limit IS NULL OR used_count < usage_limit)
            RETURNING used_count
        """),
        {"id": coupon.id},
    )
    if result.fetchone() is None:
        raise ConcurrentModificationError(f"Coupon {coupon.code} was used up concurrently")
