"""
Order Service — sample catalog

Loads a handful of products and a welcome coupon so a fresh database can take
orders. Running it twice is harmless: products are matched by slug and
coupons by code.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import catalog, config, coupons
from .db import create_engine, init_schema
from .logging_config import setup_logging

logger = logging.getLogger(__name__)

SAMPLE_PRODUCTS = [
    {
        "name": "Premium Leather Trolley Bag",
        "mrp": 5999,
        "selling_price": 3999,
        "stock": 25,
        "colors": ["Black", "Brown", "Navy"],
        "sizes": ["Medium", "Large"],
    },
    {
        "name": "Elegant Handbag for Women",
        "mrp": 2999,
        "selling_price": 1999,
        "stock": 45,
        "colors": ["Red", "Beige", "Black"],
    },
    {
        "name": "Spacious Duffel Bag",
        "mrp": 3499,
        "selling_price": 2299,
        "stock": 30,
        "colors": ["Grey", "Olive"],
    },
    {
        "name": "Professional Laptop Backpack",
        "mrp": 4999,
        "selling_price": 3499,
        "stock": 20,
        "colors": ["Black", "Grey"],
        "sizes": ["15 inch", "17 inch"],
    },
]

SAMPLE_COUPONS = [
    {
        "code": "WELCOME10",
        "coupon_type": "percentage",
        "value": 10,
        "min_cart_value": 999,
        "max_discount": 500,
        "description": "10% off your first order",
    },
]


async def _product_exists(session: AsyncSession, name: str) -> bool:
    result = await session.execute(
        text("SELECT 1 FROM products WHERE slug = :slug"),
        {"slug": "-".join(name.lower().split())},
    )
    return result.fetchone() is not None


async def seed_catalog(session: AsyncSession, valid_days: int = 365) -> dict:
    """Insert whatever sample products and coupons are missing; returns what was added."""
    added = {"products": [], "coupons": []}
    for product in SAMPLE_PRODUCTS:
        if await _product_exists(session, product["name"]):
            continue
        await catalog.create_product(session, **product)
        added["products"].append(product["name"])

    now = datetime.now(timezone.utc)
    for coupon in SAMPLE_COUPONS:
        if await coupons.get_coupon(session, coupon["code"]) is not None:
            continue
        await coupons.create_coupon(
            session, valid_from=now, valid_till=now + timedelta(days=valid_days), **coupon
        )
        added["coupons"].append(coupon["code"])

    logger.info(
        f"Seeded {len(added['products'])} products and {len(added['coupons'])} coupons"
    )
    return added


async def _run() -> dict:
    engine = create_engine(config.DATABASE_URL)
    try:
        await init_schema(engine)
        session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with session_factory() as session:
            return await seed_catalog(session)
    finally:
        await engine.dispose()


def main() -> None:
    setup_logging()
    asyncio.run(_run())
