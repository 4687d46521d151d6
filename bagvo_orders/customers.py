"""
Order Service — saved addresses

Addresses belong to a user and are stored as free-form JSON documents, since
several generations of the storefront wrote them with different field names.
At checkout the document is mapped onto the canonical shipping address.
"""

import json
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import utcnow

# canonical field -> accepted source fields, first non-empty wins
ADDRESS_ALIASES = {
    "full_name": ("fullName", "full_name", "name"),
    "phone": ("phone", "mobile"),
    "address_line1": ("addressLine", "addressLine1", "address_line1", "street"),
    "address_line2": ("addressLine2", "address_line2", "secondary"),
    "city": ("city",),
    "state": ("state",),
    "pincode": ("pincode", "zip"),
    "landmark": ("landmark",),
}

REQUIRED_ADDRESS_FIELDS = ("full_name", "phone", "address_line1", "city", "state", "pincode")


def map_shipping_address(document: dict) -> dict:
    """Resolve alias fields into the shipping address stored on an order."""
    mapped = {}
    for field, sources in ADDRESS_ALIASES.items():
        value = ""
        for source in sources:
            candidate = document.get(source)
            if candidate is not None and str(candidate).strip():
                value = str(candidate).strip()
                break
        mapped[field] = value
    return mapped


def missing_address_fields(address: dict) -> list[str]:
    return [field for field in REQUIRED_ADDRESS_FIELDS if not address.get(field)]


async def add_address(
    session: AsyncSession,
    user_id: str,
    document: dict,
    is_default: bool = False,
    address_id: str | None = None,
) -> str:
    """Save an address for user_id. The first address, or one marked default, becomes the default."""
    address_id = address_id or str(uuid4())
    existing = await session.execute(
        text("SELECT COUNT(*) FROM user_addresses WHERE user_id = :user_id"),
        {"user_id": user_id},
    )
    if existing.scalar_one() == 0:
        is_default = True
    elif is_default:
        await session.execute(
            text("UPDATE user_addresses SET is_default = FALSE WHERE user_id = :user_id"),
            {"user_id": user_id},
        )
    await session.execute(
        text("""
            INSERT INTO user_addresses (id, user_id, data, is_default, created_at)
            VALUES (:id, :user_id, :data, :is_default, :now)
        """),
        {
            "id": address_id,
            "user_id": user_id,
            "data": json.dumps(document),
            "is_default": is_default,
            "now": utcnow(),
        },
    )
    await session.commit()
    return address_id


async def find_address(session: AsyncSession, user_id: str, address_id: str) -> dict | None:
    """Look up one of the user's own addresses; other users' addresses are invisible."""
    result = await session.execute(
        text("SELECT data FROM user_addresses WHERE id = :id AND user_id = :user_id"),
        {"id": address_id, "user_id": user_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return json.loads(row.data)


async def list_addresses(session: AsyncSession, user_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT id, data, is_default FROM user_addresses
            WHERE user_id = :user_id
            ORDER BY is_default DESC, created_at
        """),
        {"user_id": user_id},
    )
    return [
        {**json.loads(row.data), "_id": row.id, "isDefault": bool(row.is_default)}
        for row in result.fetchall()
    ]
