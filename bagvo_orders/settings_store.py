"""
Order Service — store settings

The store keeps exactly one settings document (row id = 1). It is created
from the configured defaults the first time anyone reads it, and all writes
go through a single lock so concurrent admin edits cannot interleave their
read-merge-write cycles.

Order placement reads the pricing knobs (free shipping threshold, shipping
charge, tax percentage) and the variant validation mode from here.
"""

import asyncio
import logging

import pydantic
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .db import utcnow
from .errors import ValidationError

logger = logging.getLogger(__name__)

SETTINGS_ID = 1


class StoreSettings(BaseModel):
    store_name: str = config.STORE_NAME
    currency: str = config.STORE_CURRENCY
    free_shipping_threshold: float = Field(config.FREE_SHIPPING_THRESHOLD, ge=0)
    shipping_charge: float = Field(config.SHIPPING_CHARGE, ge=0)
    tax_percentage: float = Field(config.TAX_PERCENTAGE, ge=0, le=100)
    strict_variant_validation: bool = config.STRICT_VARIANT_VALIDATION


class StoreSettingsUpdate(BaseModel):
    store_name: str | None = None
    currency: str | None = None
    free_shipping_threshold: float | None = None
    shipping_charge: float | None = None
    tax_percentage: float | None = None
    strict_variant_validation: bool | None = None


class StoreSettingsService:
    def __init__(self, defaults: StoreSettings | None = None):
        self.defaults = defaults or StoreSettings()
        self._write_lock = asyncio.Lock()

    async def get(self, session: AsyncSession) -> StoreSettings:
        """
        Return the settings document, creating it on first access.

        The insert joins the caller's transaction; ON CONFLICT makes a
        concurrent first access by another process harmless.
        """
        settings = await self._load(session)
        if settings is not None:
            return settings

        logger.info("Store settings not found; creating them from defaults")
        await session.execute(
            text("""
                INSERT INTO store_settings (id, data, updated_at)
                VALUES (:id, :data, :now)
                ON CONFLICT (id) DO NOTHING
            """),
            {"id": SETTINGS_ID, "data": self.defaults.model_dump_json(), "now": utcnow()},
        )
        return await self._load(session) or self.defaults

    async def update(self, session: AsyncSession, changes: StoreSettingsUpdate) -> StoreSettings:
        async with self._write_lock:
            current = await self.get(session)
            merged = {**current.model_dump(), **changes.model_dump(exclude_none=True)}
            try:
                updated = StoreSettings.model_validate(merged)
            except pydantic.ValidationError as e:
                first = e.errors()[0]
                raise ValidationError(f"Invalid {first['loc'][0]}: {first['msg']}") from e

            await session.execute(
                text("UPDATE store_settings SET data = :data, updated_at = :now WHERE id = :id"),
                {"id": SETTINGS_ID, "data": updated.model_dump_json(), "now": utcnow()},
            )
            await session.commit()
            logger.info(f"Store settings updated: {sorted(changes.model_dump(exclude_none=True))}")
            return updated

    async def _load(self, session: AsyncSession) -> StoreSettings | None:
        result = await session.execute(
            text("SELECT data FROM store_settings WHERE id = :id"),
            {"id": SETTINGS_ID},
        )
        row = result.fetchone()
        if not row:
            return None
        return StoreSettings.model_validate_json(row.data)
