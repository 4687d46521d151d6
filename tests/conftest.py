"""Pytest fixtures for the order service tests."""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone

# main.py builds its engine at import time; tests swap it out per test
os.environ.setdefault(
    "DATABASE_URL", f"sqlite+aiosqlite:///{tempfile.gettempdir()}/bagvo-orders-import.db"
)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from bagvo_orders import catalog, commands, coupons, customers
from bagvo_orders.db import create_engine, init_schema
from bagvo_orders.models import PlaceOrderRequest
from bagvo_orders.publisher import EventPublisher
from bagvo_orders.settings_store import StoreSettingsService

ADDRESS = {
    "fullName": "Asha Rao",
    "phone": "9876543210",
    "addressLine": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}


class RecordingPublisher(EventPublisher):
    """Keeps published events in memory instead of sending them to Redis."""

    def __init__(self):
        super().__init__(None)
        self.events: list[tuple[str, dict]] = []

    async def publish(self, event_type: str, data: dict) -> None:
        self.events.append((event_type, data))

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


class Store:
    """Synchronous helpers for seeding data and running commands in tests."""

    def __init__(self, session_factory, publisher: RecordingPublisher, settings: StoreSettingsService):
        self.session_factory = session_factory
        self.publisher = publisher
        self.settings = settings

    def run(self, work):
        async def main():
            async with self.session_factory() as session:
                return await work(session)

        return asyncio.run(main())

    def product(self, name="Canvas Tote", price=100.0, stock=10, **kwargs) -> str:
        return self.run(
            lambda s: catalog.create_product(s, name, selling_price=price, stock=stock, **kwargs)
        )

    def address(self, user_id="user-1", **overrides) -> str:
        return self.run(lambda s: customers.add_address(s, user_id, {**ADDRESS, **overrides}))

    def coupon(self, code="FLAT50", coupon_type="flat", value=50.0, **kwargs) -> str:
        now = datetime.now(timezone.utc)
        kwargs.setdefault("valid_from", now - timedelta(days=1))
        kwargs.setdefault("valid_till", now + timedelta(days=1))
        return self.run(lambda s: coupons.create_coupon(s, code, coupon_type, value, **kwargs))

    def place(self, payload: dict, user_id="user-1") -> dict:
        request = PlaceOrderRequest.model_validate(payload)
        return self.run(
            lambda s: commands.place_order(s, self.publisher, self.settings, user_id, request)
        )

    def get_product(self, product_id: str) -> dict:
        return self.run(lambda s: catalog.get_product(s, product_id))

    def stock(self, product_id: str) -> int:
        return self.get_product(product_id)["stock"]

    def count(self, table: str) -> int:
        async def work(session):
            result = await session.execute(text(f"SELECT COUNT(*) FROM {table}"))
            return result.scalar_one()

        return self.run(work)


@pytest.fixture
def engine(tmp_path):
    """A fresh SQLite database per test."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    asyncio.run(init_schema(engine))
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def settings_service():
    return StoreSettingsService()


@pytest.fixture
def store(session_factory, publisher, settings_service):
    return Store(session_factory, publisher, settings_service)


@pytest.fixture
def order_payload(store):
    """A one-line COD order for user-1: two units of a 100.00 product with 10 in stock."""
    product_id = store.product()
    address_id = store.address()
    return {
        "address": address_id,
        "paymentMethod": "cod",
        "items": [{"product": product_id, "quantity": 2}],
    }


@pytest.fixture
def client(session_factory, publisher, settings_service):
    """TestClient wired to the per-test database and the recording publisher."""
    from bagvo_orders import main

    async def override_session():
        async with session_factory() as session:
            yield session

    main.app.dependency_overrides[main.get_session] = override_session
    main.app.dependency_overrides[main.get_publisher] = lambda: publisher
    main.app.dependency_overrides[main.get_settings_service] = lambda: settings_service
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def user_headers(user_id="user-1") -> dict:
    return {"X-User-Id": user_id}


def admin_headers(user_id="admin-1") -> dict:
    return {"X-User-Id": user_id, "X-User-Role": "admin"}
