"""Tests for catalog reads and stock mutations."""

import pytest

from bagvo_orders import catalog
from bagvo_orders.catalog import normalize_variants, variant_available
from bagvo_orders.errors import ConcurrentModificationError


class TestNormalizeVariants:
    def test_plain_list(self):
        assert normalize_variants(["Red", "Blue"]) == ["Red", "Blue"]

    def test_json_encoded_entries_are_unpacked(self):
        assert normalize_variants(['["Red","Blue"]', "Black"]) == ["Red", "Blue", "Black"]

    def test_placeholders_dropped(self):
        assert normalize_variants(["", "[]", "{}", " M "]) == ["M"]

    def test_none(self):
        assert normalize_variants(None) == []

    def test_variant_match_ignores_case(self):
        assert variant_available("red", ["Red", "Blue"])
        assert not variant_available("Green", ["Red", "Blue"])


class TestProducts:
    def test_product_view(self, store):
        product_id = store.product("Sling Bag", price=450, stock=5, mrp=600, colors=['["Tan","Black"]'])
        product = store.get_product(product_id)
        assert product["price"] == {"mrp": 600, "selling": 450}
        assert product["attributes"]["colors"] == ["Tan", "Black"]
        assert product["stock_status"] == "low_stock"

    def test_missing_product(self, store):
        assert store.run(lambda s: catalog.get_product(s, "nope")) is None


class TestStockMutations:
    def _take(self, store, product_id, quantity):
        async def work(session):
            product = await catalog.get_product(session, product_id)
            new_stock = await catalog.take_stock(session, product, quantity, "order-1", "user-1")
            await session.commit()
            return new_stock

        return store.run(work)

    def _restore(self, store, product_id, quantity):
        async def work(session):
            new_stock = await catalog.restore_stock(
                session, product_id, quantity, "order-1", "Order cancelled"
            )
            await session.commit()
            return new_stock

        return store.run(work)

    def test_take_stock_updates_sold_and_status(self, store):
        product_id = store.product(stock=12)
        assert self._take(store, product_id, 12) == 0
        product = store.get_product(product_id)
        assert product["sold"] == 12
        assert product["stock_status"] == "out_of_stock"

    def test_take_more_than_available_conflicts(self, store):
        product_id = store.product(stock=2)
        with pytest.raises(ConcurrentModificationError):
            self._take(store, product_id, 3)
        assert store.stock(product_id) == 2

    def test_restore_clamps_sold_at_zero(self, store):
        product_id = store.product(stock=20)
        self._take(store, product_id, 1)
        assert self._restore(store, product_id, 5) == 24
        assert store.get_product(product_id)["sold"] == 0

    def test_restore_missing_product(self, store):
        assert self._restore(store, "gone", 1) is None

    def test_mutations_are_logged(self, store):
        product_id = store.product(stock=20)
        self._take(store, product_id, 3)
        self._restore(store, product_id, 3)
        logs = store.run(lambda s: catalog.list_inventory_logs(s, product_id))
        assert sorted(log["action"] for log in logs) == ["add", "reduce"]
        reduce = next(log for log in logs if log["action"] == "reduce")
        assert (reduce["previous_stock"], reduce["new_stock"]) == (20, 17)
        assert reduce["related_order"] == "order-1"
