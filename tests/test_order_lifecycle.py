"""Tests for status updates, cancellation, refunds and tracking."""

import pytest

from bagvo_orders import catalog, commands, queries
from bagvo_orders.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    RefundExceedsBalanceError,
    ValidationError,
)


@pytest.fixture
def placed(store, order_payload):
    """A COD order for two units; returns (order, product_id)."""
    return store.place(order_payload), order_payload["items"][0]["product"]


@pytest.fixture
def paid(store, order_payload):
    """A prepaid order for two units; returns (order, product_id)."""
    order_payload["paymentDetails"] = {"transactionId": "pay_1"}
    return store.place(order_payload), order_payload["items"][0]["product"]


def advance(store, order_id, status, note=""):
    return store.run(
        lambda s: commands.update_order_status(s, store.publisher, order_id, "admin-1", status, note)
    )


def cancel(store, order_id, actor="user-1", reason="", owner_id=None):
    return store.run(
        lambda s: commands.cancel_order(s, store.publisher, order_id, actor, reason, owner_id=owner_id)
    )


def refund(store, order_id, amount, reason="damaged"):
    return store.run(
        lambda s: commands.refund_order(s, store.publisher, order_id, "admin-1", amount, reason)
    )


class TestStatusUpdates:
    def test_forward_with_skip(self, store, placed):
        order, _ = placed
        order = advance(store, order["id"], "packed", "packed at warehouse")
        assert order["order_status"] == "packed"
        assert order["version"] == 2
        assert order["status_history"][-1] == {
            "status": "packed",
            "timestamp": order["status_history"][-1]["timestamp"],
            "actor": "admin-1",
            "note": "packed at warehouse",
        }

    def test_delivered_sets_delivery_fields(self, store, placed):
        order, _ = placed
        order = advance(store, order["id"], "Delivered")
        assert order["order_status"] == "delivered"
        assert order["is_delivered"] is True
        assert order["delivered_at"] is not None

    def test_backward_move_rejected(self, store, placed):
        order, _ = placed
        advance(store, order["id"], "shipped")
        with pytest.raises(InvalidStateError):
            advance(store, order["id"], "confirmed")

    def test_cancel_through_status_update_rejected(self, store, placed):
        order, product_id = placed
        with pytest.raises(InvalidStateError):
            advance(store, order["id"], "cancelled")
        assert store.stock(product_id) == 8

    def test_unknown_status(self, store, placed):
        order, _ = placed
        with pytest.raises(ValidationError):
            advance(store, order["id"], "lost")

    def test_unknown_order(self, store):
        with pytest.raises(NotFoundError, match="Order not found"):
            advance(store, "missing", "confirmed")

    def test_history_lists_every_transition(self, store, publisher, placed):
        order, _ = placed
        advance(store, order["id"], "confirmed")
        advance(store, order["id"], "shipped")
        history = store.run(lambda s: queries.get_order_history(s, order["id"]))
        assert [entry["status"] for entry in history] == ["placed", "confirmed", "shipped"]
        assert publisher.types() == ["OrderPlaced", "OrderStatusChanged", "OrderStatusChanged"]


class TestCancel:
    def test_cancel_restores_stock(self, store, placed):
        order, product_id = placed
        order = cancel(store, order["id"], reason="ordered twice")
        assert order["order_status"] == "cancelled"
        assert order["stock_restored"] is True
        assert order["status_history"][-1]["note"] == "ordered twice"
        product = store.get_product(product_id)
        assert product["stock"] == 10
        assert product["sold"] == 0

    def test_cancel_allowed_while_packed(self, store, placed):
        order, _ = placed
        advance(store, order["id"], "packed")
        assert cancel(store, order["id"])["order_status"] == "cancelled"

    def test_cannot_cancel_after_shipping(self, store, placed):
        order, product_id = placed
        advance(store, order["id"], "shipped")
        with pytest.raises(InvalidStateError, match="once it is shipped"):
            cancel(store, order["id"])
        assert store.stock(product_id) == 8

    def test_cannot_cancel_twice(self, store, placed):
        order, product_id = placed
        cancel(store, order["id"])
        with pytest.raises(InvalidStateError):
            cancel(store, order["id"])
        assert store.stock(product_id) == 10

    def test_customer_cannot_cancel_someone_elses_order(self, store, placed):
        order, product_id = placed
        with pytest.raises(AuthorizationError):
            cancel(store, order["id"], actor="user-2", owner_id="user-2")
        assert store.stock(product_id) == 8

    def test_cancel_logs_restock(self, store, placed):
        order, product_id = placed
        cancel(store, order["id"])
        logs = store.run(lambda s: catalog.list_inventory_logs(s, product_id))
        restock = next(log for log in logs if log["action"] == "add")
        assert restock["reason"] == "Order cancelled"
        assert restock["related_order"] == order["id"]


class TestRefund:
    def test_full_refund(self, store, paid):
        order, product_id = paid
        result = refund(store, order["id"], order["total_price"])
        assert result["order"]["order_status"] == "refunded"
        assert result["order"]["payment_info"]["status"] == "refunded"
        assert result["payment"]["status"] == "refunded"
        assert result["payment"]["refunded_amount"] == order["total_price"]
        assert result["payment"]["refunds"][0]["reason"] == "damaged"
        assert store.stock(product_id) == 10

    def test_partial_refunds_restore_stock_once(self, store, paid):
        order, product_id = paid
        first = refund(store, order["id"], 100)
        assert first["payment"]["status"] == "partially_refunded"
        assert store.stock(product_id) == 10

        second = refund(store, order["id"], 50)
        assert second["payment"]["refunded_amount"] == 150
        assert len(second["payment"]["refunds"]) == 2
        assert store.stock(product_id) == 10

    def test_refund_after_cancel_does_not_restock_again(self, store, paid):
        order, product_id = paid
        cancel(store, order["id"])
        refund(store, order["id"], order["total_price"])
        assert store.stock(product_id) == 10

    def test_refund_of_delivered_order(self, store, paid):
        order, product_id = paid
        advance(store, order["id"], "delivered")
        result = refund(store, order["id"], 10)
        assert result["order"]["order_status"] == "refunded"
        assert store.stock(product_id) == 10

    def test_refund_exceeding_balance(self, store, paid):
        order, product_id = paid
        refund(store, order["id"], 200)
        with pytest.raises(RefundExceedsBalanceError, match="exceeds available balance") as info:
            refund(store, order["id"], 100)
        assert info.value.available == pytest.approx(order["total_price"] - 200)
        payment = store.run(lambda s: queries.get_payment(s, order["id"]))
        assert payment["refunded_amount"] == 200

    def test_fractional_refunds_accumulate(self, store, paid):
        order, _ = paid
        refund(store, order["id"], 100.1)
        second = refund(store, order["id"], 10)
        assert second["payment"]["refunded_amount"] == pytest.approx(110.1)
        assert second["payment"]["status"] == "partially_refunded"
        assert len(second["payment"]["refunds"]) == 2

        last = refund(store, order["id"], 175.9)
        assert last["payment"]["refunded_amount"] == pytest.approx(order["total_price"])
        assert last["payment"]["status"] == "refunded"
        with pytest.raises(RefundExceedsBalanceError):
            refund(store, order["id"], 0.01)

    def test_refund_requires_payment(self, store, placed):
        order, _ = placed
        with pytest.raises(NotFoundError, match="Payment not found"):
            refund(store, order["id"], 10)

    def test_refund_amount_must_be_positive(self, store, paid):
        order, _ = paid
        with pytest.raises(ValidationError):
            refund(store, order["id"], 0)


class TestTracking:
    def _track(self, store, order_id, tracking_id="TRK123", courier="Delhivery"):
        return store.run(
            lambda s: commands.add_tracking(
                s, store.publisher, order_id, "admin-1", tracking_id, courier
            )
        )

    def test_tracking_ships_the_order(self, store, placed):
        order, _ = placed
        order = self._track(store, order["id"])
        assert order["order_status"] == "shipped"
        assert order["tracking_id"] == "TRK123"
        assert order["courier_name"] == "Delhivery"
        assert "TRK123" in order["status_history"][-1]["note"]

    def test_tracking_on_shipped_order_keeps_status(self, store, publisher, placed):
        order, _ = placed
        advance(store, order["id"], "shipped")
        order = self._track(store, order["id"], "TRK999")
        assert order["order_status"] == "shipped"
        assert order["tracking_id"] == "TRK999"
        assert len(order["status_history"]) == 2
        assert publisher.types().count("OrderStatusChanged") == 1

    def test_tracking_on_cancelled_order_rejected(self, store, placed):
        order, _ = placed
        cancel(store, order["id"])
        with pytest.raises(InvalidStateError):
            self._track(store, order["id"])

    def test_blank_tracking_id(self, store, placed):
        order, _ = placed
        with pytest.raises(ValidationError, match="Missing trackingId"):
            self._track(store, order["id"], "  ")

    def test_tracking_leaves_a_note(self, store, placed):
        order, _ = placed
        order = self._track(store, order["id"])
        assert order["notes"][-1]["message"] == "Tracking ID TRK123 added. Courier: Delhivery"
        assert order["notes"][-1]["created_by"] == "admin-1"


def note(store, order_id, message, actor="admin-1"):
    return store.run(lambda s: commands.add_note(s, order_id, actor, message))


class TestNotes:
    def test_note_is_added_without_status_change(self, store, publisher, placed):
        order, _ = placed
        updated = note(store, order["id"], "Customer asked for gift wrap")
        assert updated["order_status"] == "placed"
        assert updated["version"] == order["version"]
        assert [n["message"] for n in updated["notes"]] == ["Customer asked for gift wrap"]
        assert publisher.types() == ["OrderPlaced"]

    def test_notes_keep_their_order(self, store, placed):
        order, _ = placed
        note(store, order["id"], "first")
        updated = note(store, order["id"], "second", actor="admin-2")
        assert [n["message"] for n in updated["notes"]] == ["first", "second"]
        assert updated["notes"][1]["created_by"] == "admin-2"

    def test_blank_note(self, store, placed):
        order, _ = placed
        with pytest.raises(ValidationError, match="Note message is required"):
            note(store, order["id"], "   ")

    def test_unknown_order(self, store):
        with pytest.raises(NotFoundError, match="Order not found"):
            note(store, "missing", "hello")

    def test_status_change_with_note_is_recorded(self, store, placed):
        order, _ = placed
        updated = advance(store, order["id"], "packed", "Packed in the blue box")
        assert updated["notes"][-1]["message"] == (
            "Status changed from placed to packed. Packed in the blue box"
        )

    def test_status_change_without_note_adds_none(self, store, placed):
        order, _ = placed
        assert advance(store, order["id"], "packed")["notes"] == []


class TestBulkStatus:
    def _bulk(self, store, order_ids, status="packed", note=""):
        return store.run(
            lambda s: commands.bulk_update_status(s, store.publisher, order_ids, "admin-1", status, note)
        )

    def test_each_order_reported(self, store, order_payload):
        first = store.place(order_payload)
        second = store.place(order_payload)
        cancel(store, second["id"])

        result = self._bulk(store, [first["id"], second["id"], "missing", first["id"]], note="Morning batch")

        assert result["updated"] == 1
        assert result["failed"] == 2
        outcomes = {r["order_id"]: r for r in result["results"]}
        assert list(outcomes) == [first["id"], second["id"], "missing"]
        assert outcomes[first["id"]] == {"order_id": first["id"], "success": True, "order_status": "packed"}
        assert outcomes[second["id"]]["success"] is False
        assert outcomes["missing"]["message"] == "Order not found"

        order = store.run(lambda s: queries.get_order(s, first["id"]))
        assert order["order_status"] == "packed"
        assert order["notes"][-1]["message"].endswith("Bulk status update: Morning batch")
        assert store.run(lambda s: queries.get_order(s, second["id"]))["order_status"] == "cancelled"

    @pytest.mark.parametrize("order_ids", [None, []])
    def test_order_ids_required(self, store, order_ids):
        with pytest.raises(ValidationError, match="Order IDs array is required"):
            self._bulk(store, order_ids)


class TestOrderStats:
    def test_grouped_counts_and_totals(self, store, order_payload):
        first = store.place(order_payload)
        store.place(order_payload)
        order_payload["paymentDetails"] = {"transactionId": "pay_1"}
        store.place(order_payload)
        cancel(store, first["id"])

        stats = store.run(queries.order_stats)

        assert stats["total"] == {"count": 3, "total_revenue": pytest.approx(3 * 286)}
        by_status = {g["value"]: g for g in stats["by_status"]}
        assert by_status["placed"]["count"] == 2
        assert by_status["cancelled"]["count"] == 1
        assert stats["by_status"][0]["value"] == "placed"
        assert by_status["placed"]["total_amount"] == pytest.approx(572)
        by_method = {g["value"]: g["count"] for g in stats["by_payment_method"]}
        assert sum(by_method.values()) == 3

    def test_empty_store(self, store):
        stats = store.run(queries.order_stats)
        assert stats["by_status"] == []
        assert stats["total"] == {"count": 0, "total_revenue": 0}
