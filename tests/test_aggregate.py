"""Tests for order event replay and status transition rules."""

import pytest

from bagvo_orders.aggregate import OrderAggregate
from bagvo_orders.errors import InvalidStateError, ValidationError


def placed(**extra) -> dict:
    data = {
        "order_id": "o-1",
        "order_number": "ORD12345678001",
        "user_id": "user-1",
        "items": [{"product_id": "p-1", "quantity": 2}],
        "payment_method": "COD",
        "total_price": 286.0,
        "is_paid": False,
        "actor": "user-1",
        "timestamp": "2026-03-01T12:00:00+00:00",
    }
    data.update(extra)
    return {"event_type": "OrderPlaced", "event_data": data, "version": 1}


def status_changed(status: str, version: int, from_status: str = "placed") -> dict:
    return {
        "event_type": "OrderStatusChanged",
        "event_data": {
            "order_id": "o-1",
            "from_status": from_status,
            "status": status,
            "actor": "admin-1",
            "note": "",
            "timestamp": "2026-03-02T12:00:00+00:00",
        },
        "version": version,
    }


def aggregate_in(status: str) -> OrderAggregate:
    events = [placed()]
    if status != "placed":
        events.append(status_changed(status, 2))
    return OrderAggregate.from_events(events)


class TestReplay:
    def test_placed(self):
        agg = OrderAggregate.from_events([placed()])
        assert agg.id == "o-1"
        assert agg.status == "placed"
        assert agg.version == 1
        assert agg.items == [{"product_id": "p-1", "quantity": 2}]
        assert agg.history[0]["actor"] == "user-1"

    def test_history_follows_events(self):
        agg = OrderAggregate.from_events(
            [placed(), status_changed("confirmed", 2), status_changed("shipped", 3, "confirmed")]
        )
        assert [entry["status"] for entry in agg.history] == ["placed", "confirmed", "shipped"]
        assert agg.version == 3

    def test_cancellation_marks_stock_restored(self):
        cancelled = {
            "event_type": "OrderCancelled",
            "event_data": {
                "order_id": "o-1",
                "from_status": "placed",
                "reason": "changed my mind",
                "actor": "user-1",
                "stock_restored": True,
                "timestamp": "2026-03-02T12:00:00+00:00",
            },
            "version": 2,
        }
        agg = OrderAggregate.from_events([placed(), cancelled])
        assert agg.status == "cancelled"
        assert agg.stock_restored
        assert agg.history[-1]["note"] == "changed my mind"


class TestStatusRules:
    @pytest.mark.parametrize(
        "current, target",
        [("placed", "confirmed"), ("placed", "shipped"), ("packed", "delivered"), ("shipped", "delivered")],
    )
    def test_forward_moves_allowed(self, current, target):
        aggregate_in(current).ensure_can_advance_to(target)

    @pytest.mark.parametrize(
        "current, target",
        [("confirmed", "placed"), ("shipped", "packed"), ("delivered", "delivered")],
    )
    def test_backward_or_same_rejected(self, current, target):
        with pytest.raises(InvalidStateError):
            aggregate_in(current).ensure_can_advance_to(target)

    def test_closed_targets_need_their_own_operation(self):
        with pytest.raises(InvalidStateError, match="cancel"):
            aggregate_in("placed").ensure_can_advance_to("cancelled")
        with pytest.raises(InvalidStateError, match="refund"):
            aggregate_in("placed").ensure_can_advance_to("refunded")

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            aggregate_in("placed").ensure_can_advance_to("lost")

    @pytest.mark.parametrize("status", ["placed", "confirmed", "packed"])
    def test_cancellable(self, status):
        aggregate_in(status).ensure_cancellable()

    @pytest.mark.parametrize("status", ["shipped", "delivered"])
    def test_not_cancellable_after_shipping(self, status):
        with pytest.raises(InvalidStateError, match=f"once it is {status}"):
            aggregate_in(status).ensure_cancellable()
