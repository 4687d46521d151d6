"""
Order Service — order aggregate

The aggregate is rebuilt by replaying the order's events and owns the status
rules. The orders table is only a projection of it.

State transitions:
    placed → confirmed → packed → shipped → delivered   (forward only, skips allowed)
    placed / confirmed / packed → cancelled              (stock given back)
    any status → refunded                                (stock given back once)
"""

from .errors import InvalidStateError, ValidationError

FULFILMENT_SEQUENCE = ("placed", "confirmed", "packed", "shipped", "delivered")
ORDER_STATUSES = FULFILMENT_SEQUENCE + ("cancelled", "refunded")
CANCELLABLE_STATUSES = ("placed", "confirmed", "packed")
CLOSED_STATUSES = ("cancelled", "refunded")


class OrderAggregate:
    def __init__(self) -> None:
        self.id: str | None = None
        self.order_number: str = ""
        self.user_id: str = ""
        self.items: list[dict] = []
        self.status: str = "UNKNOWN"
        self.is_paid: bool = False
        self.stock_restored: bool = False
        self.history: list[dict] = []
        self.version: int = 0

    # ── Event handlers ────────────────────────────

    def apply_order_placed(self, data: dict) -> None:
        self.id = data["order_id"]
        self.order_number = data["order_number"]
        self.user_id = data["user_id"]
        self.items = [dict(line) for line in data["items"]]
        self.is_paid = data.get("is_paid", False)
        self._enter("placed", data)

    def apply_order_status_changed(self, data: dict) -> None:
        self._enter(data["status"], data)

    def apply_order_cancelled(self, data: dict) -> None:
        if data.get("stock_restored"):
            self.stock_restored = True
        self._enter("cancelled", data)

    def apply_order_refunded(self, data: dict) -> None:
        if data.get("stock_restored"):
            self.stock_restored = True
        self._enter("refunded", data)

    def _enter(self, status: str, data: dict) -> None:
        self.status = status
        self.history.append(
            {
                "status": status,
                "timestamp": data.get("timestamp"),
                "actor": data.get("actor"),
                "note": data.get("note") or data.get("reason") or "",
            }
        )

    # ── Replay ────────────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            "OrderPlaced": self.apply_order_placed,
            "OrderStatusChanged": self.apply_order_status_changed,
            "OrderCancelled": self.apply_order_cancelled,
            "OrderRefunded": self.apply_order_refunded,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg

    # ── Rules ─────────────────────────────────────

    def ensure_can_advance_to(self, status: str) -> None:
        """Validate an admin status update."""
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid order status: {status}")
        if status in CLOSED_STATUSES:
            raise InvalidStateError(
                f"Use the {'cancel' if status == 'cancelled' else 'refund'} operation "
                f"to move an order to '{status}'",
                self.status,
            )
        if self.status in CLOSED_STATUSES:
            raise InvalidStateError(f"Order is already {self.status}", self.status)
        current = FULFILMENT_SEQUENCE.index(self.status)
        if FULFILMENT_SEQUENCE.index(status) <= current:
            raise InvalidStateError(
                f"Cannot move order from '{self.status}' to '{status}'", self.status
            )

    def ensure_cancellable(self) -> None:
        if self.status not in CANCELLABLE_STATUSES:
            raise InvalidStateError(
                f"Order cannot be cancelled once it is {self.status}", self.status
            )
