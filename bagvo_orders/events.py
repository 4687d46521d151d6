"""
Order Service — event definitions

Every change to an order's status is recorded as an event in the event store
and replayed by OrderAggregate. Events are named in the past tense and never
modified once written.
"""

from datetime import datetime

from pydantic import BaseModel


class OrderLine(BaseModel):
    """Quantity taken from a product; replayed to give stock back."""
    product_id: str
    quantity: int


class OrderPlaced(BaseModel):
    """An order was placed and its stock taken"""
    order_id: str
    order_number: str
    user_id: str
    items: list[OrderLine]
    payment_method: str
    total_price: float
    is_paid: bool
    actor: str
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """An admin moved the order along the fulfilment sequence"""
    order_id: str
    from_status: str
    status: str
    actor: str
    note: str = ""
    timestamp: datetime


class OrderCancelled(BaseModel):
    """The order was cancelled and its stock given back"""
    order_id: str
    from_status: str
    reason: str = ""
    actor: str
    stock_restored: bool
    timestamp: datetime


class OrderRefunded(BaseModel):
    """Money was returned against the order's payment"""
    order_id: str
    from_status: str
    amount: float
    reason: str = ""
    actor: str
    stock_restored: bool
    timestamp: datetime
