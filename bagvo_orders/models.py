"""
models.py — request payloads

Field names on the wire follow the storefront frontend (camelCase); Python
code uses the snake_case attribute names. Required order fields are optional
here on purpose: commands.place_order validates them itself so each missing
field gets its own message.
"""

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProductSnapshot(_Payload):
    """What the client displayed in the cart. Informational only."""
    name: str | None = None
    image: str | None = None
    price: float | None = None
    original_price: float | None = Field(None, alias="originalPrice")


class OrderItemRequest(_Payload):
    product: str | dict
    quantity: int = 1
    selected_color: str | None = Field(None, alias="selectedColor")
    selected_size: str | None = Field(None, alias="selectedSize")
    product_snapshot: ProductSnapshot | None = Field(None, alias="productSnapshot")

    @property
    def product_id(self) -> str:
        if isinstance(self.product, dict):
            return str(self.product.get("_id") or self.product.get("id") or "")
        return self.product


class CouponRequest(_Payload):
    code: str
    discount: float | None = None


class PaymentDetails(_Payload):
    transaction_id: str = Field(alias="transactionId")
    gateway_order_id: str | None = Field(None, alias="gatewayOrderId")


class PlaceOrderRequest(_Payload):
    address: str | None = None
    payment_method: str | None = Field(None, alias="paymentMethod")
    items: list[OrderItemRequest] | None = None
    coupon: str | CouponRequest | None = None
    payment_details: PaymentDetails | None = Field(None, alias="paymentDetails")


class UpdateStatusRequest(_Payload):
    status: str
    note: str = ""


class CancelOrderRequest(_Payload):
    reason: str = ""


class RefundRequest(_Payload):
    amount: float
    reason: str = ""


class TrackingRequest(_Payload):
    tracking_id: str = Field(alias="trackingId")
    courier_name: str = Field("", alias="courierName")


class CouponCheckRequest(_Payload):
    code: str
    cart_value: float = Field(alias="cartValue")


class BulkStatusRequest(_Payload):
    order_ids: list[str] | None = Field(None, alias="orderIds")
    status: str
    note: str = ""


class NoteRequest(_Payload):
    message: str = ""


class AddressRequest(_Payload):
    """A saved address as the storefront's address book sends it."""
    type: str = "Home"
    name: str = ""
    phone: str = ""
    address_line: str = Field("", alias="addressLine")
    address_line2: str | None = Field(None, alias="addressLine2")
    city: str = ""
    state: str = ""
    pincode: str = ""
    landmark: str | None = None
    is_default: bool = Field(False, alias="isDefault")
