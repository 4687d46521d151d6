"""Exceptions raised by the order service.

Each class carries the HTTP status it maps to and whether the caller may
safely retry the same request.
"""


class StorefrontError(Exception):
    """Base exception for all order service errors."""

    status_code = 500
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(StorefrontError):
    """Raised when a request is malformed or breaks a business rule."""

    status_code = 400


class NotFoundError(StorefrontError):
    """Raised when a referenced address, product, order, coupon or payment is absent."""

    status_code = 404


class InsufficientStockError(StorefrontError):
    """Raised when the requested quantity exceeds available stock."""

    status_code = 400

    def __init__(self, product_name: str, requested: int, available: int):
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient stock for {product_name}")


class InvalidStateError(StorefrontError):
    """Raised on an illegal order status transition."""

    status_code = 400

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message)


class RefundExceedsBalanceError(ValidationError):
    """Raised when a refund is larger than what is left on the payment."""

    def __init__(self, requested: float, available: float):
        self.requested = requested
        self.available = available
        super().__init__("Refund amount exceeds available balance")


class ConcurrentModificationError(StorefrontError):
    """Raised when a write lost a race with another request.

    The whole operation was rolled back, so repeating it is safe.
    """

    status_code = 409
    retryable = True


class AuthenticationError(StorefrontError):
    status_code = 401

    def __init__(self, message: str = "Not authorized to access this route"):
        super().__init__(message)


class AuthorizationError(StorefrontError):
    status_code = 403

    def __init__(self, message: str = "Access denied. Admin privileges required."):
        super().__init__(message)
