"""
Error kinds raised by the order engine and payment adapter.

Each kind carries the HTTP status the API layer answers with and a short
`error` code that clients can switch on.
"""
from typing import Any, Optional


class MarketplaceError(Exception):
    status_code = 500
    code = "InternalError"
    default_message = "Unexpected error"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class InternalError(MarketplaceError):
    pass


# ---------------------- 400 ----------------------
class ValidationError(MarketplaceError):
    status_code = 400
    code = "ValidationError"
    default_message = "Invalid request"


class EmptyCart(ValidationError):
    code = "EmptyCart"
    default_message = "Restaurant ID and items are required"


class MissingDeliveryInfo(ValidationError):
    code = "MissingDeliveryInfo"
    default_message = "Delivery address and phone number are required"


class InvalidItem(ValidationError):
    code = "InvalidItem"
    default_message = "Menu item not available"


class InvalidTransition(ValidationError):
    code = "InvalidTransition"
    default_message = "Status transition not allowed"


class InvalidPhone(ValidationError):
    code = "InvalidPhone"
    default_message = "Invalid phone number format"


# ---------------------- 403 ----------------------
class AuthorizationError(MarketplaceError):
    status_code = 403
    code = "Forbidden"
    default_message = "Not authorized"


Forbidden = AuthorizationError


# ---------------------- 404 ----------------------
class NotFoundError(MarketplaceError):
    status_code = 404
    code = "NotFound"
    default_message = "Not found"


class OrderNotFound(NotFoundError):
    code = "OrderNotFound"
    default_message = "Order not found"


class PaymentNotFound(NotFoundError):
    code = "PaymentNotFound"
    default_message = "Payment not found"


# ---------------------- 409 ----------------------
class ConflictError(MarketplaceError):
    status_code = 409
    code = "Conflict"
    default_message = "Conflicting request"


class NotAvailable(ConflictError):
    status_code = 400
    code = "NotAvailable"
    default_message = "Order not available for pickup"


class AlreadyPaid(ConflictError):
    status_code = 400
    code = "AlreadyPaid"
    default_message = "Order is already paid"


# ---------------------- upstream ----------------------
class GatewayError(MarketplaceError):
    status_code = 400
    code = "GatewayError"
    default_message = "Payment failed"
