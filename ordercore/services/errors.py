"""
Order service exceptions

Raised by the service layer when input is malformed, a business rule is
violated, a referenced record is missing or storage fails. The API layer
maps ``code`` and ``http_status`` onto responses.
"""
from typing import Any, Dict, Optional


class OrderError(Exception):
    """Base class for every error reported to callers"""

    code = "ORDER_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.message, **self.details}


# Input validation

class ValidationFailed(OrderError):
    """Request rejected before any storage is touched"""


class InvalidOrderRequest(ValidationFailed):
    """Malformed request: no items, non-positive quantity, negative amounts"""
    code = "INVALID_ORDER_REQUEST"


class InvalidAddress(ValidationFailed):
    code = "INVALID_ADDRESS"

    def __init__(self, kind: str, missing_fields):
        self.kind = kind
        self.missing_fields = list(missing_fields)
        super().__init__(
            f"Invalid {kind} address: missing {', '.join(self.missing_fields)}",
            {"address": kind, "missing_fields": self.missing_fields},
        )


# Business rules

class InsufficientStock(OrderError):
    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(self, product_id: int, requested: int, available: int, product_name: Optional[str] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        label = product_name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}. Available: {available}, Requested: {requested}",
            {"product_id": product_id, "requested": requested, "available": available},
        )


class ProductUnavailable(OrderError):
    """Product is discontinued or deactivated in the catalog"""
    code = "PRODUCT_UNAVAILABLE"
    http_status = 409

    def __init__(self, product_id: int, product_name: Optional[str] = None):
        self.product_id = product_id
        label = product_name or f"Product {product_id}"
        super().__init__(f"{label} is not available", {"product_id": product_id})


class IllegalTransition(OrderError):
    code = "ILLEGAL_TRANSITION"
    http_status = 409

    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid status transition from {current.value} to {requested.value}",
            {"current": current.value, "requested": requested.value},
        )


class IllegalPaymentTransition(IllegalTransition):
    code = "ILLEGAL_PAYMENT_TRANSITION"

    def __init__(self, current, requested):
        super().__init__(current, requested)
        self.message = f"Invalid payment status transition from {current.value} to {requested.value}"
        self.args = (self.message,)


class TransitionNotPermitted(OrderError):
    """The transition is legal, but not for this caller in the current status"""
    code = "TRANSITION_NOT_PERMITTED"

    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Orders in status {current.value} cannot be moved to {requested.value} by this user",
            {"current": current.value, "requested": requested.value},
        )


class DiscountExceedsTotal(OrderError):
    code = "DISCOUNT_EXCEEDS_TOTAL"

    def __init__(self, discount, gross):
        self.discount = discount
        self.gross = gross
        super().__init__(
            f"Discount {discount} exceeds order total {gross}",
            {"discount_amount": str(discount), "gross_amount": str(gross)},
        )


# Not found

class ProductNotFound(OrderError):
    code = "PRODUCT_NOT_FOUND"
    http_status = 404

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product with id {product_id} not found", {"product_id": product_id})


class OrderNotFound(OrderError):
    code = "ORDER_NOT_FOUND"
    http_status = 404

    def __init__(self, order_ref):
        self.order_ref = order_ref
        super().__init__(f"Order {order_ref} not found", {"order": order_ref})


# Infrastructure

class RetryableError(OrderError):
    """Storage-side failure; the caller may retry the same request"""
    http_status = 503
    retryable = True

    def to_dict(self) -> Dict[str, Any]:
        # Storage internals stay in the logs
        return {"code": self.code, "detail": "Service temporarily unavailable. Please try again.", "retryable": True}


class StorageUnavailable(RetryableError):
    code = "STORAGE_UNAVAILABLE"


class TransactionConflict(RetryableError):
    code = "TRANSACTION_CONFLICT"
    http_status = 409
