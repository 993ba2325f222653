"""
Error taxonomy for order, payment and inventory workflows.

Every error carries a stable ``code`` that the HTTP layer returns to callers.
"""
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional


class OrderFlowError(Exception):
    """Base exception for order workflow errors."""

    code = "internal_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class OrderValidationError(OrderFlowError):
    """Raised when a request is rejected before any mutation."""

    code = "validation_error"

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.field_errors = field_errors or []

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.field_errors:
            body["fields"] = self.field_errors
        return body


class EmptyCartError(OrderValidationError):
    """Raised when an order is requested for an empty cart."""

    code = "empty_cart"


class ProductUnavailableError(OrderValidationError):
    """Raised when a cart references a missing or inactive product."""

    code = "product_unavailable"


class InsufficientStockError(OrderFlowError):
    """Raised when a stock reservation is denied."""

    code = "insufficient_stock"

    def __init__(self, product_id: uuid.UUID, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class OrderNotFoundError(OrderFlowError):
    """Raised when an order does not exist or is not visible to the caller."""

    code = "order_not_found"


class PaymentNotFoundError(OrderFlowError):
    """Raised when no payment matches a gateway identifier."""

    code = "payment_not_found"


class InvalidStateTransitionError(OrderFlowError):
    """Raised when a status change is not allowed from the current status."""

    code = "invalid_state_transition"

    def __init__(self, current: str, target: str, reason: Optional[str] = None):
        message = f"Cannot transition order from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.target = target


class PaymentMismatchError(OrderFlowError):
    """Raised when a payment, order and user do not belong together."""

    code = "payment_mismatch"


class ConflictError(OrderFlowError):
    """Raised when a concurrent writer changed the row first."""

    code = "conflict"


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(OrderFlowError):
    """Raised when the payment gateway call fails."""

    code = "gateway_error"

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType = GatewayErrorType.TRANSIENT,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type != GatewayErrorType.PERMANENT


class InternalError(OrderFlowError):
    """Raised when stored state breaks an invariant."""

    code = "internal_error"


class ImmutableEventError(OrderFlowError):
    """Raised on any attempt to modify or delete a written order event."""

    code = "immutable_event"
