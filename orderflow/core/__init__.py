"""Core order, payment and inventory workflows."""
from .errors import (
    ConflictError,
    GatewayError,
    InsufficientStockError,
    InvalidStateTransitionError,
    OrderFlowError,
    OrderNotFoundError,
    OrderValidationError,
    PaymentMismatchError,
    PaymentNotFoundError,
)
from .state_machine import OrderStatus, PaymentStatus

__all__ = [
    "ConflictError",
    "GatewayError",
    "InsufficientStockError",
    "InvalidStateTransitionError",
    "OrderFlowError",
    "OrderNotFoundError",
    "OrderStatus",
    "OrderValidationError",
    "PaymentMismatchError",
    "PaymentNotFoundError",
    "PaymentStatus",
]
