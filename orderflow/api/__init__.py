"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CreateOrderRequest,
    OrderResponse,
    RefundRequest,
    RefundResponse,
)

__all__ = [
    "create_app",
    "CreateOrderRequest",
    "OrderResponse",
    "RefundRequest",
    "RefundResponse",
]
