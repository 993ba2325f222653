"""Database package for orderflow."""
from .connection import build_engine, create_session_factory, get_session_factory, init_db
from .models import (
    Base,
    Cart,
    CartItem,
    InventoryItem,
    Order,
    OrderAddress,
    OrderEvent,
    OrderItem,
    Payment,
    Product,
    StockReservation,
)

__all__ = [
    "Base",
    "Cart",
    "CartItem",
    "InventoryItem",
    "Order",
    "OrderAddress",
    "OrderEvent",
    "OrderItem",
    "Payment",
    "Product",
    "StockReservation",
    "build_engine",
    "create_session_factory",
    "get_session_factory",
    "init_db",
]
