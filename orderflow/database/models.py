"""SQLAlchemy database models for orders, payments and inventory."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# SQLite only autoincrements INTEGER primary keys
EventId = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend, SQLite included."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """Catalog product, read by order creation for price and name snapshots."""

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sku: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    inventory: Mapped[Optional["InventoryItem"]] = relationship(
        back_populates="product", lazy="selectin"
    )

    __table_args__ = (CheckConstraint("price_cents >= 0", name="non_negative_price"),)

    def __repr__(self) -> str:
        """String representation of Product."""
        return f"<Product(id={self.id}, sku={self.sku}, price={self.price_cents})>"


class InventoryItem(Base):
    """
    Per-product stock counters.

    ``quantity_available`` is derived as on_hand - reserved and can never go
    negative because of the check constraints.
    """

    __tablename__ = "inventory_items"

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    )
    quantity_on_hand: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity_reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    product: Mapped[Product] = relationship(back_populates="inventory")

    __table_args__ = (
        CheckConstraint("quantity_on_hand >= 0", name="non_negative_on_hand"),
        CheckConstraint("quantity_reserved >= 0", name="non_negative_reserved"),
        CheckConstraint("quantity_reserved <= quantity_on_hand", name="reserved_within_on_hand"),
    )

    @hybrid_property
    def quantity_available(self) -> int:
        return self.quantity_on_hand - self.quantity_reserved

    def __repr__(self) -> str:
        """String representation of InventoryItem."""
        return (
            f"<InventoryItem(product_id={self.product_id}, on_hand={self.quantity_on_hand}, "
            f"reserved={self.quantity_reserved})>"
        )


class Cart(Base):
    """Shopping cart; converted exactly once into an order."""

    __tablename__ = "carts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    converted_order_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    converted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    items: Mapped[List["CartItem"]] = relationship(
        back_populates="cart", cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint("status IN ('active', 'converted')", name="valid_cart_status"),
        Index("idx_carts_user_status", "user_id", "status"),
    )


class CartItem(Base):
    __tablename__ = "cart_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    cart_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    cart: Mapped[Cart] = relationship(back_populates="items")

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_cart_quantity"),)


class Order(Base):
    """
    Orders table.

    Every update is a compare-and-swap on ``version``; a stale write raises
    ``StaleDataError`` instead of overwriting a concurrent change.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    payment_status: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    fulfillment_status: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    shipping_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    inventory_reserved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reserved_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    payment_timeout_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    customer_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    carrier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    shipping_method: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tracking_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    estimated_delivery: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", lazy="selectin"
    )
    addresses: Mapped[List["OrderAddress"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", lazy="selectin"
    )
    payments: Mapped[List["Payment"]] = relationship(
        back_populates="order", lazy="selectin", order_by="Payment.created_at"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("subtotal_cents >= 0", name="non_negative_subtotal"),
        CheckConstraint("total_cents >= 0", name="non_negative_total"),
        CheckConstraint(
            "total_cents = subtotal_cents + tax_cents + shipping_cents - discount_cents",
            name="consistent_total",
        ),
        Index("idx_orders_user_created", "user_id", "created_at"),
        Index("idx_orders_status_timeout", "status", "payment_timeout_at"),
    )

    def address(self, kind: str) -> Optional["OrderAddress"]:
        return next((a for a in self.addresses if a.kind == kind), None)

    @property
    def paid_amount_cents(self) -> int:
        return sum(
            p.amount_cents - p.refund_amount_cents
            for p in self.payments
            if p.status in ("paid", "partially_refunded")
        )

    @property
    def is_fully_paid(self) -> bool:
        return self.paid_amount_cents >= self.total_cents

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, status={self.status}, "
            f"payment_status={self.payment_status}, version={self.version})>"
        )


class OrderItem(Base):
    """Line snapshot; never follows later catalog price changes."""

    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    product_sku: Mapped[str] = mapped_column(String(100), nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    total_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_item_quantity"),
        CheckConstraint(
            "total_price_cents = unit_price_cents * quantity", name="consistent_item_total"
        ),
    )


class OrderAddress(Base):
    """Address snapshot copied at order creation."""

    __tablename__ = "order_addresses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    first_name: Mapped[str] = mapped_column(String(50), nullable=False)
    last_name: Mapped[str] = mapped_column(String(50), nullable=False)
    company: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    address1: Mapped[str] = mapped_column(String(100), nullable=False)
    address2: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    city: Mapped[str] = mapped_column(String(50), nullable=False)
    state: Mapped[str] = mapped_column(String(50), nullable=False)
    zip_code: Mapped[str] = mapped_column(String(10), nullable=False)
    country: Mapped[str] = mapped_column(String(2), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    order: Mapped[Order] = relationship(back_populates="addresses")

    __table_args__ = (
        UniqueConstraint("order_id", "kind", name="uq_order_address_kind"),
        CheckConstraint("kind IN ('shipping', 'billing')", name="valid_address_kind"),
    )


class Payment(Base):
    """
    Payment records table.

    ``external_id`` (gateway checkout session) and ``transaction_id`` (gateway
    payment intent) are unique; they are the idempotency keys for webhook replay.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    method: Mapped[str] = mapped_column(String(30), nullable=False)
    gateway: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped[Order] = relationship(back_populates="payments")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="non_negative_payment_amount"),
        CheckConstraint(
            "refund_amount_cents >= 0 AND refund_amount_cents <= amount_cents",
            name="refund_within_amount",
        ),
        CheckConstraint(
            "status IN ('pending', 'awaiting_payment', 'paid', 'failed', "
            "'partially_refunded', 'refunded')",
            name="valid_payment_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
    )

    @property
    def refundable_cents(self) -> int:
        return self.amount_cents - self.refund_amount_cents

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class StockReservation(Base):
    """
    Temporary stock hold for one (order, product) pair.

    Leaves ``active`` exactly once: to confirmed, released or expired.
    """

    __tablename__ = "stock_reservations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=True, index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    reserved_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("order_id", "product_id", name="uq_reservation_order_product"),
        CheckConstraint("quantity > 0", name="positive_reservation_quantity"),
        CheckConstraint(
            "status IN ('active', 'confirmed', 'released', 'expired')",
            name="valid_reservation_status",
        ),
        Index("idx_reservations_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation of StockReservation."""
        return (
            f"<StockReservation(id={self.id}, order_id={self.order_id}, "
            f"product_id={self.product_id}, qty={self.quantity}, status={self.status})>"
        )


class OrderEvent(Base):
    """
    Order timeline events table.

    Append-only audit trail. Immutable once written.
    """

    __tablename__ = "order_events"

    id: Mapped[int] = mapped_column(EventId, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_order_events_order_created", "order_id", "created_at"),
        Index("idx_order_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        """String representation of OrderEvent."""
        return (
            f"<OrderEvent(id={self.id}, order_id={self.order_id}, "
            f"type={self.event_type})>"
        )
