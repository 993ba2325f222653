"""
Status enums and the order transition table.

All status changes go through ``ensure_transition`` so the table below is the
single place that decides which moves are legal.
"""
from enum import Enum
from typing import Dict, FrozenSet, List

from orderflow.core.errors import InvalidStateTransitionError


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    READY_TO_SHIP = "ready_to_ship"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    RETURNED = "returned"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class FulfillmentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PACKED = "packed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    RETURNED = "returned"
    CANCELLED = "cancelled"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    EXPIRED = "expired"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    STRIPE = "stripe"
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"  # cash on delivery


class OrderEventType(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    RETURNED = "returned"
    NOTE_ADDED = "note_added"
    INVENTORY_RESERVED = "inventory_reserved"
    INVENTORY_RELEASED = "inventory_released"
    CUSTOM = "custom"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.READY_TO_SHIP, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.READY_TO_SHIP: frozenset(
        {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.SHIPPED: frozenset(
        {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, OrderStatus.RETURNED}
    ),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED}),
    # after-sales exits only
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED, OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}

# Forward fulfilment path used when a single call skips intermediate steps.
FULFILLMENT_PATH: List[OrderStatus] = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.READY_TO_SHIP,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]

TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
        OrderStatus.RETURNED,
    }
)

CANCELLABLE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {
        OrderStatus.PENDING,
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.READY_TO_SHIP,
    }
)

SHIPPABLE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.READY_TO_SHIP}
)

DELIVERABLE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY}
)

RETURNABLE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED}
)

# Statuses the customer hears about.
CUSTOMER_VISIBLE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {
        OrderStatus.CONFIRMED,
        OrderStatus.SHIPPED,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
        OrderStatus.RETURNED,
    }
)

_FULFILLMENT_BY_STATUS: Dict[OrderStatus, FulfillmentStatus] = {
    OrderStatus.PENDING: FulfillmentStatus.PENDING,
    OrderStatus.CONFIRMED: FulfillmentStatus.PENDING,
    OrderStatus.PROCESSING: FulfillmentStatus.PROCESSING,
    OrderStatus.READY_TO_SHIP: FulfillmentStatus.PACKED,
    OrderStatus.SHIPPED: FulfillmentStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY: FulfillmentStatus.SHIPPED,
    OrderStatus.DELIVERED: FulfillmentStatus.DELIVERED,
    OrderStatus.RETURNED: FulfillmentStatus.RETURNED,
    OrderStatus.CANCELLED: FulfillmentStatus.CANCELLED,
}


def can_transition(current: OrderStatus | str, target: OrderStatus | str) -> bool:
    """Return True if the table allows ``current -> target``."""
    return OrderStatus(target) in ORDER_TRANSITIONS[OrderStatus(current)]


def ensure_transition(current: OrderStatus | str, target: OrderStatus | str) -> None:
    """
    Validate a status change against the transition table.

    Raises:
        InvalidStateTransitionError: If the move is not allowed
    """
    current_status = OrderStatus(current)
    target_status = OrderStatus(target)
    if current_status == target_status:
        raise InvalidStateTransitionError(
            current_status.value, target_status.value, "order already in this status"
        )
    if not can_transition(current_status, target_status):
        reason = "status is terminal" if not ORDER_TRANSITIONS[current_status] else None
        raise InvalidStateTransitionError(current_status.value, target_status.value, reason)


def path_to(current: OrderStatus | str, target: OrderStatus | str) -> List[OrderStatus]:
    """
    Steps along the fulfilment path from ``current`` to ``target``.

    Each step is a legal transition from the one before it; the current status
    is not included.

    Raises:
        InvalidStateTransitionError: If target cannot be reached going forward
    """
    current_status = OrderStatus(current)
    target_status = OrderStatus(target)
    if current_status not in FULFILLMENT_PATH or target_status not in FULFILLMENT_PATH:
        raise InvalidStateTransitionError(current_status.value, target_status.value)

    target_index = FULFILLMENT_PATH.index(target_status)
    steps: List[OrderStatus] = []
    position = current_status
    while position != target_status:
        if can_transition(position, target_status):
            steps.append(target_status)
            break
        next_index = FULFILLMENT_PATH.index(position) + 1
        if next_index >= target_index:
            raise InvalidStateTransitionError(current_status.value, target_status.value)
        position = FULFILLMENT_PATH[next_index]
        steps.append(position)

    if not steps:
        raise InvalidStateTransitionError(
            current_status.value, target_status.value, "order already in this status"
        )
    return steps


def is_terminal(status: OrderStatus | str) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def can_be_cancelled(status: OrderStatus | str) -> bool:
    return OrderStatus(status) in CANCELLABLE_STATUSES


def can_be_shipped(status: OrderStatus | str) -> bool:
    return OrderStatus(status) in SHIPPABLE_STATUSES


def can_be_delivered(status: OrderStatus | str) -> bool:
    return OrderStatus(status) in DELIVERABLE_STATUSES


def can_be_returned(status: OrderStatus | str, payment_status: PaymentStatus | str) -> bool:
    """Only orders that went out and were paid for can come back."""
    return OrderStatus(status) in RETURNABLE_STATUSES and PaymentStatus(payment_status) in (
        PaymentStatus.PAID,
        PaymentStatus.PARTIALLY_REFUNDED,
    )


def fulfillment_status_for(
    status: OrderStatus | str, current: FulfillmentStatus | str | None = None
) -> FulfillmentStatus:
    """
    Fulfillment status that mirrors an order status.

    Refunds keep the shipment-side progress; a refund before anything shipped
    reads as cancelled.
    """
    order_status = OrderStatus(status)
    if order_status == OrderStatus.REFUNDED:
        previous = FulfillmentStatus(current) if current else FulfillmentStatus.PENDING
        if previous in (FulfillmentStatus.SHIPPED, FulfillmentStatus.DELIVERED):
            return previous
        return FulfillmentStatus.CANCELLED
    return _FULFILLMENT_BY_STATUS[order_status]
