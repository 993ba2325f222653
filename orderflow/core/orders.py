"""
Order orchestrator.

Owns the transaction boundary for every order workflow:

1. ``create_order``: cart -> priced, reserved order in one transaction
2. ``cancel_order``: releases or restores stock depending on what was taken
3. ``update_order_status`` / ``update_shipping_info`` / ``update_delivery_status``:
   transitions validated against the central table
4. ``cleanup_expired_orders``: cancels unpaid orders past their payment timeout

Every order write is a compare-and-swap on ``orders.version``; a stale write
surfaces as ``ConflictError``. Notifications go out only after commit.
"""
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from orderflow.config import Settings
from orderflow.core.errors import (
    ConflictError,
    EmptyCartError,
    InsufficientStockError,
    InvalidStateTransitionError,
    OrderFlowError,
    OrderNotFoundError,
    OrderValidationError,
    PaymentMismatchError,
    PaymentNotFoundError,
    ProductUnavailableError,
)
from orderflow.core.event_log import OrderEventLog
from orderflow.core.order_numbers import OrderNumberGenerator
from orderflow.core.reservations import ReservationRequest, StockReservationManager
from orderflow.core.state_machine import (
    CUSTOMER_VISIBLE_STATUSES,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    can_be_cancelled,
    can_be_delivered,
    can_be_returned,
    can_be_shipped,
    ensure_transition,
    fulfillment_status_for,
    path_to,
)
from orderflow.core.validation import (
    LineItem,
    OrderRequest,
    calculate_totals,
    validate_order_request,
)
from orderflow.database.models import (
    Cart,
    Order,
    OrderAddress,
    OrderEvent,
    OrderItem,
    Payment,
    Product,
    utcnow,
)
from orderflow.integrations.notifications import NotificationDispatcher
from orderflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_STATUS_TIMESTAMPS: Dict[OrderStatus, str] = {
    OrderStatus.PROCESSING: "processed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

_PAID_STATUSES = (PaymentStatus.PAID.value, PaymentStatus.PARTIALLY_REFUNDED.value)
_UNSETTLED_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.AWAITING_PAYMENT.value)

SORT_COLUMNS = {
    "created_at": Order.created_at,
    "updated_at": Order.updated_at,
    "total": Order.total_cents,
    "order_number": Order.order_number,
}

MAX_NOTE_LENGTH = 2000


def apply_status(order: Order, target: OrderStatus, now: Optional[datetime] = None) -> str:
    """
    Move an order to ``target`` and keep the derived fields in step.

    Returns:
        str: Previous status

    Raises:
        InvalidStateTransitionError: If the transition table forbids the move
    """
    previous = order.status
    ensure_transition(previous, target)
    order.status = target.value
    order.fulfillment_status = fulfillment_status_for(target, order.fulfillment_status).value
    stamp = _STATUS_TIMESTAMPS.get(target)
    if stamp and getattr(order, stamp) is None:
        setattr(order, stamp, now or utcnow())
    metrics.record_status_transition(previous, target.value)
    return previous


def reservation_requests(order: Order) -> List[ReservationRequest]:
    return [ReservationRequest(item.product_id, item.quantity) for item in order.items]


@asynccontextmanager
async def conflict_guard(operation: str) -> AsyncIterator[None]:
    """Translate optimistic-lock and unique-key races into ``ConflictError``."""
    try:
        yield
    except StaleDataError as e:
        metrics.record_conflict(operation)
        logger.warning("optimistic_version_conflict", operation=operation, error=str(e))
        raise ConflictError("The record was modified concurrently; retry the request") from e
    except IntegrityError as e:
        metrics.record_conflict(operation)
        logger.warning("unique_key_conflict", operation=operation, error=str(e.orig))
        raise ConflictError("A concurrent request already created this record") from e


@dataclass
class ShippingInfo:
    tracking_number: str
    carrier: str
    shipping_method: Optional[str] = None
    tracking_url: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


@dataclass
class OrderFilter:
    """Listing filters; ``limit`` is 1-100."""

    user_id: Optional[uuid.UUID] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"
    limit: int = 20
    offset: int = 0

    def validate(self) -> None:
        errors: List[Dict[str, str]] = []
        if self.sort_by not in SORT_COLUMNS:
            errors.append({"field": "sort_by", "message": f"must be one of {sorted(SORT_COLUMNS)}"})
        if self.sort_order not in ("asc", "desc"):
            errors.append({"field": "sort_order", "message": "must be asc or desc"})
        if not 1 <= self.limit <= 100:
            errors.append({"field": "limit", "message": "must be between 1 and 100"})
        if self.offset < 0:
            errors.append({"field": "offset", "message": "must not be negative"})
        if self.status is not None and self.status not in {s.value for s in OrderStatus}:
            errors.append({"field": "status", "message": "unknown order status"})
        if self.payment_status is not None and self.payment_status not in {
            s.value for s in PaymentStatus
        }:
            errors.append({"field": "payment_status", "message": "unknown payment status"})
        if errors:
            raise OrderValidationError("Invalid order filter", errors)


@dataclass
class OrderPage:
    items: List[Order] = field(default_factory=list)
    total: int = 0
    limit: int = 20
    offset: int = 0


class OrderOrchestrator:
    """Runs order workflows against the database and its collaborators."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        reservations: StockReservationManager,
        event_log: OrderEventLog,
        notifier: NotificationDispatcher,
        number_generator: OrderNumberGenerator,
    ):
        """
        Initialize orchestrator.

        Args:
            session_factory: Factory for transaction-scoped sessions
            settings: Application settings (TTLs, currency, batch sizes)
            reservations: Stock reservation manager
            event_log: Order timeline writer
            notifier: Notification dispatcher, used after commit
            number_generator: Order number allocator
        """
        self.session_factory = session_factory
        self.settings = settings
        self.reservations = reservations
        self.event_log = event_log
        self.notifier = notifier
        self.number_generator = number_generator

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with conflict_guard(operation):
            async with self.session_factory() as db:
                async with db.begin():
                    yield db

    async def _load_order(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
        lock: bool = False,
    ) -> Order:
        stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        if lock:
            stmt = stmt.with_for_update()
        order = (await db.execute(stmt)).scalar_one_or_none()
        # other users' orders are reported as missing
        if order is None or (user_id is not None and order.user_id != user_id):
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    def _notify_status(self, order: Order, old_status: str) -> None:
        if OrderStatus(order.status) in CUSTOMER_VISIBLE_STATUSES:
            self.notifier.notify_order_status_changed(order, old_status)

    # Creation

    async def create_order(self, user_id: uuid.UUID, request: OrderRequest) -> Order:
        """
        Turn the user's active cart into an order.

        Steps:
        1. Validate the request (before any write)
        2. Load the cart, fail if empty
        3. Fetch all products in one query
        4. Check every item can be reserved
        5. Compute totals
        6. Allocate an order number
        7. Persist order, items, address snapshots (and the cash-on-delivery payment)
        8. Reserve stock for every item
        9. Convert and clear the cart
        10. Append timeline events

        Steps 2-10 share one transaction; a failure anywhere leaves nothing behind.

        Args:
            user_id: Customer placing the order
            request: Checkout parameters

        Returns:
            Order: Created order with items, addresses and payments loaded

        Raises:
            OrderValidationError: If the request or cart is invalid
            InsufficientStockError: If any item cannot be reserved
            ConflictError: If a concurrent writer collided on a unique key
        """
        started = time.perf_counter()
        try:
            validate_order_request(request)
            async with self._transaction("create_order") as db:
                order = await self._create_in_transaction(db, user_id, request)
        except OrderFlowError as e:
            metrics.record_order_creation_failure(e.code)
            logger.warning(
                "order_creation_rejected",
                user_id=str(user_id),
                error_code=e.code,
                error=str(e),
            )
            raise

        metrics.record_order_created(
            order.payment_method, order.total_cents, time.perf_counter() - started
        )
        logger.info(
            "order_created",
            order_id=str(order.id),
            order_number=order.order_number,
            user_id=str(user_id),
            total_cents=order.total_cents,
            payment_method=order.payment_method,
        )
        self.notifier.notify_order_created(order)
        return order

    async def _create_in_transaction(
        self, db: AsyncSession, user_id: uuid.UUID, request: OrderRequest
    ) -> Order:
        cart = (
            await db.execute(
                select(Cart)
                .where(Cart.user_id == user_id, Cart.status == "active")
                .order_by(Cart.created_at.desc())
                .limit(1)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if cart is None or not cart.items:
            raise EmptyCartError("Cart is empty")

        product_ids = {item.product_id for item in cart.items}
        products = {
            product.id: product
            for product in (
                await db.execute(select(Product).where(Product.id.in_(product_ids)))
            ).scalars()
        }
        unavailable = []
        for item in cart.items:
            product = products.get(item.product_id)
            if product is None:
                unavailable.append({"field": f"items.{item.product_id}", "message": "product not found"})
            elif not product.is_active:
                unavailable.append(
                    {"field": f"items.{item.product_id}", "message": "product is not available"}
                )
        if unavailable:
            raise ProductUnavailableError("Some products in the cart are unavailable", unavailable)

        needed: Dict[uuid.UUID, int] = {}
        for item in cart.items:
            needed[item.product_id] = needed.get(item.product_id, 0) + item.quantity
        for product_id, quantity in needed.items():
            if not await self.reservations.can_reserve(db, product_id, quantity):
                level = await self.reservations.get_available_stock(db, product_id)
                raise InsufficientStockError(product_id, quantity, level.available)

        totals = calculate_totals(
            [LineItem(products[item.product_id].price_cents, item.quantity) for item in cart.items],
            request.tax_rate,
            request.shipping_cents,
            request.discount_cents,
        )

        now = utcnow()
        cash_on_delivery = request.payment_method == PaymentMethod.CASH.value
        currency = (request.currency or self.settings.default_currency).upper()

        order = Order(
            id=uuid.uuid4(),
            user_id=user_id,
            status=OrderStatus.PENDING.value,
            payment_status=(
                PaymentStatus.AWAITING_PAYMENT.value
                if cash_on_delivery
                else PaymentStatus.PENDING.value
            ),
            fulfillment_status=fulfillment_status_for(OrderStatus.PENDING).value,
            payment_method=request.payment_method,
            currency=currency,
            subtotal_cents=totals.subtotal_cents,
            tax_cents=totals.tax_cents,
            shipping_cents=totals.shipping_cents,
            discount_cents=totals.discount_cents,
            total_cents=totals.total_cents,
            inventory_reserved=True,
            reserved_until=now + timedelta(minutes=self.settings.reservation_ttl_minutes),
            # cash orders are settled on delivery and never time out
            payment_timeout_at=(
                None
                if cash_on_delivery
                else now + timedelta(minutes=self.settings.order_payment_timeout_minutes)
            ),
            customer_notes=request.notes,
            created_at=now,
            updated_at=now,
        )
        order.items = [
            OrderItem(
                product_id=item.product_id,
                product_name=products[item.product_id].name,
                product_sku=products[item.product_id].sku,
                unit_price_cents=products[item.product_id].price_cents,
                quantity=item.quantity,
                total_price_cents=products[item.product_id].price_cents * item.quantity,
            )
            for item in cart.items
        ]
        billing = request.billing_address or request.shipping_address
        order.addresses = [
            OrderAddress(kind="shipping", **request.shipping_address.as_snapshot()),
            OrderAddress(kind="billing", **billing.as_snapshot()),
        ]
        order.payments = []
        if cash_on_delivery:
            order.payments.append(
                Payment(
                    user_id=user_id,
                    amount_cents=totals.total_cents,
                    currency=currency,
                    method=PaymentMethod.CASH.value,
                    gateway="cash_on_delivery",
                    status=PaymentStatus.AWAITING_PAYMENT.value,
                    created_at=now,
                    updated_at=now,
                )
            )
        await self.number_generator.insert_order(db, order)

        await self.reservations.reserve_for_order(
            db,
            order.id,
            [ReservationRequest(product_id, quantity) for product_id, quantity in needed.items()],
            ttl_minutes=self.settings.reservation_ttl_minutes,
        )

        cart.status = "converted"
        cart.converted_order_id = order.id
        cart.converted_at = now
        cart.items.clear()
        await db.flush()

        await self.event_log.record_created(
            db, order.id, order.order_number, order.total_cents, actor_id=user_id
        )
        await self.event_log.record_inventory(
            db,
            order.id,
            reserved=True,
            items=[{"product_id": str(pid), "quantity": qty} for pid, qty in needed.items()],
        )
        return order

    # Queries

    async def get_order(self, order_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> Order:
        """
        Get an order, optionally scoped to its owner.

        Raises:
            OrderNotFoundError: If missing or owned by someone else
        """
        async with self.session_factory() as db:
            return await self._load_order(db, order_id, user_id=user_id)

    async def get_order_by_session_id(
        self, session_id: str, user_id: Optional[uuid.UUID] = None
    ) -> Order:
        """
        Find the order behind a gateway checkout session.

        Raises:
            PaymentNotFoundError: If no payment has this session id
            PaymentMismatchError: If the order belongs to another user
        """
        async with self.session_factory() as db:
            payment = (
                await db.execute(select(Payment).where(Payment.external_id == session_id))
            ).scalar_one_or_none()
            if payment is None:
                raise PaymentNotFoundError(f"No payment for session {session_id}")
            order = await self._load_order(db, payment.order_id)
            if user_id is not None and order.user_id != user_id:
                raise PaymentMismatchError("Checkout session does not belong to this user")
            return order

    async def list_orders(self, filters: OrderFilter) -> OrderPage:
        """
        List orders matching ``filters``.

        Returns:
            OrderPage: Requested page and the total number of matches

        Raises:
            OrderValidationError: If a filter value is invalid
        """
        filters.validate()
        conditions = []
        if filters.user_id is not None:
            conditions.append(Order.user_id == filters.user_id)
        if filters.status is not None:
            conditions.append(Order.status == filters.status)
        if filters.payment_status is not None:
            conditions.append(Order.payment_status == filters.payment_status)
        if filters.created_from is not None:
            conditions.append(Order.created_at >= filters.created_from)
        if filters.created_to is not None:
            conditions.append(Order.created_at <= filters.created_to)

        column = SORT_COLUMNS[filters.sort_by]
        ordering = column.asc() if filters.sort_order == "asc" else column.desc()

        async with self.session_factory() as db:
            total = await db.scalar(select(func.count(Order.id)).where(*conditions))
            rows = await db.execute(
                select(Order)
                .where(*conditions)
                .order_by(ordering, Order.id)
                .limit(filters.limit)
                .offset(filters.offset)
            )
            return OrderPage(
                items=list(rows.scalars().all()),
                total=total or 0,
                limit=filters.limit,
                offset=filters.offset,
            )

    async def get_events(
        self,
        order_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
        public_only: bool = False,
    ) -> List[OrderEvent]:
        """Order timeline; customers pass their ``user_id`` and see public entries."""
        async with self.session_factory() as db:
            await self._load_order(db, order_id, user_id=user_id)
            return await self.event_log.get_events(db, order_id, public_only=public_only)

    # Status workflows

    async def update_order_status(
        self,
        order_id: uuid.UUID,
        status: str,
        actor_id: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Order:
        """
        Administrative status change.

        Cancellation is delegated to ``cancel_order``. Confirming an order
        turns its stock holds into deductions; online orders can only be
        confirmed once paid. Refunds go through the payment refund path.

        Raises:
            OrderValidationError: If ``status`` is unknown
            InvalidStateTransitionError: If the move is not allowed
            InsufficientStockError: If lapsed holds cannot be taken again
        """
        try:
            target = OrderStatus(status)
        except ValueError as e:
            raise OrderValidationError(
                "Unknown order status", [{"field": "status", "message": f"unknown status {status}"}]
            ) from e
        if target == OrderStatus.CANCELLED:
            return await self.cancel_order(order_id, reason=note, actor_id=actor_id)

        async with self._transaction("update_order_status") as db:
            order = await self._load_order(db, order_id, lock=True)
            ensure_transition(order.status, target)

            if target == OrderStatus.CONFIRMED:
                if (
                    order.payment_method != PaymentMethod.CASH.value
                    and order.payment_status not in _PAID_STATUSES
                ):
                    raise InvalidStateTransitionError(
                        order.status, target.value, "payment has not been received"
                    )
                await self.reservations.secure_for_order(db, order.id, reservation_requests(order))
                order.inventory_reserved = False
            elif (
                target == OrderStatus.REFUNDED
                and order.payment_status != PaymentStatus.REFUNDED.value
            ):
                raise InvalidStateTransitionError(
                    order.status, target.value, "refunds are issued through the payment refund operation"
                )
            elif target == OrderStatus.RETURNED and not can_be_returned(
                order.status, order.payment_status
            ):
                raise InvalidStateTransitionError(
                    order.status, target.value, "only paid orders can be returned"
                )

            old_status = apply_status(order, target)
            await db.flush()
            await self.event_log.record_status_changed(
                db, order.id, old_status, target.value, actor_id=actor_id, note=note
            )
            if target == OrderStatus.RETURNED:
                await self.event_log.record_returned(db, order.id, note, actor_id=actor_id)

        logger.info(
            "order_status_updated",
            order_id=str(order.id),
            old_status=old_status,
            new_status=order.status,
        )
        self._notify_status(order, old_status)
        return order

    async def _cancel_in_transaction(
        self,
        db: AsyncSession,
        order: Order,
        reason: Optional[str],
        actor_id: Optional[uuid.UUID],
    ) -> str:
        """
        Undo the stock side of an order and mark it cancelled.

        Stock effect by what the order currently holds:
        - confirmed deductions -> on-hand stock restored
        - active holds -> released
        - nothing (holds expired) -> no stock change
        A paid order without deductions, or an unpaid online order with
        deductions, is logged as unexpected; the cancellation still goes through.
        """
        if not can_be_cancelled(order.status):
            raise InvalidStateTransitionError(
                order.status, OrderStatus.CANCELLED.value, "order cannot be cancelled in its current status"
            )

        paid = order.payment_status in _PAID_STATUSES
        cash_on_delivery = order.payment_method == PaymentMethod.CASH.value
        deducted = await self.reservations.get_confirmed(db, order.id)
        has_active = await self.reservations.has_active_reservations(db, order.id)
        stock_items: List[Dict[str, object]] = []

        for reservation in deducted:
            await self.reservations.ledger.restore(db, reservation.product_id, reservation.quantity)
            metrics.record_stock_restored()
            stock_items.append(
                {
                    "product_id": str(reservation.product_id),
                    "quantity": reservation.quantity,
                    "action": "restored",
                }
            )
        if has_active:
            await self.reservations.release_for_order(db, order.id, reason="order cancelled")
            stock_items.extend(
                {"product_id": str(item.product_id), "quantity": item.quantity, "action": "released"}
                for item in order.items
                if not any(r.product_id == item.product_id for r in deducted)
            )

        if (paid and not deducted) or (deducted and not paid and not cash_on_delivery) or (
            paid and has_active
        ):
            logger.warning(
                "order_cancel_unexpected_state",
                order_id=str(order.id),
                payment_status=order.payment_status,
                deducted=len(deducted),
                has_active_reservations=has_active,
            )
        elif not deducted and not has_active:
            logger.info("order_cancel_without_stock_effect", order_id=str(order.id))

        order.cancellation_reason = reason
        order.inventory_reserved = False
        old_status = apply_status(order, OrderStatus.CANCELLED)
        await db.flush()

        await self.event_log.record_cancelled(db, order.id, reason, actor_id=actor_id)
        await self.event_log.record_inventory(
            db, order.id, reserved=False, items=stock_items, reason=reason or "order cancelled"
        )
        return old_status

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        actor_id: Optional[uuid.UUID] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> Order:
        """
        Cancel an order and undo its stock effect.

        Args:
            order_id: Order to cancel
            reason: Stored cancellation reason
            actor_id: Who cancelled it
            user_id: Restrict to the owner's orders (customer cancellation)

        Raises:
            OrderNotFoundError: If missing or not owned by ``user_id``
            InvalidStateTransitionError: If the order is not cancellable
        """
        async with self._transaction("cancel_order") as db:
            order = await self._load_order(db, order_id, user_id=user_id, lock=True)
            old_status = await self._cancel_in_transaction(db, order, reason, actor_id)

        logger.info(
            "order_cancelled",
            order_id=str(order.id),
            order_number=order.order_number,
            old_status=old_status,
            reason=reason,
        )
        self.notifier.notify_order_cancelled(order, reason)
        return order

    async def update_shipping_info(
        self,
        order_id: uuid.UUID,
        info: ShippingInfo,
        actor_id: Optional[uuid.UUID] = None,
    ) -> Order:
        """
        Record tracking details and move the order to ``shipped``.

        Intermediate fulfilment statuses are walked through in order, each
        with its own timeline entry.

        Raises:
            OrderValidationError: If tracking number or carrier is blank
            InvalidStateTransitionError: If the order cannot be shipped
        """
        errors = []
        if not (info.tracking_number or "").strip():
            errors.append({"field": "tracking_number", "message": "is required"})
        if not (info.carrier or "").strip():
            errors.append({"field": "carrier", "message": "is required"})
        if errors:
            raise OrderValidationError("Invalid shipping info", errors)

        async with self._transaction("update_shipping_info") as db:
            order = await self._load_order(db, order_id, lock=True)
            if not can_be_shipped(order.status):
                raise InvalidStateTransitionError(
                    order.status, OrderStatus.SHIPPED.value, "order cannot be shipped in its current status"
                )

            order.tracking_number = info.tracking_number.strip()
            order.carrier = info.carrier.strip()
            order.shipping_method = info.shipping_method
            order.tracking_url = info.tracking_url
            order.estimated_delivery = info.estimated_delivery

            now = utcnow()
            transitions = []
            for step in path_to(order.status, OrderStatus.SHIPPED):
                transitions.append((apply_status(order, step, now), step.value))
            await db.flush()

            for old_status, new_status in transitions:
                await self.event_log.record_status_changed(
                    db, order.id, old_status, new_status, actor_id=actor_id
                )
            await self.event_log.record_shipped(
                db,
                order.id,
                {
                    "tracking_number": order.tracking_number,
                    "carrier": order.carrier,
                    "shipping_method": order.shipping_method,
                    "tracking_url": order.tracking_url,
                },
                actor_id=actor_id,
            )

        logger.info(
            "order_shipped",
            order_id=str(order.id),
            tracking_number=order.tracking_number,
            carrier=order.carrier,
        )
        self.notifier.notify_order_shipped(order)
        return order

    async def update_delivery_status(
        self,
        order_id: uuid.UUID,
        status: str,
        actor_id: Optional[uuid.UUID] = None,
    ) -> Order:
        """
        Move a shipped order to ``out_for_delivery`` or ``delivered``.

        Cash-on-delivery payments are settled when the order is delivered.

        Raises:
            OrderValidationError: If ``status`` is not a delivery status
            InvalidStateTransitionError: If the order has not shipped
        """
        if status not in (OrderStatus.OUT_FOR_DELIVERY.value, OrderStatus.DELIVERED.value):
            raise OrderValidationError(
                "Invalid delivery status",
                [{"field": "status", "message": "must be out_for_delivery or delivered"}],
            )
        target = OrderStatus(status)

        settled: List[Payment] = []
        async with self._transaction("update_delivery_status") as db:
            order = await self._load_order(db, order_id, lock=True)
            if not can_be_delivered(order.status):
                raise InvalidStateTransitionError(
                    order.status, target.value, "order has not been shipped"
                )

            now = utcnow()
            old_status = apply_status(order, target, now)
            if target == OrderStatus.DELIVERED and order.payment_method == PaymentMethod.CASH.value:
                for payment in order.payments:
                    if payment.status in _UNSETTLED_STATUSES:
                        payment.status = PaymentStatus.PAID.value
                        payment.processed_at = now
                        settled.append(payment)
                if settled:
                    order.payment_status = PaymentStatus.PAID.value
            await db.flush()

            await self.event_log.record_status_changed(
                db, order.id, old_status, target.value, actor_id=actor_id
            )
            if target == OrderStatus.DELIVERED:
                await self.event_log.record_delivered(db, order.id, actor_id=actor_id)
            for payment in settled:
                await self.event_log.record_payment(
                    db, order.id, True, payment.amount_cents, payment.method, actor_id=actor_id
                )

        logger.info(
            "order_delivery_updated",
            order_id=str(order.id),
            status=order.status,
            cash_settled=bool(settled),
        )
        if target == OrderStatus.DELIVERED:
            self.notifier.notify_order_delivered(order)
        else:
            self._notify_status(order, old_status)
        for payment in settled:
            self.notifier.notify_payment_received(order, payment.amount_cents)
        return order

    async def add_note(
        self,
        order_id: uuid.UUID,
        note: str,
        is_public: bool = False,
        actor_id: Optional[uuid.UUID] = None,
    ) -> Order:
        """
        Attach a note: public notes go to the customer notes, private ones to
        the admin notes.
        """
        text = (note or "").strip()
        if not text or len(text) > MAX_NOTE_LENGTH:
            raise OrderValidationError(
                "Invalid note",
                [{"field": "note", "message": f"must be 1-{MAX_NOTE_LENGTH} characters"}],
            )

        async with self._transaction("add_note") as db:
            order = await self._load_order(db, order_id, lock=True)
            if is_public:
                order.customer_notes = f"{order.customer_notes}\n{text}" if order.customer_notes else text
            else:
                order.admin_notes = f"{order.admin_notes}\n{text}" if order.admin_notes else text
            await db.flush()
            await self.event_log.record_note(db, order.id, text, is_public, actor_id=actor_id)

        return order

    # Background cleanup

    async def cleanup_expired_orders(
        self, now: Optional[datetime] = None, batch_size: Optional[int] = None
    ) -> int:
        """
        Cancel pending, unpaid orders past their payment timeout.

        Each order is cancelled in its own transaction through the regular
        cancel path; an order paid in the meantime is skipped.

        Returns:
            int: Number of orders cancelled
        """
        cutoff = now or utcnow()
        unpaid = (*_UNSETTLED_STATUSES, PaymentStatus.FAILED.value)
        async with self.session_factory() as db:
            order_ids = list(
                (
                    await db.execute(
                        select(Order.id)
                        .where(
                            Order.status == OrderStatus.PENDING.value,
                            Order.payment_status.in_(unpaid),
                            Order.payment_timeout_at.is_not(None),
                            Order.payment_timeout_at < cutoff,
                        )
                        .order_by(Order.payment_timeout_at)
                        .limit(batch_size or self.settings.cleanup_batch_size)
                    )
                ).scalars()
            )

        cancelled = 0
        for order_id in order_ids:
            order: Optional[Order] = None
            try:
                async with self._transaction("cleanup_expired_order") as db:
                    candidate = await self._load_order(db, order_id, lock=True)
                    if (
                        candidate.status == OrderStatus.PENDING.value
                        and candidate.payment_status in unpaid
                    ):
                        await self._cancel_in_transaction(db, candidate, "payment timeout", None)
                        order = candidate
            except OrderFlowError as e:
                logger.warning("expired_order_cleanup_failed", order_id=str(order_id), error=str(e))
                continue
            if order is None:
                continue
            cancelled += 1
            logger.info("expired_order_cancelled", order_id=str(order.id), order_number=order.order_number)
            self.notifier.notify_order_cancelled(order, "payment timeout")

        return cancelled
