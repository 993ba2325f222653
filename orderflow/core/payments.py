"""
Payment reconciler.

Converges every source of payment truth onto one idempotent state machine:

- gateway webhooks (``checkout.session.completed``, ``payment_intent.succeeded``,
  ``payment_intent.payment_failed``, ``charge.refunded``)
- the fallback confirmation a client triggers after the checkout redirect
- administrative refunds

Payments are located by their gateway ids (session id in ``external_id``,
payment intent in ``transaction_id``). A payment that is already in the target
state is reported as such and nothing is written, so replays and
webhook/fallback races are harmless. Gateway calls never happen while a
database transaction is open.
"""
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.config import Settings
from orderflow.core.errors import (
    GatewayError,
    GatewayErrorType,
    InsufficientStockError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    OrderValidationError,
    PaymentMismatchError,
    PaymentNotFoundError,
)
from orderflow.core.event_log import OrderEventLog
from orderflow.core.orders import apply_status, conflict_guard, reservation_requests
from orderflow.core.reservations import StockReservationManager
from orderflow.core.state_machine import (
    OrderEventType,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    can_transition,
    is_terminal,
)
from orderflow.database.models import Order, Payment, utcnow
from orderflow.integrations.notifications import NotificationDispatcher
from orderflow.integrations.stripe_gateway import StripeGateway
from orderflow.integrations.webhook_handler import GatewayEvent, WebhookHandler
from orderflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_SETTLED = (
    PaymentStatus.PAID.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
    PaymentStatus.REFUNDED.value,
)
_REFUNDABLE = (PaymentStatus.PAID.value, PaymentStatus.PARTIALLY_REFUNDED.value)
# statuses where nothing has left the warehouse
_RESTOCKABLE = (OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value, OrderStatus.READY_TO_SHIP.value)


@dataclass
class _AfterCommit:
    """Notifications collected inside a transaction, sent once it committed."""

    payment_received: Optional[int] = None
    status_changed_from: Optional[str] = None
    refunded: Optional[int] = None
    order: Optional[Order] = None


class PaymentReconciler:
    """Applies gateway outcomes to payments, orders and stock."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        gateway: StripeGateway,
        webhook_handler: WebhookHandler,
        reservations: StockReservationManager,
        event_log: OrderEventLog,
        notifier: NotificationDispatcher,
    ):
        """
        Initialize reconciler and register its webhook handlers.

        Args:
            session_factory: Factory for transaction-scoped sessions
            settings: Application settings
            gateway: Payment gateway client
            webhook_handler: Signature verification and event routing
            reservations: Stock reservation manager
            event_log: Order timeline writer
            notifier: Notification dispatcher, used after commit
        """
        self.session_factory = session_factory
        self.settings = settings
        self.gateway = gateway
        self.webhook_handler = webhook_handler
        self.reservations = reservations
        self.event_log = event_log
        self.notifier = notifier

        webhook_handler.register_handler("checkout.session.completed", self._on_checkout_completed)
        webhook_handler.register_handler("payment_intent.succeeded", self._on_payment_intent_succeeded)
        webhook_handler.register_handler("payment_intent.payment_failed", self._on_payment_intent_failed)
        webhook_handler.register_handler("charge.refunded", self._on_charge_refunded)

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with conflict_guard(operation):
            async with self.session_factory() as db:
                async with db.begin():
                    yield db

    @staticmethod
    async def _find_payment(db: AsyncSession, *criteria: Any, lock: bool = False) -> Optional[Payment]:
        stmt = select(Payment).where(*criteria).execution_options(populate_existing=True)
        if lock:
            stmt = stmt.with_for_update()
        return (await db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _load_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
        order = (
            await db.execute(
                select(Order)
                .where(Order.id == order_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    def _send(self, after: _AfterCommit) -> None:
        order = after.order
        if order is None:
            return
        if after.payment_received is not None:
            self.notifier.notify_payment_received(order, after.payment_received)
        if after.status_changed_from is not None:
            self.notifier.notify_order_status_changed(order, after.status_changed_from)
        if after.refunded is not None:
            self.notifier.notify_refund_issued(order, after.refunded)

    # Webhooks

    async def handle_webhook(
        self, provider: str, payload: bytes, signature: Optional[str]
    ) -> Dict[str, Any]:
        """
        Verify and process one gateway webhook delivery.

        Args:
            provider: Gateway name from the URL
            payload: Raw request body
            signature: Signature header value

        Returns:
            Dict[str, Any]: Processing result (success, duplicate or ignored)

        Raises:
            WebhookSignatureError: If the payload is unsigned or forged
            WebhookError: If the payload cannot be parsed
        """
        event = self.webhook_handler.verify_signature(provider, payload, signature)
        return await self.webhook_handler.process_event(event)

    async def _on_checkout_completed(self, event: GatewayEvent) -> Dict[str, Any]:
        session = event.data
        if session.get("payment_status") not in ("paid", "no_payment_required"):
            # delayed payment methods settle later through payment_intent.succeeded
            logger.info(
                "checkout_completed_awaiting_settlement",
                session_id=session.get("id"),
                payment_status=session.get("payment_status"),
            )
            return {"status": "awaiting_settlement"}
        return await self._confirm_payment(
            [Payment.external_id == session["id"]],
            source="webhook",
            transaction_id=session.get("payment_intent"),
            metadata=session.get("metadata") or {},
            amount_cents=session.get("amount_total"),
        )

    @staticmethod
    def _intent_criteria(intent: Dict[str, Any]) -> List[List[Any]]:
        lookups: List[List[Any]] = [[Payment.transaction_id == intent["id"]]]
        payment_id = (intent.get("metadata") or {}).get("payment_id")
        if payment_id:
            try:
                lookups.append([Payment.id == uuid.UUID(payment_id)])
            except ValueError:
                logger.warning("webhook_metadata_invalid_payment_id", payment_id=payment_id)
        return lookups

    async def _on_payment_intent_succeeded(self, event: GatewayEvent) -> Dict[str, Any]:
        intent = event.data
        return await self._confirm_payment(
            *self._intent_criteria(intent),
            source="webhook",
            transaction_id=intent["id"],
            metadata=intent.get("metadata") or {},
            amount_cents=intent.get("amount_received") or intent.get("amount"),
        )

    async def _on_payment_intent_failed(self, event: GatewayEvent) -> Dict[str, Any]:
        intent = event.data
        reason = (intent.get("last_payment_error") or {}).get("message") or "Payment failed"
        return await self._mark_failed(
            *self._intent_criteria(intent), reason=reason, transaction_id=intent["id"]
        )

    async def _on_charge_refunded(self, event: GatewayEvent) -> Dict[str, Any]:
        charge = event.data
        intent_id = charge.get("payment_intent")
        if not intent_id:
            logger.warning("charge_refunded_no_payment_intent", charge_id=charge.get("id"))
            return {"status": "skipped", "reason": "no payment intent"}

        after = _AfterCommit()
        async with self._transaction("charge_refunded") as db:
            payment = await self._find_payment(db, Payment.transaction_id == intent_id, lock=True)
            if payment is None:
                raise PaymentNotFoundError(f"No payment for payment intent {intent_id}")
            order = await self._load_order(db, payment.order_id)
            applied = await self._apply_refund(
                db, order, payment, int(charge.get("amount_refunded") or 0), "gateway refund", None, after
            )
        self._send(after)
        return {"status": "refunded" if applied else "already_refunded", "payment_id": str(payment.id)}

    # Confirmation (webhook and fallback)

    async def _confirm_payment(
        self,
        *lookups: List[Any],
        source: str,
        transaction_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        amount_cents: Optional[int] = None,
        expected_order_id: Optional[uuid.UUID] = None,
        expected_user_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """
        Mark a payment paid and carry the order forward.

        Sequence:
        1. Lock the payment (first lookup that matches) and its order
        2. Already settled -> report ``already_paid``, write nothing
        3. Mark the payment paid and sync the order's payment status
        4. Pending order, fully paid -> stock holds become deductions, order confirmed
        5. Order cancelled meanwhile -> payment recorded, stock untouched, flagged
        6. Timeline events; notifications after commit

        Raises:
            PaymentNotFoundError: If no payment matches
            PaymentMismatchError: If the payment belongs to another order or user
        """
        after = _AfterCommit()
        async with self._transaction("confirm_payment") as db:
            payment = None
            for criteria in lookups:
                payment = await self._find_payment(db, *criteria, lock=True)
                if payment is not None:
                    break
            if payment is None:
                raise PaymentNotFoundError("No payment matches the gateway identifiers")

            order_hint = (metadata or {}).get("order_id")
            if (expected_order_id is not None and payment.order_id != expected_order_id) or (
                order_hint and order_hint != str(payment.order_id)
            ):
                raise PaymentMismatchError("Payment does not belong to this order")

            order = await self._load_order(db, payment.order_id)
            if expected_user_id is not None and order.user_id != expected_user_id:
                raise PaymentMismatchError("Order does not belong to this user")

            if payment.status in _SETTLED:
                metrics.record_payment_confirmation(source, "already_paid")
                logger.info(
                    "payment_already_confirmed",
                    payment_id=str(payment.id),
                    order_id=str(order.id),
                    source=source,
                )
                return {"status": "already_paid", "payment_id": str(payment.id), "order_id": str(order.id)}

            if amount_cents is not None and amount_cents != payment.amount_cents:
                logger.warning(
                    "payment_amount_mismatch",
                    payment_id=str(payment.id),
                    expected=payment.amount_cents,
                    received=amount_cents,
                )

            now = utcnow()
            previous_status = payment.status
            payment.status = PaymentStatus.PAID.value
            payment.processed_at = now
            payment.failure_reason = None
            if transaction_id and payment.transaction_id is None:
                payment.transaction_id = transaction_id
            if order.is_fully_paid:
                order.payment_status = PaymentStatus.PAID.value
            await db.flush()

            outcome = "confirmed"
            old_order_status = None
            if is_terminal(order.status):
                outcome = "order_closed"
                logger.warning(
                    "payment_received_for_closed_order",
                    payment_id=str(payment.id),
                    order_id=str(order.id),
                    order_status=order.status,
                )
                await self.event_log.append(
                    db,
                    order.id,
                    OrderEventType.CUSTOM,
                    "Payment received for a closed order",
                    "Payment needs a manual refund",
                    {"payment_id": str(payment.id), "amount_cents": payment.amount_cents},
                    is_public=False,
                )
            elif order.status == OrderStatus.PENDING.value and order.is_fully_paid:
                try:
                    await self.reservations.secure_for_order(db, order.id, reservation_requests(order))
                except InsufficientStockError as e:
                    outcome = "stock_unavailable"
                    logger.error(
                        "paid_order_stock_unavailable",
                        order_id=str(order.id),
                        product_id=str(e.product_id),
                        requested=e.requested,
                        available=e.available,
                    )
                    await self.event_log.append(
                        db,
                        order.id,
                        OrderEventType.CUSTOM,
                        "Stock unavailable after payment",
                        str(e),
                        {"payment_id": str(payment.id), "product_id": str(e.product_id)},
                        is_public=False,
                    )
                else:
                    order.inventory_reserved = False
                    old_order_status = apply_status(order, OrderStatus.CONFIRMED, now)
                    await db.flush()

            await self.event_log.record_payment(
                db, order.id, True, payment.amount_cents, payment.method
            )
            if old_order_status is not None:
                await self.event_log.record_status_changed(
                    db, order.id, old_order_status, order.status, note="payment received"
                )

            after.order = order
            after.payment_received = payment.amount_cents
            after.status_changed_from = old_order_status

        metrics.record_payment_confirmation(source, outcome)
        logger.info(
            "payment_confirmed",
            payment_id=str(payment.id),
            order_id=str(order.id),
            previous_status=previous_status,
            source=source,
            outcome=outcome,
        )
        self._send(after)
        return {"status": outcome, "payment_id": str(payment.id), "order_id": str(order.id)}

    async def _mark_failed(
        self, *lookups: List[Any], reason: str, transaction_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Record a failed attempt and hand the order's stock holds back."""
        async with self._transaction("payment_failed") as db:
            payment = None
            for criteria in lookups:
                payment = await self._find_payment(db, *criteria, lock=True)
                if payment is not None:
                    break
            if payment is None:
                raise PaymentNotFoundError("No payment matches the gateway identifiers")
            order = await self._load_order(db, payment.order_id)

            if payment.status in _SETTLED:
                # a failed retry after a successful attempt changes nothing
                logger.info("payment_failure_after_success_ignored", payment_id=str(payment.id))
                return {"status": "ignored", "payment_id": str(payment.id)}
            if payment.status == PaymentStatus.FAILED.value:
                return {"status": "already_failed", "payment_id": str(payment.id)}

            payment.status = PaymentStatus.FAILED.value
            payment.failure_reason = reason
            payment.failed_at = utcnow()
            if transaction_id and payment.transaction_id is None:
                payment.transaction_id = transaction_id

            released = 0
            if order.status == OrderStatus.PENDING.value:
                released = await self.reservations.release_for_order(db, order.id, reason="payment failed")
                order.inventory_reserved = False
                if order.paid_amount_cents == 0:
                    order.payment_status = PaymentStatus.FAILED.value
            await db.flush()

            await self.event_log.record_payment(
                db, order.id, False, payment.amount_cents, payment.method, reason=reason
            )
            if released:
                await self.event_log.record_inventory(
                    db, order.id, reserved=False, items=[], reason="payment failed"
                )

        metrics.record_payment_failure()
        logger.info(
            "payment_failed",
            payment_id=str(payment.id),
            order_id=str(order.id),
            reason=reason,
            reservations_released=released,
        )
        return {"status": "failed", "payment_id": str(payment.id), "order_id": str(order.id)}

    async def confirm_payment_success(
        self, order_id: uuid.UUID, user_id: uuid.UUID, session_id: str
    ) -> Dict[str, Any]:
        """
        Fallback confirmation after the checkout redirect.

        Checks ownership, then asks the gateway whether the session was paid
        (outside any transaction), then runs the same confirmation as the webhook.

        Raises:
            PaymentNotFoundError: If no payment has this session id
            PaymentMismatchError: If order, payment and user don't belong together
            InvalidStateTransitionError: If the gateway reports the session unpaid
            GatewayError: If the gateway cannot be reached
        """
        async with self.session_factory() as db:
            payment = await self._find_payment(db, Payment.external_id == session_id)
            if payment is None:
                raise PaymentNotFoundError(f"No payment for session {session_id}")
            if payment.order_id != order_id:
                raise PaymentMismatchError("Payment does not belong to this order")
            order = await db.get(Order, order_id)
            if order is None or order.user_id != user_id:
                raise PaymentMismatchError("Order does not belong to this user")
            if payment.status in _SETTLED:
                metrics.record_payment_confirmation("fallback", "already_paid")
                return {"status": "already_paid", "payment_id": str(payment.id), "order_id": str(order_id)}

        session = await self.gateway.retrieve_checkout_session(session_id)
        if not session.is_paid:
            logger.info("fallback_confirmation_unpaid_session", session_id=session_id)
            raise InvalidStateTransitionError(
                payment.status, PaymentStatus.PAID.value, "checkout session has not been paid"
            )

        return await self._confirm_payment(
            [Payment.external_id == session_id],
            source="fallback",
            transaction_id=session.payment_intent_id,
            amount_cents=session.amount_total,
            expected_order_id=order_id,
            expected_user_id=user_id,
        )

    # Checkout

    async def create_checkout_session(
        self,
        order_id: uuid.UUID,
        user_id: uuid.UUID,
        customer_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Open a hosted checkout session for an unpaid online order.

        The gateway call runs between two short transactions; the pending
        payment is recorded under the session id and the order's stock holds
        and payment timeout are pushed back.

        Returns:
            Dict[str, Any]: ``session_id``, ``url`` and ``payment_id``

        Raises:
            OrderNotFoundError: If the order is missing or not the user's
            InvalidStateTransitionError: If the order is not awaiting online payment
            GatewayError: If the gateway call fails
        """
        async with self.session_factory() as db:
            order = await db.get(Order, order_id)
            if order is None or order.user_id != user_id:
                raise OrderNotFoundError(f"Order {order_id} not found")
            self._ensure_checkout_allowed(order)
            amount_cents, currency, order_number = order.total_cents, order.currency, order.order_number

        payment_id = uuid.uuid4()
        session = await self.gateway.create_checkout_session(
            amount_cents=amount_cents,
            currency=currency,
            description=f"Order {order_number}",
            idempotency_key=f"checkout-{order_id}-{payment_id}",
            metadata={
                "order_id": str(order_id),
                "payment_id": str(payment_id),
                "order_number": order_number,
            },
            customer_email=customer_email,
        )

        async with self._transaction("create_checkout_session") as db:
            order = await self._load_order(db, order_id)
            self._ensure_checkout_allowed(order)
            now = utcnow()
            db.add(
                Payment(
                    id=payment_id,
                    order_id=order.id,
                    user_id=order.user_id,
                    amount_cents=order.total_cents,
                    currency=order.currency,
                    method=order.payment_method,
                    gateway="stripe",
                    status=PaymentStatus.PENDING.value,
                    external_id=session.id,
                    created_at=now,
                    updated_at=now,
                )
            )
            minutes = self.settings.checkout_reservation_extension_minutes
            new_expiry = await self.reservations.extend_for_order(db, order.id, minutes)
            if new_expiry is not None:
                order.reserved_until = new_expiry
            deadline = new_expiry or now + timedelta(minutes=minutes)
            if order.payment_timeout_at is None or order.payment_timeout_at < deadline:
                order.payment_timeout_at = deadline
            order.payment_status = PaymentStatus.AWAITING_PAYMENT.value
            await db.flush()
            await self.event_log.append(
                db,
                order.id,
                OrderEventType.CUSTOM,
                "Checkout started",
                None,
                {"payment_id": str(payment_id), "session_id": session.id},
                is_public=False,
            )

        logger.info(
            "checkout_session_recorded",
            order_id=str(order_id),
            payment_id=str(payment_id),
            session_id=session.id,
        )
        return {"session_id": session.id, "url": session.url, "payment_id": str(payment_id)}

    @staticmethod
    def _ensure_checkout_allowed(order: Order) -> None:
        if order.payment_method == PaymentMethod.CASH.value:
            raise InvalidStateTransitionError(
                order.payment_status, PaymentStatus.AWAITING_PAYMENT.value, "cash orders are paid on delivery"
            )
        if order.status != OrderStatus.PENDING.value or order.payment_status in _SETTLED:
            raise InvalidStateTransitionError(
                order.status, PaymentStatus.AWAITING_PAYMENT.value, "order is not awaiting payment"
            )

    # Refunds

    async def refund_payment(
        self,
        payment_id: uuid.UUID,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """
        Refund all or part of a settled payment.

        Gateway payments are refunded through the gateway first; cash payments
        are recorded directly. The ``charge.refunded`` webhook for the same
        refund then finds it already applied.

        Args:
            payment_id: Payment to refund
            amount_cents: Partial amount; the whole refundable remainder when None
            reason: Stored on the timeline
            actor_id: Admin issuing the refund

        Raises:
            PaymentNotFoundError: If the payment does not exist
            InvalidStateTransitionError: If the payment is not refundable
            OrderValidationError: If the amount exceeds what is refundable
            GatewayError: If the gateway refund fails
        """
        async with self.session_factory() as db:
            payment = await self._find_payment(db, Payment.id == payment_id)
            if payment is None:
                raise PaymentNotFoundError(f"Payment {payment_id} not found")
            if payment.status not in _REFUNDABLE:
                raise InvalidStateTransitionError(
                    payment.status, PaymentStatus.REFUNDED.value, "payment is not refundable"
                )
            refundable = payment.refundable_cents
            amount = refundable if amount_cents is None else amount_cents
            if amount <= 0 or amount > refundable:
                raise OrderValidationError(
                    "Invalid refund amount",
                    [{"field": "amount_cents", "message": f"must be between 1 and {refundable}"}],
                )
            target_total = payment.refund_amount_cents + amount
            gateway_name, intent_id, session_id = payment.gateway, payment.transaction_id, payment.external_id

        if gateway_name == "stripe":
            if intent_id is None and session_id is not None:
                intent_id = (await self.gateway.retrieve_checkout_session(session_id)).payment_intent_id
            if intent_id is None:
                raise GatewayError("Payment has no gateway transaction to refund", GatewayErrorType.PERMANENT)
            await self.gateway.create_refund(
                intent_id,
                amount_cents=amount,
                reason="requested_by_customer",
                idempotency_key=f"refund-{payment_id}-{target_total}",
            )

        after = _AfterCommit()
        async with self._transaction("refund_payment") as db:
            payment = await self._find_payment(db, Payment.id == payment_id, lock=True)
            order = await self._load_order(db, payment.order_id)
            if intent_id and payment.transaction_id is None:
                payment.transaction_id = intent_id
            applied = await self._apply_refund(db, order, payment, target_total, reason, actor_id, after)

        return {
            "status": "refunded" if applied else "already_refunded",
            "payment_id": str(payment_id),
            "refunded_cents": applied,
            "payment_status": payment.status,
            "order_status": order.status,
        }

    async def _apply_refund(
        self,
        db: AsyncSession,
        order: Order,
        payment: Payment,
        total_refunded_cents: int,
        reason: Optional[str],
        actor_id: Optional[uuid.UUID],
        after: _AfterCommit,
    ) -> int:
        """
        Raise a payment's refunded total to ``total_refunded_cents``.

        Idempotent on the cumulative total: a total at or below what is already
        recorded changes nothing. A full refund moves the order to ``refunded``
        when the transition table allows it and puts deducted stock back if
        nothing had shipped.

        Returns:
            int: Cents newly applied by this call
        """
        total = min(total_refunded_cents, payment.amount_cents)
        if total <= payment.refund_amount_cents:
            logger.info("refund_already_applied", payment_id=str(payment.id), total_cents=total)
            return 0

        applied = total - payment.refund_amount_cents
        now = utcnow()
        payment.refund_amount_cents = total
        payment.refunded_at = now
        payment.status = (
            PaymentStatus.REFUNDED.value
            if total == payment.amount_cents
            else PaymentStatus.PARTIALLY_REFUNDED.value
        )

        settled = [p for p in order.payments if p.status in _SETTLED]
        fully_refunded = all(p.status == PaymentStatus.REFUNDED.value for p in settled)
        order.payment_status = (
            PaymentStatus.REFUNDED.value if fully_refunded else PaymentStatus.PARTIALLY_REFUNDED.value
        )

        old_order_status = None
        if fully_refunded and can_transition(order.status, OrderStatus.REFUNDED):
            if order.status in _RESTOCKABLE:
                for reservation in await self.reservations.get_confirmed(db, order.id):
                    await self.reservations.ledger.restore(db, reservation.product_id, reservation.quantity)
                    metrics.record_stock_restored()
                await self.reservations.release_for_order(db, order.id, reason="order refunded")
            old_order_status = apply_status(order, OrderStatus.REFUNDED, now)
        await db.flush()

        await self.event_log.record_refunded(db, order.id, applied, total, reason=reason, actor_id=actor_id)
        if old_order_status is not None:
            await self.event_log.record_status_changed(
                db, order.id, old_order_status, order.status, actor_id=actor_id, note=reason
            )

        metrics.record_refund("full" if payment.status == PaymentStatus.REFUNDED.value else "partial")
        logger.info(
            "refund_applied",
            payment_id=str(payment.id),
            order_id=str(order.id),
            applied_cents=applied,
            total_refunded_cents=total,
        )
        after.order = order
        after.refunded = applied
        after.status_changed_from = old_order_status
        return applied
