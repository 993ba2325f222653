"""
Append-only order timeline.

Writes go through a SAVEPOINT and failures are logged and swallowed: the
timeline is observability and never decides whether the surrounding order
or payment transaction commits.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import event, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.errors import ImmutableEventError
from orderflow.core.state_machine import OrderEventType
from orderflow.database.models import OrderEvent, utcnow

logger = structlog.get_logger(__name__)


@event.listens_for(OrderEvent, "before_update")
def _reject_event_update(mapper: Any, connection: Any, target: OrderEvent) -> None:
    raise ImmutableEventError(f"Order event {target.id} is immutable")


@event.listens_for(OrderEvent, "before_delete")
def _reject_event_delete(mapper: Any, connection: Any, target: OrderEvent) -> None:
    raise ImmutableEventError(f"Order event {target.id} cannot be deleted")


class OrderEventLog:
    """Order event writer and timeline reader."""

    async def append(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        event_type: OrderEventType,
        title: str,
        description: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        actor_id: Optional[uuid.UUID] = None,
        is_public: bool = True,
    ) -> Optional[OrderEvent]:
        """
        Append one event to an order's timeline.

        Args:
            db: Database session with an open transaction
            order_id: Order the event belongs to
            event_type: Event type
            title: Short human-readable title
            description: Optional longer text
            payload: Structured event data
            actor_id: User or admin that caused the event
            is_public: Whether customers see it in their timeline

        Returns:
            Optional[OrderEvent]: Written event, or None if the write failed
        """
        order_event = OrderEvent(
            order_id=order_id,
            event_type=event_type.value,
            title=title,
            description=description,
            payload=payload or {},
            actor_id=actor_id,
            is_public=is_public,
            created_at=utcnow(),
        )
        try:
            async with db.begin_nested():
                db.add(order_event)
                await db.flush()
        except SQLAlchemyError as e:
            logger.warning(
                "order_event_append_failed",
                order_id=str(order_id),
                event_type=event_type.value,
                error=str(e),
            )
            return None
        return order_event

    async def get_events(
        self, db: AsyncSession, order_id: uuid.UUID, public_only: bool = False
    ) -> List[OrderEvent]:
        """Timeline in creation order, optionally limited to public entries."""
        stmt = select(OrderEvent).where(OrderEvent.order_id == order_id)
        if public_only:
            stmt = stmt.where(OrderEvent.is_public.is_(True))
        stmt = stmt.order_by(OrderEvent.created_at, OrderEvent.id)
        return list((await db.execute(stmt)).scalars().all())

    # Typed helpers used by the workflows

    async def record_created(
        self, db: AsyncSession, order_id: uuid.UUID, order_number: str, total_cents: int,
        actor_id: Optional[uuid.UUID] = None,
    ) -> Optional[OrderEvent]:
        return await self.append(
            db,
            order_id,
            OrderEventType.CREATED,
            "Order placed",
            f"Order {order_number} was created",
            {"order_number": order_number, "total_cents": total_cents},
            actor_id,
        )

    async def record_status_changed(
        self, db: AsyncSession, order_id: uuid.UUID, old_status: str, new_status: str,
        actor_id: Optional[uuid.UUID] = None, note: Optional[str] = None,
    ) -> Optional[OrderEvent]:
        return await self.append(
            db,
            order_id,
            OrderEventType.STATUS_CHANGED,
            f"Status changed to {new_status}",
            note,
            {"old_status": old_status, "new_status": new_status},
            actor_id,
        )

    async def record_inventory(
        self, db: AsyncSession, order_id: uuid.UUID, reserved: bool,
        items: List[Dict[str, Any]], reason: Optional[str] = None,
    ) -> Optional[OrderEvent]:
        event_type = (
            OrderEventType.INVENTORY_RESERVED if reserved else OrderEventType.INVENTORY_RELEASED
        )
        payload: Dict[str, Any] = {"items": items}
        if reason:
            payload["reason"] = reason
        return await self.append(
            db,
            order_id,
            event_type,
            "Inventory reserved" if reserved else "Inventory released",
            reason,
            payload,
            is_public=False,
        )

    async def record_payment(
        self, db: AsyncSession, order_id: uuid.UUID, succeeded: bool, amount_cents: int,
        method: str, reason: Optional[str] = None, actor_id: Optional[uuid.UUID] = None,
    ) -> Optional[OrderEvent]:
        if succeeded:
            return await self.append(
                db,
                order_id,
                OrderEventType.PAYMENT_RECEIVED,
                "Payment received",
                None,
                {"amount_cents": amount_cents, "method": method},
                actor_id,
            )
        return await self.append(
            db,
            order_id,
            OrderEventType.PAYMENT_FAILED,
            "Payment failed",
            reason,
            {"amount_cents": amount_cents, "method": method, "reason": reason},
            actor_id,
        )

    async def record_cancelled(
        self, db: AsyncSession, order_id: uuid.UUID, reason: Optional[str],
        actor_id: Optional[uuid.UUID] = None,
    ) -> Optional[OrderEvent]:
        return await self.append(
            db, order_id, OrderEventType.CANCELLED, "Order cancelled", reason,
            {"reason": reason}, actor_id,
        )

    async def record_refunded(
        self, db: AsyncSession, order_id: uuid.UUID, amount_cents: int, total_refunded_cents: int,
        reason: Optional[str] = None, actor_id: Optional[uuid.UUID] = None,
    ) -> Optional[OrderEvent]:
        return await self.append(
            db,
            order_id,
            OrderEventType.REFUNDED,
            "Refund issued",
            reason,
            {"amount_cents": amount_cents, "total_refunded_cents": total_refunded_cents},
            actor_id,
        )

    async def record_shipped(
        self, db: AsyncSession, order_id: uuid.UUID, tracking: Dict[str, Any],
        actor_id: Optional[uuid.UUID] = None,
    ) -> Optional[OrderEvent]:
        return await self.append(
            db, order_id, OrderEventType.SHIPPED, "Order shipped", None, tracking, actor_id
        )

    async def record_delivered(
        self, db: AsyncSession, order_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None,
    ) -> Optional[OrderEvent]:
        return await self.append(
            db, order_id, OrderEventType.DELIVERED, "Order delivered", None, {}, actor_id
        )

    async def record_returned(
        self, db: AsyncSession, order_id: uuid.UUID, reason: Optional[str],
        actor_id: Optional[uuid.UUID] = None,
    ) -> Optional[OrderEvent]:
        return await self.append(
            db, order_id, OrderEventType.RETURNED, "Order returned", reason, {"reason": reason}, actor_id
        )

    async def record_note(
        self, db: AsyncSession, order_id: uuid.UUID, note: str, is_public: bool,
        actor_id: Optional[uuid.UUID] = None,
    ) -> Optional[OrderEvent]:
        return await self.append(
            db,
            order_id,
            OrderEventType.NOTE_ADDED,
            "Note added",
            note,
            {"is_public": is_public},
            actor_id,
            is_public=is_public,
        )
