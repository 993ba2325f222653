"""
Tests for the append-only order timeline.
"""
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from orderflow.core.errors import ImmutableEventError
from orderflow.core.event_log import OrderEventLog
from orderflow.core.state_machine import OrderEventType
from orderflow.database.models import OrderEvent


class TestOrderEventLog:
    """Test suite for timeline writes and reads."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_created_event_payload(self, services: Any, place_order: Any) -> None:
        order, _ = await place_order()

        events = await services.orders.get_events(order.id)

        created = events[0]
        assert created.event_type == "created"
        assert created.is_public is True
        assert created.actor_id == order.user_id
        assert created.payload == {
            "order_number": order.order_number,
            "total_cents": order.total_cents,
        }
        assert events[1].is_public is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_events_cannot_be_updated(self, place_order: Any, session_factory: Any) -> None:
        order, _ = await place_order()

        with pytest.raises(ImmutableEventError):
            async with session_factory() as db:
                async with db.begin():
                    event = (
                        await db.execute(select(OrderEvent).where(OrderEvent.order_id == order.id))
                    ).scalars().first()
                    event.title = "Rewritten history"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_events_cannot_be_deleted(self, place_order: Any, session_factory: Any) -> None:
        order, _ = await place_order()

        with pytest.raises(ImmutableEventError):
            async with session_factory() as db:
                async with db.begin():
                    event = (
                        await db.execute(select(OrderEvent).where(OrderEvent.order_id == order.id))
                    ).scalars().first()
                    await db.delete(event)

        async with session_factory() as db:
            remaining = (
                await db.execute(select(OrderEvent).where(OrderEvent.order_id == order.id))
            ).scalars().all()
        assert len(remaining) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_append_does_not_abort_transaction(
        self, place_order: Any, session_factory: Any, mocker: Any
    ) -> None:
        order, _ = await place_order()
        event_log = OrderEventLog()

        async with session_factory() as db:
            async with db.begin():
                mocker.patch.object(db, "flush", side_effect=SQLAlchemyError("disk full"))
                written = await event_log.append(db, order.id, OrderEventType.CUSTOM, "Lost entry")

        assert written is None
        async with session_factory() as db:
            titles = [e.title for e in await event_log.get_events(db, order.id)]
        assert "Lost entry" not in titles
