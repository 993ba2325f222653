"""
Tests for the background workers.
"""
import asyncio
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import update

from orderflow.core.errors import ConflictError
from orderflow.database.models import Order, StockReservation, utcnow
from orderflow.workers import order_cleanup, reservation_sweeper
from orderflow.workers.scheduler import run_periodically


async def _backdate(session_factory: Any, model: Any, column: str, order_id: Any) -> None:
    key = model.order_id if model is StockReservation else model.id
    async with session_factory() as db:
        async with db.begin():
            await db.execute(
                update(model).where(key == order_id).values({column: utcnow() - timedelta(minutes=1)})
            )


class TestReservationSweeper:
    """Test suite for the reservation expiry sweep."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expires_stale_holds(
        self, services: Any, place_order: Any, stock_of: Any, session_factory: Any
    ) -> None:
        stale, stale_product = await place_order(quantity=2, on_hand=10)
        fresh, fresh_product = await place_order(quantity=1, on_hand=10)
        await _backdate(session_factory, StockReservation, "expires_at", stale.id)

        assert await reservation_sweeper.run_once(services) == 1
        assert await reservation_sweeper.run_once(services) == 0

        assert (await stock_of(stale_product.id)).reserved == 0
        assert (await stock_of(fresh_product.id)).reserved == 1
        # the order itself is left for the cleanup worker
        swept = await services.orders.get_order(stale.id)
        assert swept.status == "pending"
        assert swept.inventory_reserved is False
        assert (await services.orders.get_order(fresh.id)).inventory_reserved is True


class TestOrderCleanup:
    """Test suite for the expired order cleanup."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancels_timed_out_orders(
        self, services: Any, place_order: Any, stock_of: Any, session_factory: Any
    ) -> None:
        expired, product = await place_order(quantity=2, on_hand=10)
        waiting, _ = await place_order()
        await _backdate(session_factory, Order, "payment_timeout_at", expired.id)

        assert await order_cleanup.run_once(services) == 1

        assert (await services.orders.get_order(expired.id)).status == "cancelled"
        assert (await services.orders.get_order(waiting.id)).status == "pending"
        assert (await stock_of(product.id)).reserved == 0


class TestScheduler:
    """Test suite for the periodic job loop."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_run_does_not_stop_loop(self) -> None:
        stop = asyncio.Event()
        calls = []

        async def job() -> int:
            calls.append(1)
            if len(calls) == 1:
                raise ConflictError("busy")
            stop.set()
            return 0

        await asyncio.wait_for(run_periodically("test_job", job, 0.01, stop), timeout=5)

        assert len(calls) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_loop(self) -> None:
        stop = asyncio.Event()
        calls = []

        async def job() -> int:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("redis connection reset")
            stop.set()
            return 0

        await asyncio.wait_for(run_periodically("test_job", job, 0.01, stop), timeout=5)

        assert len(calls) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stop_ends_the_wait(self, mocker: Any) -> None:
        stop = asyncio.Event()
        job = mocker.AsyncMock(return_value=0)

        task = asyncio.create_task(run_periodically("test_job", job, 3600, stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        job.assert_awaited_once()
