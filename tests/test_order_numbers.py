"""
Tests for order number generation.
"""
import re
from datetime import datetime, timezone
from typing import Any

import pytest

from orderflow.core.errors import InternalError
from orderflow.core.order_numbers import OrderNumberGenerator

from tests.helpers import make_order_request


def _fixed_clock() -> datetime:
    return datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


class TestOrderNumberGenerator:
    """Test suite for order number allocation."""

    @pytest.mark.unit
    def test_format(self) -> None:
        generator = OrderNumberGenerator(clock=_fixed_clock, suffix=lambda: 42)
        assert generator.generate() == "ORD-20240102-030405-0042"

    @pytest.mark.unit
    def test_random_suffix_is_four_digits(self) -> None:
        number = OrderNumberGenerator().generate()
        assert re.match(r"^ORD-\d{8}-\d{6}-[1-9]\d{3}$", number)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_collisions_are_retried(self, mocker: Any) -> None:
        suffixes = iter([1111, 2222, 3333])
        generator = OrderNumberGenerator(
            retry_delay_seconds=0, clock=_fixed_clock, suffix=lambda: next(suffixes)
        )
        db = mocker.AsyncMock()
        db.scalar.side_effect = [True, True, False]

        number = await generator.allocate(db)

        assert number == "ORD-20240102-030405-3333"
        assert db.scalar.await_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhausted_attempts(self, mocker: Any) -> None:
        generator = OrderNumberGenerator(max_attempts=3, retry_delay_seconds=0)
        db = mocker.AsyncMock()
        db.scalar.return_value = True

        with pytest.raises(InternalError):
            await generator.allocate(db)
        assert db.scalar.await_count == 3


class TestOrderNumberInsert:
    """Test suite for numbers taken by a concurrent writer before the insert."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_number_taken_at_insert_is_redrawn(
        self, services: Any, place_order: Any, mocker: Any, stock_of: Any
    ) -> None:
        first, _ = await place_order()
        fresh_number = "ORD-20240102-030405-9999"
        generator = services.orders.number_generator
        generator.retry_delay_seconds = 0
        # the existence check passed for a number another order committed meanwhile
        allocate = mocker.patch.object(
            generator, "allocate", side_effect=[first.order_number, fresh_number]
        )

        second, product = await place_order(quantity=3, on_hand=5)

        assert second.order_number == fresh_number
        assert allocate.await_count == 2
        stored = await services.orders.get_order(second.id)
        assert stored.order_number == fresh_number
        assert len(stored.items) == 1
        assert (await stock_of(product.id)).reserved == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_insert_gives_up_after_max_attempts(
        self, services: Any, place_order: Any, make_product: Any, make_cart: Any, stock_of: Any, mocker: Any
    ) -> None:
        first, _ = await place_order()
        generator = services.orders.number_generator
        generator.retry_delay_seconds = 0
        generator.max_attempts = 3
        allocate = mocker.patch.object(generator, "allocate", return_value=first.order_number)
        product = await make_product(on_hand=5)
        await make_cart(first.user_id, [(product, 2)])

        with pytest.raises(InternalError):
            await services.orders.create_order(first.user_id, make_order_request())

        assert allocate.await_count == 3
        assert (await stock_of(product.id)).reserved == 0
