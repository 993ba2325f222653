"""Human-readable order number allocation with bounded collision retry."""
import random
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from orderflow.core.errors import InternalError
from orderflow.database.models import Order, utcnow

logger = structlog.get_logger(__name__)


class OrderNumberCollision(Exception):
    """Raised internally when a generated number is already taken."""

    pass


class OrderNumberGenerator:
    """
    Generates ``ORD-YYYYMMDD-HHMMSS-NNNN`` numbers.

    The unique constraint on ``orders.order_number`` remains the final guard;
    the existence check here only keeps retries cheap. ``insert_order`` draws a
    new number when a concurrent writer wins the constraint.
    """

    def __init__(
        self,
        max_attempts: int = 10,
        retry_delay_seconds: float = 0.01,
        clock: Optional[Callable[[], datetime]] = None,
        suffix: Optional[Callable[[], int]] = None,
    ):
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.clock = clock or utcnow
        self.suffix = suffix or (lambda: random.SystemRandom().randint(1000, 9999))

    def generate(self) -> str:
        now = self.clock()
        return f"ORD-{now.strftime('%Y%m%d-%H%M%S')}-{self.suffix():04d}"

    async def _claim_candidate(self, db: AsyncSession) -> str:
        candidate = self.generate()
        taken = await db.scalar(select(exists().where(Order.order_number == candidate)))
        if taken:
            logger.info("order_number_collision", order_number=candidate)
            raise OrderNumberCollision(candidate)
        return candidate

    async def allocate(self, db: AsyncSession) -> str:
        """
        Find an order number not used by any committed order.

        Raises:
            InternalError: If every attempt collided
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(OrderNumberCollision),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_fixed(self.retry_delay_seconds),
            ):
                with attempt:
                    return await self._claim_candidate(db)
        except RetryError as e:
            logger.error("order_number_exhausted", attempts=self.max_attempts)
            raise InternalError(
                f"Could not generate a unique order number after {self.max_attempts} attempts"
            ) from e
        raise InternalError("Order number allocation ended without a result")

    async def _insert_once(self, db: AsyncSession, order: Order) -> str:
        order.order_number = await self.allocate(db)
        try:
            async with db.begin_nested():
                db.add(order)
                await db.flush()
        except IntegrityError as e:
            if "order_number" not in str(e.orig):
                raise
            logger.info("order_number_taken_on_insert", order_number=order.order_number)
            raise OrderNumberCollision(order.order_number) from e
        return order.order_number

    async def insert_order(self, db: AsyncSession, order: Order) -> str:
        """
        Number ``order`` and insert it with its children.

        The insert runs in a SAVEPOINT, so a number committed by a concurrent
        writer between the existence check and the insert costs one retry, not
        the caller's transaction.

        Returns:
            str: Order number the row was stored with

        Raises:
            InternalError: If every attempt collided
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(OrderNumberCollision),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_fixed(self.retry_delay_seconds),
            ):
                with attempt:
                    return await self._insert_once(db, order)
        except RetryError as e:
            logger.error("order_number_insert_exhausted", attempts=self.max_attempts)
            raise InternalError(
                f"Could not store the order under a unique number after {self.max_attempts} attempts"
            ) from e
