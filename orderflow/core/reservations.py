"""
Stock reservation manager.

Wraps the inventory ledger with order-scoped holds:

1. ``reserve_for_order`` takes a hold per product, all-or-nothing
2. ``confirm_for_order`` turns holds into permanent deductions (payment path)
3. ``release_for_order`` hands holds back (cancel / payment failure path)
4. ``expire_stale`` releases holds past their TTL (background sweep)
5. ``secure_for_order`` confirms, re-reserving holds that lapsed first

A reservation leaves ``active`` through ``_terminate`` only. That method claims
the row with ``UPDATE ... WHERE status = 'active'`` before touching stock, so a
hold is confirmed, released or expired exactly once no matter how many paths
race for it.
"""
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.errors import InsufficientStockError, InternalError
from orderflow.core.inventory import InventoryLedger, StockLevel
from orderflow.core.state_machine import ReservationStatus
from orderflow.database.models import Order, StockReservation, utcnow
from orderflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_HOLDING = (ReservationStatus.ACTIVE.value, ReservationStatus.CONFIRMED.value)


@dataclass(frozen=True)
class ReservationRequest:
    product_id: uuid.UUID
    quantity: int


class StockReservationManager:
    """Order-scoped stock holds on top of the inventory ledger."""

    def __init__(
        self,
        ledger: Optional[InventoryLedger] = None,
        default_ttl_minutes: int = 30,
    ):
        """
        Initialize reservation manager.

        Args:
            ledger: Inventory ledger performing the atomic stock updates
            default_ttl_minutes: Hold lifetime when callers don't pass one
        """
        self.ledger = ledger or InventoryLedger()
        self.default_ttl_minutes = default_ttl_minutes

    @staticmethod
    def _merge(items: Iterable[ReservationRequest]) -> "OrderedDict[uuid.UUID, int]":
        # One hold per product; sorted so concurrent batches lock rows in the same order
        merged: Dict[uuid.UUID, int] = {}
        for item in items:
            merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity
        return OrderedDict(sorted(merged.items(), key=lambda pair: str(pair[0])))

    async def can_reserve(self, db: AsyncSession, product_id: uuid.UUID, quantity: int) -> bool:
        """Check availability without side effects."""
        level = await self.ledger.check_availability(db, product_id)
        return level.available >= quantity

    async def get_available_stock(self, db: AsyncSession, product_id: uuid.UUID) -> StockLevel:
        return await self.ledger.check_availability(db, product_id)

    async def reserve_for_order(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        items: Iterable[ReservationRequest],
        ttl_minutes: Optional[int] = None,
    ) -> List[StockReservation]:
        """
        Reserve stock for every item of an order.

        Runs inside a SAVEPOINT: if any product is short, the holds already taken
        in this call are rolled back and the caller's transaction stays usable.

        Args:
            db: Database session with an open transaction
            order_id: Order the holds belong to
            items: Products and quantities
            ttl_minutes: Hold lifetime (defaults to the manager's TTL)

        Returns:
            List[StockReservation]: Created reservations

        Raises:
            InsufficientStockError: If any item cannot be reserved
        """
        quantities = self._merge(items)
        expires_at = utcnow() + timedelta(minutes=ttl_minutes or self.default_ttl_minutes)
        reservations: List[StockReservation] = []
        previous = {r.product_id: r for r in await self.get_reservations(db, order_id)}

        try:
            async with db.begin_nested():
                for product_id, quantity in quantities.items():
                    reservation = previous.get(product_id)
                    if reservation is not None and reservation.status in _HOLDING:
                        raise InternalError(
                            f"Order {order_id} already holds product {product_id}"
                        )
                    await self.ledger.reserve(db, product_id, quantity)
                    if reservation is None:
                        reservation = StockReservation(order_id=order_id, product_id=product_id)
                        db.add(reservation)
                    # a released or expired hold is reopened in place
                    reservation.quantity = quantity
                    reservation.status = ReservationStatus.ACTIVE.value
                    reservation.reserved_at = utcnow()
                    reservation.expires_at = expires_at
                    reservation.confirmed_at = None
                    reservation.released_at = None
                    reservations.append(reservation)
                await db.flush()
        except InsufficientStockError as e:
            metrics.record_reservation("insufficient")
            logger.warning(
                "stock_reservation_denied",
                order_id=str(order_id),
                product_id=str(e.product_id),
                requested=e.requested,
                available=e.available,
            )
            raise

        metrics.record_reservation("reserved")
        logger.info(
            "stock_reserved_for_order",
            order_id=str(order_id),
            products=len(reservations),
            expires_at=expires_at.isoformat(),
        )
        return reservations

    async def _active_for_order(self, db: AsyncSession, order_id: uuid.UUID) -> List[StockReservation]:
        stmt = (
            select(StockReservation)
            .where(
                StockReservation.order_id == order_id,
                StockReservation.status == ReservationStatus.ACTIVE.value,
            )
            .order_by(StockReservation.product_id)
            .execution_options(populate_existing=True)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def _terminate(
        self,
        db: AsyncSession,
        reservation: StockReservation,
        target: ReservationStatus,
        notes: Optional[str] = None,
    ) -> bool:
        """
        Move one reservation out of ``active`` and apply its stock effect.

        Returns:
            bool: False if another caller already terminated it
        """
        now = utcnow()
        values: Dict[str, object] = {"status": target.value}
        if target == ReservationStatus.CONFIRMED:
            values["confirmed_at"] = now
        else:
            values["released_at"] = now
        if notes:
            values["notes"] = notes

        claim = (
            update(StockReservation)
            .where(
                StockReservation.id == reservation.id,
                StockReservation.status == ReservationStatus.ACTIVE.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if (await db.execute(claim)).rowcount == 0:
            logger.info(
                "reservation_already_terminated",
                reservation_id=str(reservation.id),
                target=target.value,
            )
            return False

        if target == ReservationStatus.CONFIRMED:
            await self.ledger.confirm(db, reservation.product_id, reservation.quantity)
        else:
            await self.ledger.release(db, reservation.product_id, reservation.quantity)

        reservation.status = target.value
        if target == ReservationStatus.CONFIRMED:
            reservation.confirmed_at = now
        else:
            reservation.released_at = now
        if notes:
            reservation.notes = notes
        # keep the identity map in step with the row we just wrote
        db.expunge(reservation)
        metrics.record_reservation_terminated(target.value)
        return True

    async def confirm_for_order(self, db: AsyncSession, order_id: uuid.UUID) -> int:
        """
        Convert active holds into permanent stock deductions.

        Idempotent: an order without active holds confirms nothing.

        Returns:
            int: Number of reservations confirmed by this call
        """
        confirmed = 0
        for reservation in await self._active_for_order(db, order_id):
            if await self._terminate(db, reservation, ReservationStatus.CONFIRMED):
                confirmed += 1

        logger.info("reservations_confirmed", order_id=str(order_id), count=confirmed)
        return confirmed

    async def secure_for_order(
        self, db: AsyncSession, order_id: uuid.UUID, items: Iterable[ReservationRequest]
    ) -> int:
        """
        Make sure every item of an order ends up as a confirmed deduction.

        Active holds are confirmed. Products whose hold already expired or was
        released are reserved again first, so a late payment or a cash-on-delivery
        confirmation still deducts stock exactly once.

        Returns:
            int: Number of reservations confirmed by this call

        Raises:
            InsufficientStockError: If a lapsed hold cannot be taken again
        """
        current = {r.product_id: r for r in await self.get_reservations(db, order_id)}
        lapsed = [
            item
            for item in items
            if current.get(item.product_id) is None
            or current[item.product_id].status not in _HOLDING
        ]
        if lapsed:
            logger.info("reservations_reacquiring", order_id=str(order_id), products=len(lapsed))
            await self.reserve_for_order(db, order_id, lapsed)
        return await self.confirm_for_order(db, order_id)

    async def get_confirmed(self, db: AsyncSession, order_id: uuid.UUID) -> List[StockReservation]:
        """Reservations of an order that were turned into stock deductions."""
        return [
            r
            for r in await self.get_reservations(db, order_id)
            if r.status == ReservationStatus.CONFIRMED.value
        ]

    async def release_for_order(
        self, db: AsyncSession, order_id: uuid.UUID, reason: Optional[str] = None
    ) -> int:
        """
        Hand active holds back to available stock.

        Safe to call on an order with no active holds.

        Returns:
            int: Number of reservations released by this call
        """
        released = 0
        for reservation in await self._active_for_order(db, order_id):
            if await self._terminate(db, reservation, ReservationStatus.RELEASED, reason):
                released += 1

        logger.info("reservations_released", order_id=str(order_id), count=released, reason=reason)
        return released

    async def has_active_reservations(self, db: AsyncSession, order_id: uuid.UUID) -> bool:
        return bool(await self._active_for_order(db, order_id))

    async def get_reservations(self, db: AsyncSession, order_id: uuid.UUID) -> List[StockReservation]:
        stmt = (
            select(StockReservation)
            .where(StockReservation.order_id == order_id)
            .order_by(StockReservation.reserved_at, StockReservation.product_id)
            .execution_options(populate_existing=True)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def extend_for_order(
        self, db: AsyncSession, order_id: uuid.UUID, minutes: int
    ) -> Optional[datetime]:
        """
        Push back the expiry of an order's active holds.

        The new expiry is ``now + minutes`` unless the holds already run longer.

        Returns:
            Optional[datetime]: New expiry, or None when nothing is held
        """
        active = await self._active_for_order(db, order_id)
        if not active:
            return None

        new_expiry = max(utcnow() + timedelta(minutes=minutes), *(r.expires_at for r in active))
        stmt = (
            update(StockReservation)
            .where(
                StockReservation.order_id == order_id,
                StockReservation.status == ReservationStatus.ACTIVE.value,
            )
            .values(expires_at=new_expiry)
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)
        for reservation in active:
            db.expunge(reservation)

        logger.info(
            "reservations_extended",
            order_id=str(order_id),
            expires_at=new_expiry.isoformat(),
        )
        return new_expiry

    async def expire_stale(
        self, db: AsyncSession, now: Optional[datetime] = None, batch_size: int = 100
    ) -> int:
        """
        Release holds past their expiry.

        Uses the same claim-then-release path as explicit cancellation, so a
        hold released by a concurrent cancel is skipped here.

        Returns:
            int: Number of reservations expired by this call
        """
        cutoff = now or utcnow()
        stmt = (
            select(StockReservation)
            .where(
                StockReservation.status == ReservationStatus.ACTIVE.value,
                StockReservation.expires_at < cutoff,
            )
            .order_by(StockReservation.expires_at)
            .limit(batch_size)
        )
        stale = list((await db.execute(stmt)).scalars().all())

        expired = 0
        for reservation in stale:
            if await self._terminate(db, reservation, ReservationStatus.EXPIRED, "expired"):
                expired += 1
                logger.info(
                    "reservation_expired",
                    reservation_id=str(reservation.id),
                    order_id=str(reservation.order_id),
                    product_id=str(reservation.product_id),
                    quantity=reservation.quantity,
                )
        await self._clear_reserved_flag(db, {r.order_id for r in stale if r.order_id is not None})
        return expired

    async def _clear_reserved_flag(self, db: AsyncSession, order_ids: Iterable[uuid.UUID]) -> None:
        # orders whose last hold just lapsed no longer hold stock
        order_ids = list(order_ids)
        if not order_ids:
            return
        still_held = (
            select(StockReservation.id)
            .where(
                StockReservation.order_id == Order.id,
                StockReservation.status == ReservationStatus.ACTIVE.value,
            )
            .exists()
        )
        stmt = (
            update(Order)
            .where(Order.id.in_(order_ids), Order.inventory_reserved.is_(True), ~still_held)
            .values(inventory_reserved=False, version=Order.version + 1)
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)
