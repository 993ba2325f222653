"""
Inventory ledger with atomic stock primitives.

Each primitive is a single conditional UPDATE, so concurrent callers on the
same product are linearized by the database: the WHERE clause re-checks the
counters at write time and a zero row count means the precondition failed.
"""
import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import Update, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.errors import InsufficientStockError, InternalError
from orderflow.database.models import InventoryItem, utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StockLevel:
    """Stock counters for one product."""

    product_id: uuid.UUID
    on_hand: int
    reserved: int

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved

    def as_dict(self) -> dict:
        return {
            "product_id": str(self.product_id),
            "on_hand": self.on_hand,
            "reserved": self.reserved,
            "available": self.available,
        }


class InventoryLedger:
    """Atomic reserve/release/confirm/restore operations on inventory rows."""

    async def check_availability(self, db: AsyncSession, product_id: uuid.UUID) -> StockLevel:
        """
        Read current counters for a product.

        A product without an inventory row has no stock.
        """
        stmt = select(InventoryItem.quantity_on_hand, InventoryItem.quantity_reserved).where(
            InventoryItem.product_id == product_id
        )
        row = (await db.execute(stmt)).one_or_none()
        if row is None:
            return StockLevel(product_id=product_id, on_hand=0, reserved=0)
        return StockLevel(product_id=product_id, on_hand=row[0], reserved=row[1])

    async def _apply(self, db: AsyncSession, stmt: Update) -> int:
        result = await db.execute(
            stmt.values(updated_at=utcnow()).execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def reserve(self, db: AsyncSession, product_id: uuid.UUID, quantity: int) -> StockLevel:
        """
        Move ``quantity`` from available to reserved.

        Raises:
            InsufficientStockError: If fewer than ``quantity`` units are available
        """
        stmt = update(InventoryItem).where(
            InventoryItem.product_id == product_id,
            InventoryItem.quantity_on_hand - InventoryItem.quantity_reserved >= quantity,
        ).values(quantity_reserved=InventoryItem.quantity_reserved + quantity)

        if await self._apply(db, stmt) == 0:
            level = await self.check_availability(db, product_id)
            raise InsufficientStockError(product_id, quantity, level.available)
        return await self.check_availability(db, product_id)

    async def release(self, db: AsyncSession, product_id: uuid.UUID, quantity: int) -> StockLevel:
        """Return ``quantity`` reserved units to available stock."""
        stmt = update(InventoryItem).where(
            InventoryItem.product_id == product_id,
            InventoryItem.quantity_reserved >= quantity,
        ).values(quantity_reserved=InventoryItem.quantity_reserved - quantity)

        if await self._apply(db, stmt) == 0:
            logger.error("inventory_release_underflow", product_id=str(product_id), quantity=quantity)
            raise InternalError(f"Reserved stock for {product_id} is below {quantity}")
        return await self.check_availability(db, product_id)

    async def confirm(self, db: AsyncSession, product_id: uuid.UUID, quantity: int) -> StockLevel:
        """Turn ``quantity`` reserved units into a permanent on-hand deduction."""
        stmt = update(InventoryItem).where(
            InventoryItem.product_id == product_id,
            InventoryItem.quantity_reserved >= quantity,
        ).values(
            quantity_reserved=InventoryItem.quantity_reserved - quantity,
            quantity_on_hand=InventoryItem.quantity_on_hand - quantity,
        )

        if await self._apply(db, stmt) == 0:
            logger.error("inventory_confirm_underflow", product_id=str(product_id), quantity=quantity)
            raise InternalError(f"Reserved stock for {product_id} is below {quantity}")
        return await self.check_availability(db, product_id)

    async def restore(self, db: AsyncSession, product_id: uuid.UUID, quantity: int) -> StockLevel:
        """Put ``quantity`` previously deducted units back on hand."""
        stmt = update(InventoryItem).where(InventoryItem.product_id == product_id).values(
            quantity_on_hand=InventoryItem.quantity_on_hand + quantity
        )

        if await self._apply(db, stmt) == 0:
            raise InternalError(f"No inventory record for product {product_id}")
        return await self.check_availability(db, product_id)
