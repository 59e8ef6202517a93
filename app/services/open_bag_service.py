"""Open Bag Service: weight-based stock of sealed units opened for loose sale."""
import logging
from typing import Optional, List, Tuple
from datetime import datetime, timezone
from decimal import Decimal
import uuid

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from app.config import settings
from app.core.enum_utils import get_enum_value, is_status
from app.core.exceptions import (
    ValidationError,
    NotFoundError,
    InsufficientStockError,
    InvalidStateTransitionError,
)
from app.models.product import Product
from app.models.inventory import StockMovementType
from app.models.open_bag import OpenBag, OpenBagStatus
from app.services.stock_ledger_service import StockLedgerService, to_quantity


logger = logging.getLogger(__name__)

WEIGHT_STEP = Decimal("0.001")
OPEN_BAG_REFERENCE = "OPEN_BAG"


def bag_state(bag: OpenBag) -> dict:
    return {
        "id": str(bag.id),
        "status": bag.status,
        "remaining_weight": str(bag.remaining_weight),
        "low_stock_threshold": str(bag.low_stock_threshold),
    }


class OpenBagService:
    """Service for open bag operations."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = StockLedgerService(db)

    async def open_bag(
        self,
        branch_id: uuid.UUID,
        product_id: uuid.UUID,
        original_weight,
        low_stock_threshold=None,
        notes: Optional[str] = None,
        opened_by: Optional[uuid.UUID] = None,
    ) -> OpenBag:
        """
        Open one sealed unit for loose sale.

        Takes one unit out of BranchStock and creates the OPEN bag in the same
        transaction. Only one bag per (branch, product) may be open.
        """
        product = await self.db.get(Product, product_id)
        if not product:
            raise NotFoundError("Product", product_id)
        if not product.is_weighable:
            raise ValidationError(
                f"Product {product.sku} is not sold by weight",
                details={"field": "product_id"},
            )

        weight = to_quantity(original_weight, "original_weight")
        if weight <= 0:
            raise ValidationError("Original weight must be positive", details={"field": "original_weight"})

        if low_stock_threshold is None:
            percent = Decimal(str(settings.OPEN_BAG_LOW_STOCK_PERCENT))
            threshold = (weight * percent / 100).quantize(WEIGHT_STEP)
        else:
            threshold = to_quantity(low_stock_threshold, "low_stock_threshold")
            if threshold < 0 or threshold > weight:
                raise ValidationError(
                    "Low stock threshold must be between 0 and the original weight",
                    details={"field": "low_stock_threshold"},
                )

        # An existing bag is reported before any stock check
        await self._refuse_second_bag(branch_id, product_id)

        bag_id = uuid.uuid4()
        async with self.db.begin_nested():
            # The ledger locks the (branch, product) stock row, so two opens
            # for the same product run one after the other.
            await self.ledger.record_movement(
                branch_id,
                product_id,
                StockMovementType.ADJUSTMENT_MINUS,
                Decimal("-1"),
                reference_type=OPEN_BAG_REFERENCE,
                reference_id=bag_id,
                reason="Sealed bag opened for loose sales",
                performed_by=opened_by,
                notes=notes,
            )

            # Again under the stock row lock, for a concurrent open that got
            # there first.
            await self._refuse_second_bag(branch_id, product_id)

            bag = OpenBag(
                id=bag_id,
                branch_id=branch_id,
                product_id=product_id,
                original_weight=weight,
                remaining_weight=weight,
                low_stock_threshold=threshold,
                status=OpenBagStatus.OPEN.value,
                opened_at=datetime.now(timezone.utc),
                opened_by=opened_by,
                notes=notes,
            )
            self.db.add(bag)
            await self.db.flush()

        await self.db.commit()
        logger.info(f"Opened bag {bag_id} of {product.sku} at branch {branch_id}: {weight} kg")
        return await self.get_bag(bag_id)

    async def deduct(
        self,
        bag_id: uuid.UUID,
        quantity,
        sale_reference: Optional[str] = None,
        performed_by: Optional[uuid.UUID] = None,
    ) -> OpenBag:
        """Take weight out of an open bag. Reaching zero empties the bag."""
        amount = to_quantity(quantity)
        if amount <= 0:
            raise ValidationError("Quantity must be positive", details={"field": "quantity"})

        bag = await self._get_for_update(bag_id)
        if not is_status(bag.status, OpenBagStatus.OPEN):
            raise InvalidStateTransitionError("open bag", bag.status, "deduct from", current_state=bag_state(bag))

        remaining = to_quantity(bag.remaining_weight)
        if amount > remaining:
            raise InsufficientStockError(
                f"Insufficient weight in bag. Available: {remaining}, Requested: {amount}",
                available=remaining,
                requested=amount,
                current_state=bag_state(bag),
            )

        was_low = bag.is_low_stock
        bag.remaining_weight = remaining - amount

        if bag.remaining_weight == 0:
            bag.status = OpenBagStatus.EMPTY.value
            bag.closed_at = datetime.now(timezone.utc)
            bag.closed_by = performed_by
        elif not was_low and bag.is_low_stock:
            logger.warning(
                f"Open bag {bag.id} is low: {bag.remaining_weight} left, threshold {bag.low_stock_threshold}"
            )

        await self.db.commit()
        logger.info(f"Deducted {amount} from bag {bag_id} (sale {sale_reference or '-'}), {bag.remaining_weight} left")
        return await self.get_bag(bag_id)

    async def close(
        self,
        bag_id: uuid.UUID,
        notes: Optional[str] = None,
        closed_by: Optional[uuid.UUID] = None,
    ) -> OpenBag:
        """Write off whatever is left in the bag."""
        bag = await self._get_for_update(bag_id)
        if not is_status(bag.status, OpenBagStatus.OPEN):
            raise InvalidStateTransitionError("open bag", bag.status, "close", current_state=bag_state(bag))

        written_off = bag.remaining_weight
        bag.remaining_weight = Decimal("0")
        bag.status = OpenBagStatus.EMPTY.value
        bag.closed_at = datetime.now(timezone.utc)
        bag.closed_by = closed_by
        if notes:
            bag.notes = f"{bag.notes}\n{notes}" if bag.notes else notes

        await self.db.commit()
        logger.info(f"Closed bag {bag_id}, wrote off {written_off}")
        return await self.get_bag(bag_id)

    async def get_bag(self, bag_id: uuid.UUID) -> OpenBag:
        query = select(OpenBag).options(
            joinedload(OpenBag.product),
            joinedload(OpenBag.branch),
        ).where(OpenBag.id == bag_id).execution_options(populate_existing=True)
        result = await self.db.execute(query)
        bag = result.scalar_one_or_none()
        if not bag:
            raise NotFoundError("Open bag", bag_id)
        return bag

    async def list_bags(
        self,
        branch_id: Optional[uuid.UUID] = None,
        product_id: Optional[uuid.UUID] = None,
        status: Optional[OpenBagStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[OpenBag], int]:
        """Get paginated list of bags."""
        query = select(OpenBag).options(joinedload(OpenBag.product))

        conditions = []
        if branch_id:
            conditions.append(OpenBag.branch_id == branch_id)
        if product_id:
            conditions.append(OpenBag.product_id == product_id)
        if status:
            conditions.append(OpenBag.status == get_enum_value(status))

        if conditions:
            query = query.where(and_(*conditions))

        # Count
        count_query = select(func.count()).select_from(query.subquery())
        total = await self.db.scalar(count_query)

        # Paginate
        query = query.order_by(OpenBag.opened_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(query)

        return result.scalars().unique().all(), total

    async def list_low_stock(self, branch_id: Optional[uuid.UUID] = None) -> List[OpenBag]:
        """OPEN bags at or below their threshold, lowest first."""
        conditions = [
            OpenBag.status == OpenBagStatus.OPEN.value,
            OpenBag.remaining_weight <= OpenBag.low_stock_threshold,
        ]
        if branch_id:
            conditions.append(OpenBag.branch_id == branch_id)

        query = (
            select(OpenBag)
            .options(joinedload(OpenBag.product))
            .where(and_(*conditions))
            .order_by(OpenBag.remaining_weight)
        )
        result = await self.db.execute(query)
        return result.scalars().unique().all()

    async def _find_open_bag(self, branch_id: uuid.UUID, product_id: uuid.UUID) -> Optional[OpenBag]:
        result = await self.db.execute(
            select(OpenBag).where(
                and_(
                    OpenBag.branch_id == branch_id,
                    OpenBag.product_id == product_id,
                    OpenBag.status == OpenBagStatus.OPEN.value,
                )
            )
        )
        return result.scalars().first()

    async def _refuse_second_bag(self, branch_id: uuid.UUID, product_id: uuid.UUID):
        existing = await self._find_open_bag(branch_id, product_id)
        if existing:
            raise ValidationError(
                "An open bag already exists for this product at this branch",
                details={"bag_id": str(existing.id)},
                current_state=bag_state(existing),
                code="BAG_ALREADY_OPEN",
            )

    async def _get_for_update(self, bag_id: uuid.UUID) -> OpenBag:
        result = await self.db.execute(
            select(OpenBag)
            .where(OpenBag.id == bag_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        bag = result.scalar_one_or_none()
        if not bag:
            raise NotFoundError("Open bag", bag_id)
        return bag
