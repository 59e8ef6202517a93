"""Stock Ledger Service: the single write path for branch stock balances.

Every change to BranchStock.quantity goes through ``record_movement``, which
updates the balance and appends exactly one StockMovement in the same
transaction. Transfers, open bags and inventory counts call it; nothing else
writes quantities.
"""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Tuple

from sqlalchemy import select, func, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload
from sqlalchemy.orm.exc import StaleDataError

from app.core.enum_utils import get_enum_value, to_enum
from app.core.exceptions import (
    ValidationError,
    NotFoundError,
    InsufficientStockError,
    ConcurrencyConflictError,
)
from app.models.branch import Branch
from app.models.product import Product
from app.models.inventory import (
    BranchStock,
    StockMovement,
    StockMovementType,
    ShrinkageReason,
    DEDUCTION_TYPES,
    ADDITION_TYPES,
    MANUAL_TYPES,
)


logger = logging.getLogger(__name__)

ZERO = Decimal("0")
QUANTITY_STEP = Decimal("0.001")
MAX_QUANTITY = Decimal("999999999.999")

# Lost-update conflicts are retried once with a fresh read, then reported
LEDGER_CONFLICT_RETRIES = 1

# Movement types collaborators may post directly (sale completion, returns,
# goods receipt, opening stock). Transfers, manual corrections and counts
# have their own entry points.
EXTERNAL_TYPES = frozenset({
    StockMovementType.SALE,
    StockMovementType.RETURN,
    StockMovementType.PURCHASE,
    StockMovementType.INITIAL,
})


def to_quantity(value, field: str = "quantity") -> Decimal:
    """Coerce a quantity to Decimal. Floats go through str to avoid binary noise."""
    if value is None:
        raise ValidationError(f"{field} is required", details={"field": field})
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} must be a number", details={"field": field})
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number", details={"field": field})

    # Quantity columns are Numeric(12, 3); anything finer would be rounded
    # differently on the balance and on the movement row.
    if abs(result) > MAX_QUANTITY:
        raise ValidationError(f"{field} is out of range", details={"field": field, "value": str(value)})
    if result.quantize(QUANTITY_STEP) != result:
        raise ValidationError(
            f"{field} supports at most 3 decimal places",
            details={"field": field, "value": str(value)},
        )
    return result


def stock_state(stock: Optional[BranchStock], branch_id=None, product_id=None) -> dict:
    """Authoritative snapshot of a stock row, attached to rejected operations."""
    if stock is None:
        return {
            "branch_id": str(branch_id),
            "product_id": str(product_id),
            "quantity": "0",
            "reserved_quantity": "0",
        }
    return {
        "branch_id": str(stock.branch_id),
        "product_id": str(stock.product_id),
        "quantity": str(stock.quantity),
        "reserved_quantity": str(stock.reserved_quantity or ZERO),
    }


class StockLedgerService:
    """Service for branch stock balances and the movement ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== WRITE PATH ====================

    async def record_movement(
        self,
        branch_id: uuid.UUID,
        product_id: uuid.UUID,
        movement_type: StockMovementType,
        quantity,
        *,
        reference_type: Optional[str] = None,
        reference_id=None,
        reason: Optional[str] = None,
        related_branch_id: Optional[uuid.UUID] = None,
        performed_by: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
    ) -> Tuple[BranchStock, StockMovement]:
        """
        Apply a signed quantity delta to one (branch, product) balance.

        Updates BranchStock and inserts one StockMovement atomically, inside a
        SAVEPOINT of the caller's transaction. Does not commit.

        Raises:
            ValidationError: wrong sign for the movement type, zero delta,
                or missing reason on a manual type.
            NotFoundError: first movement for an unknown branch or product.
            InsufficientStockError: a deduction would leave a negative balance.
            ConcurrencyConflictError: the balance changed under us twice.
        """
        movement_type = to_enum(get_enum_value(movement_type), StockMovementType)
        if movement_type is None:
            raise ValidationError("Unknown movement type", details={"field": "movement_type"})
        delta = to_quantity(quantity)
        self._validate_movement(movement_type, delta, reason)

        attempts = LEDGER_CONFLICT_RETRIES + 1
        for attempt in range(1, attempts + 1):
            try:
                async with self.db.begin_nested():
                    return await self._apply_movement(
                        branch_id,
                        product_id,
                        movement_type,
                        delta,
                        reference_type=reference_type,
                        reference_id=reference_id,
                        reason=reason,
                        related_branch_id=related_branch_id,
                        performed_by=performed_by,
                        notes=notes,
                    )
            except (StaleDataError, IntegrityError) as e:
                if attempt >= attempts:
                    logger.error(
                        f"Concurrent update on stock {branch_id}/{product_id} "
                        f"({movement_type.value} {delta}) persisted after {attempts} attempts"
                    )
                    raise ConcurrencyConflictError(
                        "Stock balance changed concurrently, please retry",
                        details={"branch_id": str(branch_id), "product_id": str(product_id)},
                    ) from e
                logger.warning(
                    f"Lost update detected on stock {branch_id}/{product_id}, retrying with a fresh read"
                )

    def _validate_movement(self, movement_type: StockMovementType, delta: Decimal, reason: Optional[str]):
        if delta == 0:
            raise ValidationError("Movement quantity cannot be zero", details={"field": "quantity"})
        if movement_type in DEDUCTION_TYPES and delta > 0:
            raise ValidationError(
                f"{movement_type.value} movements must have a negative quantity",
                details={"field": "quantity"},
            )
        if movement_type in ADDITION_TYPES and delta < 0:
            raise ValidationError(
                f"{movement_type.value} movements must have a positive quantity",
                details={"field": "quantity"},
            )
        if movement_type in MANUAL_TYPES and not (reason and reason.strip()):
            raise ValidationError(
                f"A reason is required for {movement_type.value} movements",
                details={"field": "reason"},
            )

    async def _apply_movement(
        self,
        branch_id: uuid.UUID,
        product_id: uuid.UUID,
        movement_type: StockMovementType,
        delta: Decimal,
        *,
        reference_type: Optional[str],
        reference_id,
        reason: Optional[str],
        related_branch_id: Optional[uuid.UUID],
        performed_by: Optional[uuid.UUID],
        notes: Optional[str],
    ) -> Tuple[BranchStock, StockMovement]:
        stock = await self.lock_stock(branch_id, product_id)

        # Read under the row lock, in the same transaction as the write
        quantity_before = to_quantity(stock.quantity)
        quantity_after = quantity_before + delta

        if quantity_after < 0 and (
            movement_type in DEDUCTION_TYPES or movement_type == StockMovementType.INVENTORY_COUNT
        ):
            raise InsufficientStockError(
                f"Insufficient stock. Available: {quantity_before}, Requested: {-delta}",
                available=quantity_before,
                requested=-delta,
                current_state=stock_state(stock),
            )

        now = datetime.now(timezone.utc)
        stock.quantity = quantity_after
        if movement_type == StockMovementType.SHRINKAGE:
            stock.actual_shrinkage = to_quantity(stock.actual_shrinkage or ZERO) - delta
        elif movement_type == StockMovementType.INVENTORY_COUNT:
            stock.last_counted_at = now
            stock.last_counted_quantity = quantity_after

        movement = StockMovement(
            movement_number=self._generate_movement_number(now),
            movement_type=movement_type.value,
            branch_id=branch_id,
            related_branch_id=related_branch_id,
            product_id=product_id,
            quantity=delta,
            quantity_before=quantity_before,
            quantity_after=quantity_after,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
            adjustment_reason=reason,
            performed_by=performed_by,
            notes=notes,
            created_at=now,
        )
        self.db.add(movement)

        # Flush here so a stale version surfaces inside the savepoint
        await self.db.flush()

        logger.info(
            f"{movement.movement_number} {movement_type.value} {delta} on {branch_id}/{product_id}: "
            f"{quantity_before} -> {quantity_after}"
        )
        return stock, movement

    async def _select_for_update(self, branch_id: uuid.UUID, product_id: uuid.UUID) -> Optional[BranchStock]:
        """Read a stock row with an exclusive row lock, bypassing the identity map."""
        result = await self.db.execute(
            select(BranchStock)
            .where(
                and_(
                    BranchStock.branch_id == branch_id,
                    BranchStock.product_id == product_id,
                )
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def lock_stock(self, branch_id: uuid.UUID, product_id: uuid.UUID) -> BranchStock:
        """Lock the stock row for the rest of the transaction, creating a zero row if needed."""
        stock = await self._select_for_update(branch_id, product_id)
        if stock is not None:
            return stock

        await self._ensure_branch_and_product(branch_id, product_id)

        # A concurrent creator makes this flush fail on the unique constraint;
        # record_movement retries and then finds the row.
        stock = BranchStock(
            branch_id=branch_id,
            product_id=product_id,
            quantity=ZERO,
            reserved_quantity=ZERO,
            expected_shrinkage_percent=ZERO,
            actual_shrinkage=ZERO,
        )
        self.db.add(stock)
        await self.db.flush()
        return stock

    async def _ensure_branch_and_product(self, branch_id: uuid.UUID, product_id: uuid.UUID):
        if await self.db.get(Branch, branch_id) is None:
            raise NotFoundError("Branch", branch_id)
        if await self.db.get(Product, product_id) is None:
            raise NotFoundError("Product", product_id)

    def _generate_movement_number(self, now: datetime) -> str:
        """Generate unique movement number."""
        return f"MOV-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:12].upper()}"

    # ==================== OPERATIONS ====================

    async def adjust_stock(
        self,
        branch_id: uuid.UUID,
        product_id: uuid.UUID,
        quantity,
        reason: str,
        performed_by: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
    ) -> Tuple[BranchStock, StockMovement]:
        """Manual correction by a signed delta."""
        delta = to_quantity(quantity)
        movement_type = (
            StockMovementType.ADJUSTMENT_PLUS if delta > 0 else StockMovementType.ADJUSTMENT_MINUS
        )
        stock, movement = await self.record_movement(
            branch_id,
            product_id,
            movement_type,
            delta,
            reference_type="MANUAL_ADJUSTMENT",
            reason=reason,
            performed_by=performed_by,
            notes=notes,
        )
        await self.db.commit()
        return stock, movement

    async def record_shrinkage(
        self,
        branch_id: uuid.UUID,
        product_id: uuid.UUID,
        quantity,
        reason: ShrinkageReason,
        performed_by: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
    ) -> Tuple[BranchStock, StockMovement]:
        """Record lost stock. ``quantity`` is the positive amount lost."""
        lost = to_quantity(quantity)
        if lost <= 0:
            raise ValidationError("Shrinkage quantity must be positive", details={"field": "quantity"})
        reason_value = get_enum_value(reason)
        if to_enum(reason_value, ShrinkageReason) is None:
            raise ValidationError("Unknown shrinkage reason", details={"field": "reason"})

        stock, movement = await self.record_movement(
            branch_id,
            product_id,
            StockMovementType.SHRINKAGE,
            -lost,
            reference_type="SHRINKAGE",
            reason=reason_value,
            performed_by=performed_by,
            notes=notes,
        )
        await self.db.commit()
        return stock, movement

    async def record_external_movement(
        self,
        branch_id: uuid.UUID,
        product_id: uuid.UUID,
        movement_type: StockMovementType,
        quantity,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        performed_by: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
    ) -> Tuple[BranchStock, StockMovement]:
        """
        Post a movement requested by another subsystem.

        ``quantity`` is the positive magnitude; the sign follows the type
        (SALE takes stock out, RETURN/PURCHASE/INITIAL put it in).
        """
        movement_type = to_enum(get_enum_value(movement_type), StockMovementType)
        if movement_type not in EXTERNAL_TYPES:
            raise ValidationError(
                "Only SALE, RETURN, PURCHASE and INITIAL movements can be posted directly",
                details={"field": "movement_type"},
            )
        magnitude = to_quantity(quantity)
        if magnitude <= 0:
            raise ValidationError("Quantity must be positive", details={"field": "quantity"})
        delta = -magnitude if movement_type in DEDUCTION_TYPES else magnitude

        stock, movement = await self.record_movement(
            branch_id,
            product_id,
            movement_type,
            delta,
            reference_type=reference_type or movement_type.value,
            reference_id=reference_id,
            performed_by=performed_by,
            notes=notes,
        )
        await self.db.commit()
        return stock, movement

    async def set_expected_shrinkage(
        self,
        branch_id: uuid.UUID,
        product_id: uuid.UUID,
        percent,
    ) -> BranchStock:
        """Set the tolerated shrinkage percentage for a stock row."""
        value = to_quantity(percent, "expected_shrinkage_percent")
        if value < 0 or value > 100:
            raise ValidationError(
                "Expected shrinkage must be between 0 and 100 percent",
                details={"field": "expected_shrinkage_percent"},
            )
        stock = await self.lock_stock(branch_id, product_id)
        stock.expected_shrinkage_percent = value
        await self.db.commit()
        return stock

    async def touch_counted(
        self,
        branch_id: uuid.UUID,
        product_id: uuid.UUID,
        counted_quantity: Decimal,
    ) -> BranchStock:
        """Stamp a physical count that matched the balance. No movement, no commit."""
        stock = await self.lock_stock(branch_id, product_id)
        stock.last_counted_at = datetime.now(timezone.utc)
        stock.last_counted_quantity = counted_quantity
        await self.db.flush()
        return stock

    # ==================== READ PATH ====================

    async def get_stock(self, branch_id: uuid.UUID, product_id: uuid.UUID) -> BranchStock:
        """Get one stock row with product info."""
        query = select(BranchStock).options(
            joinedload(BranchStock.product),
        ).where(
            and_(
                BranchStock.branch_id == branch_id,
                BranchStock.product_id == product_id,
            )
        )
        result = await self.db.execute(query)
        stock = result.scalar_one_or_none()
        if stock is None:
            raise NotFoundError("Branch stock", f"{branch_id}/{product_id}")
        return stock

    async def get_quantity(self, branch_id: uuid.UUID, product_id: uuid.UUID) -> Decimal:
        """Current balance, zero if the product was never stocked at the branch."""
        result = await self.db.scalar(
            select(BranchStock.quantity).where(
                and_(
                    BranchStock.branch_id == branch_id,
                    BranchStock.product_id == product_id,
                )
            )
        )
        return to_quantity(result) if result is not None else ZERO

    async def get_branch_stock(
        self,
        branch_id: uuid.UUID,
        search: Optional[str] = None,
        low_stock_only: bool = False,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[BranchStock], int]:
        """Get paginated stock of one branch."""
        query = select(BranchStock).join(Product, BranchStock.product_id == Product.id).options(
            joinedload(BranchStock.product),
        )

        conditions = [BranchStock.branch_id == branch_id]
        if search:
            conditions.append(
                or_(
                    Product.name.ilike(f"%{search}%"),
                    Product.sku.ilike(f"%{search}%"),
                )
            )
        if low_stock_only:
            conditions.append(self._low_stock_condition())

        query = query.where(and_(*conditions))

        # Count
        count_query = select(func.count()).select_from(query.subquery())
        total = await self.db.scalar(count_query)

        # Paginate
        query = query.order_by(Product.name).offset(skip).limit(limit)
        result = await self.db.execute(query)

        return result.scalars().unique().all(), total

    async def get_product_stock(self, product_id: uuid.UUID) -> List[BranchStock]:
        """Stock of one product at every branch that has a row for it."""
        if await self.db.get(Product, product_id) is None:
            raise NotFoundError("Product", product_id)

        query = (
            select(BranchStock)
            .join(Branch, BranchStock.branch_id == Branch.id)
            .options(
                joinedload(BranchStock.product),
                joinedload(BranchStock.branch),
            )
            .where(BranchStock.product_id == product_id)
            .order_by(Branch.name)
        )
        result = await self.db.execute(query)
        return result.scalars().unique().all()

    async def list_low_stock(self, branch_id: Optional[uuid.UUID] = None) -> List[BranchStock]:
        """
        Stock rows at or below the product's configured minimum.

        The minimum is carried on the product, not on the stock row.
        """
        query = select(BranchStock).join(Product, BranchStock.product_id == Product.id).options(
            joinedload(BranchStock.product),
        )
        conditions = [self._low_stock_condition()]
        if branch_id:
            conditions.append(BranchStock.branch_id == branch_id)

        query = query.where(and_(*conditions)).order_by(BranchStock.quantity)
        result = await self.db.execute(query)
        return result.scalars().unique().all()

    @staticmethod
    def _low_stock_condition():
        return and_(
            Product.track_stock.is_(True),
            Product.minimum_stock.isnot(None),
            BranchStock.quantity <= Product.minimum_stock,
        )

    async def list_movements(
        self,
        branch_id: Optional[uuid.UUID] = None,
        product_id: Optional[uuid.UUID] = None,
        movement_type: Optional[StockMovementType] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[StockMovement], int]:
        """Get stock movement history, newest first."""
        query = select(StockMovement).options(
            joinedload(StockMovement.product),
        )

        conditions = []
        if branch_id:
            conditions.append(StockMovement.branch_id == branch_id)
        if product_id:
            conditions.append(StockMovement.product_id == product_id)
        if movement_type:
            conditions.append(StockMovement.movement_type == get_enum_value(movement_type))
        if date_from:
            conditions.append(StockMovement.created_at >= date_from)
        if date_to:
            conditions.append(StockMovement.created_at <= date_to)

        if conditions:
            query = query.where(and_(*conditions))

        # Count
        count_query = select(func.count()).select_from(query.subquery())
        total = await self.db.scalar(count_query)

        # Paginate
        query = query.order_by(StockMovement.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(query)

        return result.scalars().unique().all(), total

    async def verify_ledger(self, branch_id: uuid.UUID, product_id: uuid.UUID) -> dict:
        """Replay the movement ledger and compare it with the stored balance."""
        quantity = await self.get_quantity(branch_id, product_id)

        row = (
            await self.db.execute(
                select(
                    func.coalesce(func.sum(StockMovement.quantity), 0),
                    func.count(StockMovement.id),
                ).where(
                    and_(
                        StockMovement.branch_id == branch_id,
                        StockMovement.product_id == product_id,
                    )
                )
            )
        ).one()
        ledger_total = to_quantity(row[0])

        return {
            "branch_id": branch_id,
            "product_id": product_id,
            "quantity": quantity,
            "ledger_total": ledger_total,
            "movement_count": row[1],
            "consistent": quantity == ledger_total,
        }
