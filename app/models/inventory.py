"""Inventory models: per-branch stock balances and the movement ledger."""
from enum import Enum
from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, ForeignKey, Integer, DateTime, event
from sqlalchemy import UniqueConstraint, Index
from sqlalchemy.orm import relationship
import uuid

from app.core.exceptions import LedgerImmutabilityError
from app.database import Base
from app.db_types import UUIDType, QuantityType


class BranchStock(Base):
    """
    On-hand quantity per product per branch.

    A materialized projection of the movement ledger: ``quantity`` always equals
    the sum of every StockMovement delta for the same (branch, product). Only
    StockLedgerService writes to it. Rows are never deleted; zero is valid.
    """

    __tablename__ = "branch_stock"
    __table_args__ = (
        UniqueConstraint("branch_id", "product_id", name="uq_branch_stock_branch_product"),
    )

    id = Column(UUIDType(), primary_key=True, default=uuid.uuid4)

    branch_id = Column(UUIDType(), ForeignKey("branches.id"), nullable=False, index=True)
    product_id = Column(UUIDType(), ForeignKey("products.id"), nullable=False, index=True)

    # Stock levels
    quantity = Column(QuantityType(), nullable=False, default=0)
    reserved_quantity = Column(QuantityType(), nullable=False, default=0)

    # Shrinkage tracking
    expected_shrinkage_percent = Column(QuantityType(), nullable=False, default=0)
    actual_shrinkage = Column(QuantityType(), nullable=False, default=0)

    # Last physical count
    last_counted_at = Column(DateTime(timezone=True))
    last_counted_quantity = Column(QuantityType())

    # Optimistic lock, bumped on every UPDATE
    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    # Relationships
    branch = relationship("Branch")
    product = relationship("Product")

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<BranchStock {self.branch_id}/{self.product_id} qty={self.quantity}>"


class StockMovementType(str, Enum):
    """Stock movement type enum."""
    SALE = "SALE"
    RETURN = "RETURN"  # Customer return
    PURCHASE = "PURCHASE"  # Goods received from supplier
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    ADJUSTMENT_PLUS = "ADJUSTMENT_PLUS"
    ADJUSTMENT_MINUS = "ADJUSTMENT_MINUS"
    SHRINKAGE = "SHRINKAGE"
    INITIAL = "INITIAL"  # Opening stock
    INVENTORY_COUNT = "INVENTORY_COUNT"  # Physical count correction, either sign


# Movements that take stock out and so may never leave a negative balance
DEDUCTION_TYPES = frozenset({
    StockMovementType.SALE,
    StockMovementType.TRANSFER_OUT,
    StockMovementType.SHRINKAGE,
    StockMovementType.ADJUSTMENT_MINUS,
})

# Movements that put stock in
ADDITION_TYPES = frozenset({
    StockMovementType.RETURN,
    StockMovementType.PURCHASE,
    StockMovementType.TRANSFER_IN,
    StockMovementType.ADJUSTMENT_PLUS,
    StockMovementType.INITIAL,
})

# Movements entered by hand, which must say why
MANUAL_TYPES = frozenset({
    StockMovementType.ADJUSTMENT_PLUS,
    StockMovementType.ADJUSTMENT_MINUS,
    StockMovementType.SHRINKAGE,
})


class ShrinkageReason(str, Enum):
    """Why stock was lost outside of a sale or transfer."""
    SPILLAGE = "SPILLAGE"
    MOISTURE_LOSS = "MOISTURE_LOSS"  # Weight loss of loose goods
    EXPIRED = "EXPIRED"
    DAMAGED = "DAMAGED"
    PEST_DAMAGE = "PEST_DAMAGE"
    THEFT = "THEFT"
    OTHER = "OTHER"


class StockMovement(Base):
    """Stock movement history/ledger. Append-only."""

    __tablename__ = "stock_movements"
    __table_args__ = (
        Index("ix_stock_movements_branch_product_created", "branch_id", "product_id", "created_at"),
    )

    id = Column(UUIDType(), primary_key=True, default=uuid.uuid4)

    # Reference
    movement_number = Column(String(50), unique=True, nullable=False, index=True)
    movement_type = Column(
        String(50), nullable=False, index=True,
        comment="SALE, RETURN, PURCHASE, TRANSFER_OUT, TRANSFER_IN, ADJUSTMENT_PLUS, ADJUSTMENT_MINUS, SHRINKAGE, INITIAL, INVENTORY_COUNT"
    )

    # Location
    branch_id = Column(UUIDType(), ForeignKey("branches.id"), nullable=False, index=True)
    related_branch_id = Column(UUIDType(), ForeignKey("branches.id"))  # Other side of a transfer

    # Product
    product_id = Column(UUIDType(), ForeignKey("products.id"), nullable=False, index=True)

    # Quantity: signed delta, positive for in, negative for out
    quantity = Column(QuantityType(), nullable=False)

    # Stock levels around the movement
    quantity_before = Column(QuantityType(), nullable=False)
    quantity_after = Column(QuantityType(), nullable=False)

    # What caused it
    reference_type = Column(String(50))  # STOCK_TRANSFER, OPEN_BAG, SALE, INVENTORY_COUNT, ...
    reference_id = Column(String(100))
    adjustment_reason = Column(Text)

    # User
    performed_by = Column(UUIDType())

    notes = Column(Text)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    # Relationships
    branch = relationship("Branch", foreign_keys=[branch_id])
    related_branch = relationship("Branch", foreign_keys=[related_branch_id])
    product = relationship("Product")

    def __repr__(self):
        return f"<StockMovement {self.movement_number}>"


@event.listens_for(StockMovement, "before_update")
def _refuse_movement_update(mapper, connection, target):
    raise LedgerImmutabilityError(
        f"Stock movement {target.movement_number} is immutable and cannot be modified",
        details={"movement_id": str(target.id)},
    )


@event.listens_for(StockMovement, "before_delete")
def _refuse_movement_delete(mapper, connection, target):
    raise LedgerImmutabilityError(
        f"Stock movement {target.movement_number} is immutable and cannot be deleted",
        details={"movement_id": str(target.id)},
    )
