"""Open bag model: weight-based sub-inventory of a sealed unit opened for loose sale."""
from enum import Enum
from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, ForeignKey, DateTime, Index
from sqlalchemy.orm import relationship
import uuid

from app.database import Base
from app.db_types import UUIDType, QuantityType


class OpenBagStatus(str, Enum):
    """Open bag status enum."""
    OPEN = "OPEN"
    EMPTY = "EMPTY"  # Depleted or written off; remaining_weight is 0


class OpenBag(Base):
    """
    One physically opened sealed unit.

    0 <= remaining_weight <= original_weight, never increasing while OPEN.
    At most one OPEN bag per (branch, product).
    """

    __tablename__ = "open_bags"
    __table_args__ = (
        Index("ix_open_bags_branch_product_status", "branch_id", "product_id", "status"),
    )

    id = Column(UUIDType(), primary_key=True, default=uuid.uuid4)

    branch_id = Column(UUIDType(), ForeignKey("branches.id"), nullable=False, index=True)
    product_id = Column(UUIDType(), ForeignKey("products.id"), nullable=False, index=True)

    # Weights (kg)
    original_weight = Column(QuantityType(), nullable=False)
    remaining_weight = Column(QuantityType(), nullable=False)
    low_stock_threshold = Column(QuantityType(), nullable=False)

    status = Column(String(20), default=OpenBagStatus.OPEN.value, nullable=False, index=True)

    opened_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    opened_by = Column(UUIDType())
    closed_at = Column(DateTime(timezone=True))
    closed_by = Column(UUIDType())

    notes = Column(Text)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    # Relationships
    branch = relationship("Branch")
    product = relationship("Product")

    @property
    def is_low_stock(self) -> bool:
        return self.status == OpenBagStatus.OPEN.value and self.remaining_weight <= self.low_stock_threshold

    def __repr__(self):
        return f"<OpenBag {self.id} {self.remaining_weight}/{self.original_weight}>"
