"""Stock Transfer model for branch-to-branch movements."""
from enum import Enum
from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, ForeignKey, Integer, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
import uuid

from app.database import Base
from app.db_types import UUIDType, QuantityType


class TransferStatus(str, Enum):
    """Transfer status enum."""
    PENDING = "PENDING"  # Requested, no stock touched
    IN_TRANSIT = "IN_TRANSIT"  # Approved and shipped: debited at source, not yet credited
    RECEIVED = "RECEIVED"  # Credited at destination
    CANCELLED = "CANCELLED"


# Forward-only: no skipping, no re-entry
ALLOWED_TRANSITIONS = {
    TransferStatus.PENDING: frozenset({TransferStatus.IN_TRANSIT, TransferStatus.CANCELLED}),
    TransferStatus.IN_TRANSIT: frozenset({TransferStatus.RECEIVED, TransferStatus.CANCELLED}),
    TransferStatus.RECEIVED: frozenset(),
    TransferStatus.CANCELLED: frozenset(),
}


class StockTransfer(Base):
    """Stock transfer between branches."""

    __tablename__ = "stock_transfers"

    id = Column(UUIDType(), primary_key=True, default=uuid.uuid4)

    # Transfer identification
    transfer_number = Column(String(50), unique=True, nullable=False, index=True)
    status = Column(String(50), default=TransferStatus.PENDING.value, nullable=False, index=True)

    # Branches
    source_branch_id = Column(UUIDType(), ForeignKey("branches.id"), nullable=False, index=True)
    destination_branch_id = Column(UUIDType(), ForeignKey("branches.id"), nullable=False, index=True)

    # Users involved
    requested_by = Column(UUIDType())
    approved_by = Column(UUIDType())
    shipped_by = Column(UUIDType())
    received_by = Column(UUIDType())
    cancelled_by = Column(UUIDType())

    # Dates
    requested_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    approved_at = Column(DateTime(timezone=True))
    shipped_at = Column(DateTime(timezone=True))
    received_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))

    cancellation_reason = Column(Text)

    # Totals
    total_items = Column(Integer, default=0)
    total_requested_quantity = Column(QuantityType(), default=0)

    notes = Column(Text)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    # Relationships
    source_branch = relationship("Branch", foreign_keys=[source_branch_id])
    destination_branch = relationship("Branch", foreign_keys=[destination_branch_id])
    items = relationship(
        "StockTransferItem",
        back_populates="transfer",
        cascade="all, delete-orphan",
        order_by="StockTransferItem.created_at",
    )

    @property
    def has_variance(self) -> bool:
        return any(item.variance_quantity for item in self.items)

    def can_transition_to(self, new_status: TransferStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[TransferStatus(self.status)]

    def __repr__(self):
        return f"<StockTransfer {self.transfer_number}>"


class StockTransferItem(Base):
    """Items in a stock transfer."""

    __tablename__ = "stock_transfer_items"
    __table_args__ = (
        UniqueConstraint("transfer_id", "product_id", name="uq_transfer_item_product"),
    )

    id = Column(UUIDType(), primary_key=True, default=uuid.uuid4)

    transfer_id = Column(UUIDType(), ForeignKey("stock_transfers.id"), nullable=False, index=True)

    # Product
    product_id = Column(UUIDType(), ForeignKey("products.id"), nullable=False)

    # Quantities
    requested_quantity = Column(QuantityType(), nullable=False)
    shipped_quantity = Column(QuantityType())  # Set once at approval, fixed afterwards
    received_quantity = Column(QuantityType())  # Set at receipt
    variance_quantity = Column(QuantityType())  # received - shipped, flagged not corrected

    notes = Column(Text)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    transfer = relationship("StockTransfer", back_populates="items")
    product = relationship("Product")

    def __repr__(self):
        return f"<StockTransferItem {self.id}>"
