import uuid
from datetime import datetime, timezone
from typing import Optional
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType, QuantityType


class Product(Base):
    """
    Catalog product as seen by the inventory ledger.

    The catalog itself is managed elsewhere; this table carries only what stock
    keeping needs. The low-stock minimum lives here rather than on BranchStock.
    """
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(),
        primary_key=True,
        default=uuid.uuid4
    )

    # Basic Info
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)

    # Stock keeping
    track_stock: Mapped[bool] = mapped_column(Boolean, default=True)
    minimum_stock: Mapped[Optional[Decimal]] = mapped_column(QuantityType(), nullable=True)

    # Weighable goods can be opened and sold loose
    is_weighable: Mapped[bool] = mapped_column(Boolean, default=False)
    weight_size: Mapped[Optional[Decimal]] = mapped_column(
        QuantityType(),
        nullable=True,
        comment="Nominal weight of one sealed unit (kg)"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Product {self.sku}>"
