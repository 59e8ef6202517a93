"""
Document Sequence Model for Atomic Number Generation

Transfer numbers must be unique and human-readable, and two transfers created
at the same moment must never draw the same number. One row per
(sequence key, period) holds the last number issued; it is read with
SELECT ... FOR UPDATE before incrementing.

FORMAT:
    {PREFIX}-{PERIOD}-{SEQUENCE}    e.g. TRF-2026-00042
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType


class DocumentSequence(Base):
    """
    Document sequence management for atomic number generation.

    Example:
        sequence_key = "TRF"
        period = "2026"
        current_number = 41
        → Next number: TRF-2026-00042
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        UniqueConstraint(
            "sequence_key", "period",
            name="uq_document_sequence_key_period"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(),
        primary_key=True,
        default=uuid.uuid4
    )

    sequence_key: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        index=True
    )
    period: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="Calendar year the numbers belong to"
    )

    # Sequence Counter
    current_number: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Last used sequence number"
    )

    # Formatting
    padding_length: Mapped[int] = mapped_column(
        Integer,
        default=5,
        comment="Zero padding for sequence (5 = 00001)"
    )
    separator: Mapped[str] = mapped_column(
        String(5),
        default="-",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def get_next_number(self) -> str:
        """
        Generate next document number.

        NOTE: This method increments current_number but does NOT
        commit to database. The caller must handle the transaction.
        """
        self.current_number += 1
        seq = str(self.current_number).zfill(self.padding_length)
        sep = self.separator
        return f"{self.sequence_key}{sep}{self.period}{sep}{seq}"

    @staticmethod
    def current_period() -> str:
        return str(datetime.now(timezone.utc).year)
