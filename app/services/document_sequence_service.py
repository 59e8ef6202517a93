"""
Document Sequence Service for Atomic Number Generation

Uses SELECT FOR UPDATE on the sequence row so concurrent requests never draw
the same number. The increment is flushed, not committed: it becomes durable
with the document that consumed it, and rolls back with it.

USAGE:
    from app.services.document_sequence_service import DocumentSequenceService

    async def create_transfer(db: AsyncSession):
        service = DocumentSequenceService(db)
        number = await service.get_next_number("TRF")
        # Returns: TRF-2026-00001
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.document_sequence import DocumentSequence


DEFAULT_PADDING = 5
DEFAULT_SEPARATOR = "-"


class DocumentSequenceService:
    """Service for generating atomic document numbers."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_next_number(self, sequence_key: str, period: Optional[str] = None) -> str:
        """
        Get next document number with atomic increment.

        Args:
            sequence_key: Prefix of the document number, e.g. TRF
            period: Optional period string. Current year if not provided.

        Returns:
            Formatted document number, e.g. TRF-2026-00001
        """
        key = sequence_key.upper()
        if not period:
            period = DocumentSequence.current_period()

        sequence = await self._get_or_create_sequence(key, period)
        doc_number = sequence.get_next_number()
        await self.db.flush()
        return doc_number

    async def get_current_number(self, sequence_key: str, period: Optional[str] = None) -> int:
        """Get the last issued number (0 if none yet)."""
        if not period:
            period = DocumentSequence.current_period()

        result = await self.db.execute(
            select(DocumentSequence.current_number)
            .where(
                DocumentSequence.sequence_key == sequence_key.upper(),
                DocumentSequence.period == period,
            )
        )
        return result.scalar_one_or_none() or 0

    async def _get_or_create_sequence(self, sequence_key: str, period: str) -> DocumentSequence:
        """
        Get existing sequence with row lock, or create new one.

        Returns:
            DocumentSequence record (locked for update)
        """
        result = await self.db.execute(
            select(DocumentSequence)
            .where(
                DocumentSequence.sequence_key == sequence_key,
                DocumentSequence.period == period,
            )
            .with_for_update()
        )
        sequence = result.scalar_one_or_none()

        if sequence:
            return sequence

        sequence = DocumentSequence(
            sequence_key=sequence_key,
            period=period,
            current_number=0,
            padding_length=DEFAULT_PADDING,
            separator=DEFAULT_SEPARATOR,
        )
        self.db.add(sequence)
        await self.db.flush()

        # Re-fetch with lock to ensure atomicity
        result = await self.db.execute(
            select(DocumentSequence)
            .where(DocumentSequence.id == sequence.id)
            .with_for_update()
        )
        return result.scalar_one()
