"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that read from ORM models (`from_attributes=True`)
MUST inherit from BaseResponseSchema; request bodies inherit from
BaseCreateSchema.

Quantities are Decimal end to end and serialize as strings in JSON, so
fractional weights never pick up float noise.
"""

from decimal import Decimal
from typing import Annotated, Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models.

    Usage:
        class BranchStockResponse(BaseResponseSchema):
            id: UUID
            quantity: Decimal
            product_name: Optional[str] = None
    """
    model_config = ConfigDict(
        from_attributes=True,
        # Allow population by field name or alias
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.

    These schemas accept string UUIDs from the client and convert to UUID objects.
    """
    model_config = ConfigDict(
        # Allow extra fields to be ignored (forward compatibility)
        extra='ignore',
    )


# Type aliases for common patterns
OptionalUUID = Optional[UUID]
PositiveQuantity = Annotated[Decimal, Field(gt=0, max_digits=12, decimal_places=3)]
NonNegativeQuantity = Annotated[Decimal, Field(ge=0, max_digits=12, decimal_places=3)]
SignedQuantity = Annotated[Decimal, Field(max_digits=12, decimal_places=3)]
