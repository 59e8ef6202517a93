"""Open bag schemas for API requests/responses."""
from pydantic import Field

from app.schemas.base import BaseResponseSchema, BaseCreateSchema, PositiveQuantity, NonNegativeQuantity
from typing import Optional
from datetime import datetime
from decimal import Decimal
import uuid

from app.models.open_bag import OpenBag


class OpenBagCreate(BaseCreateSchema):
    """Open a sealed unit. Threshold defaults to a percentage of the weight."""
    branch_id: uuid.UUID
    product_id: uuid.UUID
    original_weight: PositiveQuantity
    low_stock_threshold: Optional[NonNegativeQuantity] = None
    notes: Optional[str] = None


class OpenBagDeduct(BaseCreateSchema):
    quantity: PositiveQuantity
    sale_reference: Optional[str] = Field(None, max_length=100)


class OpenBagClose(BaseCreateSchema):
    notes: Optional[str] = None


class OpenBagResponse(BaseResponseSchema):
    """Open bag response schema."""
    id: uuid.UUID
    branch_id: uuid.UUID
    product_id: uuid.UUID
    product_name: Optional[str] = None
    product_sku: Optional[str] = None
    original_weight: Decimal
    remaining_weight: Decimal
    low_stock_threshold: Decimal
    status: str
    is_low_stock: bool
    opened_at: datetime
    opened_by: Optional[uuid.UUID] = None
    closed_at: Optional[datetime] = None
    closed_by: Optional[uuid.UUID] = None
    notes: Optional[str] = None

    @classmethod
    def from_bag(cls, bag: OpenBag) -> "OpenBagResponse":
        response = cls.model_validate(bag)
        product = bag.__dict__.get("product")
        if product is not None:
            response.product_name = product.name
            response.product_sku = product.sku
        return response
