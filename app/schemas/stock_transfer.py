"""Stock Transfer schemas for API requests/responses."""
from pydantic import BaseModel, Field, AliasChoices

from app.schemas.base import BaseResponseSchema, BaseCreateSchema, PositiveQuantity, NonNegativeQuantity
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
import uuid

from app.models.stock_transfer import StockTransfer, StockTransferItem


# ==================== TRANSFER ITEM SCHEMAS ====================

class TransferItemCreate(BaseModel):
    """Transfer item creation schema."""
    product_id: uuid.UUID
    quantity: PositiveQuantity = Field(validation_alias=AliasChoices("quantity", "requested_quantity"))
    notes: Optional[str] = None


class TransferItemResponse(BaseResponseSchema):
    """Transfer item response schema."""
    id: uuid.UUID
    product_id: uuid.UUID
    product_name: Optional[str] = None
    product_sku: Optional[str] = None
    requested_quantity: Decimal
    shipped_quantity: Optional[Decimal] = None
    received_quantity: Optional[Decimal] = None
    variance_quantity: Optional[Decimal] = None
    notes: Optional[str] = None

    @classmethod
    def from_item(cls, item: StockTransferItem) -> "TransferItemResponse":
        response = cls.model_validate(item)
        product = item.__dict__.get("product")
        if product is not None:
            response.product_name = product.name
            response.product_sku = product.sku
        return response


# ==================== TRANSFER SCHEMAS ====================

class StockTransferCreate(BaseCreateSchema):
    """Stock transfer creation schema."""
    source_branch_id: uuid.UUID
    destination_branch_id: uuid.UUID
    items: List[TransferItemCreate] = Field(..., min_length=1)
    notes: Optional[str] = None


class TransferApprovalItem(BaseModel):
    item_id: uuid.UUID
    shipped_quantity: PositiveQuantity


class TransferApproval(BaseCreateSchema):
    """Transfer approval request. Items left out ship their requested quantity."""
    items: Optional[List[TransferApprovalItem]] = None
    notes: Optional[str] = None


class TransferReceiveItem(BaseModel):
    """Single item receipt in transfer."""
    item_id: uuid.UUID
    received_quantity: NonNegativeQuantity = Field(
        validation_alias=AliasChoices("received_quantity", "quantity_received")
    )


class TransferReceive(BaseCreateSchema):
    """Transfer receive request. Items left out are received as shipped."""
    items: Optional[List[TransferReceiveItem]] = None
    notes: Optional[str] = None


class TransferCancel(BaseCreateSchema):
    """Transfer cancellation request."""
    reason: str = Field(..., min_length=1, max_length=500)


class StockTransferResponse(BaseResponseSchema):
    """Stock transfer response schema."""
    id: uuid.UUID
    transfer_number: str
    status: str
    source_branch_id: uuid.UUID
    destination_branch_id: uuid.UUID
    source_branch_name: Optional[str] = None
    destination_branch_name: Optional[str] = None
    requested_by: Optional[uuid.UUID] = None
    approved_by: Optional[uuid.UUID] = None
    shipped_by: Optional[uuid.UUID] = None
    received_by: Optional[uuid.UUID] = None
    cancelled_by: Optional[uuid.UUID] = None
    requested_at: datetime
    approved_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    total_items: int = 0
    total_requested_quantity: Decimal = Decimal("0")
    has_variance: bool = False
    notes: Optional[str] = None
    items: List[TransferItemResponse] = []
    created_at: datetime

    @classmethod
    def from_transfer(cls, transfer: StockTransfer) -> "StockTransferResponse":
        response = cls.model_validate(transfer)
        source = transfer.__dict__.get("source_branch")
        destination = transfer.__dict__.get("destination_branch")
        if source is not None:
            response.source_branch_name = source.name
        if destination is not None:
            response.destination_branch_name = destination.name
        response.items = [TransferItemResponse.from_item(item) for item in transfer.items]
        return response
