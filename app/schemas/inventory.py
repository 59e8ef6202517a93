"""Inventory schemas for API requests/responses."""
from pydantic import BaseModel, Field

from app.schemas.base import (
    BaseResponseSchema,
    BaseCreateSchema,
    PositiveQuantity,
    NonNegativeQuantity,
    SignedQuantity,
)
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
import uuid

from app.models.inventory import BranchStock, StockMovement, StockMovementType, ShrinkageReason


# ==================== BRANCH STOCK SCHEMAS ====================

class BranchStockResponse(BaseResponseSchema):
    """Branch stock row with product info denormalized for display."""
    id: uuid.UUID
    branch_id: uuid.UUID
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None
    product_id: uuid.UUID
    product_name: Optional[str] = None
    product_sku: Optional[str] = None
    quantity: Decimal
    reserved_quantity: Decimal
    available_quantity: Optional[Decimal] = None
    expected_shrinkage_percent: Decimal
    actual_shrinkage: Decimal
    minimum_stock: Optional[Decimal] = None
    is_low_stock: bool = False
    last_counted_at: Optional[datetime] = None
    last_counted_quantity: Optional[Decimal] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_stock(cls, stock: BranchStock) -> "BranchStockResponse":
        response = cls.model_validate(stock)
        response.available_quantity = stock.quantity - (stock.reserved_quantity or 0)
        branch = stock.__dict__.get("branch")
        if branch is not None:
            response.branch_name = branch.name
            response.branch_code = branch.code
        product = stock.__dict__.get("product")
        if product is not None:
            response.product_name = product.name
            response.product_sku = product.sku
            response.minimum_stock = product.minimum_stock
            response.is_low_stock = bool(
                product.track_stock
                and product.minimum_stock is not None
                and stock.quantity <= product.minimum_stock
            )
        return response


class ShrinkageSettingsUpdate(BaseModel):
    """Expected shrinkage update."""
    expected_shrinkage_percent: Decimal = Field(..., ge=0, le=100)


class LedgerCheckResponse(BaseModel):
    """Result of replaying the movement ledger for one stock row."""
    branch_id: uuid.UUID
    product_id: uuid.UUID
    quantity: Decimal
    ledger_total: Decimal
    movement_count: int
    consistent: bool


class InTransitQuantity(BaseModel):
    """Stock shipped towards a branch and not yet received."""
    product_id: uuid.UUID
    in_transit_quantity: Decimal
    transfer_count: int


# ==================== STOCK MOVEMENT SCHEMAS ====================

class StockMovementResponse(BaseResponseSchema):
    """Stock movement response schema."""
    id: uuid.UUID
    movement_number: str
    movement_type: str  # VARCHAR in DB
    branch_id: uuid.UUID
    related_branch_id: Optional[uuid.UUID] = None
    product_id: uuid.UUID
    product_name: Optional[str] = None
    quantity: Decimal
    quantity_before: Decimal
    quantity_after: Decimal
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    adjustment_reason: Optional[str] = None
    performed_by: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_movement(cls, movement: StockMovement) -> "StockMovementResponse":
        response = cls.model_validate(movement)
        product = movement.__dict__.get("product")
        if product is not None:
            response.product_name = product.name
        return response


class StockAdjustmentCreate(BaseCreateSchema):
    """Manual stock correction by a signed delta."""
    branch_id: uuid.UUID
    product_id: uuid.UUID
    quantity: SignedQuantity
    reason: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = None


class ShrinkageCreate(BaseCreateSchema):
    """Lost stock, as a positive quantity."""
    branch_id: uuid.UUID
    product_id: uuid.UUID
    quantity: PositiveQuantity
    reason: ShrinkageReason
    notes: Optional[str] = None


class ExternalMovementCreate(BaseCreateSchema):
    """Movement posted by sales, returns or purchasing."""
    branch_id: uuid.UUID
    product_id: uuid.UUID
    movement_type: StockMovementType
    quantity: PositiveQuantity
    reference_type: Optional[str] = Field(None, max_length=50)
    reference_id: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None


class StockMutationResponse(BaseModel):
    """Updated balance plus the movement that produced it."""
    stock: BranchStockResponse
    movement: StockMovementResponse


# ==================== INVENTORY COUNT SCHEMAS ====================

class CountEntry(BaseModel):
    product_id: uuid.UUID
    counted_quantity: NonNegativeQuantity


class InventoryCountCreate(BaseCreateSchema):
    """Physical count of a branch."""
    branch_id: uuid.UUID
    entries: List[CountEntry] = Field(..., min_length=1)
    notes: Optional[str] = None


class CountDetail(BaseModel):
    product_id: uuid.UUID
    product_name: Optional[str] = None
    previous_quantity: Decimal
    counted_quantity: Decimal
    variance: Decimal
    action: str  # ADJUSTED | NO_CHANGE
    movement_id: Optional[uuid.UUID] = None


class InventoryCountResult(BaseModel):
    count_id: uuid.UUID
    processed: int
    adjustments: int
    no_change: int
    details: List[CountDetail]
