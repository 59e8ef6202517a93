"""Inventory API endpoints: branch stock, movements, shrinkage and counts."""
from typing import Optional, List
import uuid
from datetime import datetime

from fastapi import APIRouter, status, Query

from app.api.deps import DB, CurrentUserId, Page
from app.models.inventory import StockMovementType
from app.schemas.response import APIResponse, PaginatedResponse, PaginationMeta
from app.schemas.inventory import (
    BranchStockResponse,
    StockMovementResponse,
    StockMutationResponse,
    StockAdjustmentCreate,
    ShrinkageCreate,
    ExternalMovementCreate,
    ShrinkageSettingsUpdate,
    LedgerCheckResponse,
    InTransitQuantity,
    InventoryCountCreate,
    InventoryCountResult,
)
from app.services.stock_ledger_service import StockLedgerService
from app.services.transfer_service import TransferService
from app.services.reconciliation_service import ReconciliationService


router = APIRouter(tags=["Inventory"])


def _mutation_response(stock, movement) -> StockMutationResponse:
    return StockMutationResponse(
        stock=BranchStockResponse.from_stock(stock),
        movement=StockMovementResponse.from_movement(movement),
    )


# ==================== BRANCH STOCK ====================

@router.get(
    "/branches/{branch_id}/stock",
    response_model=PaginatedResponse[BranchStockResponse],
)
async def get_branch_stock(
    branch_id: uuid.UUID,
    db: DB,
    page: Page,
    search: Optional[str] = Query(None),
    low_stock: bool = Query(False),
):
    """Get paginated stock of a branch."""
    service = StockLedgerService(db)
    items, total = await service.get_branch_stock(
        branch_id=branch_id,
        search=search,
        low_stock_only=low_stock,
        skip=page.skip,
        limit=page.limit,
    )

    return PaginatedResponse[BranchStockResponse](
        data=[BranchStockResponse.from_stock(s) for s in items],
        pagination=PaginationMeta.build(page.page, page.limit, total),
    )


@router.get(
    "/branches/{branch_id}/stock/{product_id}",
    response_model=APIResponse[BranchStockResponse],
)
async def get_stock(
    branch_id: uuid.UUID,
    product_id: uuid.UUID,
    db: DB,
):
    """Get one product's stock at a branch."""
    service = StockLedgerService(db)
    stock = await service.get_stock(branch_id, product_id)
    return APIResponse[BranchStockResponse](data=BranchStockResponse.from_stock(stock))


@router.get(
    "/products/{product_id}/stock",
    response_model=APIResponse[List[BranchStockResponse]],
)
async def get_product_stock(
    product_id: uuid.UUID,
    db: DB,
):
    """Get one product's stock across all branches."""
    service = StockLedgerService(db)
    items = await service.get_product_stock(product_id)
    return APIResponse[List[BranchStockResponse]](
        data=[BranchStockResponse.from_stock(s) for s in items]
    )


@router.get(
    "/branches/{branch_id}/stock/{product_id}/ledger-check",
    response_model=APIResponse[LedgerCheckResponse],
)
async def check_ledger(
    branch_id: uuid.UUID,
    product_id: uuid.UUID,
    db: DB,
):
    """Replay the movement ledger against the stored balance."""
    service = StockLedgerService(db)
    result = await service.verify_ledger(branch_id, product_id)
    return APIResponse[LedgerCheckResponse](data=LedgerCheckResponse(**result))


@router.patch(
    "/branches/{branch_id}/stock/{product_id}/shrinkage-settings",
    response_model=APIResponse[BranchStockResponse],
)
async def update_shrinkage_settings(
    branch_id: uuid.UUID,
    product_id: uuid.UUID,
    data: ShrinkageSettingsUpdate,
    db: DB,
):
    """Set the tolerated shrinkage percentage."""
    service = StockLedgerService(db)
    await service.set_expected_shrinkage(branch_id, product_id, data.expected_shrinkage_percent)
    stock = await service.get_stock(branch_id, product_id)
    return APIResponse[BranchStockResponse](
        data=BranchStockResponse.from_stock(stock),
        message="Shrinkage settings updated",
    )


@router.get(
    "/branches/{branch_id}/incoming",
    response_model=APIResponse[List[InTransitQuantity]],
)
async def get_incoming_stock(
    branch_id: uuid.UUID,
    db: DB,
    product_id: Optional[uuid.UUID] = Query(None),
):
    """Quantities shipped to this branch by transfers still in transit."""
    service = TransferService(db)
    rows = await service.get_in_transit_quantities(branch_id, product_id=product_id)
    return APIResponse[List[InTransitQuantity]](data=[InTransitQuantity(**row) for row in rows])


@router.get(
    "/low-stock",
    response_model=APIResponse[List[BranchStockResponse]],
)
async def list_low_stock(
    db: DB,
    branch_id: Optional[uuid.UUID] = Query(None),
):
    """Stock at or below the product minimum."""
    service = StockLedgerService(db)
    items = await service.list_low_stock(branch_id)
    return APIResponse[List[BranchStockResponse]](data=[BranchStockResponse.from_stock(s) for s in items])


# ==================== MUTATIONS ====================

@router.post(
    "/adjustments",
    response_model=APIResponse[StockMutationResponse],
    status_code=status.HTTP_201_CREATED,
)
async def adjust_stock(
    data: StockAdjustmentCreate,
    db: DB,
    user_id: CurrentUserId,
):
    """Manual stock correction. Positive adds, negative removes; a reason is required."""
    service = StockLedgerService(db)
    stock, movement = await service.adjust_stock(
        branch_id=data.branch_id,
        product_id=data.product_id,
        quantity=data.quantity,
        reason=data.reason,
        performed_by=user_id,
        notes=data.notes,
    )
    return APIResponse[StockMutationResponse](
        data=_mutation_response(stock, movement),
        message=f"Stock adjusted by {data.quantity}",
    )


@router.post(
    "/shrinkage",
    response_model=APIResponse[StockMovementResponse],
    status_code=status.HTTP_201_CREATED,
)
async def record_shrinkage(
    data: ShrinkageCreate,
    db: DB,
    user_id: CurrentUserId,
):
    """Record stock lost to spillage, moisture, damage, theft..."""
    service = StockLedgerService(db)
    _, movement = await service.record_shrinkage(
        branch_id=data.branch_id,
        product_id=data.product_id,
        quantity=data.quantity,
        reason=data.reason,
        performed_by=user_id,
        notes=data.notes,
    )
    return APIResponse[StockMovementResponse](
        data=StockMovementResponse.from_movement(movement),
        message="Shrinkage recorded",
    )


@router.post(
    "/movements",
    response_model=APIResponse[StockMutationResponse],
    status_code=status.HTTP_201_CREATED,
)
async def record_movement(
    data: ExternalMovementCreate,
    db: DB,
    user_id: CurrentUserId,
):
    """Post a SALE, RETURN, PURCHASE or INITIAL movement from another subsystem."""
    service = StockLedgerService(db)
    stock, movement = await service.record_external_movement(
        branch_id=data.branch_id,
        product_id=data.product_id,
        movement_type=data.movement_type,
        quantity=data.quantity,
        reference_type=data.reference_type,
        reference_id=data.reference_id,
        performed_by=user_id,
        notes=data.notes,
    )
    return APIResponse[StockMutationResponse](data=_mutation_response(stock, movement))


@router.get(
    "/movements",
    response_model=PaginatedResponse[StockMovementResponse],
)
async def list_movements(
    db: DB,
    page: Page,
    branch_id: Optional[uuid.UUID] = Query(None),
    product_id: Optional[uuid.UUID] = Query(None),
    movement_type: Optional[StockMovementType] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
):
    """Get stock movement history, newest first."""
    service = StockLedgerService(db)
    movements, total = await service.list_movements(
        branch_id=branch_id,
        product_id=product_id,
        movement_type=movement_type,
        date_from=date_from,
        date_to=date_to,
        skip=page.skip,
        limit=page.limit,
    )

    return PaginatedResponse[StockMovementResponse](
        data=[StockMovementResponse.from_movement(m) for m in movements],
        pagination=PaginationMeta.build(page.page, page.limit, total),
    )


# ==================== COUNTS ====================

@router.post(
    "/counts",
    response_model=APIResponse[InventoryCountResult],
    status_code=status.HTTP_201_CREATED,
)
async def submit_count(
    data: InventoryCountCreate,
    db: DB,
    user_id: CurrentUserId,
):
    """Submit a physical count; differences are posted as INVENTORY_COUNT movements."""
    service = ReconciliationService(db)
    result = await service.submit_count(
        branch_id=data.branch_id,
        entries=[entry.model_dump() for entry in data.entries],
        notes=data.notes,
        performed_by=user_id,
    )
    return APIResponse[InventoryCountResult](
        data=InventoryCountResult(**result),
        message=f"{result['adjustments']} adjusted, {result['no_change']} unchanged",
    )
