"""Stock Transfer API endpoints."""
from typing import Optional
import uuid
from datetime import datetime

from fastapi import APIRouter, status, Query

from app.api.deps import DB, CurrentUserId, Page
from app.models.stock_transfer import TransferStatus
from app.schemas.response import APIResponse, PaginatedResponse, PaginationMeta
from app.schemas.stock_transfer import (
    StockTransferCreate,
    StockTransferResponse,
    TransferApproval,
    TransferReceive,
    TransferCancel,
)
from app.services.transfer_service import TransferService


router = APIRouter(tags=["Stock Transfers"])


@router.get(
    "",
    response_model=PaginatedResponse[StockTransferResponse],
)
async def list_transfers(
    db: DB,
    page: Page,
    source_branch_id: Optional[uuid.UUID] = Query(None),
    destination_branch_id: Optional[uuid.UUID] = Query(None),
    branch_id: Optional[uuid.UUID] = Query(None, description="Either side of the transfer"),
    status: Optional[TransferStatus] = Query(None),
    has_variance: Optional[bool] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
):
    """Get paginated list of stock transfers."""
    service = TransferService(db)

    transfers, total = await service.list_transfers(
        source_branch_id=source_branch_id,
        destination_branch_id=destination_branch_id,
        branch_id=branch_id,
        status=status,
        has_variance=has_variance,
        date_from=date_from,
        date_to=date_to,
        skip=page.skip,
        limit=page.limit,
    )

    return PaginatedResponse[StockTransferResponse](
        data=[StockTransferResponse.from_transfer(t) for t in transfers],
        pagination=PaginationMeta.build(page.page, page.limit, total),
    )


@router.get(
    "/{transfer_id}",
    response_model=APIResponse[StockTransferResponse],
)
async def get_transfer(
    transfer_id: uuid.UUID,
    db: DB,
):
    """Get transfer by ID with items."""
    service = TransferService(db)
    transfer = await service.get_transfer(transfer_id)
    return APIResponse[StockTransferResponse](data=StockTransferResponse.from_transfer(transfer))


@router.post(
    "",
    response_model=APIResponse[StockTransferResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_transfer(
    data: StockTransferCreate,
    db: DB,
    user_id: CurrentUserId,
):
    """Request a transfer. No stock moves until it is approved."""
    service = TransferService(db)
    transfer = await service.create_transfer(
        source_branch_id=data.source_branch_id,
        destination_branch_id=data.destination_branch_id,
        items=[item.model_dump() for item in data.items],
        notes=data.notes,
        requested_by=user_id,
    )
    return APIResponse[StockTransferResponse](
        data=StockTransferResponse.from_transfer(transfer),
        message=f"Transfer {transfer.transfer_number} created",
    )


@router.post(
    "/{transfer_id}/approve",
    response_model=APIResponse[StockTransferResponse],
)
async def approve_transfer(
    transfer_id: uuid.UUID,
    db: DB,
    user_id: CurrentUserId,
    data: Optional[TransferApproval] = None,
):
    """Approve and ship: stock leaves the source branch."""
    service = TransferService(db)
    transfer = await service.approve_transfer(
        transfer_id,
        approved_by=user_id,
        items=[item.model_dump() for item in data.items] if data and data.items else None,
        notes=data.notes if data else None,
    )
    return APIResponse[StockTransferResponse](
        data=StockTransferResponse.from_transfer(transfer),
        message=f"Transfer {transfer.transfer_number} is in transit",
    )


@router.post(
    "/{transfer_id}/receive",
    response_model=APIResponse[StockTransferResponse],
)
async def receive_transfer(
    transfer_id: uuid.UUID,
    db: DB,
    user_id: CurrentUserId,
    data: Optional[TransferReceive] = None,
):
    """Receive at the destination. Differences from shipped are kept as variance."""
    service = TransferService(db)
    transfer = await service.receive_transfer(
        transfer_id,
        received_by=user_id,
        items=[item.model_dump() for item in data.items] if data and data.items else None,
        notes=data.notes if data else None,
    )
    message = f"Transfer {transfer.transfer_number} received"
    if transfer.has_variance:
        message += " with variance"
    return APIResponse[StockTransferResponse](
        data=StockTransferResponse.from_transfer(transfer),
        message=message,
    )


@router.post(
    "/{transfer_id}/cancel",
    response_model=APIResponse[StockTransferResponse],
)
async def cancel_transfer(
    transfer_id: uuid.UUID,
    data: TransferCancel,
    db: DB,
    user_id: CurrentUserId,
):
    """Cancel a pending or in-transit transfer. Shipped stock returns to the source."""
    service = TransferService(db)
    transfer = await service.cancel_transfer(
        transfer_id,
        cancelled_by=user_id,
        reason=data.reason,
    )
    return APIResponse[StockTransferResponse](
        data=StockTransferResponse.from_transfer(transfer),
        message=f"Transfer {transfer.transfer_number} cancelled",
    )
