"""Open bag API endpoints."""
from typing import Optional, List
import uuid

from fastapi import APIRouter, status, Query

from app.api.deps import DB, CurrentUserId, Page
from app.models.open_bag import OpenBagStatus
from app.schemas.response import APIResponse, PaginatedResponse, PaginationMeta
from app.schemas.open_bag import OpenBagCreate, OpenBagDeduct, OpenBagClose, OpenBagResponse
from app.services.open_bag_service import OpenBagService


router = APIRouter(tags=["Open Bags"])


@router.get(
    "",
    response_model=PaginatedResponse[OpenBagResponse],
)
async def list_bags(
    db: DB,
    page: Page,
    branch_id: Optional[uuid.UUID] = Query(None),
    product_id: Optional[uuid.UUID] = Query(None),
    status: Optional[OpenBagStatus] = Query(None),
):
    service = OpenBagService(db)
    bags, total = await service.list_bags(
        branch_id=branch_id,
        product_id=product_id,
        status=status,
        skip=page.skip,
        limit=page.limit,
    )
    return PaginatedResponse[OpenBagResponse](
        data=[OpenBagResponse.from_bag(b) for b in bags],
        pagination=PaginationMeta.build(page.page, page.limit, total),
    )


@router.get(
    "/low-stock",
    response_model=APIResponse[List[OpenBagResponse]],
)
async def list_low_stock_bags(
    db: DB,
    branch_id: Optional[uuid.UUID] = Query(None),
):
    """Open bags at or below their low stock threshold."""
    service = OpenBagService(db)
    bags = await service.list_low_stock(branch_id)
    return APIResponse[List[OpenBagResponse]](data=[OpenBagResponse.from_bag(b) for b in bags])


@router.get(
    "/{bag_id}",
    response_model=APIResponse[OpenBagResponse],
)
async def get_bag(
    bag_id: uuid.UUID,
    db: DB,
):
    service = OpenBagService(db)
    bag = await service.get_bag(bag_id)
    return APIResponse[OpenBagResponse](data=OpenBagResponse.from_bag(bag))


@router.post(
    "",
    response_model=APIResponse[OpenBagResponse],
    status_code=status.HTTP_201_CREATED,
)
async def open_bag(
    data: OpenBagCreate,
    db: DB,
    user_id: CurrentUserId,
):
    """Open a sealed unit for loose sale. One unit leaves branch stock."""
    service = OpenBagService(db)
    bag = await service.open_bag(
        branch_id=data.branch_id,
        product_id=data.product_id,
        original_weight=data.original_weight,
        low_stock_threshold=data.low_stock_threshold,
        notes=data.notes,
        opened_by=user_id,
    )
    return APIResponse[OpenBagResponse](data=OpenBagResponse.from_bag(bag), message="Bag opened")


@router.patch(
    "/{bag_id}/deduct",
    response_model=APIResponse[OpenBagResponse],
)
async def deduct_from_bag(
    bag_id: uuid.UUID,
    data: OpenBagDeduct,
    db: DB,
    user_id: CurrentUserId,
):
    service = OpenBagService(db)
    bag = await service.deduct(
        bag_id,
        quantity=data.quantity,
        sale_reference=data.sale_reference,
        performed_by=user_id,
    )
    return APIResponse[OpenBagResponse](data=OpenBagResponse.from_bag(bag))


@router.patch(
    "/{bag_id}/close",
    response_model=APIResponse[OpenBagResponse],
)
async def close_bag(
    bag_id: uuid.UUID,
    db: DB,
    user_id: CurrentUserId,
    data: Optional[OpenBagClose] = None,
):
    """Write off what is left and close the bag."""
    service = OpenBagService(db)
    bag = await service.close(
        bag_id,
        notes=data.notes if data else None,
        closed_by=user_id,
    )
    return APIResponse[OpenBagResponse](data=OpenBagResponse.from_bag(bag), message="Bag closed")
