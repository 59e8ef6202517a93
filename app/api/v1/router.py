from fastapi import APIRouter

from app.api.v1.endpoints import (
    inventory,
    transfers,
    open_bags,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Branch Stock & Ledger ====================
api_router.include_router(
    inventory.router,
    prefix="/inventory",
    tags=["Inventory"]
)

# ==================== Branch Transfers ====================
api_router.include_router(
    transfers.router,
    prefix="/transfers",
    tags=["Stock Transfers"]
)

# ==================== Open Bags ====================
api_router.include_router(
    open_bags.router,
    prefix="/open-bags",
    tags=["Open Bags"]
)
