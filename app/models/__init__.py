"""ORM models. Importing this package registers every table with Base.metadata."""
from app.models.branch import Branch
from app.models.product import Product
from app.models.inventory import (
    BranchStock,
    StockMovement,
    StockMovementType,
    ShrinkageReason,
)
from app.models.stock_transfer import (
    StockTransfer,
    StockTransferItem,
    TransferStatus,
)
from app.models.open_bag import OpenBag, OpenBagStatus
from app.models.document_sequence import DocumentSequence

__all__ = [
    "Branch",
    "Product",
    "BranchStock",
    "StockMovement",
    "StockMovementType",
    "ShrinkageReason",
    "StockTransfer",
    "StockTransferItem",
    "TransferStatus",
    "OpenBag",
    "OpenBagStatus",
    "DocumentSequence",
]
