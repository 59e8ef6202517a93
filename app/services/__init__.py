# Services module
from app.services.document_sequence_service import DocumentSequenceService
from app.services.stock_ledger_service import StockLedgerService
from app.services.transfer_service import TransferService
from app.services.open_bag_service import OpenBagService
from app.services.reconciliation_service import ReconciliationService

__all__ = [
    "DocumentSequenceService",
    "StockLedgerService",
    "TransferService",
    "OpenBagService",
    "ReconciliationService",
]
