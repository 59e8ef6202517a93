"""
Inventory error taxonomy.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer renders it with. Errors that reject an operation against live state
(insufficient stock, disallowed workflow transition) also carry that state in
``current_state`` so the caller can refresh without a second request.
"""
from typing import Any, Optional


class InventoryError(Exception):
    """Base exception for all inventory ledger errors."""

    code: str = "INVENTORY_ERROR"
    status_code: int = 400
    retryable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None,
        current_state: Optional[Any] = None,
        code: Optional[str] = None,
    ):
        self.message = message
        self.details = details or {}
        self.current_state = current_state
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        error = {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }
        if self.retryable:
            error["retryable"] = True
        return error


class ValidationError(InventoryError):
    """Missing or malformed input (e.g. blank reason, same source and destination)."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(InventoryError):
    """Unknown branch, product, transfer, transfer item or bag."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            f"{resource} not found: {resource_id}",
            details={"resource": resource, "id": str(resource_id)},
        )


class InsufficientStockError(InventoryError):
    """A deduction would drive a balance (stock or bag weight) below zero."""

    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, message: str, available: Any, requested: Any, current_state: Optional[Any] = None):
        self.available = available
        self.requested = requested
        super().__init__(
            message,
            details={"available": str(available), "requested": str(requested)},
            current_state=current_state,
        )


class InvalidStateTransitionError(InventoryError):
    """A workflow action was attempted from a state that does not allow it."""

    code = "INVALID_STATE_TRANSITION"
    status_code = 409

    def __init__(self, entity: str, current_status: str, action: str, current_state: Optional[Any] = None):
        self.entity = entity
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} {entity} in status {current_status}",
            details={"status": current_status, "action": action},
            current_state=current_state,
        )


class ConcurrencyConflictError(InventoryError):
    """A lost update was detected and the single retry also conflicted."""

    code = "CONCURRENCY_CONFLICT"
    status_code = 409


class CompensationFailureError(InventoryError):
    """
    A cancellation's reversing movements could not be written.

    Stock already left the source branch and was not put back: this is a real,
    unresolved discrepancy. The transfer is left IN_TRANSIT so cancelling
    again is safe.
    """

    code = "COMPENSATION_FAILURE"
    status_code = 500
    retryable = True


class LedgerImmutabilityError(InventoryError):
    """Attempt to update or delete a recorded stock movement."""

    code = "LEDGER_IMMUTABLE"
    status_code = 500
