"""Stock Transfer Service for branch-to-branch movements.

A transfer is debited at the source on approval and credited at the
destination on receipt. The two steps commit independently; between them the
transfer is IN_TRANSIT and its shipped quantities are "in flight", which
``get_in_transit_quantities`` exposes. Cancelling an IN_TRANSIT transfer puts
the shipped stock back at the source with compensating movements.
"""
import logging
from typing import Optional, List, Tuple, Dict
from datetime import datetime, timezone
from decimal import Decimal
import uuid

from sqlalchemy import select, func, and_, or_, distinct
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload, joinedload

from app.config import settings
from app.core.enum_utils import get_enum_value, is_status
from app.core.exceptions import (
    InventoryError,
    ValidationError,
    NotFoundError,
    InvalidStateTransitionError,
    CompensationFailureError,
)
from app.models.branch import Branch
from app.models.product import Product
from app.models.inventory import StockMovementType
from app.models.stock_transfer import (
    StockTransfer, StockTransferItem, TransferStatus,
)
from app.services.document_sequence_service import DocumentSequenceService
from app.services.stock_ledger_service import StockLedgerService, to_quantity


logger = logging.getLogger(__name__)

TRANSFER_REFERENCE = "STOCK_TRANSFER"
CANCELLATION_REFERENCE = "STOCK_TRANSFER_CANCELLATION"


def transfer_state(transfer: StockTransfer) -> dict:
    """Snapshot attached to rejected transfer actions."""
    return {
        "id": str(transfer.id),
        "transfer_number": transfer.transfer_number,
        "status": transfer.status,
    }


class TransferService:
    """Service for stock transfer operations."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = StockLedgerService(db)

    # ==================== QUERIES ====================

    async def list_transfers(
        self,
        source_branch_id: Optional[uuid.UUID] = None,
        destination_branch_id: Optional[uuid.UUID] = None,
        branch_id: Optional[uuid.UUID] = None,
        status: Optional[TransferStatus] = None,
        has_variance: Optional[bool] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[StockTransfer], int]:
        """Get paginated list of stock transfers."""
        query = select(StockTransfer).options(
            joinedload(StockTransfer.source_branch),
            joinedload(StockTransfer.destination_branch),
            selectinload(StockTransfer.items).joinedload(StockTransferItem.product),
        )

        conditions = []
        if source_branch_id:
            conditions.append(StockTransfer.source_branch_id == source_branch_id)
        if destination_branch_id:
            conditions.append(StockTransfer.destination_branch_id == destination_branch_id)
        if branch_id:
            conditions.append(
                or_(
                    StockTransfer.source_branch_id == branch_id,
                    StockTransfer.destination_branch_id == branch_id,
                )
            )
        if status:
            conditions.append(StockTransfer.status == get_enum_value(status))
        if has_variance is not None:
            variance_exists = StockTransfer.items.any(
                and_(
                    StockTransferItem.variance_quantity.isnot(None),
                    StockTransferItem.variance_quantity != 0,
                )
            )
            conditions.append(variance_exists if has_variance else ~variance_exists)
        if date_from:
            conditions.append(StockTransfer.requested_at >= date_from)
        if date_to:
            conditions.append(StockTransfer.requested_at <= date_to)

        if conditions:
            query = query.where(and_(*conditions))

        # Count
        count_query = select(func.count()).select_from(
            select(StockTransfer.id).where(*conditions).subquery()
        )
        total = await self.db.scalar(count_query)

        # Paginate
        query = query.order_by(StockTransfer.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(query)

        return result.scalars().unique().all(), total

    async def get_transfer(self, transfer_id: uuid.UUID) -> StockTransfer:
        """Get transfer with branches and items."""
        query = select(StockTransfer).options(
            joinedload(StockTransfer.source_branch),
            joinedload(StockTransfer.destination_branch),
            selectinload(StockTransfer.items).joinedload(StockTransferItem.product),
        ).where(
            StockTransfer.id == transfer_id
        ).execution_options(populate_existing=True)

        result = await self.db.execute(query)
        transfer = result.unique().scalar_one_or_none()
        if not transfer:
            raise NotFoundError("Transfer", transfer_id)
        return transfer

    async def get_in_transit_quantities(
        self,
        destination_branch_id: uuid.UUID,
        product_id: Optional[uuid.UUID] = None,
    ) -> List[Dict]:
        """
        Stock shipped towards a branch and not yet received.

        BranchStock does not include these quantities: they left the source
        on approval and reach the destination only on receipt.
        """
        conditions = [
            StockTransfer.destination_branch_id == destination_branch_id,
            StockTransfer.status == TransferStatus.IN_TRANSIT.value,
        ]
        if product_id:
            conditions.append(StockTransferItem.product_id == product_id)

        query = (
            select(
                StockTransferItem.product_id,
                func.sum(StockTransferItem.shipped_quantity),
                func.count(distinct(StockTransfer.id)),
            )
            .join(StockTransfer, StockTransferItem.transfer_id == StockTransfer.id)
            .where(and_(*conditions))
            .group_by(StockTransferItem.product_id)
        )
        result = await self.db.execute(query)

        return [
            {
                "product_id": row[0],
                "in_transit_quantity": to_quantity(row[1] or 0),
                "transfer_count": row[2],
            }
            for row in result.all()
        ]

    # ==================== WORKFLOW ====================

    async def create_transfer(
        self,
        source_branch_id: uuid.UUID,
        destination_branch_id: uuid.UUID,
        items: List[dict],
        notes: Optional[str] = None,
        requested_by: Optional[uuid.UUID] = None,
    ) -> StockTransfer:
        """Create a new PENDING transfer request. No stock is touched."""
        if source_branch_id == destination_branch_id:
            raise ValidationError(
                "Source and destination branches cannot be the same",
                details={"field": "destination_branch_id"},
            )

        await self._get_active_branch(source_branch_id, "source_branch_id")
        await self._get_active_branch(destination_branch_id, "destination_branch_id")

        if not items:
            raise ValidationError("A transfer needs at least one item", details={"field": "items"})

        seen = set()
        lines = []
        for item_data in items:
            product_id = item_data["product_id"]
            if product_id in seen:
                raise ValidationError(
                    "Each product can appear only once per transfer",
                    details={"field": "items", "product_id": str(product_id)},
                )
            seen.add(product_id)

            quantity = to_quantity(item_data.get("quantity"), "quantity")
            if quantity <= 0:
                raise ValidationError(
                    "Requested quantity must be positive",
                    details={"field": "quantity", "product_id": str(product_id)},
                )
            if await self.db.get(Product, product_id) is None:
                raise NotFoundError("Product", product_id)
            lines.append((product_id, quantity, item_data.get("notes")))

        # Generate transfer number
        transfer_number = await DocumentSequenceService(self.db).get_next_number(
            settings.TRANSFER_NUMBER_PREFIX
        )

        transfer = StockTransfer(
            transfer_number=transfer_number,
            status=TransferStatus.PENDING.value,
            source_branch_id=source_branch_id,
            destination_branch_id=destination_branch_id,
            requested_by=requested_by,
            requested_at=datetime.now(timezone.utc),
            total_items=len(lines),
            total_requested_quantity=sum((q for _, q, _ in lines), Decimal("0")),
            notes=notes,
        )
        self.db.add(transfer)
        await self.db.flush()

        # Add items
        for product_id, quantity, item_notes in lines:
            self.db.add(
                StockTransferItem(
                    transfer_id=transfer.id,
                    product_id=product_id,
                    requested_quantity=quantity,
                    notes=item_notes,
                )
            )

        await self.db.commit()
        logger.info(f"Transfer {transfer_number} requested: {source_branch_id} -> {destination_branch_id}")
        return await self.get_transfer(transfer.id)

    async def approve_transfer(
        self,
        transfer_id: uuid.UUID,
        approved_by: Optional[uuid.UUID] = None,
        items: Optional[List[dict]] = None,
        notes: Optional[str] = None,
    ) -> StockTransfer:
        """
        Approve and ship a PENDING transfer.

        Posts one TRANSFER_OUT per item at the source. All items go out or
        none do: an InsufficientStockError on any item rolls back the others.
        """
        transfer = await self._get_for_update(transfer_id)
        self._check_transition(transfer, TransferStatus.IN_TRANSIT, "approve")

        shipped = self._resolve_item_quantities(transfer, items, "shipped_quantity")
        for item in transfer.items:
            quantity = shipped.get(item.id, to_quantity(item.requested_quantity))
            if quantity <= 0 or quantity > item.requested_quantity:
                raise ValidationError(
                    "Shipped quantity must be positive and not exceed the requested quantity",
                    details={
                        "item_id": str(item.id),
                        "requested_quantity": str(item.requested_quantity),
                        "shipped_quantity": str(quantity),
                    },
                )
            shipped[item.id] = quantity

        async with self.db.begin_nested():
            for item in transfer.items:
                await self.ledger.record_movement(
                    transfer.source_branch_id,
                    item.product_id,
                    StockMovementType.TRANSFER_OUT,
                    -shipped[item.id],
                    reference_type=TRANSFER_REFERENCE,
                    reference_id=transfer.id,
                    related_branch_id=transfer.destination_branch_id,
                    performed_by=approved_by,
                    notes=f"Transfer {transfer.transfer_number}",
                )

        now = datetime.now(timezone.utc)
        for item in transfer.items:
            item.shipped_quantity = shipped[item.id]

        transfer.status = TransferStatus.IN_TRANSIT.value
        transfer.approved_by = approved_by
        transfer.approved_at = now
        transfer.shipped_by = approved_by
        transfer.shipped_at = now
        if notes:
            transfer.notes = f"{transfer.notes}\n{notes}" if transfer.notes else notes

        await self.db.commit()
        logger.info(f"Transfer {transfer.transfer_number} approved and in transit")
        return await self.get_transfer(transfer_id)

    async def receive_transfer(
        self,
        transfer_id: uuid.UUID,
        received_by: Optional[uuid.UUID] = None,
        items: Optional[List[dict]] = None,
        notes: Optional[str] = None,
    ) -> StockTransfer:
        """
        Receive an IN_TRANSIT transfer at the destination.

        Credits exactly the received quantity. Differences against the
        shipped quantity are stored as variance for manual follow-up.
        """
        transfer = await self._get_for_update(transfer_id)
        self._check_transition(transfer, TransferStatus.RECEIVED, "receive")

        received = self._resolve_item_quantities(transfer, items, "received_quantity")
        for item in transfer.items:
            quantity = received.get(item.id, to_quantity(item.shipped_quantity))
            if quantity < 0:
                raise ValidationError(
                    "Received quantity cannot be negative",
                    details={"item_id": str(item.id), "received_quantity": str(quantity)},
                )
            received[item.id] = quantity

        async with self.db.begin_nested():
            for item in transfer.items:
                if received[item.id] == 0:
                    continue
                await self.ledger.record_movement(
                    transfer.destination_branch_id,
                    item.product_id,
                    StockMovementType.TRANSFER_IN,
                    received[item.id],
                    reference_type=TRANSFER_REFERENCE,
                    reference_id=transfer.id,
                    related_branch_id=transfer.source_branch_id,
                    performed_by=received_by,
                    notes=f"Transfer {transfer.transfer_number}",
                )

        variance_items = 0
        for item in transfer.items:
            item.received_quantity = received[item.id]
            item.variance_quantity = received[item.id] - to_quantity(item.shipped_quantity)
            if item.variance_quantity != 0:
                variance_items += 1

        transfer.status = TransferStatus.RECEIVED.value
        transfer.received_by = received_by
        transfer.received_at = datetime.now(timezone.utc)
        if notes:
            transfer.notes = f"{transfer.notes}\n{notes}" if transfer.notes else notes

        await self.db.commit()
        if variance_items:
            logger.warning(
                f"Transfer {transfer.transfer_number} received with variance on {variance_items} item(s)"
            )
        else:
            logger.info(f"Transfer {transfer.transfer_number} received")
        return await self.get_transfer(transfer_id)

    async def cancel_transfer(
        self,
        transfer_id: uuid.UUID,
        cancelled_by: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> StockTransfer:
        """
        Cancel a PENDING or IN_TRANSIT transfer.

        An IN_TRANSIT transfer already took stock from the source; it is put
        back with one TRANSFER_IN per item before the status changes. If that
        fails the transfer stays IN_TRANSIT and CompensationFailureError is
        raised, so the cancellation can be retried.
        """
        if not (reason and reason.strip()):
            raise ValidationError("A cancellation reason is required", details={"field": "reason"})

        transfer = await self._get_for_update(transfer_id)
        self._check_transition(transfer, TransferStatus.CANCELLED, "cancel")

        if is_status(transfer.status, TransferStatus.IN_TRANSIT):
            await self._compensate_shipment(transfer, cancelled_by, reason)

        transfer.status = TransferStatus.CANCELLED.value
        transfer.cancelled_by = cancelled_by
        transfer.cancelled_at = datetime.now(timezone.utc)
        transfer.cancellation_reason = reason

        await self.db.commit()
        logger.info(f"Transfer {transfer.transfer_number} cancelled: {reason}")
        return await self.get_transfer(transfer_id)

    async def _compensate_shipment(
        self,
        transfer: StockTransfer,
        cancelled_by: Optional[uuid.UUID],
        reason: str,
    ):
        state = transfer_state(transfer)
        try:
            async with self.db.begin_nested():
                for item in transfer.items:
                    if not item.shipped_quantity:
                        continue
                    await self.ledger.record_movement(
                        transfer.source_branch_id,
                        item.product_id,
                        StockMovementType.TRANSFER_IN,
                        to_quantity(item.shipped_quantity),
                        reference_type=CANCELLATION_REFERENCE,
                        reference_id=transfer.id,
                        related_branch_id=transfer.destination_branch_id,
                        performed_by=cancelled_by,
                        notes=f"Reversal of transfer {transfer.transfer_number}: {reason}",
                    )
        except (InventoryError, SQLAlchemyError) as e:
            logger.error(
                f"Compensation failed for transfer {state['transfer_number']}: stock shipped from "
                f"{transfer.source_branch_id} was not restored ({e})"
            )
            raise CompensationFailureError(
                f"Could not restore stock for cancelled transfer {state['transfer_number']}; "
                "the transfer remains IN_TRANSIT and the cancellation can be retried",
                details={"transfer_id": state["id"], "cause": str(e)},
                current_state=state,
            ) from e

    # ==================== HELPERS ====================

    async def _get_active_branch(self, branch_id: uuid.UUID, field: str) -> Branch:
        branch = await self.db.get(Branch, branch_id)
        if not branch:
            raise NotFoundError("Branch", branch_id)
        if not branch.is_active:
            raise ValidationError(f"Branch {branch.code} is not active", details={"field": field})
        return branch

    async def _get_for_update(self, transfer_id: uuid.UUID) -> StockTransfer:
        """Load a transfer and its items, holding the transfer row lock."""
        result = await self.db.execute(
            select(StockTransfer)
            .options(selectinload(StockTransfer.items))
            .where(StockTransfer.id == transfer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        transfer = result.scalar_one_or_none()
        if not transfer:
            raise NotFoundError("Transfer", transfer_id)
        return transfer

    def _check_transition(self, transfer: StockTransfer, new_status: TransferStatus, action: str):
        if not transfer.can_transition_to(new_status):
            raise InvalidStateTransitionError(
                "transfer",
                transfer.status,
                action,
                current_state=transfer_state(transfer),
            )

    def _resolve_item_quantities(
        self,
        transfer: StockTransfer,
        items: Optional[List[dict]],
        field: str,
    ) -> Dict[uuid.UUID, Decimal]:
        """Map item id -> caller-supplied quantity. Items not mentioned use their default."""
        if not items:
            return {}

        by_id = {item.id: item for item in transfer.items}
        quantities = {}
        seen = set()
        for entry in items:
            item_id = entry["item_id"]
            if not isinstance(item_id, uuid.UUID):
                try:
                    item_id = uuid.UUID(str(item_id))
                except ValueError:
                    raise NotFoundError("Transfer item", item_id)
            if item_id not in by_id:
                raise NotFoundError("Transfer item", item_id)
            if item_id in seen:
                raise ValidationError(
                    "Each item can appear only once",
                    details={"field": "items", "item_id": str(item_id)},
                )
            seen.add(item_id)
            value = entry.get(field)
            if value is not None:
                quantities[item_id] = to_quantity(value, field)
        return quantities
