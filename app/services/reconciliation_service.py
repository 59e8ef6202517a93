"""Reconciliation Service: turns a physical count into ledger corrections."""
import logging
from typing import Optional, List
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ValidationError, NotFoundError
from app.models.branch import Branch
from app.models.product import Product
from app.models.inventory import StockMovementType
from app.services.stock_ledger_service import StockLedgerService, to_quantity


logger = logging.getLogger(__name__)

COUNT_REFERENCE = "INVENTORY_COUNT"


class ReconciliationService:
    """Service for physical inventory counts."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = StockLedgerService(db)

    async def submit_count(
        self,
        branch_id: uuid.UUID,
        entries: List[dict],
        notes: Optional[str] = None,
        performed_by: Optional[uuid.UUID] = None,
    ) -> dict:
        """
        Apply a physical count to a branch.

        For each entry the counted quantity is taken as ground truth. A
        difference posts one INVENTORY_COUNT movement for exactly
        counted - previous; an exact match posts nothing. All entries commit
        together.

        Returns:
            {count_id, processed, adjustments, no_change, details[]}
        """
        if not entries:
            raise ValidationError("A count needs at least one entry", details={"field": "entries"})
        if await self.db.get(Branch, branch_id) is None:
            raise NotFoundError("Branch", branch_id)

        seen = set()
        lines = []
        for entry in entries:
            product_id = entry["product_id"]
            if product_id in seen:
                raise ValidationError(
                    "Each product can be counted only once per submission",
                    details={"field": "entries", "product_id": str(product_id)},
                )
            seen.add(product_id)
            counted = to_quantity(entry.get("counted_quantity"), "counted_quantity")
            if counted < 0:
                raise ValidationError(
                    "Counted quantity cannot be negative",
                    details={"field": "counted_quantity", "product_id": str(product_id)},
                )
            lines.append((product_id, counted))

        count_id = uuid.uuid4()
        result = {
            "count_id": count_id,
            "processed": 0,
            "adjustments": 0,
            "no_change": 0,
            "details": [],
        }

        for product_id, counted in lines:
            product = await self.db.get(Product, product_id)
            if product is None:
                raise NotFoundError("Product", product_id)

            # Hold the row so the variance is computed against the balance it corrects
            stock = await self.ledger.lock_stock(branch_id, product_id)
            previous = to_quantity(stock.quantity)
            variance = counted - previous

            movement_id = None
            if variance != 0:
                _, movement = await self.ledger.record_movement(
                    branch_id,
                    product_id,
                    StockMovementType.INVENTORY_COUNT,
                    variance,
                    reference_type=COUNT_REFERENCE,
                    reference_id=count_id,
                    reason=notes,
                    performed_by=performed_by,
                    notes=notes,
                )
                movement_id = movement.id
                action = "ADJUSTED"
                result["adjustments"] += 1
            else:
                await self.ledger.touch_counted(branch_id, product_id, counted)
                action = "NO_CHANGE"
                result["no_change"] += 1

            result["processed"] += 1
            result["details"].append({
                "product_id": product_id,
                "product_name": product.name,
                "previous_quantity": previous,
                "counted_quantity": counted,
                "variance": variance,
                "action": action,
                "movement_id": movement_id,
            })

        await self.db.commit()
        logger.info(
            f"Inventory count {count_id} at branch {branch_id}: {result['processed']} processed, "
            f"{result['adjustments']} adjusted, {result['no_change']} unchanged"
        )
        return result
