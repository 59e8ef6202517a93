from datetime import datetime, timezone
from decimal import Decimal
import uuid

import pytest

from app.core.exceptions import (
    ValidationError,
    NotFoundError,
    InsufficientStockError,
    InvalidStateTransitionError,
    ConcurrencyConflictError,
    CompensationFailureError,
)
from app.models.inventory import StockMovementType
from app.models.stock_transfer import TransferStatus
from app.services.stock_ledger_service import StockLedgerService
from app.services.transfer_service import TransferService
from app.services.document_sequence_service import DocumentSequenceService


async def create_transfer(db, seeded, items=None, **kwargs):
    items = items or [{"product_id": seeded.rice, "quantity": Decimal("10")}]
    return await TransferService(db).create_transfer(seeded.north, seeded.south, items, **kwargs)


async def test_create_transfer_touches_no_stock(db, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 10)
    requester = uuid.uuid4()

    transfer = await create_transfer(db, seeded, notes="Weekend restock", requested_by=requester)

    assert transfer.status == TransferStatus.PENDING.value
    assert transfer.requested_by == requester
    assert transfer.total_items == 1
    assert transfer.items[0].requested_quantity == Decimal("10")
    assert transfer.items[0].shipped_quantity is None
    assert await StockLedgerService(db).get_quantity(seeded.north, seeded.rice) == Decimal("10")


async def test_transfer_numbers_are_sequential(db, seeded):
    first = await create_transfer(db, seeded)
    second = await create_transfer(db, seeded)

    year = datetime.now(timezone.utc).year
    assert first.transfer_number == f"TRF-{year}-00001"
    assert second.transfer_number == f"TRF-{year}-00002"

    sequences = DocumentSequenceService(db)
    assert await sequences.get_current_number("TRF") == 2
    assert await sequences.get_current_number("trf", period=str(year - 1)) == 0


async def test_create_transfer_validation(db, seeded):
    service = TransferService(db)
    rice = [{"product_id": seeded.rice, "quantity": Decimal("1")}]

    with pytest.raises(ValidationError):
        await service.create_transfer(seeded.north, seeded.north, rice)
    with pytest.raises(ValidationError):
        await service.create_transfer(seeded.north, seeded.closed, rice)
    with pytest.raises(NotFoundError):
        await service.create_transfer(seeded.north, uuid.uuid4(), rice)
    with pytest.raises(ValidationError):
        await service.create_transfer(seeded.north, seeded.south, [])
    with pytest.raises(ValidationError):
        await service.create_transfer(seeded.north, seeded.south, rice + rice)
    with pytest.raises(ValidationError):
        await service.create_transfer(
            seeded.north, seeded.south, [{"product_id": seeded.rice, "quantity": Decimal("0")}]
        )
    with pytest.raises(NotFoundError):
        await service.create_transfer(
            seeded.north, seeded.south, [{"product_id": uuid.uuid4(), "quantity": Decimal("1")}]
        )


async def test_approve_then_cancel_restores_source(db, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 10)
    transfer = await create_transfer(db, seeded)
    service = TransferService(db)
    ledger = StockLedgerService(db)

    transfer = await service.approve_transfer(transfer.id, approved_by=uuid.uuid4())

    assert transfer.status == TransferStatus.IN_TRANSIT.value
    assert transfer.items[0].shipped_quantity == Decimal("10")
    assert transfer.shipped_at is not None
    assert await ledger.get_quantity(seeded.north, seeded.rice) == Decimal("0")

    outgoing, _ = await ledger.list_movements(
        branch_id=seeded.north, movement_type=StockMovementType.TRANSFER_OUT
    )
    assert len(outgoing) == 1
    assert outgoing[0].quantity == Decimal("-10")
    assert outgoing[0].related_branch_id == seeded.south
    assert outgoing[0].reference_id == str(transfer.id)

    transfer = await service.cancel_transfer(transfer.id, reason="Destination closed for renovation")

    assert transfer.status == TransferStatus.CANCELLED.value
    assert transfer.cancellation_reason == "Destination closed for renovation"
    assert await ledger.get_quantity(seeded.north, seeded.rice) == Decimal("10")

    reversal, _ = await ledger.list_movements(
        branch_id=seeded.north, movement_type=StockMovementType.TRANSFER_IN
    )
    assert len(reversal) == 1
    assert reversal[0].quantity == Decimal("10")
    assert reversal[0].reference_type == "STOCK_TRANSFER_CANCELLATION"
    assert (await ledger.verify_ledger(seeded.north, seeded.rice))["consistent"] is True


async def test_cancel_pending_is_status_change_only(db, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 10)
    transfer = await create_transfer(db, seeded)

    with pytest.raises(ValidationError):
        await TransferService(db).cancel_transfer(transfer.id, reason="")

    transfer = await TransferService(db).cancel_transfer(transfer.id, reason="Raised by mistake")

    assert transfer.status == TransferStatus.CANCELLED.value
    _, total = await StockLedgerService(db).list_movements(branch_id=seeded.north)
    assert total == 1  # opening stock only


async def test_receive_records_variance_without_correcting(db, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 10)
    transfer = await create_transfer(db, seeded)
    service = TransferService(db)
    ledger = StockLedgerService(db)
    transfer = await service.approve_transfer(transfer.id)
    item_id = transfer.items[0].id

    transfer = await service.receive_transfer(
        transfer.id,
        received_by=uuid.uuid4(),
        items=[{"item_id": item_id, "received_quantity": Decimal("8")}],
        notes="Two bags torn",
    )

    item = transfer.items[0]
    assert transfer.status == TransferStatus.RECEIVED.value
    assert item.received_quantity == Decimal("8")
    assert item.variance_quantity == Decimal("-2")
    assert transfer.has_variance is True
    assert await ledger.get_quantity(seeded.south, seeded.rice) == Decimal("8")
    assert await ledger.get_quantity(seeded.north, seeded.rice) == Decimal("0")

    _, shrinkage = await ledger.list_movements(movement_type=StockMovementType.SHRINKAGE)
    assert shrinkage == 0

    flagged, total = await service.list_transfers(has_variance=True)
    assert total == 1
    assert flagged[0].id == transfer.id
    _, clean = await service.list_transfers(has_variance=False)
    assert clean == 0


async def test_receive_defaults_to_shipped(db, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 10)
    transfer = await create_transfer(db, seeded, items=[{"product_id": seeded.rice, "quantity": Decimal("6")}])
    service = TransferService(db)

    transfer = await service.approve_transfer(
        transfer.id, items=[{"item_id": transfer.items[0].id, "shipped_quantity": Decimal("4")}]
    )
    assert transfer.items[0].shipped_quantity == Decimal("4")

    transfer = await service.receive_transfer(transfer.id)

    assert transfer.items[0].received_quantity == Decimal("4")
    assert transfer.items[0].variance_quantity == Decimal("0")
    assert transfer.has_variance is False
    ledger = StockLedgerService(db)
    assert await ledger.get_quantity(seeded.north, seeded.rice) == Decimal("6")
    assert await ledger.get_quantity(seeded.south, seeded.rice) == Decimal("4")


async def test_shipped_quantity_bounds_and_unknown_items(db, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 20)
    transfer = await create_transfer(db, seeded)
    service = TransferService(db)
    item_id = transfer.items[0].id

    with pytest.raises(ValidationError):
        await service.approve_transfer(
            transfer.id, items=[{"item_id": item_id, "shipped_quantity": Decimal("11")}]
        )
    with pytest.raises(NotFoundError):
        await service.approve_transfer(
            transfer.id, items=[{"item_id": uuid.uuid4(), "shipped_quantity": Decimal("1")}]
        )
    with pytest.raises(NotFoundError):
        await service.approve_transfer(uuid.uuid4())

    assert await StockLedgerService(db).get_quantity(seeded.north, seeded.rice) == Decimal("20")


async def test_approval_is_all_or_nothing(db, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 10)
    await stock_up(seeded.north, seeded.lentils, 1)
    transfer = await create_transfer(
        db,
        seeded,
        items=[
            {"product_id": seeded.rice, "quantity": Decimal("5")},
            {"product_id": seeded.lentils, "quantity": Decimal("3")},
        ],
    )
    transfer_id = transfer.id

    with pytest.raises(InsufficientStockError):
        await TransferService(db).approve_transfer(transfer_id)
    await db.rollback()

    ledger = StockLedgerService(db)
    assert await ledger.get_quantity(seeded.north, seeded.rice) == Decimal("10")
    assert await ledger.get_quantity(seeded.north, seeded.lentils) == Decimal("1")
    transfer = await TransferService(db).get_transfer(transfer_id)
    assert transfer.status == TransferStatus.PENDING.value
    _, outgoing = await ledger.list_movements(movement_type=StockMovementType.TRANSFER_OUT)
    assert outgoing == 0


async def test_transitions_only_move_forward(db, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 30)
    service = TransferService(db)

    pending = await create_transfer(db, seeded)
    with pytest.raises(InvalidStateTransitionError) as exc_info:
        await service.receive_transfer(pending.id)
    assert exc_info.value.current_state["status"] == TransferStatus.PENDING.value

    received = await create_transfer(db, seeded)
    await service.approve_transfer(received.id)
    with pytest.raises(InvalidStateTransitionError):
        await service.approve_transfer(received.id)
    await service.receive_transfer(received.id)
    for action in (
        service.approve_transfer(received.id),
        service.receive_transfer(received.id),
        service.cancel_transfer(received.id, reason="Too late"),
    ):
        with pytest.raises(InvalidStateTransitionError):
            await action

    cancelled = await create_transfer(db, seeded)
    await service.cancel_transfer(cancelled.id, reason="Duplicate")
    with pytest.raises(InvalidStateTransitionError) as exc_info:
        await service.approve_transfer(cancelled.id)
    assert exc_info.value.current_state["status"] == TransferStatus.CANCELLED.value


async def test_in_transit_quantities_are_queryable(db, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 20)
    service = TransferService(db)
    first = await create_transfer(db, seeded, items=[{"product_id": seeded.rice, "quantity": Decimal("7")}])
    second = await create_transfer(db, seeded, items=[{"product_id": seeded.rice, "quantity": Decimal("3")}])
    await create_transfer(db, seeded, items=[{"product_id": seeded.rice, "quantity": Decimal("2")}])

    await service.approve_transfer(first.id)
    await service.approve_transfer(second.id)

    incoming = await service.get_in_transit_quantities(seeded.south)
    assert len(incoming) == 1
    assert incoming[0]["product_id"] == seeded.rice
    assert incoming[0]["in_transit_quantity"] == Decimal("10")
    assert incoming[0]["transfer_count"] == 2

    await service.receive_transfer(first.id)
    incoming = await service.get_in_transit_quantities(seeded.south, product_id=seeded.rice)
    assert incoming[0]["in_transit_quantity"] == Decimal("3")
    assert await service.get_in_transit_quantities(seeded.north) == []


async def test_failed_compensation_leaves_transfer_in_transit(db, seeded, stock_up, monkeypatch):
    await stock_up(seeded.north, seeded.rice, 10)
    transfer = await create_transfer(db, seeded)
    transfer_id = transfer.id
    await TransferService(db).approve_transfer(transfer_id)

    service = TransferService(db)

    async def broken_ledger(*args, **kwargs):
        raise ConcurrencyConflictError("Stock balance changed concurrently, please retry")

    monkeypatch.setattr(service.ledger, "record_movement", broken_ledger)

    with pytest.raises(CompensationFailureError) as exc_info:
        await service.cancel_transfer(transfer_id, reason="Truck broke down")
    assert exc_info.value.retryable is True
    assert exc_info.value.current_state["status"] == TransferStatus.IN_TRANSIT.value
    await db.rollback()

    transfer = await TransferService(db).get_transfer(transfer_id)
    assert transfer.status == TransferStatus.IN_TRANSIT.value
    assert await StockLedgerService(db).get_quantity(seeded.north, seeded.rice) == Decimal("0")

    # Retrying once the ledger is healthy completes the cancellation
    transfer = await TransferService(db).cancel_transfer(transfer_id, reason="Truck broke down")
    assert transfer.status == TransferStatus.CANCELLED.value
    assert await StockLedgerService(db).get_quantity(seeded.north, seeded.rice) == Decimal("10")
