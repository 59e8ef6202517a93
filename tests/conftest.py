"""Shared fixtures: a fresh SQLite file database per test, seeded branches and products."""
from decimal import Decimal
from types import SimpleNamespace

import pytest
from httpx import AsyncClient, ASGITransport

from app.database import create_engine_for_url, create_session_factory, init_db, get_db
from app.main import app
from app.models import Branch, Product
from app.models.inventory import StockMovementType
from app.services.stock_ledger_service import StockLedgerService


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def seeded(db):
    """
    Two active branches, one inactive branch and three products.

    Only ids are returned: ORM instances expire on rollback and cannot be
    lazily refreshed under asyncio.
    """
    north = Branch(code="NORTH", name="North Store")
    south = Branch(code="SOUTH", name="South Store")
    closed = Branch(code="OLD", name="Closed Store", is_active=False)
    rice = Product(name="Basmati Rice 1kg", sku="RICE-1KG", minimum_stock=Decimal("5"))
    soap = Product(name="Hand Soap", sku="SOAP-01", track_stock=False, minimum_stock=Decimal("5"))
    lentils = Product(
        name="Red Lentils 20kg Sack",
        sku="LENT-20",
        is_weighable=True,
        weight_size=Decimal("20"),
    )
    db.add_all([north, south, closed, rice, soap, lentils])
    await db.commit()

    return SimpleNamespace(
        north=north.id,
        south=south.id,
        closed=closed.id,
        rice=rice.id,
        soap=soap.id,
        lentils=lentils.id,
    )


@pytest.fixture
def stock_up(db):
    """Post opening stock through the ledger and commit."""

    async def _stock_up(branch_id, product_id, quantity):
        stock, _ = await StockLedgerService(db).record_external_movement(
            branch_id, product_id, StockMovementType.INITIAL, Decimal(str(quantity))
        )
        return stock

    return _stock_up


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
