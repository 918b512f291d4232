"""
Pytest fixtures for the brewery core test suite.

Provides:
- an in-memory SQLite database (aiosqlite, one shared connection) per test
- sessions bound to a tenant, the way get_session binds them per request
- a ``brewery`` helper that drives the real *_txn operations to build state
- an httpx client over the FastAPI app with get_session overridden
"""

from decimal import Decimal

import pytest
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from brewery_core.brewing_api import Allocation, BrewRequest, IngredientUse, start_brew_txn
from brewery_core.db import bind_tenant, get_session
from brewery_core.inventory_api import ItemCreateRequest, create_item_txn
from brewery_core.lots_api import PhaseRequest, advance_phase_txn
from brewery_core.models import Base
from brewery_core.phases import PHASE_ORDER, Phase, rank
from brewery_core.tanks_api import TankCreateRequest, register_tank_txn
from brewery_core.tenancy import Scope, get_scope

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        bind_tenant(s, TENANT)
        yield s


@pytest.fixture
def scope():
    return Scope(tenant_id=TENANT, actor_id="brewer-1")


async def reload(session, model, obj_id):
    """Fetch a row from the database, overwriting whatever the session holds."""
    return (await session.execute(
        select(model).where(model.id == obj_id).execution_options(populate_existing=True)
    )).scalar_one()


class Brewery:
    """Builds production state through the same operations the API uses."""

    def __init__(self, session, scope):
        self.session = session
        self.scope = scope
        self._tank_seq = 0

    async def tank(self, name=None, capacity=1000):
        self._tank_seq += 1
        req = TankCreateRequest(name=name or f"FV-{self._tank_seq}", capacity=capacity)
        return await register_tank_txn(self.session, self.scope, req)

    async def brew(self, volume, allocations=(), recipe_id=None, ingredients=()):
        req = BrewRequest(
            recipe_id=recipe_id,
            volume=volume,
            allocations=[Allocation(tank_id=t, volume=v) for t, v in allocations],
            ingredients=[IngredientUse(item_id=i, quantity=q) for i, q in ingredients],
        )
        return await start_brew_txn(self.session, self.scope, req)

    async def advance_to(self, lot_id, phase):
        lot = None
        for step in PHASE_ORDER[1:rank(phase) + 1]:
            lot = await advance_phase_txn(self.session, self.scope, lot_id, PhaseRequest(phase=step))
        return lot

    async def lot_in(self, phase=Phase.CONDITIONING, volume=500, tank_id=None):
        """Brew a single-lot batch, optionally in a tank, and walk it to ``phase``. Returns the BrewResponse."""
        allocations = [(tank_id, volume)] if tank_id is not None else []
        brew = await self.brew(volume, allocations)
        await self.advance_to(brew.lot_id, phase)
        return brew

    async def item(self, sku="MALT-PILS", name="Pilsner malt", reorder_point=None):
        req = ItemCreateRequest(sku=sku, name=name, reorder_point=reorder_point)
        return await create_item_txn(self.session, self.scope, req)


@pytest.fixture
def brewery(session, scope):
    return Brewery(session, scope)


@pytest.fixture
async def client(session_factory):
    from main import app

    async def _session_override(scope: Scope = Depends(get_scope)):
        async with session_factory() as s:
            bind_tenant(s, scope.tenant_id)
            yield s

    app.dependency_overrides[get_session] = _session_override
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def headers():
    return {"X-Tenant-ID": TENANT, "X-Actor-ID": "brewer-1"}


def dec(value) -> Decimal:
    return Decimal(str(value))
