from __future__ import annotations

from datetime import datetime, timezone
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from brewery_core.db import bound_tenant
from brewery_core.models import CodeCounter
from brewery_core.phases import Phase

PHASE_PREFIX = {
    Phase.FERMENTATION: "FERM",
    Phase.CONDITIONING: "COND",
    Phase.BRIGHT: "BRT",
    Phase.PACKAGING: "PKG",
}

def _insert_for(session: AsyncSession):
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert

async def next_sequence(session: AsyncSession, prefix: str, period: str) -> int:
    """Allocate the next number for (tenant, prefix, period) inside the caller's transaction."""
    tenant_id = bound_tenant(session.sync_session)

    await session.execute(
        _insert_for(session)(CodeCounter)
        .values(tenant_id=tenant_id, prefix=prefix, period=period, last_seq=0)
        .on_conflict_do_nothing(index_elements=["tenant_id", "prefix", "period"])
    )

    counter = (await session.execute(
        select(CodeCounter)
        .where(CodeCounter.prefix == prefix, CodeCounter.period == period)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one()

    counter.last_seq = counter.last_seq + 1
    await session.flush()
    return counter.last_seq

def _at(at: datetime | None) -> datetime:
    return at or datetime.now(timezone.utc)

async def next_batch_number(session: AsyncSession, at: datetime | None = None, prefix: str = "BRW") -> str:
    year = _at(at).strftime("%Y")
    seq = await next_sequence(session, prefix, year)
    return f"{prefix}-{year}-{seq:04d}"

async def next_blend_batch_number(session: AsyncSession, at: datetime | None = None) -> str:
    day = _at(at).strftime("%Y%m%d")
    seq = await next_sequence(session, "BLD", day)
    return f"BLD-{day}-{seq:03d}"

async def next_lot_code(session: AsyncSession, phase: Phase, at: datetime | None = None) -> str:
    prefix = PHASE_PREFIX[Phase(phase)]
    day = _at(at).strftime("%Y%m%d")
    seq = await next_sequence(session, prefix, day)
    return f"{prefix}-{day}-{seq:04d}"

async def next_blend_lot_code(session: AsyncSession, at: datetime | None = None) -> str:
    year = _at(at).strftime("%Y")
    seq = await next_sequence(session, "BLEND", year)
    return f"BLEND-{year}-{seq:04d}"

def split_lot_code(parent_code: str, index: int) -> str:
    # A, B, C ... per tank allocation
    return f"{parent_code}-{chr(65 + index)}"
