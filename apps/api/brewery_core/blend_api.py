from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from brewery_core.brewing_api import batch_view
from brewery_core.config import settings
from brewery_core.db import get_session
from brewery_core.errors import BatchNotFound, InsufficientSources, InvalidPhaseTransition, LotNotFound
from brewery_core.lot_codes import next_blend_batch_number, next_blend_lot_code
from brewery_core.lots_api import get_lot_view, record_phase_history
from brewery_core.models import Batch, Lot, LotBatch
from brewery_core.phases import BLEND_ELIGIBLE_PHASES, PACKAGEABLE_BATCH_STATUSES, BatchStatus, LotStatus, Phase
from brewery_core.tanks_api import end_lot_assignments, get_tank, occupy_tank, vacate_tanks
from brewery_core.tenancy import Scope, get_scope
from brewery_core.timeline_api import record_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/blends", tags=["blending"])

ELIGIBLE_PHASE_VALUES = sorted(p.value for p in BLEND_ELIGIBLE_PHASES)


class BlendRequest(BaseModel):
    source_type: Literal["lots", "batches"] = "lots"
    source_ids: List[int] = Field(min_length=1)
    name: str = Field(min_length=1, max_length=255)
    target_tank_id: int | None = None
    notes: str | None = Field(default=None, max_length=500)


async def resolve_source_lots(session: AsyncSession, source_type: str, source_ids: list[int]) -> list[Lot]:
    """Distinct source lots in request order. Missing ids raise NotFound."""
    ids = list(dict.fromkeys(source_ids))

    if source_type == "lots":
        found = (await session.execute(select(Lot).where(Lot.id.in_(ids)))).scalars().all()
        by_id = {l.id: l for l in found}
        for lot_id in ids:
            if lot_id not in by_id:
                raise LotNotFound(lot_id)
        return [by_id[i] for i in ids]

    found_batches = set((await session.execute(select(Batch.id).where(Batch.id.in_(ids)))).scalars().all())
    for batch_id in ids:
        if batch_id not in found_batches:
            raise BatchNotFound(batch_id)

    rows = (await session.execute(
        select(LotBatch.batch_id, Lot)
        .join(Lot, Lot.id == LotBatch.lot_id)
        .where(LotBatch.batch_id.in_(ids))
        .where(Lot.status != LotStatus.COMPLETED.value)
        .order_by(Lot.id.asc())
    )).all()
    order = {batch_id: i for i, batch_id in enumerate(ids)}
    lots: dict[int, Lot] = {}
    for _, lot in sorted(rows, key=lambda r: (order[r[0]], r[1].id)):
        lots.setdefault(lot.id, lot)
    return list(lots.values())


def check_source_phases(lots: list[Lot]) -> None:
    """COMPLETED sources are always rejected; an ineligible phase only when configured strict."""
    for lot in lots:
        if lot.status == LotStatus.COMPLETED:
            raise InvalidPhaseTransition(
                lot.phase, ELIGIBLE_PHASE_VALUES, lot_id=lot.id,
                reason=f"Lot {lot.lot_code} is COMPLETED and cannot be blended again",
            )
        if lot.phase in ELIGIBLE_PHASE_VALUES:
            continue
        reason = f"Lot {lot.lot_code} is in {lot.phase}; blends take lots in {ELIGIBLE_PHASE_VALUES}"
        if settings.blend_require_eligible_phase:
            raise InvalidPhaseTransition(lot.phase, ELIGIBLE_PHASE_VALUES, lot_id=lot.id, reason=reason)
        logger.warning(
            "blend_source_outside_eligible_phase",
            extra={"lot_id": lot.id, "phase": lot.phase, "status": lot.status},
        )


async def lot_volume(session: AsyncSession, lot: Lot) -> Decimal:
    total = (await session.execute(
        select(func.sum(LotBatch.volume_contribution)).where(LotBatch.lot_id == lot.id)
    )).scalar_one()
    if total is None:
        total = lot.actual_volume if lot.actual_volume is not None else (lot.planned_volume or 0)
    return Decimal(str(total))


async def _first_recipe_id(session: AsyncSession, lot: Lot) -> int | None:
    return (await session.execute(
        select(Batch.recipe_id)
        .join(LotBatch, LotBatch.batch_id == Batch.id)
        .where(LotBatch.lot_id == lot.id)
        .order_by(LotBatch.id.asc())
        .limit(1)
    )).scalar_one_or_none()


async def create_blend_txn(session: AsyncSession, scope: Scope, req: BlendRequest) -> dict:
    sources = await resolve_source_lots(session, req.source_type, req.source_ids)
    if len(sources) < 2:
        raise InsufficientSources(len(sources), req.source_type)
    check_source_phases(sources)

    volumes = {lot.id: await lot_volume(session, lot) for lot in sources}
    aggregate = sum(volumes.values(), Decimal("0"))
    recipe_id = await _first_recipe_id(session, sources[0])
    target_tank = await get_tank(session, req.target_tank_id) if req.target_tank_id is not None else None

    now = datetime.now(timezone.utc)
    batch_number = await next_blend_batch_number(session, now)
    lot_code = await next_blend_lot_code(session, now)

    batch = Batch(
        batch_number=batch_number,
        recipe_id=recipe_id,
        volume=aggregate,
        status=BatchStatus.CONDITIONING.value,
        notes=f"Blend: {req.name}",
        brewed_at=now,
        updated_at=now,
    )
    session.add(batch)
    lot = Lot(
        lot_code=lot_code,
        phase=Phase.CONDITIONING.value,
        status=LotStatus.ACTIVE.value,
        planned_volume=aggregate,
        actual_volume=aggregate,
        is_blend_result=True,
        is_blend_target=True,
        blended_at=now,
        notes=req.notes,
        created_by=scope.actor_id,
        created_at=now,
        updated_at=now,
    )
    session.add(lot)
    await session.flush()

    session.add(LotBatch(lot_id=lot.id, batch_id=batch.id, batch_percentage=100, volume_contribution=aggregate))
    record_phase_history(session, scope, lot, None, Phase.CONDITIONING.value, [], now)

    released: set[int] = set()
    for source in sources:
        source.status = LotStatus.COMPLETED.value
        source.parent_lot_id = lot.id
        source.updated_at = now
        released |= await end_lot_assignments(session, source.id, now)
    await vacate_tanks(session, released, now)

    assignment_id = None
    if target_tank is not None:
        assignment = await occupy_tank(
            session, scope, target_tank, lot, Phase.CONDITIONING.value,
            batch=batch, planned_volume=aggregate, require_clean=target_tank.id not in released, at=now,
        )
        assignment_id = assignment.id

    source_codes = ", ".join(s.lot_code for s in sources)
    record_event(
        session, batch.id, "BLEND_CREATED", f"Blend created: {req.name}",
        description=f"Sources: {source_codes}; volume {aggregate}L", actor=scope.actor_id, at=now,
    )
    await session.flush()

    logger.info(
        "blend_created",
        extra={
            "lot_id": lot.id,
            "lot_code": lot.lot_code,
            "batch_number": batch.batch_number,
            "source_lot_ids": [s.id for s in sources],
            "released_tanks": sorted(released),
            "volume": str(aggregate),
        },
    )
    return {
        "batch": batch_view(batch),
        "lot": await get_lot_view(session, lot.id),
        "source_lot_ids": [s.id for s in sources],
        "released_tank_ids": sorted(released),
        "assignment_id": assignment_id,
    }


async def list_blend_candidates_txn(session: AsyncSession, candidate_type: str) -> List[dict]:
    if candidate_type == "batches":
        batches = (await session.execute(
            select(Batch)
            .where(Batch.status.in_([s.value for s in PACKAGEABLE_BATCH_STATUSES]))
            .order_by(Batch.brewed_at.asc(), Batch.id.asc())
        )).scalars().all()
        return [batch_view(b) for b in batches]

    lots = (await session.execute(
        select(Lot)
        .where(Lot.status == LotStatus.ACTIVE.value)
        .where(Lot.phase.in_(ELIGIBLE_PHASE_VALUES))
        .order_by(Lot.created_at.asc(), Lot.id.asc())
    )).scalars().all()
    out = []
    for lot in lots:
        out.append({
            "id": lot.id,
            "lot_code": lot.lot_code,
            "phase": lot.phase,
            "volume": await lot_volume(session, lot),
            "is_blend_result": lot.is_blend_result,
        })
    return out


@router.post("")
async def create_blend(req: BlendRequest, scope: Scope = Depends(get_scope),
                       session: AsyncSession = Depends(get_session)):
    resp = await create_blend_txn(session, scope, req)
    await session.commit()
    return resp


@router.get("/candidates")
async def list_blend_candidates(type: Literal["lots", "batches"] = "lots",
                                session: AsyncSession = Depends(get_session)):
    return await list_blend_candidates_txn(session, type)
