from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from brewery_core.db import get_session
from brewery_core.errors import LotNotFound
from brewery_core.models import (
    Batch, Lot, LotBatch, LotPhaseChange, PackagingRun, Recipe, Tank, TankAssignment,
)
from brewery_core.phases import BATCH_STATUS_FOR_PHASE, BatchStatus, LotStatus, Phase, plan_advance
from brewery_core.tanks_api import (
    OPEN_ASSIGNMENT_STATUSES, end_lot_assignments, get_equipment, tank_view, vacate_tanks,
)
from brewery_core.tenancy import Scope, get_scope
from brewery_core.timeline_api import record_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lots", tags=["lots"])


class PhaseRequest(BaseModel):
    phase: Phase


async def load_lot(session: AsyncSession, lot_id: int) -> Lot:
    lot = (await session.execute(select(Lot).where(Lot.id == lot_id))).scalar_one_or_none()
    if not lot:
        raise LotNotFound(lot_id)
    return lot


async def lot_batch_ids(session: AsyncSession, lot_id: int) -> list[int]:
    return list((await session.execute(
        select(LotBatch.batch_id).where(LotBatch.lot_id == lot_id).order_by(LotBatch.id.asc())
    )).scalars().all())


def record_phase_history(
    session: AsyncSession,
    scope: Scope,
    lot: Lot,
    from_phase: str | None,
    to_phase: str,
    batch_ids: list[int],
    at: datetime,
) -> None:
    session.add(LotPhaseChange(
        lot_id=lot.id,
        from_phase=from_phase,
        to_phase=to_phase,
        changed_by=scope.actor_id,
        changed_at=at,
    ))
    for batch_id in batch_ids:
        record_event(
            session, batch_id, "PHASE_CHANGED", f"Lot {lot.lot_code} moved to {to_phase}",
            description=f"{from_phase or '-'} -> {to_phase}", actor=scope.actor_id, at=at,
        )


async def apply_phase(session: AsyncSession, scope: Scope, lot: Lot, target: Phase) -> None:
    """Move a lot to ``target`` and mirror it onto open assignments, held tanks and batches."""
    now = datetime.now(timezone.utc)
    previous = lot.phase
    lot.phase = target.value
    lot.updated_at = now

    assignments = (await session.execute(
        select(TankAssignment)
        .where(TankAssignment.lot_id == lot.id)
        .where(TankAssignment.status.in_(OPEN_ASSIGNMENT_STATUSES))
    )).scalars().all()
    for a in assignments:
        a.phase = target.value

    tanks = (await session.execute(select(Tank).where(Tank.current_lot_id == lot.id))).scalars().all()
    for tank in tanks:
        tank.current_phase = target.value

    batch_ids = await lot_batch_ids(session, lot.id)
    if batch_ids:
        batches = (await session.execute(
            select(Batch).where(Batch.id.in_(batch_ids)).where(Batch.status != BatchStatus.COMPLETED.value)
        )).scalars().all()
        for b in batches:
            b.status = BATCH_STATUS_FOR_PHASE[target].value
            b.updated_at = now

    record_phase_history(session, scope, lot, previous, target.value, batch_ids, now)
    await session.flush()


async def get_lot_view(session: AsyncSession, lot_id: int) -> dict:
    lot = await load_lot(session, lot_id)

    rows = (await session.execute(
        select(LotBatch, Batch, Recipe)
        .join(Batch, Batch.id == LotBatch.batch_id)
        .outerjoin(Recipe, Recipe.id == Batch.recipe_id)
        .where(LotBatch.lot_id == lot.id)
        .order_by(LotBatch.id.asc())
    )).all()

    batches = [{
        "batch_id": b.id,
        "batch_number": b.batch_number,
        "status": b.status,
        "recipe_id": b.recipe_id,
        "recipe_name": r.name if r else None,
        "recipe_style": r.style if r else None,
        "original_gravity": b.original_gravity,
        "current_gravity": b.current_gravity,
        "final_gravity": b.final_gravity,
        "batch_percentage": lb.batch_percentage,
        "volume_contribution": lb.volume_contribution,
    } for lb, b, r in rows]

    total_volume = sum((Decimal(str(lb.volume_contribution or 0)) for lb, _, _ in rows), Decimal("0"))

    assignments = (await session.execute(
        select(TankAssignment).where(TankAssignment.lot_id == lot.id).order_by(TankAssignment.id.asc())
    )).scalars().all()
    # Completed lots still report the last tank they used.
    active = next((a for a in assignments if a.status != "COMPLETED"), assignments[-1] if assignments else None)

    active_view = None
    if active is not None:
        tank = (await session.execute(select(Tank).where(Tank.id == active.tank_id))).scalar_one_or_none()
        active_view = {
            "id": active.id,
            "phase": active.phase,
            "status": active.status,
            "actual_start": active.actual_start,
            "actual_end": active.actual_end,
            "planned_volume": active.planned_volume,
            "tank": tank_view(tank, await get_equipment(session, tank.id)) if tank else None,
        }

    runs = (await session.execute(
        select(PackagingRun).where(PackagingRun.lot_code == lot.lot_code).order_by(PackagingRun.id.asc())
    )).scalars().all()

    return {
        "id": lot.id,
        "lot_code": lot.lot_code,
        "phase": lot.phase,
        "status": lot.status,
        "planned_volume": lot.planned_volume,
        "actual_volume": lot.actual_volume,
        "total_volume": total_volume,
        "is_blend_result": lot.is_blend_result,
        "is_blend_target": lot.is_blend_target,
        "parent_lot_id": lot.parent_lot_id,
        "blended_at": lot.blended_at,
        "notes": lot.notes,
        "created_at": lot.created_at,
        "batch_count": len(batches),
        "is_blend": len(batches) > 1,
        "batches": batches,
        "active_assignment": active_view,
        "packaging_runs": [{
            "id": run.id,
            "batch_id": run.batch_id,
            "package_type": run.package_type,
            "package_size": run.package_size,
            "quantity": run.quantity,
            "volume_total": run.volume_total,
            "performed_at": run.performed_at,
        } for run in runs],
    }


async def advance_phase_txn(session: AsyncSession, scope: Scope, lot_id: int, req: PhaseRequest) -> dict:
    lot = await load_lot(session, lot_id)
    target = plan_advance(lot.status, lot.phase, req.phase, lot_id=lot.id)
    if target is None:
        logger.info("lot_phase_unchanged", extra={"lot_id": lot.id, "phase": lot.phase})
        return await get_lot_view(session, lot.id)

    previous = lot.phase
    await apply_phase(session, scope, lot, target)
    logger.info("lot_phase_advanced", extra={"lot_id": lot.id, "from_phase": previous, "to_phase": target.value})
    return await get_lot_view(session, lot.id)


async def complete_lot_txn(session: AsyncSession, scope: Scope, lot_id: int) -> dict:
    lot = await load_lot(session, lot_id)
    if lot.status == LotStatus.COMPLETED:
        logger.info("lot_already_completed", extra={"lot_id": lot.id})
        return await get_lot_view(session, lot.id)

    now = datetime.now(timezone.utc)
    lot.status = LotStatus.COMPLETED.value
    lot.updated_at = now

    tank_ids = await end_lot_assignments(session, lot.id, now)
    await vacate_tanks(session, tank_ids, now)

    completed_batches = []
    for batch_id in await lot_batch_ids(session, lot.id):
        still_active = (await session.execute(
            select(Lot.id)
            .join(LotBatch, LotBatch.lot_id == Lot.id)
            .where(LotBatch.batch_id == batch_id)
            .where(Lot.id != lot.id)
            .where(Lot.status != LotStatus.COMPLETED.value)
            .limit(1)
        )).scalar_one_or_none()
        if still_active is not None:
            continue

        batch = (await session.execute(select(Batch).where(Batch.id == batch_id))).scalar_one()
        if batch.status == BatchStatus.COMPLETED:
            continue
        batch.status = BatchStatus.COMPLETED.value
        batch.completed_at = now
        batch.updated_at = now
        record_event(
            session, batch.id, "COMPLETED", f"Batch {batch.batch_number} completed",
            description=f"Lot {lot.lot_code} completed", actor=scope.actor_id, at=now,
        )
        completed_batches.append(batch.id)

    await session.flush()
    logger.info(
        "lot_completed",
        extra={"lot_id": lot.id, "released_tanks": sorted(tank_ids), "completed_batches": completed_batches},
    )
    return await get_lot_view(session, lot.id)


@router.get("")
async def list_lots(phase: Phase | None = None, status: LotStatus | None = None, limit: int = 200,
                    session: AsyncSession = Depends(get_session)) -> List[dict]:
    stmt = select(Lot).order_by(Lot.created_at.desc(), Lot.id.desc()).limit(limit)
    if phase is not None:
        stmt = stmt.where(Lot.phase == phase.value)
    if status is not None:
        stmt = stmt.where(Lot.status == status.value)
    lots = (await session.execute(stmt)).scalars().all()
    return [{
        "id": l.id,
        "lot_code": l.lot_code,
        "phase": l.phase,
        "status": l.status,
        "planned_volume": l.planned_volume,
        "is_blend_result": l.is_blend_result,
        "parent_lot_id": l.parent_lot_id,
    } for l in lots]


@router.get("/{lot_id}")
async def get_lot(lot_id: int, session: AsyncSession = Depends(get_session)):
    return await get_lot_view(session, lot_id)


@router.post("/{lot_id}/phase")
async def advance_phase(lot_id: int, req: PhaseRequest, scope: Scope = Depends(get_scope),
                        session: AsyncSession = Depends(get_session)):
    resp = await advance_phase_txn(session, scope, lot_id, req)
    await session.commit()
    return resp


@router.post("/{lot_id}/complete")
async def complete_lot(lot_id: int, scope: Scope = Depends(get_scope),
                       session: AsyncSession = Depends(get_session)):
    resp = await complete_lot_txn(session, scope, lot_id)
    await session.commit()
    return resp
