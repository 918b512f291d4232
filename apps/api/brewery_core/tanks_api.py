from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from brewery_core.db import get_session
from brewery_core.errors import AssignmentNotFound, LotNotFound, TankNotFound, TankUnavailable
from brewery_core.models import Batch, Equipment, Lot, Tank, TankAssignment
from brewery_core.phases import LotStatus
from brewery_core.tenancy import Scope, get_scope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tanks", tags=["tanks"])

Litres = condecimal(gt=0, max_digits=12, decimal_places=2)

OPEN_ASSIGNMENT_STATUSES = ("PLANNED", "ACTIVE")
UNCLEAN_EQUIPMENT_STATUSES = ("NEEDS_CIP", "MAINTENANCE")


async def get_tank(session: AsyncSession, tank_id: int) -> Tank:
    tank = (await session.execute(select(Tank).where(Tank.id == tank_id))).scalar_one_or_none()
    if not tank:
        raise TankNotFound(tank_id)
    return tank


async def get_equipment(session: AsyncSession, tank_id: int) -> Equipment | None:
    return (await session.execute(
        select(Equipment).where(Equipment.tank_id == tank_id)
    )).scalar_one_or_none()


async def open_assignment(session: AsyncSession, tank_id: int) -> TankAssignment | None:
    return (await session.execute(
        select(TankAssignment)
        .where(TankAssignment.tank_id == tank_id)
        .where(TankAssignment.status.in_(OPEN_ASSIGNMENT_STATUSES))
        .order_by(TankAssignment.id.asc())
        .limit(1)
    )).scalar_one_or_none()


async def ensure_tank_free(session: AsyncSession, tank: Tank, *, require_clean: bool = True) -> Equipment | None:
    """Raise TankUnavailable unless the tank has no open assignment (and, optionally, is clean)."""
    occupying = await open_assignment(session, tank.id)
    if occupying:
        raise TankUnavailable(tank.id, f"occupied by lot {occupying.lot_id}", occupying_lot_id=occupying.lot_id)
    if tank.current_lot_id is not None:
        raise TankUnavailable(tank.id, f"still holds lot {tank.current_lot_id}", occupying_lot_id=tank.current_lot_id)

    equipment = await get_equipment(session, tank.id)
    if require_clean:
        if tank.status == "MAINTENANCE" or (equipment and equipment.status in UNCLEAN_EQUIPMENT_STATUSES):
            status = equipment.status if equipment else tank.status
            raise TankUnavailable(tank.id, f"equipment status is {status}")
    return equipment


def mark_occupied(tank: Tank, equipment: Equipment | None, lot: Lot, phase: str,
                  batch: Batch | None = None) -> None:
    tank.status = "IN_USE"
    tank.current_lot_id = lot.id
    tank.current_phase = phase
    if equipment is not None:
        equipment.status = "OPERATIONAL"
        if batch is not None:
            equipment.current_batch_id = batch.id
            equipment.current_batch_number = batch.batch_number


async def occupy_tank(
    session: AsyncSession,
    scope: Scope,
    tank: Tank,
    lot: Lot,
    phase: str,
    *,
    status: str = "ACTIVE",
    batch: Batch | None = None,
    planned_volume=None,
    require_clean: bool = True,
    at: datetime | None = None,
) -> TankAssignment:
    equipment = await ensure_tank_free(session, tank, require_clean=require_clean)
    if planned_volume is not None and Decimal(str(planned_volume)) > Decimal(str(tank.capacity)):
        raise TankUnavailable(tank.id, f"capacity {tank.capacity} is below requested volume {planned_volume}")
    at = at or datetime.now(timezone.utc)

    assignment = TankAssignment(
        lot_id=lot.id,
        tank_id=tank.id,
        phase=phase,
        status=status,
        actual_start=at if status == "ACTIVE" else None,
        planned_start=at,
        planned_volume=planned_volume,
        created_by=scope.actor_id,
    )
    session.add(assignment)
    if status == "ACTIVE":
        mark_occupied(tank, equipment, lot, phase, batch)
    await session.flush()
    return assignment


def release_tank(tank: Tank) -> None:
    """Occupancy side of vacating a tank. Safe to repeat."""
    tank.status = "AVAILABLE"
    tank.current_lot_id = None
    tank.current_phase = None


def flag_cip(equipment: Equipment, at: datetime) -> None:
    """Cleanliness side of vacating a tank. Safe to repeat."""
    equipment.status = "NEEDS_CIP"
    equipment.current_batch_id = None
    equipment.current_batch_number = None
    equipment.next_cip_at = at


async def end_lot_assignments(session: AsyncSession, lot_id: int, at: datetime) -> set[int]:
    """Close every open assignment of a lot; return the ids of tanks the lot occupied."""
    assignments = (await session.execute(
        select(TankAssignment)
        .where(TankAssignment.lot_id == lot_id)
        .where(TankAssignment.status.in_(OPEN_ASSIGNMENT_STATUSES))
    )).scalars().all()

    tank_ids: set[int] = set()
    for a in assignments:
        a.status = "COMPLETED"
        a.actual_end = at
        tank_ids.add(a.tank_id)

    holding = (await session.execute(select(Tank.id).where(Tank.current_lot_id == lot_id))).scalars().all()
    tank_ids.update(holding)
    return tank_ids


async def vacate_tanks(session: AsyncSession, tank_ids: set[int], at: datetime) -> None:
    if not tank_ids:
        return
    tanks = (await session.execute(select(Tank).where(Tank.id.in_(tank_ids)))).scalars().all()
    for tank in tanks:
        release_tank(tank)

    equipment_rows = (await session.execute(
        select(Equipment).where(Equipment.tank_id.in_(tank_ids))
    )).scalars().all()
    for equipment in equipment_rows:
        flag_cip(equipment, at)
    await session.flush()


def tank_view(tank: Tank, equipment: Equipment | None = None) -> dict:
    return {
        "id": tank.id,
        "name": tank.name,
        "kind": tank.kind,
        "capacity": tank.capacity,
        "status": tank.status,
        "current_lot_id": tank.current_lot_id,
        "current_phase": tank.current_phase,
        "equipment_status": equipment.status if equipment else None,
        "current_batch_number": equipment.current_batch_number if equipment else None,
        "last_cip_at": equipment.last_cip_at if equipment else None,
        "next_cip_at": equipment.next_cip_at if equipment else None,
    }


def assignment_view(a: TankAssignment) -> dict:
    return {
        "id": a.id,
        "lot_id": a.lot_id,
        "tank_id": a.tank_id,
        "phase": a.phase,
        "status": a.status,
        "actual_start": a.actual_start,
        "actual_end": a.actual_end,
        "planned_volume": a.planned_volume,
        "actual_volume": a.actual_volume,
    }


class TankCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    kind: Literal["FERMENTER", "BRITE", "UNITANK", "CONDITIONING"] = "FERMENTER"
    capacity: Litres
    cip_interval_days: int = Field(default=14, ge=1, le=365)


class AssignRequest(BaseModel):
    lot_id: int
    status: Literal["PLANNED", "ACTIVE"] = "ACTIVE"
    planned_volume: Litres | None = None


class CipRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=500)
    performed_at: datetime | None = None


async def register_tank_txn(session: AsyncSession, scope: Scope, req: TankCreateRequest) -> dict:
    tank = Tank(name=req.name, kind=req.kind, capacity=req.capacity, status="AVAILABLE")
    session.add(tank)
    await session.flush()

    equipment = Equipment(tank_id=tank.id, status="OPERATIONAL", cip_interval_days=req.cip_interval_days)
    session.add(equipment)
    await session.flush()

    logger.info("tank_registered", extra={"tank_id": tank.id, "tank_name": tank.name})
    return tank_view(tank, equipment)


async def assign_tank_txn(session: AsyncSession, scope: Scope, tank_id: int, req: AssignRequest) -> dict:
    tank = await get_tank(session, tank_id)
    lot = (await session.execute(select(Lot).where(Lot.id == req.lot_id))).scalar_one_or_none()
    if not lot:
        raise LotNotFound(req.lot_id)
    if lot.status == LotStatus.COMPLETED:
        raise TankUnavailable(tank.id, f"lot {lot.lot_code} is COMPLETED and cannot occupy a tank")

    assignment = await occupy_tank(
        session, scope, tank, lot, lot.phase,
        status=req.status, planned_volume=req.planned_volume,
    )
    logger.info(
        "tank_assigned",
        extra={"tank_id": tank.id, "lot_id": lot.id, "assignment_id": assignment.id, "status": assignment.status},
    )
    return assignment_view(assignment)


async def end_assignment_txn(session: AsyncSession, scope: Scope, assignment_id: int) -> dict:
    assignment = (await session.execute(
        select(TankAssignment).where(TankAssignment.id == assignment_id)
    )).scalar_one_or_none()
    if not assignment:
        raise AssignmentNotFound(assignment_id)
    if assignment.status == "COMPLETED":
        return assignment_view(assignment)

    now = datetime.now(timezone.utc)
    was_active = assignment.status == "ACTIVE"
    assignment.status = "COMPLETED"
    assignment.actual_end = now

    tank = await get_tank(session, assignment.tank_id)
    if tank.current_lot_id == assignment.lot_id or was_active:
        await vacate_tanks(session, {tank.id}, now)
    await session.flush()

    logger.info("tank_assignment_ended", extra={"assignment_id": assignment.id, "tank_id": tank.id})
    return assignment_view(assignment)


async def record_cip_txn(session: AsyncSession, scope: Scope, tank_id: int, req: CipRequest) -> dict:
    tank = await get_tank(session, tank_id)
    equipment = await get_equipment(session, tank_id)
    if equipment is None:
        equipment = Equipment(tank_id=tank.id)
        session.add(equipment)

    performed_at = req.performed_at or datetime.now(timezone.utc)
    equipment.status = "OPERATIONAL"
    equipment.last_cip_at = performed_at
    equipment.next_cip_at = performed_at + timedelta(days=equipment.cip_interval_days or 14)
    if tank.current_lot_id is None and tank.status in ("NEEDS_CIP", "AVAILABLE"):
        tank.status = "AVAILABLE"
    await session.flush()

    logger.info("tank_cleaned", extra={"tank_id": tank.id})
    return tank_view(tank, equipment)


@router.post("")
async def register_tank(req: TankCreateRequest, scope: Scope = Depends(get_scope),
                        session: AsyncSession = Depends(get_session)):
    resp = await register_tank_txn(session, scope, req)
    await session.commit()
    return resp


@router.get("")
async def list_tanks(session: AsyncSession = Depends(get_session)) -> List[dict]:
    rows = (await session.execute(
        select(Tank, Equipment)
        .outerjoin(Equipment, Equipment.tank_id == Tank.id)
        .order_by(Tank.name.asc())
    )).all()
    return [tank_view(tank, equipment) for tank, equipment in rows]


@router.post("/{tank_id}/assignments")
async def assign_tank(tank_id: int, req: AssignRequest, scope: Scope = Depends(get_scope),
                      session: AsyncSession = Depends(get_session)):
    resp = await assign_tank_txn(session, scope, tank_id, req)
    await session.commit()
    return resp


@router.post("/assignments/{assignment_id}/end")
async def end_assignment(assignment_id: int, scope: Scope = Depends(get_scope),
                         session: AsyncSession = Depends(get_session)):
    resp = await end_assignment_txn(session, scope, assignment_id)
    await session.commit()
    return resp


@router.post("/{tank_id}/cip")
async def record_cip(tank_id: int, req: CipRequest, scope: Scope = Depends(get_scope),
                     session: AsyncSession = Depends(get_session)):
    resp = await record_cip_txn(session, scope, tank_id, req)
    await session.commit()
    return resp
