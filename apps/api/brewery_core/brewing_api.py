from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from brewery_core.db import get_session
from brewery_core.errors import BatchNotFound, InvalidAllocation, RecipeNotFound
from brewery_core.inventory_api import load_item
from brewery_core.ledger import MovementType, append_entry, signed_quantity
from brewery_core.lot_codes import next_batch_number, next_lot_code, split_lot_code
from brewery_core.lots_api import record_phase_history
from brewery_core.models import Batch, Lot, LotBatch, Recipe
from brewery_core.phases import BatchStatus, LotStatus, Phase
from brewery_core.tanks_api import get_tank, occupy_tank
from brewery_core.tenancy import Scope, get_scope
from brewery_core.timeline_api import record_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/batches", tags=["brewing"])

Litres = condecimal(gt=0, max_digits=12, decimal_places=2)
Qty = condecimal(gt=0, max_digits=14, decimal_places=3)
Gravity = condecimal(gt=0, max_digits=6, decimal_places=4)
TOLERANCE = Decimal("0.01")


class Allocation(BaseModel):
    tank_id: int
    volume: Litres


class IngredientUse(BaseModel):
    item_id: int
    quantity: Qty
    notes: str | None = Field(default=None, max_length=500)


class BrewRequest(BaseModel):
    recipe_id: int | None = None
    volume: Litres
    original_gravity: Gravity | None = None
    allocations: List[Allocation] = Field(default_factory=list)
    ingredients: List[IngredientUse] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=500)
    brewed_at: datetime | None = None


class BrewLot(BaseModel):
    lot_id: int
    lot_code: str
    tank_id: int | None = None
    assignment_id: int | None = None
    volume: Decimal


class BrewResponse(BaseModel):
    batch_id: int
    batch_number: str
    lot_id: int
    lot_code: str
    split: bool
    lots: List[BrewLot]
    consumption_entry_ids: List[int]


async def load_batch(session: AsyncSession, batch_id: int) -> Batch:
    batch = (await session.execute(select(Batch).where(Batch.id == batch_id))).scalar_one_or_none()
    if not batch:
        raise BatchNotFound(batch_id)
    return batch


def batch_view(batch: Batch) -> dict:
    return {
        "id": batch.id,
        "batch_number": batch.batch_number,
        "recipe_id": batch.recipe_id,
        "status": batch.status,
        "volume": batch.volume,
        "original_gravity": batch.original_gravity,
        "current_gravity": batch.current_gravity,
        "final_gravity": batch.final_gravity,
        "notes": batch.notes,
        "brewed_at": batch.brewed_at,
        "completed_at": batch.completed_at,
        "updated_at": batch.updated_at,
    }


def _check_allocations(req: BrewRequest) -> None:
    tank_ids = [a.tank_id for a in req.allocations]
    if len(set(tank_ids)) != len(tank_ids):
        raise InvalidAllocation("A tank can receive only one allocation", {"tank_ids": tank_ids})
    allocated = sum((a.volume for a in req.allocations), Decimal("0"))
    if allocated - req.volume > TOLERANCE:
        raise InvalidAllocation(
            f"Allocated volume {allocated} exceeds batch volume {req.volume}",
            {"allocated": str(allocated), "volume": str(req.volume)},
        )


async def start_brew_txn(session: AsyncSession, scope: Scope, req: BrewRequest) -> BrewResponse:
    _check_allocations(req)
    if req.recipe_id is not None:
        recipe = (await session.execute(select(Recipe).where(Recipe.id == req.recipe_id))).scalar_one_or_none()
        if not recipe:
            raise RecipeNotFound(req.recipe_id)

    tanks = [await get_tank(session, a.tank_id) for a in req.allocations]
    brewed_at = req.brewed_at or datetime.now(timezone.utc)
    batch_number = await next_batch_number(session, brewed_at)
    lot_code = await next_lot_code(session, Phase.FERMENTATION, brewed_at)
    split = len(req.allocations) > 1

    batch = Batch(
        batch_number=batch_number,
        recipe_id=req.recipe_id,
        volume=req.volume,
        original_gravity=req.original_gravity,
        current_gravity=req.original_gravity,
        status=BatchStatus.FERMENTING.value,
        notes=req.notes,
        brewed_at=brewed_at,
        updated_at=brewed_at,
    )
    session.add(batch)

    # A split parent only carries lineage; its children hold the liquid.
    lot = Lot(
        lot_code=lot_code,
        phase=Phase.FERMENTATION.value,
        status=LotStatus.COMPLETED.value if split else LotStatus.ACTIVE.value,
        planned_volume=req.volume,
        actual_volume=req.volume,
        notes=req.notes,
        created_by=scope.actor_id,
        created_at=brewed_at,
        updated_at=brewed_at,
    )
    session.add(lot)
    await session.flush()

    session.add(LotBatch(lot_id=lot.id, batch_id=batch.id, batch_percentage=100, volume_contribution=req.volume))
    record_phase_history(session, scope, lot, None, Phase.FERMENTATION.value, [], brewed_at)

    lots: List[BrewLot] = []
    if not split:
        assignment_id = None
        tank_id = None
        if tanks:
            assignment = await occupy_tank(
                session, scope, tanks[0], lot, Phase.FERMENTATION.value,
                batch=batch, planned_volume=req.allocations[0].volume, at=brewed_at,
            )
            assignment_id, tank_id = assignment.id, tanks[0].id
        lots.append(BrewLot(
            lot_id=lot.id, lot_code=lot.lot_code, tank_id=tank_id, assignment_id=assignment_id, volume=req.volume,
        ))
    else:
        for i, (alloc, tank) in enumerate(zip(req.allocations, tanks)):
            child = Lot(
                lot_code=split_lot_code(lot_code, i),
                phase=Phase.FERMENTATION.value,
                status=LotStatus.ACTIVE.value,
                planned_volume=alloc.volume,
                actual_volume=alloc.volume,
                parent_lot_id=lot.id,
                created_by=scope.actor_id,
                created_at=brewed_at,
                updated_at=brewed_at,
            )
            session.add(child)
            await session.flush()

            session.add(LotBatch(
                lot_id=child.id,
                batch_id=batch.id,
                batch_percentage=(alloc.volume / req.volume * 100).quantize(Decimal("0.01")),
                volume_contribution=alloc.volume,
            ))
            record_phase_history(session, scope, child, None, Phase.FERMENTATION.value, [], brewed_at)
            assignment = await occupy_tank(
                session, scope, tank, child, Phase.FERMENTATION.value,
                batch=batch, planned_volume=alloc.volume, at=brewed_at,
            )
            lots.append(BrewLot(
                lot_id=child.id, lot_code=child.lot_code, tank_id=tank.id,
                assignment_id=assignment.id, volume=alloc.volume,
            ))

    tank_names = ", ".join(t.name for t in tanks) or "unassigned"
    record_event(
        session, batch.id, "FERMENTATION_STARTED",
        "Fermentation started (split)" if split else "Fermentation started",
        description=f"Tanks: {tank_names}, volume: {req.volume}L", actor=scope.actor_id, at=brewed_at,
    )

    entry_ids: List[int] = []
    for use in req.ingredients:
        item = await load_item(session, use.item_id, for_update=True)
        entry = await append_entry(
            session, item, MovementType.CONSUMPTION, signed_quantity(MovementType.CONSUMPTION, use.quantity),
            batch_id=batch.id, notes=use.notes, actor=scope.actor_id,
        )
        entry_ids.append(entry.id)

    await session.flush()
    logger.info(
        "brew_started",
        extra={
            "batch_id": batch.id,
            "batch_number": batch.batch_number,
            "lot_code": lot.lot_code,
            "split": split,
            "tank_ids": [t.id for t in tanks],
        },
    )
    return BrewResponse(
        batch_id=batch.id,
        batch_number=batch.batch_number,
        lot_id=lot.id,
        lot_code=lot.lot_code,
        split=split,
        lots=lots,
        consumption_entry_ids=entry_ids,
    )


@router.post("", response_model=BrewResponse)
async def start_brew(req: BrewRequest, scope: Scope = Depends(get_scope),
                     session: AsyncSession = Depends(get_session)):
    resp = await start_brew_txn(session, scope, req)
    await session.commit()
    return resp


@router.get("/{batch_id}")
async def get_batch(batch_id: int, session: AsyncSession = Depends(get_session)):
    batch = await load_batch(session, batch_id)
    lots = (await session.execute(
        select(Lot, LotBatch)
        .join(LotBatch, LotBatch.lot_id == Lot.id)
        .where(LotBatch.batch_id == batch.id)
        .order_by(Lot.id.asc())
    )).all()
    return {
        **batch_view(batch),
        "lots": [{
            "lot_id": lot.id,
            "lot_code": lot.lot_code,
            "phase": lot.phase,
            "status": lot.status,
            "volume_contribution": lb.volume_contribution,
        } for lot, lb in lots],
    }
