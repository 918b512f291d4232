from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from brewery_core.brewing_api import batch_view, load_batch
from brewery_core.db import get_session
from brewery_core.errors import BatchNotInLot
from brewery_core.lots_api import load_lot, lot_batch_ids, record_phase_history
from brewery_core.models import Batch, Lot, LotBatch, PackagingRun
from brewery_core.package_types import package_type_code, volume_total
from brewery_core.phases import (
    BatchStatus, LotStatus, Phase, PhaseEvent, is_packaged_or_done, require_packageable_batch, resolve,
)
from brewery_core import tank_sync
from brewery_core.tenancy import Scope, get_scope
from brewery_core.timeline_api import record_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/batches", tags=["packaging"])

PackageSize = condecimal(gt=0, max_digits=8, decimal_places=3)


class PackagingDetails(BaseModel):
    package_kind: Literal["keg", "bottle", "can"]
    package_size: PackageSize | None = None
    quantity: int = Field(gt=0)
    notes: str | None = Field(default=None, max_length=500)
    performed_at: datetime | None = None


class PackagingRequest(BaseModel):
    lot_id: int | None = None
    packaging: PackagingDetails | None = None


async def _governing_lot(session: AsyncSession, batch_id: int) -> tuple[Lot | None, list[int]]:
    """The batch's active lot, preferring a blended one; with that lot's member batch ids."""
    lots = (await session.execute(
        select(Lot)
        .join(LotBatch, LotBatch.lot_id == Lot.id)
        .where(LotBatch.batch_id == batch_id)
        .where(Lot.status != LotStatus.COMPLETED.value)
        .order_by(Lot.id.asc())
    )).scalars().all()

    first = None
    for lot in lots:
        members = await lot_batch_ids(session, lot.id)
        if len(members) > 1:
            return lot, members
        if first is None:
            first = (lot, members)
    return first if first else (None, [])


def _already(batch: Batch, reason: str) -> dict:
    return {
        "batch": batch_view(batch),
        "blended_batches_updated": 0,
        "already_packaging": True,
        "reason": reason,
        "packaging_run_id": None,
        "tank_sync": "skipped",
        "tank_sync_backlog_id": None,
    }


async def start_packaging_txn(session: AsyncSession, scope: Scope, batch_id: int, req: PackagingRequest) -> dict:
    """
    Move a batch, or one lot of it, into PACKAGING.

    Commits the batch/lot transition itself, then runs the tank bookkeeping
    as a separate transaction (see tank_sync).
    """
    batch = await load_batch(session, batch_id)
    split_path = req.lot_id is not None

    if split_path:
        lot = await load_lot(session, req.lot_id)
        members = await lot_batch_ids(session, lot.id)
        if batch.id not in members:
            raise BatchNotInLot(batch.id, lot.id)
        if is_packaged_or_done(lot.phase, lot.status):
            logger.info("packaging_already_started", extra={"batch_id": batch.id, "lot_id": lot.id})
            return _already(batch, f"lot {lot.lot_code} is {lot.phase}/{lot.status}")
        resolve(lot.status, lot.phase, PhaseEvent.START_PACKAGING, lot_id=lot.id)
    else:
        if batch.status == BatchStatus.PACKAGING:
            logger.info("packaging_already_started", extra={"batch_id": batch.id})
            return _already(batch, f"batch {batch.batch_number} is PACKAGING")
        require_packageable_batch(batch.status, batch_id=batch.id)
        lot, members = await _governing_lot(session, batch.id)

    batch_ids = [batch.id]
    if len(members) > 1:
        batch_ids += [b for b in members if b != batch.id]

    now = datetime.now(timezone.utc)
    moved = (await session.execute(select(Batch).where(Batch.id.in_(batch_ids)))).scalars().all()
    for b in moved:
        b.status = BatchStatus.PACKAGING.value
        b.updated_at = now

    run_id = None
    if req.packaging is not None:
        details = req.packaging
        run = PackagingRun(
            batch_id=batch.id,
            lot_code=lot.lot_code if lot else None,
            package_type=package_type_code(details.package_kind, details.package_size),
            package_size=details.package_size,
            quantity=details.quantity,
            volume_total=volume_total(details.package_size, details.quantity),
            performed_by=scope.actor_id,
            performed_at=details.performed_at or now,
            notes=details.notes,
        )
        session.add(run)
        await session.flush()
        run_id = run.id

    if lot is not None:
        previous = lot.phase
        lot.phase = Phase.PACKAGING.value
        lot.status = LotStatus.ACTIVE.value
        lot.updated_at = now
        if previous != Phase.PACKAGING:
            record_phase_history(session, scope, lot, previous, Phase.PACKAGING.value, [], now)

    lot_label = f" (lot {lot.lot_code})" if lot else ""
    for bid in batch_ids:
        record_event(
            session, bid, "PACKAGING_STARTED", "Packaging started",
            description=f"Moved together with {len(batch_ids)} batch(es){lot_label}", actor=scope.actor_id, at=now,
        )

    await session.flush()
    result = {
        "batch": batch_view(batch),
        "blended_batches_updated": len(batch_ids),
        "already_packaging": False,
        "packaging_run_id": run_id,
    }
    payload = {"lot_ids": [lot.id] if split_path else None, "batch_ids": batch_ids}
    lot_id = lot.id if lot else None
    await session.commit()

    logger.info(
        "packaging_started",
        extra={"batch_id": batch_id, "lot_id": lot_id, "batch_ids": batch_ids, "packaging_run_id": run_id},
    )

    sync_status, backlog_id = await tank_sync.run_tank_sync(session, payload)
    result["tank_sync"] = sync_status
    result["tank_sync_backlog_id"] = backlog_id
    return result


@router.post("/{batch_id}/packaging")
async def start_packaging(batch_id: int, req: PackagingRequest, scope: Scope = Depends(get_scope),
                          session: AsyncSession = Depends(get_session)):
    return await start_packaging_txn(session, scope, batch_id, req)
