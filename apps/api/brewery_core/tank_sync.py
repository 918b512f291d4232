"""
Secondary tank bookkeeping for the packaging workflow.

Packaging commits batch and lot state first. Moving the lot's tank
assignments (and the tanks they point at) into PACKAGING runs afterwards in
its own transaction. When that second write fails the primary state stays
committed, and the pending work is stored in ``tank_sync_backlog`` so it can
be replayed by ``retry_tank_syncs``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from brewery_core.db import get_session
from brewery_core.errors import DegradedSubsystemFailure
from brewery_core.models import LotBatch, Tank, TankAssignment, TankSyncBacklog
from brewery_core.phases import Phase
from brewery_core.tanks_api import OPEN_ASSIGNMENT_STATUSES
from brewery_core.tenancy import Scope, get_scope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tank-sync", tags=["tank-sync"])

PACKAGING_SYNC = "PACKAGING_TANK_SYNC"


async def sync_packaging_tanks(session: AsyncSession, payload: dict) -> int:
    """Move open assignments of the affected lots to PACKAGING/ACTIVE and mirror it on their tanks."""
    lot_ids = payload.get("lot_ids")
    if not lot_ids:
        lot_ids = list((await session.execute(
            select(LotBatch.lot_id).where(LotBatch.batch_id.in_(payload.get("batch_ids") or [])).distinct()
        )).scalars().all())
    if not lot_ids:
        return 0

    now = datetime.now(timezone.utc)
    assignments = (await session.execute(
        select(TankAssignment)
        .where(TankAssignment.lot_id.in_(lot_ids))
        .where(TankAssignment.status.in_(OPEN_ASSIGNMENT_STATUSES))
        .order_by(TankAssignment.id.asc())
    )).scalars().all()

    by_tank: dict[int, TankAssignment] = {}
    for a in assignments:
        a.phase = Phase.PACKAGING.value
        a.status = "ACTIVE"
        if a.actual_start is None:
            a.actual_start = now
        by_tank.setdefault(a.tank_id, a)

    if by_tank:
        tanks = (await session.execute(select(Tank).where(Tank.id.in_(list(by_tank))))).scalars().all()
        for tank in tanks:
            tank.status = "IN_USE"
            tank.current_lot_id = by_tank[tank.id].lot_id
            tank.current_phase = Phase.PACKAGING.value

    await session.flush()
    return len(assignments)


async def run_tank_sync(session: AsyncSession, payload: dict) -> tuple[str, int | None]:
    """
    Run the secondary write in its own transaction.

    Returns ``("ok", None)`` or ``("deferred", backlog_id)``. Must only be
    called after the primary state has been committed.
    """
    try:
        await sync_packaging_tanks(session, payload)
        await session.commit()
        return "ok", None
    except SQLAlchemyError as e:
        await session.rollback()
        failure = DegradedSubsystemFailure(
            "Tank assignment sync failed; queued for retry", {"payload": payload, "error": str(e)}
        )
        backlog = TankSyncBacklog(
            operation=PACKAGING_SYNC,
            payload=payload,
            status="PENDING",
            attempts=1,
            last_error=str(e)[:2000],
        )
        session.add(backlog)
        await session.commit()
        logger.warning(
            "tank_sync_deferred",
            extra={"backlog_id": backlog.id, "code": failure.code, "error": str(e), "payload": payload},
        )
        return "deferred", backlog.id


async def retry_tank_syncs_txn(session: AsyncSession, scope: Scope, limit: int = 100) -> dict:
    """Replay pending backlog rows oldest first, one transaction per row."""
    pending = (await session.execute(
        select(TankSyncBacklog.id, TankSyncBacklog.payload)
        .where(TankSyncBacklog.status == "PENDING")
        .order_by(TankSyncBacklog.id.asc())
        .limit(limit)
    )).all()

    resolved: List[int] = []
    still_pending: List[int] = []
    for backlog_id, payload in pending:
        try:
            await sync_packaging_tanks(session, payload)
            row = (await session.execute(
                select(TankSyncBacklog).where(TankSyncBacklog.id == backlog_id)
            )).scalar_one()
            row.status = "RESOLVED"
            row.resolved_at = datetime.now(timezone.utc)
            await session.commit()
            resolved.append(backlog_id)
        except SQLAlchemyError as e:
            await session.rollback()
            row = (await session.execute(
                select(TankSyncBacklog).where(TankSyncBacklog.id == backlog_id)
            )).scalar_one()
            row.attempts = row.attempts + 1
            row.last_error = str(e)[:2000]
            await session.commit()
            still_pending.append(backlog_id)
            logger.warning("tank_sync_retry_failed", extra={"backlog_id": backlog_id, "error": str(e)})

    logger.info("tank_sync_retried", extra={"resolved": resolved, "pending": still_pending})
    return {"resolved": resolved, "pending": still_pending}


@router.post("/retry")
async def retry_tank_syncs(limit: int = 100, scope: Scope = Depends(get_scope),
                           session: AsyncSession = Depends(get_session)):
    return await retry_tank_syncs_txn(session, scope, limit)


@router.get("/backlog")
async def list_backlog(status: str = "PENDING", session: AsyncSession = Depends(get_session)):
    rows = (await session.execute(
        select(TankSyncBacklog).where(TankSyncBacklog.status == status).order_by(TankSyncBacklog.id.asc())
    )).scalars().all()
    return [{
        "id": r.id,
        "operation": r.operation,
        "payload": r.payload,
        "status": r.status,
        "attempts": r.attempts,
        "last_error": r.last_error,
        "created_at": r.created_at,
        "resolved_at": r.resolved_at,
    } for r in rows]
