from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from brewery_core.db import get_session
from brewery_core.errors import BatchNotFound
from brewery_core.models import Batch, BatchTimeline

router = APIRouter(prefix="/batches", tags=["timeline"])


def record_event(
    session: AsyncSession,
    batch_id: int,
    event_type: str,
    title: str,
    *,
    description: str | None = None,
    actor: str | None = None,
    at: datetime | None = None,
) -> BatchTimeline:
    ev = BatchTimeline(
        batch_id=batch_id,
        event_type=event_type,
        title=title,
        description=description,
        created_by=actor,
    )
    if at is not None:
        ev.created_at = at
    session.add(ev)
    return ev


@router.get("/{batch_id}/timeline")
async def list_batch_timeline(batch_id: int, limit: int = 200, session: AsyncSession = Depends(get_session)):
    batch = (await session.execute(select(Batch).where(Batch.id == batch_id))).scalar_one_or_none()
    if not batch:
        raise BatchNotFound(batch_id)

    rows = (await session.execute(
        select(BatchTimeline)
        .where(BatchTimeline.batch_id == batch_id)
        .order_by(BatchTimeline.created_at.desc(), BatchTimeline.id.desc())
        .limit(limit)
    )).scalars().all()

    return [{
        "id": r.id,
        "event_type": r.event_type,
        "title": r.title,
        "description": r.description,
        "created_by": r.created_by,
        "created_at": r.created_at,
    } for r in rows]
