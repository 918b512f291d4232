from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from brewery_core.config import settings
from brewery_core.db import get_session
from brewery_core.errors import BatchNotFound, InvalidMovement, ItemNotFound, LedgerEntryNotFound
from brewery_core.ledger import (
    MovementType, ZERO, append_entry, describe, ledger_sum, recompute_balance,
    running_balances, signed_quantity, to_decimal,
)
from brewery_core.models import Batch, InventoryItem, InventoryLedgerEntry
from brewery_core.tenancy import Scope, get_scope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inventory", tags=["inventory"])

Qty = condecimal(gt=0, max_digits=14, decimal_places=3)
NonNegQty = condecimal(ge=0, max_digits=14, decimal_places=3)
Money = condecimal(ge=0, max_digits=12, decimal_places=4)

# Free-form hints accepted by adjust_balance_direct, mapped onto ledger types.
DIRECT_TYPE_HINTS = {
    "USE": MovementType.CONSUMPTION,
    "CONSUMPTION": MovementType.CONSUMPTION,
    "ADD": MovementType.PURCHASE,
    "RECEIPT": MovementType.PURCHASE,
    "PURCHASE": MovementType.PURCHASE,
}


class ItemCreateRequest(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    unit: str = Field(default="kg", max_length=16)
    category: str | None = Field(default=None, max_length=32)
    reorder_point: NonNegQty | None = None
    cost_per_unit: Money | None = None
    supplier: str | None = Field(default=None, max_length=255)


class MovementRequest(BaseModel):
    type: Literal[
        "PURCHASE", "PRODUCTION", "CONSUMPTION", "WASTE",
        "ADJUSTMENT_ADD", "ADJUSTMENT_REMOVE", "SALE", "RETURN",
    ]
    quantity: Qty
    batch_id: int | None = None
    order_id: str | None = Field(default=None, max_length=64)
    notes: str | None = Field(default=None, max_length=500)


class MovementResponse(BaseModel):
    entry_id: int
    item_id: int
    quantity: Decimal
    balance: Decimal


class DirectBalanceRequest(BaseModel):
    new_balance: NonNegQty
    reason: str | None = Field(default=None, max_length=500)
    type: str | None = Field(default=None, max_length=32)
    batch_id: int | None = None


class DirectBalanceResponse(BaseModel):
    item_id: int
    previous_balance: Decimal
    balance: Decimal
    entry_id: int | None = None


class ReverseRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=500)


class ReconcileRequest(BaseModel):
    item_ids: List[int] | None = None


def item_view(item: InventoryItem) -> dict:
    balance = to_decimal(item.cached_balance)
    reorder = to_decimal(item.reorder_point) if item.reorder_point is not None else None
    return {
        "id": item.id,
        "sku": item.sku,
        "name": item.name,
        "unit": item.unit,
        "category": item.category,
        "balance": balance,
        "reorder_point": reorder,
        "below_reorder_point": reorder is not None and balance <= reorder,
        "cost_per_unit": item.cost_per_unit,
        "supplier": item.supplier,
        "balance_updated_at": item.balance_updated_at,
    }


async def load_item(session: AsyncSession, item_ref: int | str, *, for_update: bool = False) -> InventoryItem:
    """Resolve an item by numeric id or by SKU."""
    stmt = select(InventoryItem)
    if isinstance(item_ref, int) or str(item_ref).isdigit():
        stmt = stmt.where(InventoryItem.id == int(item_ref))
    else:
        stmt = stmt.where(InventoryItem.sku == str(item_ref))
    if for_update:
        stmt = stmt.with_for_update()
    item = (await session.execute(stmt)).scalar_one_or_none()
    if not item:
        raise ItemNotFound(item_ref)
    return item


async def _require_batch(session: AsyncSession, batch_id: int | None) -> None:
    if batch_id is None:
        return
    found = (await session.execute(select(Batch.id).where(Batch.id == batch_id))).scalar_one_or_none()
    if found is None:
        raise BatchNotFound(batch_id)


async def create_item_txn(session: AsyncSession, scope: Scope, req: ItemCreateRequest) -> dict:
    existing = (await session.execute(
        select(InventoryItem).where(InventoryItem.sku == req.sku)
    )).scalar_one_or_none()
    if existing:
        raise InvalidMovement(f"SKU already exists: {req.sku}", {"sku": req.sku, "item_id": existing.id})

    item = InventoryItem(
        sku=req.sku,
        name=req.name,
        unit=req.unit,
        category=req.category,
        cached_balance=ZERO,
        reorder_point=req.reorder_point,
        cost_per_unit=req.cost_per_unit,
        supplier=req.supplier,
    )
    session.add(item)
    await session.flush()
    logger.info("inventory_item_created", extra={"item_id": item.id, "sku": item.sku})
    return item_view(item)


async def record_movement_txn(session: AsyncSession, scope: Scope, item_ref: int | str,
                              req: MovementRequest) -> MovementResponse:
    item = await load_item(session, item_ref, for_update=True)
    await _require_batch(session, req.batch_id)

    quantity = signed_quantity(req.type, req.quantity)
    entry = await append_entry(
        session, item, req.type, quantity,
        batch_id=req.batch_id, order_id=req.order_id, notes=req.notes, actor=scope.actor_id,
    )
    logger.info(
        "inventory_movement_recorded",
        extra={"item_id": item.id, "entry_id": entry.id, "type": req.type, "quantity": str(quantity)},
    )
    return MovementResponse(
        entry_id=entry.id, item_id=item.id, quantity=quantity, balance=to_decimal(item.cached_balance),
    )


async def list_movements_txn(session: AsyncSession, item_ref: int | str, limit: int | None = None) -> dict:
    item = await load_item(session, item_ref)

    rows = (await session.execute(
        select(InventoryLedgerEntry, Batch.batch_number)
        .outerjoin(Batch, Batch.id == InventoryLedgerEntry.batch_id)
        .where(InventoryLedgerEntry.item_id == item.id)
        .order_by(InventoryLedgerEntry.created_at.asc(), InventoryLedgerEntry.id.asc())
    )).all()
    entries = [entry for entry, _ in rows]
    points = running_balances(item.cached_balance, entries)

    movements = []
    for (entry, batch_number), point in zip(rows, points):
        movements.append({
            "id": entry.id,
            "type": entry.type,
            "quantity": to_decimal(entry.quantity),
            **describe(entry, batch_number),
            "batch_id": entry.batch_id,
            "batch_number": batch_number,
            "order_id": entry.order_id,
            "reversal_of_id": entry.reversal_of_id,
            "notes": entry.notes,
            "created_by": entry.created_by,
            "created_at": entry.created_at,
            "balance_after": point.balance_after,
            "ledger_balance_after": point.ledger_balance_after,
            "below_zero": point.below_zero,
        })
    movements.reverse()
    if limit is not None:
        movements = movements[:limit]

    current = to_decimal(item.cached_balance)
    negative = current < 0 or any(p.below_zero for p in points)
    alert = negative and settings.negative_balance_alerts
    if alert:
        logger.warning(
            "negative_balance_detected",
            extra={"item_id": item.id, "sku": item.sku, "balance": str(current)},
        )

    return {
        "item": item_view(item),
        "movements": movements,
        "negative_balance_alert": alert,
    }


def _direct_movement_type(type_hint: str | None, diff: Decimal) -> MovementType:
    hinted = DIRECT_TYPE_HINTS.get((type_hint or "").strip().upper())
    if hinted == MovementType.CONSUMPTION and diff < 0:
        return hinted
    if hinted == MovementType.PURCHASE and diff > 0:
        return hinted
    return MovementType.ADJUSTMENT_ADD if diff > 0 else MovementType.ADJUSTMENT_REMOVE


async def adjust_balance_direct_txn(session: AsyncSession, scope: Scope, item_ref: int | str,
                                    req: DirectBalanceRequest) -> DirectBalanceResponse:
    """
    Set stock to a known absolute value.

    With a reason (or type) the gap between the ledger and the target is
    ledgered and the balance is recomputed from the ledger. Without one the
    cached balance is overwritten in place and nothing is appended; the next recompute replaces it.
    """
    item = await load_item(session, item_ref, for_update=True)
    await _require_batch(session, req.batch_id)

    previous = to_decimal(item.cached_balance)
    target = to_decimal(req.new_balance)

    entry_id = None
    if req.reason or req.type:
        diff = target - await ledger_sum(session, item.id)
        if diff != 0:
            entry = await append_entry(
                session, item, _direct_movement_type(req.type, diff), diff,
                batch_id=req.batch_id, notes=req.reason, actor=scope.actor_id,
            )
            entry_id = entry.id
        else:
            await recompute_balance(session, item)
    else:
        item.cached_balance = target
        item.balance_updated_at = datetime.now(timezone.utc)
        await session.flush()

    logger.info(
        "inventory_balance_set",
        extra={"item_id": item.id, "previous": str(previous), "balance": str(target), "entry_id": entry_id},
    )
    return DirectBalanceResponse(item_id=item.id, previous_balance=previous, balance=target, entry_id=entry_id)


async def reverse_movement_txn(session: AsyncSession, scope: Scope, entry_id: int,
                               req: ReverseRequest) -> MovementResponse:
    original = (await session.execute(
        select(InventoryLedgerEntry).where(InventoryLedgerEntry.id == entry_id)
    )).scalar_one_or_none()
    if not original:
        raise LedgerEntryNotFound(entry_id)
    if original.type == MovementType.REVERSAL:
        raise InvalidMovement("A reversal cannot itself be reversed", {"entry_id": entry_id})

    already = (await session.execute(
        select(InventoryLedgerEntry.id).where(InventoryLedgerEntry.reversal_of_id == entry_id)
    )).scalar_one_or_none()
    if already is not None:
        raise InvalidMovement(
            f"Ledger entry {entry_id} was already reversed",
            {"entry_id": entry_id, "reversal_id": already},
        )

    item = await load_item(session, original.item_id, for_update=True)
    quantity = -to_decimal(original.quantity)
    entry = await append_entry(
        session, item, MovementType.REVERSAL, quantity,
        batch_id=original.batch_id, order_id=original.order_id, reversal_of_id=original.id,
        notes=req.notes, actor=scope.actor_id,
    )
    logger.info("inventory_movement_reversed", extra={"item_id": item.id, "entry_id": entry.id, "reversal_of": entry_id})
    return MovementResponse(
        entry_id=entry.id, item_id=item.id, quantity=quantity, balance=to_decimal(item.cached_balance),
    )


async def reconcile_balances_txn(session: AsyncSession, scope: Scope, req: ReconcileRequest) -> dict:
    stmt = select(InventoryItem).order_by(InventoryItem.id.asc())
    if req.item_ids:
        stmt = stmt.where(InventoryItem.id.in_(req.item_ids))
    items = (await session.execute(stmt)).scalars().all()

    drifted = []
    for item in items:
        cached = to_decimal(item.cached_balance)
        ledger = await ledger_sum(session, item.id)
        if cached != ledger:
            drifted.append({"item_id": item.id, "sku": item.sku, "cached": cached, "ledger": ledger})
            await recompute_balance(session, item)

    if drifted:
        logger.warning("inventory_drift_repaired", extra={"items": [d["item_id"] for d in drifted]})
    logger.info("inventory_reconciled", extra={"checked": len(items), "drifted": len(drifted)})
    return {"checked": len(items), "repaired": drifted}


@router.post("/items")
async def create_item(req: ItemCreateRequest, scope: Scope = Depends(get_scope),
                      session: AsyncSession = Depends(get_session)):
    resp = await create_item_txn(session, scope, req)
    await session.commit()
    return resp


@router.get("/items/{item_ref}")
async def get_item(item_ref: str, session: AsyncSession = Depends(get_session)):
    return item_view(await load_item(session, item_ref))


@router.post("/items/{item_ref}/movements", response_model=MovementResponse)
async def record_movement(item_ref: str, req: MovementRequest, scope: Scope = Depends(get_scope),
                          session: AsyncSession = Depends(get_session)):
    resp = await record_movement_txn(session, scope, item_ref, req)
    await session.commit()
    return resp


@router.get("/items/{item_ref}/movements")
async def list_movements(item_ref: str, limit: int | None = None, session: AsyncSession = Depends(get_session)):
    return await list_movements_txn(session, item_ref, limit)


@router.post("/items/{item_ref}/balance", response_model=DirectBalanceResponse)
async def adjust_balance_direct(item_ref: str, req: DirectBalanceRequest, scope: Scope = Depends(get_scope),
                                session: AsyncSession = Depends(get_session)):
    resp = await adjust_balance_direct_txn(session, scope, item_ref, req)
    await session.commit()
    return resp


@router.post("/movements/{entry_id}/reverse", response_model=MovementResponse)
async def reverse_movement(entry_id: int, req: ReverseRequest, scope: Scope = Depends(get_scope),
                           session: AsyncSession = Depends(get_session)):
    resp = await reverse_movement_txn(session, scope, entry_id, req)
    await session.commit()
    return resp


@router.post("/reconcile")
async def reconcile_balances(req: ReconcileRequest, scope: Scope = Depends(get_scope),
                             session: AsyncSession = Depends(get_session)):
    resp = await reconcile_balances_txn(session, scope, req)
    await session.commit()
    return resp
