from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from brewery_core.errors import InvalidMovement
from brewery_core.models import InventoryItem, InventoryLedgerEntry

logger = logging.getLogger(__name__)


class MovementType(str, Enum):
    PURCHASE = "PURCHASE"
    PRODUCTION = "PRODUCTION"
    CONSUMPTION = "CONSUMPTION"
    WASTE = "WASTE"
    ADJUSTMENT_ADD = "ADJUSTMENT_ADD"
    ADJUSTMENT_REMOVE = "ADJUSTMENT_REMOVE"
    SALE = "SALE"
    RETURN = "RETURN"
    REVERSAL = "REVERSAL"


INBOUND = frozenset({
    MovementType.PURCHASE,
    MovementType.PRODUCTION,
    MovementType.RETURN,
    MovementType.ADJUSTMENT_ADD,
})
OUTBOUND = frozenset({
    MovementType.CONSUMPTION,
    MovementType.WASTE,
    MovementType.SALE,
    MovementType.ADJUSTMENT_REMOVE,
})

REASON_LABELS = {
    MovementType.PURCHASE: "Purchase received",
    MovementType.PRODUCTION: "Produced",
    MovementType.CONSUMPTION: "Used in brewing",
    MovementType.WASTE: "Wasted",
    MovementType.ADJUSTMENT_ADD: "Stock adjustment (added)",
    MovementType.ADJUSTMENT_REMOVE: "Stock adjustment (removed)",
    MovementType.SALE: "Sold",
    MovementType.RETURN: "Returned",
    MovementType.REVERSAL: "Reversal",
}

ZERO = Decimal("0")


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def signed_quantity(movement_type: MovementType | str, magnitude) -> Decimal:
    """Turn a caller-supplied magnitude into the signed delta stored on the ledger."""
    movement_type = MovementType(movement_type)
    magnitude = to_decimal(magnitude)
    if magnitude <= 0:
        raise InvalidMovement("Quantity must be a positive magnitude", {"quantity": str(magnitude)})
    if movement_type in INBOUND:
        return magnitude
    if movement_type in OUTBOUND:
        return -magnitude
    raise InvalidMovement(
        "REVERSAL entries are created by reversing an existing movement",
        {"type": movement_type.value},
    )


def direction_of(movement_type: str, quantity: Decimal) -> str:
    if movement_type == MovementType.WASTE:
        return "waste"
    if movement_type in (MovementType.ADJUSTMENT_ADD, MovementType.ADJUSTMENT_REMOVE):
        return "adjustment"
    return "in" if quantity > 0 else "out"


def describe(entry: InventoryLedgerEntry, batch_number: str | None = None) -> dict:
    """Human-facing (direction, reason, reference) for one ledger row."""
    quantity = to_decimal(entry.quantity)
    reason = entry.notes or REASON_LABELS.get(MovementType(entry.type), entry.type)

    reference = None
    if entry.type == MovementType.PURCHASE and entry.order_id:
        reference = entry.order_id
    elif entry.type in (MovementType.PRODUCTION, MovementType.CONSUMPTION) and batch_number:
        reference = batch_number
    elif entry.type == MovementType.REVERSAL and entry.reversal_of_id:
        reference = f"reverses #{entry.reversal_of_id}"

    return {
        "direction": direction_of(entry.type, quantity),
        "reason": reason,
        "reference": reference,
    }


@dataclass
class BalancePoint:
    entry_id: int
    balance_after: Decimal
    ledger_balance_after: Decimal
    below_zero: bool


def running_balances(cached_balance, entries_oldest_first) -> list[BalancePoint]:
    """
    Walk entries oldest to newest from the implied opening balance.

    The opening balance is ``cached_balance - sum(quantities)``; it is zero
    whenever the cache agrees with the ledger. ``balance_after`` is clamped at
    zero for display, ``ledger_balance_after`` is the unclamped running total.
    """
    quantities = [to_decimal(e.quantity) for e in entries_oldest_first]
    running = to_decimal(cached_balance) - sum(quantities, ZERO)

    points: list[BalancePoint] = []
    for entry, qty in zip(entries_oldest_first, quantities):
        running += qty
        points.append(BalancePoint(
            entry_id=entry.id,
            balance_after=max(running, ZERO),
            ledger_balance_after=running,
            below_zero=running < 0,
        ))
    return points


async def ledger_sum(session: AsyncSession, item_id: int) -> Decimal:
    total = (await session.execute(
        select(func.coalesce(func.sum(InventoryLedgerEntry.quantity), 0))
        .where(InventoryLedgerEntry.item_id == item_id)
    )).scalar_one()
    return to_decimal(total)


async def recompute_balance(session: AsyncSession, item: InventoryItem) -> Decimal:
    """Set the cached balance to the sum of every ledger row for the item."""
    await session.flush()
    total = await ledger_sum(session, item.id)
    item.cached_balance = total
    item.balance_updated_at = datetime.now(timezone.utc)
    await session.flush()
    if total < 0:
        logger.warning("negative_stock", extra={"item_id": item.id, "sku": item.sku, "balance": str(total)})
    return total


async def append_entry(
    session: AsyncSession,
    item: InventoryItem,
    movement_type: MovementType | str,
    quantity: Decimal,
    *,
    batch_id: int | None = None,
    order_id: str | None = None,
    reversal_of_id: int | None = None,
    notes: str | None = None,
    actor: str | None = None,
) -> InventoryLedgerEntry:
    """Append an already-signed movement and refresh the item's cached balance."""
    entry = InventoryLedgerEntry(
        item_id=item.id,
        quantity=quantity,
        type=MovementType(movement_type).value,
        batch_id=batch_id,
        order_id=order_id,
        reversal_of_id=reversal_of_id,
        notes=notes,
        created_by=actor,
    )
    session.add(entry)
    await session.flush()
    await recompute_balance(session, item)
    return entry
