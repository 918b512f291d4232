"""
Production phase state machine.

A lot moves through FERMENTATION -> CONDITIONING -> BRIGHT -> PACKAGING and
never backwards. Every component asks this module whether a move is legal
instead of comparing phase strings itself.

Transitions are keyed by ``(current_phase, event)``:

    ADVANCE          one step along the sequence (lot phase endpoint)
    START_PACKAGING  CONDITIONING or BRIGHT straight into PACKAGING

Guards run before the table lookup: a COMPLETED lot accepts nothing, and a
target equal to the current phase is a no-op rather than an error.
"""
from __future__ import annotations

from enum import Enum

from brewery_core.errors import InvalidBatchStatus, InvalidPhaseTransition


class Phase(str, Enum):
    FERMENTATION = "FERMENTATION"
    CONDITIONING = "CONDITIONING"
    BRIGHT = "BRIGHT"
    PACKAGING = "PACKAGING"


class LotStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class BatchStatus(str, Enum):
    BREWING = "BREWING"
    FERMENTING = "FERMENTING"
    CONDITIONING = "CONDITIONING"
    READY = "READY"
    PACKAGING = "PACKAGING"
    COMPLETED = "COMPLETED"


class PhaseEvent(str, Enum):
    ADVANCE = "ADVANCE"
    START_PACKAGING = "START_PACKAGING"


PHASE_ORDER: tuple[Phase, ...] = (
    Phase.FERMENTATION,
    Phase.CONDITIONING,
    Phase.BRIGHT,
    Phase.PACKAGING,
)

TRANSITIONS: dict[tuple[Phase, PhaseEvent], Phase] = {
    (Phase.FERMENTATION, PhaseEvent.ADVANCE): Phase.CONDITIONING,
    (Phase.CONDITIONING, PhaseEvent.ADVANCE): Phase.BRIGHT,
    (Phase.BRIGHT, PhaseEvent.ADVANCE): Phase.PACKAGING,
    (Phase.CONDITIONING, PhaseEvent.START_PACKAGING): Phase.PACKAGING,
    (Phase.BRIGHT, PhaseEvent.START_PACKAGING): Phase.PACKAGING,
}

# Batch status mirrored from the phase of the lot it belongs to.
BATCH_STATUS_FOR_PHASE: dict[Phase, BatchStatus] = {
    Phase.FERMENTATION: BatchStatus.FERMENTING,
    Phase.CONDITIONING: BatchStatus.CONDITIONING,
    Phase.BRIGHT: BatchStatus.READY,
    Phase.PACKAGING: BatchStatus.PACKAGING,
}

BLEND_ELIGIBLE_PHASES = frozenset({Phase.CONDITIONING, Phase.BRIGHT})
PACKAGEABLE_BATCH_STATUSES = (BatchStatus.CONDITIONING, BatchStatus.READY)


def rank(phase: Phase | str) -> int:
    return PHASE_ORDER.index(Phase(phase))


def sources_for(event: PhaseEvent) -> list[str]:
    return [p.value for (p, e) in TRANSITIONS if e == event]


def resolve(lot_status: str, current: Phase | str, event: PhaseEvent, *, lot_id: int | None = None) -> Phase:
    """Return the phase ``event`` moves a lot to, or raise InvalidPhaseTransition."""
    current = Phase(current)
    if lot_status == LotStatus.COMPLETED:
        raise InvalidPhaseTransition(
            current.value, [], lot_id=lot_id, reason=f"Lot {lot_id} is COMPLETED and cannot change phase"
        )
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidPhaseTransition(current.value, sources_for(event), lot_id=lot_id)
    return target


def plan_advance(lot_status: str, current: Phase | str, target: Phase | str, *, lot_id: int | None = None) -> Phase | None:
    """
    Validate an explicit phase request.

    Returns None when ``target`` is already the current phase (idempotent
    no-op), the new phase when ``target`` is the next step, and raises
    otherwise.
    """
    current = Phase(current)
    target = Phase(target)
    if target == current:
        return None
    nxt = resolve(lot_status, current, PhaseEvent.ADVANCE, lot_id=lot_id)
    if nxt != target:
        raise InvalidPhaseTransition(
            current.value,
            [current.value, nxt.value],
            lot_id=lot_id,
            reason=f"Lot phase can only move {current.value} -> {nxt.value}; requested {target.value}",
        )
    return nxt


def is_packaged_or_done(phase: str, status: str) -> bool:
    return phase == Phase.PACKAGING or status == LotStatus.COMPLETED


def require_packageable_batch(status: str, *, batch_id: int | None = None) -> None:
    if status not in PACKAGEABLE_BATCH_STATUSES:
        raise InvalidBatchStatus(status, [s.value for s in PACKAGEABLE_BATCH_STATUSES], batch_id=batch_id)
