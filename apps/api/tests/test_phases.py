import pytest

from brewery_core.errors import InvalidBatchStatus, InvalidPhaseTransition
from brewery_core.phases import (
    BATCH_STATUS_FOR_PHASE, BLEND_ELIGIBLE_PHASES, PHASE_ORDER, TRANSITIONS,
    BatchStatus, LotStatus, Phase, PhaseEvent,
    is_packaged_or_done, plan_advance, rank, require_packageable_batch, resolve, sources_for,
)


def test_phase_order_is_fixed():
    assert [p.value for p in PHASE_ORDER] == ["FERMENTATION", "CONDITIONING", "BRIGHT", "PACKAGING"]
    assert rank("FERMENTATION") < rank(Phase.CONDITIONING) < rank("BRIGHT") < rank(Phase.PACKAGING)


def test_every_transition_moves_forward():
    for (current, _event), target in TRANSITIONS.items():
        assert rank(target) > rank(current)


@pytest.mark.parametrize("current,expected", [
    (Phase.FERMENTATION, Phase.CONDITIONING),
    (Phase.CONDITIONING, Phase.BRIGHT),
    (Phase.BRIGHT, Phase.PACKAGING),
])
def test_advance_goes_one_step(current, expected):
    assert resolve(LotStatus.ACTIVE, current, PhaseEvent.ADVANCE) == expected


def test_nothing_follows_packaging():
    with pytest.raises(InvalidPhaseTransition) as exc:
        resolve("ACTIVE", "PACKAGING", PhaseEvent.ADVANCE, lot_id=7)
    assert exc.value.details["current"] == "PACKAGING"
    assert exc.value.details["lot_id"] == 7


def test_start_packaging_only_from_conditioning_or_bright():
    assert resolve("ACTIVE", "CONDITIONING", PhaseEvent.START_PACKAGING) == Phase.PACKAGING
    assert resolve("ACTIVE", "BRIGHT", PhaseEvent.START_PACKAGING) == Phase.PACKAGING

    with pytest.raises(InvalidPhaseTransition) as exc:
        resolve("ACTIVE", "FERMENTATION", PhaseEvent.START_PACKAGING)
    assert exc.value.required == ["CONDITIONING", "BRIGHT"]
    assert sources_for(PhaseEvent.START_PACKAGING) == ["CONDITIONING", "BRIGHT"]


def test_completed_lot_accepts_no_event():
    for event in PhaseEvent:
        with pytest.raises(InvalidPhaseTransition, match="COMPLETED"):
            resolve(LotStatus.COMPLETED, Phase.CONDITIONING, event, lot_id=1)


def test_plan_advance_same_phase_is_noop():
    assert plan_advance("ACTIVE", "BRIGHT", "BRIGHT") is None


def test_plan_advance_next_phase():
    assert plan_advance("ACTIVE", "FERMENTATION", Phase.CONDITIONING) == Phase.CONDITIONING


@pytest.mark.parametrize("current,target", [
    ("FERMENTATION", "BRIGHT"),
    ("FERMENTATION", "PACKAGING"),
    ("BRIGHT", "CONDITIONING"),
    ("PACKAGING", "FERMENTATION"),
])
def test_plan_advance_rejects_skips_and_reversals(current, target):
    with pytest.raises(InvalidPhaseTransition) as exc:
        plan_advance("ACTIVE", current, target, lot_id=3)
    assert exc.value.current == current
    assert exc.value.status_code == 409


def test_plan_advance_rejects_completed_lot():
    with pytest.raises(InvalidPhaseTransition):
        plan_advance("COMPLETED", "CONDITIONING", "BRIGHT")


def test_batch_status_mirrors_lot_phase():
    assert BATCH_STATUS_FOR_PHASE == {
        Phase.FERMENTATION: BatchStatus.FERMENTING,
        Phase.CONDITIONING: BatchStatus.CONDITIONING,
        Phase.BRIGHT: BatchStatus.READY,
        Phase.PACKAGING: BatchStatus.PACKAGING,
    }


def test_blend_eligible_phases():
    assert BLEND_ELIGIBLE_PHASES == {Phase.CONDITIONING, Phase.BRIGHT}


def test_packaged_or_done():
    assert is_packaged_or_done("PACKAGING", "ACTIVE")
    assert is_packaged_or_done("CONDITIONING", "COMPLETED")
    assert not is_packaged_or_done("BRIGHT", "ACTIVE")


def test_packageable_batch_status():
    require_packageable_batch("CONDITIONING")
    require_packageable_batch("READY")
    with pytest.raises(InvalidBatchStatus) as exc:
        require_packageable_batch("FERMENTING", batch_id=9)
    assert exc.value.details == {"batch_id": 9, "current": "FERMENTING", "required": ["CONDITIONING", "READY"]}
