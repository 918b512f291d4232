from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from brewery_core.brewing_api import BrewRequest, start_brew_txn
from brewery_core.errors import InvalidPhaseTransition, LotNotFound, RecipeNotFound
from brewery_core.inventory_api import MovementRequest, list_movements_txn, record_movement_txn
from brewery_core.lots_api import PhaseRequest, advance_phase_txn, complete_lot_txn, get_lot_view
from brewery_core.models import (
    Batch, BatchTimeline, Equipment, Lot, LotPhaseChange, Recipe, Tank, TankAssignment,
)
from brewery_core.phases import rank

from conftest import reload


async def history(session, lot_id):
    return (await session.execute(
        select(LotPhaseChange).where(LotPhaseChange.lot_id == lot_id).order_by(LotPhaseChange.id.asc())
    )).scalars().all()


async def events(session, batch_id, event_type):
    return (await session.execute(
        select(BatchTimeline)
        .where(BatchTimeline.batch_id == batch_id)
        .where(BatchTimeline.event_type == event_type)
    )).scalars().all()


async def test_brew_creates_batch_and_lot(session, scope):
    brewed_at = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)
    first = await start_brew_txn(session, scope, BrewRequest(volume=500, brewed_at=brewed_at))
    second = await start_brew_txn(session, scope, BrewRequest(volume=300, brewed_at=brewed_at))

    assert first.batch_number == "BRW-2026-0001"
    assert first.lot_code == "FERM-20260314-0001"
    assert first.split is False
    assert (second.batch_number, second.lot_code) == ("BRW-2026-0002", "FERM-20260314-0002")

    batch = await reload(session, Batch, first.batch_id)
    lot = await reload(session, Lot, first.lot_id)
    assert batch.status == "FERMENTING"
    assert (lot.phase, lot.status) == ("FERMENTATION", "ACTIVE")
    assert [(h.from_phase, h.to_phase) for h in await history(session, lot.id)] == [(None, "FERMENTATION")]
    assert len(await events(session, batch.id, "FERMENTATION_STARTED")) == 1


async def test_split_brew_creates_child_lots(session, brewery):
    t1 = await brewery.tank("FV-A", 1000)
    t2 = await brewery.tank("FV-B", 1000)
    brew = await brewery.brew(1000, [(t1["id"], 600), (t2["id"], 400)])

    assert brew.split is True
    parent = await reload(session, Lot, brew.lot_id)
    assert parent.status == "COMPLETED"
    assert [l.lot_code for l in brew.lots] == [f"{brew.lot_code}-A", f"{brew.lot_code}-B"]

    for child, tank, volume in zip(brew.lots, (t1, t2), (600, 400)):
        assert child.tank_id == tank["id"]
        assert child.volume == Decimal(volume)
        lot = await reload(session, Lot, child.lot_id)
        assert lot.parent_lot_id == parent.id
        assert (lot.phase, lot.status) == ("FERMENTATION", "ACTIVE")
        assert (await reload(session, Tank, tank["id"])).current_lot_id == child.lot_id

    view = await get_lot_view(session, brew.lots[0].lot_id)
    assert view["batches"][0]["batch_percentage"] == Decimal("60.00")
    assert view["total_volume"] == Decimal("600")
    assert view["is_blend"] is False


async def test_brew_with_unknown_recipe(brewery):
    with pytest.raises(RecipeNotFound):
        await brewery.brew(100, recipe_id=77)


async def test_brew_books_ingredient_consumption(session, scope, brewery):
    item = await brewery.item()
    await record_movement_txn(session, scope, item["id"], MovementRequest(type="PURCHASE", quantity=50))
    brew = await brewery.brew(500, ingredients=[(item["id"], 20)])

    assert len(brew.consumption_entry_ids) == 1
    listing = await list_movements_txn(session, item["id"])
    used = listing["movements"][0]
    assert used["type"] == "CONSUMPTION"
    assert used["batch_id"] == brew.batch_id
    assert used["reference"] == brew.batch_number
    assert listing["item"]["balance"] == Decimal("30")


async def test_advance_cascades_to_batch_assignment_and_tank(session, brewery):
    tank = await brewery.tank()
    brew = await brewery.lot_in("CONDITIONING", volume=500, tank_id=tank["id"])

    assert (await reload(session, Batch, brew.batch_id)).status == "CONDITIONING"
    assert (await reload(session, Tank, tank["id"])).current_phase == "CONDITIONING"
    assignment = await reload(session, TankAssignment, brew.lots[0].assignment_id)
    assert (assignment.phase, assignment.status) == ("CONDITIONING", "ACTIVE")

    view = await brewery.advance_to(brew.lot_id, "BRIGHT")
    assert view["phase"] == "BRIGHT"
    assert (await reload(session, Batch, brew.batch_id)).status == "READY"
    assert view["active_assignment"]["tank"]["current_phase"] == "BRIGHT"


async def test_phase_history_is_monotonic(session, brewery):
    brew = await brewery.lot_in("PACKAGING")
    changes = await history(session, brew.lot_id)

    assert [c.to_phase for c in changes] == ["FERMENTATION", "CONDITIONING", "BRIGHT", "PACKAGING"]
    ranks = [rank(c.to_phase) for c in changes]
    assert ranks == sorted(ranks)
    assert len(await events(session, brew.batch_id, "PHASE_CHANGED")) == 3


async def test_same_phase_is_a_noop(session, scope, brewery):
    brew = await brewery.lot_in("CONDITIONING")
    before = len(await history(session, brew.lot_id))

    view = await advance_phase_txn(session, scope, brew.lot_id, PhaseRequest(phase="CONDITIONING"))
    assert view["phase"] == "CONDITIONING"
    assert len(await history(session, brew.lot_id)) == before


@pytest.mark.parametrize("target", ["BRIGHT", "PACKAGING"])
async def test_skipping_a_phase_is_rejected(session, scope, brewery, target):
    brew = await brewery.brew(200)
    with pytest.raises(InvalidPhaseTransition) as exc:
        await advance_phase_txn(session, scope, brew.lot_id, PhaseRequest(phase=target))
    assert exc.value.details["current"] == "FERMENTATION"
    assert (await reload(session, Lot, brew.lot_id)).phase == "FERMENTATION"


async def test_moving_backwards_is_rejected(session, scope, brewery):
    brew = await brewery.lot_in("BRIGHT")
    with pytest.raises(InvalidPhaseTransition):
        await advance_phase_txn(session, scope, brew.lot_id, PhaseRequest(phase="CONDITIONING"))


async def test_completed_lot_records_no_further_phase(session, scope, brewery):
    brew = await brewery.lot_in("CONDITIONING")
    await complete_lot_txn(session, scope, brew.lot_id)
    before = len(await history(session, brew.lot_id))

    with pytest.raises(InvalidPhaseTransition, match="COMPLETED"):
        await advance_phase_txn(session, scope, brew.lot_id, PhaseRequest(phase="BRIGHT"))
    assert len(await history(session, brew.lot_id)) == before


async def test_unknown_lot(session, scope):
    with pytest.raises(LotNotFound):
        await advance_phase_txn(session, scope, 12345, PhaseRequest(phase="BRIGHT"))


async def test_complete_lot_releases_tank_and_batch(session, scope, brewery):
    tank = await brewery.tank()
    brew = await brewery.lot_in("BRIGHT", tank_id=tank["id"])

    view = await complete_lot_txn(session, scope, brew.lot_id)
    assert view["status"] == "COMPLETED"
    # The last tank stays visible after completion.
    assert view["active_assignment"]["status"] == "COMPLETED"
    assert view["active_assignment"]["tank"]["id"] == tank["id"]

    stored_tank = await reload(session, Tank, tank["id"])
    assert (stored_tank.status, stored_tank.current_lot_id) == ("AVAILABLE", None)
    equipment = (await session.execute(select(Equipment).where(Equipment.tank_id == tank["id"]))).scalar_one()
    assert equipment.status == "NEEDS_CIP"

    batch = await reload(session, Batch, brew.batch_id)
    assert batch.status == "COMPLETED"
    assert batch.completed_at is not None
    assert len(await events(session, brew.batch_id, "COMPLETED")) == 1

    await complete_lot_txn(session, scope, brew.lot_id)
    assert len(await events(session, brew.batch_id, "COMPLETED")) == 1


async def test_split_batch_completes_with_its_last_lot(session, scope, brewery):
    t1 = await brewery.tank()
    t2 = await brewery.tank()
    brew = await brewery.brew(800, [(t1["id"], 400), (t2["id"], 400)])

    await complete_lot_txn(session, scope, brew.lots[0].lot_id)
    assert (await reload(session, Batch, brew.batch_id)).status == "FERMENTING"

    await complete_lot_txn(session, scope, brew.lots[1].lot_id)
    assert (await reload(session, Batch, brew.batch_id)).status == "COMPLETED"


async def test_lot_view_reports_recipe_and_volume(session, brewery):
    recipe = Recipe(name="Helles", style="Lager")
    session.add(recipe)
    await session.flush()

    brew = await brewery.brew(450, recipe_id=recipe.id)
    view = await get_lot_view(session, brew.lot_id)

    assert view["batch_count"] == 1
    assert view["batches"][0]["recipe_name"] == "Helles"
    assert view["batches"][0]["recipe_style"] == "Lager"
    assert view["total_volume"] == Decimal("450")
    assert view["active_assignment"] is None
    assert view["packaging_runs"] == []
