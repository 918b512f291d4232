import logging
from decimal import Decimal

import pytest
from pydantic import ValidationError

from brewery_core.config import settings
from brewery_core.errors import InvalidMovement, ItemNotFound, LedgerEntryNotFound
from brewery_core.inventory_api import (
    DirectBalanceRequest, MovementRequest, ReconcileRequest, ReverseRequest,
    adjust_balance_direct_txn, item_view, list_movements_txn, load_item, reconcile_balances_txn,
    record_movement_txn, reverse_movement_txn,
)
from brewery_core.ledger import MovementType, describe, direction_of, ledger_sum, running_balances, signed_quantity
from brewery_core.models import InventoryItem, InventoryLedgerEntry

from conftest import reload


async def move(session, scope, item_id, movement_type, quantity, **kw):
    return await record_movement_txn(
        session, scope, item_id, MovementRequest(type=movement_type, quantity=quantity, **kw)
    )


def test_signed_quantity_follows_direction():
    assert signed_quantity("PURCHASE", 10) == Decimal("10")
    assert signed_quantity(MovementType.RETURN, "2.5") == Decimal("2.5")
    assert signed_quantity("CONSUMPTION", 10) == Decimal("-10")
    assert signed_quantity("WASTE", Decimal("0.250")) == Decimal("-0.250")


def test_signed_quantity_rejects_zero_and_reversal():
    with pytest.raises(InvalidMovement):
        signed_quantity("PURCHASE", 0)
    with pytest.raises(InvalidMovement):
        signed_quantity("SALE", -3)
    with pytest.raises(InvalidMovement, match="REVERSAL"):
        signed_quantity("REVERSAL", 1)


def test_direction_labels():
    assert direction_of("WASTE", Decimal("-1")) == "waste"
    assert direction_of("ADJUSTMENT_ADD", Decimal("1")) == "adjustment"
    assert direction_of("ADJUSTMENT_REMOVE", Decimal("-1")) == "adjustment"
    assert direction_of("PURCHASE", Decimal("4")) == "in"
    assert direction_of("REVERSAL", Decimal("-4")) == "out"


def test_describe_references():
    purchase = InventoryLedgerEntry(quantity=Decimal("5"), type="PURCHASE", order_id="PO-17")
    assert describe(purchase) == {"direction": "in", "reason": "Purchase received", "reference": "PO-17"}

    used = InventoryLedgerEntry(quantity=Decimal("-5"), type="CONSUMPTION", notes="mash")
    assert describe(used, "BRW-2026-0001") == {"direction": "out", "reason": "mash", "reference": "BRW-2026-0001"}

    undo = InventoryLedgerEntry(quantity=Decimal("5"), type="REVERSAL", reversal_of_id=3)
    assert describe(undo)["reference"] == "reverses #3"


def test_running_balance_walk_clamps_for_display():
    entries = [
        InventoryLedgerEntry(id=1, quantity=Decimal("10"), type="PURCHASE"),
        InventoryLedgerEntry(id=2, quantity=Decimal("-25"), type="CONSUMPTION"),
        InventoryLedgerEntry(id=3, quantity=Decimal("20"), type="PURCHASE"),
    ]
    points = running_balances(Decimal("5"), entries)
    assert [p.ledger_balance_after for p in points] == [Decimal("10"), Decimal("-15"), Decimal("5")]
    assert [p.balance_after for p in points] == [Decimal("10"), Decimal("0"), Decimal("5")]
    assert [p.below_zero for p in points] == [False, True, False]


async def test_scenario_d_running_balance(session, scope, brewery):
    item = await brewery.item()
    await move(session, scope, item["id"], "PURCHASE", 100, order_id="PO-1")
    await move(session, scope, item["id"], "CONSUMPTION", 30)
    resp = await move(session, scope, item["id"], "ADJUSTMENT_ADD", 5)

    assert resp.balance == Decimal("75")
    stored = await reload(session, InventoryItem, item["id"])
    assert Decimal(str(stored.cached_balance)) == Decimal("75")

    listing = await list_movements_txn(session, item["id"])
    oldest_first = list(reversed(listing["movements"]))
    assert [m["balance_after"] for m in oldest_first] == [Decimal("100"), Decimal("70"), Decimal("75")]
    assert [m["type"] for m in oldest_first] == ["PURCHASE", "CONSUMPTION", "ADJUSTMENT_ADD"]
    assert oldest_first[0]["reference"] == "PO-1"
    assert listing["negative_balance_alert"] is False


async def test_cached_balance_matches_ledger_after_every_movement(session, scope, brewery):
    item = await brewery.item()
    sequence = [
        ("PURCHASE", 50), ("CONSUMPTION", 12), ("WASTE", 3), ("RETURN", 4),
        ("SALE", 20), ("PRODUCTION", 8), ("ADJUSTMENT_REMOVE", 1), ("CONSUMPTION", 40),
    ]
    for movement_type, qty in sequence:
        resp = await move(session, scope, item["id"], movement_type, qty)
        assert resp.balance == await ledger_sum(session, item["id"])

    assert await ledger_sum(session, item["id"]) == Decimal("-14")


def test_movement_quantity_must_be_positive():
    with pytest.raises(ValidationError):
        MovementRequest(type="PURCHASE", quantity=0)
    with pytest.raises(ValidationError):
        MovementRequest(type="REVERSAL", quantity=1)


async def test_item_lookup_by_sku_or_id(session, brewery):
    item = await brewery.item(sku="HOPS-CASCADE", name="Cascade")
    assert (await load_item(session, "HOPS-CASCADE")).id == item["id"]
    assert (await load_item(session, str(item["id"]))).sku == "HOPS-CASCADE"
    with pytest.raises(ItemNotFound):
        await load_item(session, "NOPE")


async def test_duplicate_sku_rejected(brewery):
    await brewery.item(sku="YEAST-US05")
    with pytest.raises(InvalidMovement):
        await brewery.item(sku="YEAST-US05")


async def test_negative_balance_is_flagged(session, scope, brewery, caplog):
    item = await brewery.item()
    await move(session, scope, item["id"], "CONSUMPTION", 10)

    with caplog.at_level(logging.WARNING, logger="brewery_core"):
        listing = await list_movements_txn(session, item["id"])

    row = listing["movements"][0]
    assert row["balance_after"] == Decimal("0")
    assert row["ledger_balance_after"] == Decimal("-10")
    assert row["below_zero"] is True
    assert listing["negative_balance_alert"] is True
    assert any(r.getMessage() == "negative_balance_detected" for r in caplog.records)


async def test_negative_balance_alert_can_be_disabled(session, scope, brewery, monkeypatch):
    monkeypatch.setattr(settings, "negative_balance_alerts", False)
    item = await brewery.item()
    await move(session, scope, item["id"], "CONSUMPTION", 10)

    listing = await list_movements_txn(session, item["id"])
    assert listing["negative_balance_alert"] is False
    assert listing["movements"][0]["below_zero"] is True


async def test_below_reorder_point(session, scope, brewery):
    item = await brewery.item(reorder_point=Decimal("20"))
    resp = await move(session, scope, item["id"], "PURCHASE", 15)
    assert resp.balance == Decimal("15")

    assert item_view(await load_item(session, item["id"]))["below_reorder_point"] is True


async def test_silent_direct_set_is_overwritten_by_next_recompute(session, scope, brewery):
    item = await brewery.item()
    await move(session, scope, item["id"], "PURCHASE", 100)

    resp = await adjust_balance_direct_txn(session, scope, item["id"], DirectBalanceRequest(new_balance=40))
    assert resp.entry_id is None
    assert resp.previous_balance == Decimal("100")
    assert resp.balance == Decimal("40")
    assert await ledger_sum(session, item["id"]) == Decimal("100")

    after = await move(session, scope, item["id"], "PURCHASE", 10)
    assert after.balance == Decimal("110")


async def test_direct_set_with_use_hint_writes_consumption(session, scope, brewery):
    item = await brewery.item()
    await move(session, scope, item["id"], "PURCHASE", 100)

    resp = await adjust_balance_direct_txn(
        session, scope, item["id"], DirectBalanceRequest(new_balance=80, reason="Mash tun", type="use"),
    )
    entry = await reload(session, InventoryLedgerEntry, resp.entry_id)
    assert entry.type == "CONSUMPTION"
    assert Decimal(str(entry.quantity)) == Decimal("-20")
    assert entry.notes == "Mash tun"
    assert await ledger_sum(session, item["id"]) == resp.balance


async def test_direct_set_hint_against_direction_becomes_adjustment(session, scope, brewery):
    item = await brewery.item()
    await move(session, scope, item["id"], "PURCHASE", 100)

    removed = await adjust_balance_direct_txn(
        session, scope, item["id"], DirectBalanceRequest(new_balance=90, type="ADD"),
    )
    added = await adjust_balance_direct_txn(
        session, scope, item["id"], DirectBalanceRequest(new_balance=95, reason="Stocktake"),
    )
    assert (await reload(session, InventoryLedgerEntry, removed.entry_id)).type == "ADJUSTMENT_REMOVE"
    assert (await reload(session, InventoryLedgerEntry, added.entry_id)).type == "ADJUSTMENT_ADD"
    assert await ledger_sum(session, item["id"]) == Decimal("95")


async def test_direct_set_to_same_value_writes_nothing(session, scope, brewery):
    item = await brewery.item()
    await move(session, scope, item["id"], "PURCHASE", 10)
    resp = await adjust_balance_direct_txn(
        session, scope, item["id"], DirectBalanceRequest(new_balance=10, reason="Count"),
    )
    assert resp.entry_id is None


async def test_reasoned_direct_set_after_silent_one_follows_the_ledger(session, scope, brewery):
    item = await brewery.item()
    await move(session, scope, item["id"], "PURCHASE", 100)
    await adjust_balance_direct_txn(session, scope, item["id"], DirectBalanceRequest(new_balance=80))

    resp = await adjust_balance_direct_txn(
        session, scope, item["id"], DirectBalanceRequest(new_balance=50, reason="Stocktake"),
    )
    assert resp.previous_balance == Decimal("80")
    assert resp.balance == Decimal("50")

    entry = await reload(session, InventoryLedgerEntry, resp.entry_id)
    assert entry.type == "ADJUSTMENT_REMOVE"
    assert Decimal(str(entry.quantity)) == Decimal("-50")
    stored = await reload(session, InventoryItem, item["id"])
    assert Decimal(str(stored.cached_balance)) == await ledger_sum(session, item["id"]) == Decimal("50")


async def test_reverse_movement(session, scope, brewery):
    item = await brewery.item()
    await move(session, scope, item["id"], "PURCHASE", 100)
    used = await move(session, scope, item["id"], "CONSUMPTION", 30)

    undo = await reverse_movement_txn(session, scope, used.entry_id, ReverseRequest(notes="wrong item"))
    assert undo.quantity == Decimal("30")
    assert undo.balance == Decimal("100")

    reversal = await reload(session, InventoryLedgerEntry, undo.entry_id)
    assert reversal.type == "REVERSAL"
    assert reversal.reversal_of_id == used.entry_id

    listing = await list_movements_txn(session, item["id"])
    assert listing["movements"][0]["reference"] == f"reverses #{used.entry_id}"


async def test_reversal_rules(session, scope, brewery):
    item = await brewery.item()
    bought = await move(session, scope, item["id"], "PURCHASE", 5)
    undo = await reverse_movement_txn(session, scope, bought.entry_id, ReverseRequest())

    with pytest.raises(InvalidMovement, match="already reversed"):
        await reverse_movement_txn(session, scope, bought.entry_id, ReverseRequest())
    with pytest.raises(InvalidMovement, match="cannot itself be reversed"):
        await reverse_movement_txn(session, scope, undo.entry_id, ReverseRequest())
    with pytest.raises(LedgerEntryNotFound):
        await reverse_movement_txn(session, scope, 9999, ReverseRequest())


async def test_reconcile_repairs_drift(session, scope, brewery):
    drifted = await brewery.item(sku="MALT-MUNICH")
    clean = await brewery.item(sku="MALT-CARA")
    await move(session, scope, drifted["id"], "PURCHASE", 100)
    await move(session, scope, clean["id"], "PURCHASE", 7)
    await adjust_balance_direct_txn(session, scope, drifted["id"], DirectBalanceRequest(new_balance=40))

    report = await reconcile_balances_txn(session, scope, ReconcileRequest())
    assert report["checked"] == 2
    assert report["repaired"] == [{
        "item_id": drifted["id"], "sku": "MALT-MUNICH", "cached": Decimal("40"), "ledger": Decimal("100"),
    }]
    assert (await load_item(session, drifted["id"])).cached_balance == Decimal("100")

    again = await reconcile_balances_txn(session, scope, ReconcileRequest(item_ids=[drifted["id"]]))
    assert again == {"checked": 1, "repaired": []}
