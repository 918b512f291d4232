from __future__ import annotations

from decimal import Decimal

# (container kind, size in litres) -> canonical package type code
PACKAGE_TYPES: dict[tuple[str, Decimal], str] = {
    ("keg", Decimal("50")): "KEG_50",
    ("keg", Decimal("30")): "KEG_30",
    ("keg", Decimal("20")): "KEG_20",
    ("bottle", Decimal("0.5")): "BOTTLE_500",
    ("bottle", Decimal("0.33")): "BOTTLE_330",
    ("bottle", Decimal("0.75")): "BOTTLE_750",
    ("can", Decimal("0.5")): "CAN_500",
    ("can", Decimal("0.33")): "CAN_330",
}

# Used when the size is missing or not in the table.
DEFAULT_FOR_KIND = {
    "keg": "KEG_20",
    "bottle": "BOTTLE_750",
    "can": "CAN_330",
}

FALLBACK_PACKAGE_TYPE = "BOTTLE_500"


def package_type_code(kind: str, size: Decimal | float | None) -> str:
    kind = (kind or "").strip().lower()
    if size is not None:
        code = PACKAGE_TYPES.get((kind, Decimal(str(size)).normalize()))
        if code:
            return code
    return DEFAULT_FOR_KIND.get(kind, FALLBACK_PACKAGE_TYPE)


def volume_total(size: Decimal | float | None, quantity: int) -> Decimal:
    if size is None:
        return Decimal("0")
    return Decimal(str(size)) * quantity
