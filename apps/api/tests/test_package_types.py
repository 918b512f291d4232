from decimal import Decimal

import pytest

from brewery_core.package_types import package_type_code, volume_total


@pytest.mark.parametrize("kind,size,code", [
    ("keg", 50, "KEG_50"),
    ("keg", Decimal("30"), "KEG_30"),
    ("KEG", "20", "KEG_20"),
    ("bottle", 0.33, "BOTTLE_330"),
    ("bottle", Decimal("0.500"), "BOTTLE_500"),
    ("can", Decimal("0.33"), "CAN_330"),
])
def test_known_sizes(kind, size, code):
    assert package_type_code(kind, size) == code


def test_unknown_size_falls_back_to_kind_default():
    assert package_type_code("keg", 25) == "KEG_20"
    assert package_type_code("bottle", None) == "BOTTLE_750"
    assert package_type_code("can", Decimal("0.25")) == "CAN_330"


def test_unknown_kind_falls_back():
    assert package_type_code("crate", 1) == "BOTTLE_500"


def test_volume_total():
    assert volume_total(Decimal("20"), 10) == Decimal("200")
    assert volume_total(Decimal("0.33"), 24) == Decimal("7.92")
    assert volume_total(None, 5) == Decimal("0")
