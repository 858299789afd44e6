"""Unit tests for the package dimension calculator.

Pure functions: no database involved, boxes are built in memory.
"""

import uuid
from decimal import Decimal

import pytest
from services.orders_service.services.packaging import (
    CartLine,
    PackageDimensions,
    box_overrides,
    calculate_package,
    parse_size_value,
    round_weight,
    with_manual_box,
)
from tests.factories import BoxFactory


def _cart(*lines):
    """Build ``(items, sizes)`` from ``(size_value, quantity)`` pairs."""
    items = []
    sizes = {}
    for size_value, quantity in lines:
        product_id = uuid.uuid4()
        items.append(CartLine(product_id=product_id, quantity=quantity))
        sizes[product_id] = size_value
    return items, sizes


# ---------------------------------------------------------------------------
# Container selection
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_few_light_small_units_ship_in_small_bag():
    items, sizes = _cart(("S-L", 3))

    package = calculate_package(items, sizes)

    assert package.container_type == "bag"
    assert package.container_size == "S"
    assert (package.width, package.length, package.height) == (20, 28, 2)
    # 3 x 0.02 + 0.05 bag is under the carrier minimum
    assert package.weight == 1.0


@pytest.mark.unit
def test_more_than_five_units_need_a_box():
    items, sizes = _cart(("S-L", 4), ("M-L", 2))

    package = calculate_package(items, sizes)

    assert package.container_type == "box"
    assert package.container_size == "M"


@pytest.mark.unit
def test_two_heavy_units_need_a_box():
    items, sizes = _cart(("S-P", 2))

    package = calculate_package(items, sizes)

    assert package.container_type == "box"
    assert package.container_size == "S"


@pytest.mark.unit
def test_one_heavy_unit_still_fits_a_bag():
    items, sizes = _cart(("M-P", 1), ("S-L", 2))

    package = calculate_package(items, sizes)

    assert package.container_type == "bag"
    assert package.container_size == "M"


@pytest.mark.unit
def test_extra_large_unit_ships_in_large_box():
    items, sizes = _cart(("XL-L", 1))

    package = calculate_package(items, sizes)

    assert package.container_type == "box"
    assert package.container_size == "L"
    assert (package.width, package.length, package.height) == (33, 26, 10)


@pytest.mark.unit
def test_heavy_cart_weight_adds_box_packaging():
    items, sizes = _cart(("XL-P", 10))

    package = calculate_package(items, sizes)

    # 10 x 0.6 + 0.2 box
    assert package.weight == 6.2


@pytest.mark.unit
def test_empty_cart_is_a_medium_bag_at_minimum_weight():
    package = calculate_package([], {})

    assert package.container_type == "bag"
    assert package.container_size == "M"
    assert package.weight == 1.0


@pytest.mark.unit
def test_invalid_size_falls_back_to_medium_light():
    items, sizes = _cart(("gigante", 1))

    package = calculate_package(items, sizes)

    assert package.container_type == "bag"
    assert package.container_size == "M"


@pytest.mark.unit
def test_lines_without_known_product_are_ignored():
    items, sizes = _cart(("S-L", 1))
    items.append(CartLine(product_id=uuid.uuid4(), quantity=20))

    package = calculate_package(items, sizes)

    assert package.container_type == "bag"
    assert package.container_size == "S"


# ---------------------------------------------------------------------------
# Catalog boxes
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_catalog_box_replaces_builtin_profile():
    custom = BoxFactory.create(size="L", width=40, length=30, height=15, name="Caja L")
    items, sizes = _cart(("XL-L", 1))

    package = calculate_package(items, sizes, box_overrides([custom]))

    assert (package.width, package.length, package.height) == (40, 30, 15)
    assert package.box_id == str(custom.id)


@pytest.mark.unit
def test_default_box_wins_over_other_boxes_of_same_size():
    spare = BoxFactory.create(size="m", width=50, is_default=False)
    default = BoxFactory.create(size="M", width=36, is_default=True)
    unknown = BoxFactory.create(size="XXL", is_default=True)

    overrides = box_overrides([spare, default, unknown])

    assert set(overrides) == {"M"}
    assert overrides["M"].width == 36
    assert overrides["M"].box_id == str(default.id)


@pytest.mark.unit
def test_manual_box_keeps_calculated_weight():
    items, sizes = _cart(("XL-P", 10))
    package = calculate_package(items, sizes)
    box = BoxFactory.create(size="m", width=35, length=22, height=12)

    manual = with_manual_box(package, box)

    assert manual.weight == package.weight
    assert manual.container_type == "box"
    assert manual.container_size == "M"
    assert (manual.width, manual.length, manual.height) == (35, 22, 12)
    assert manual.box_id == str(box.id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_carrier_package_is_clamped_to_carrier_limits():
    package = PackageDimensions(
        weight=0.3,
        width=0,
        height=450,
        length=20,
        container_type="box",
        container_size="L",
    )

    assert package.carrier_package() == {
        "weight": 1.0,
        "height": 300,
        "width": 1,
        "length": 20,
    }


@pytest.mark.unit
def test_round_weight_rounds_half_up():
    assert round_weight(Decimal("1.005")) == Decimal("1.01")
    assert round_weight(Decimal("2.344")) == Decimal("2.34")


@pytest.mark.unit
def test_parse_size_value():
    assert parse_size_value(" xl-p ") == ("XL", "P")
    assert parse_size_value("M") is None
    assert parse_size_value("XXL-L") is None
    assert parse_size_value(None) is None
