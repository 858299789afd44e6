"""Package dimension calculator.

Maps cart contents to a container profile (bag or box, size class) and a
shipping weight. Product sizes are encoded as ``"<dimension>-<weight>"``:
dimension is one of XS, S, M, L, XL and weight is ``L`` (light) or ``P``
(heavy).

Policy:
- a bag is used for 1 to 5 units, at most one heavy unit, and no unit
  larger than L; anything else goes in a box
- the container size follows the single largest dimension in the cart
- weight is the per-class unit weight times quantity, plus the packaging,
  floored at the carrier minimum and rounded half-up to 2 decimals
"""

import uuid
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Optional

from libs.common.logging import get_logger

logger = get_logger(__name__)

SIZE_ORDER = ("XS", "S", "M", "L", "XL")
WEIGHT_CLASSES = ("L", "P")  # liviano / pesado
DEFAULT_SIZE = ("M", "L")

# Unit weight in kg by dimension and weight class
PRODUCT_WEIGHTS: dict[str, dict[str, Decimal]] = {
    "XS": {"L": Decimal("0.005"), "P": Decimal("0.02")},
    "S": {"L": Decimal("0.02"), "P": Decimal("0.08")},
    "M": {"L": Decimal("0.05"), "P": Decimal("0.15")},
    "L": {"L": Decimal("0.1"), "P": Decimal("0.3")},
    "XL": {"L": Decimal("0.2"), "P": Decimal("0.6")},
}

BAG_MAX_UNITS = 5
BAG_MAX_HEAVY_UNITS = 1
BAG_MAX_DIMENSION = "L"

PACKAGING_WEIGHT = {"bag": Decimal("0.05"), "box": Decimal("0.2")}
MIN_WEIGHT_KG = Decimal("1.0")

# Carrier limits
MAX_WEIGHT_KG = Decimal("1000")
MIN_DIMENSION_CM = 1
MAX_DIMENSION_CM = 300


@dataclass(frozen=True)
class Container:
    container_type: str  # "bag" | "box"
    container_size: str
    width: int
    length: int
    height: int
    box_id: Optional[str] = None
    name: Optional[str] = None


BAGS: dict[str, Container] = {
    "S": Container("bag", "S", width=20, length=28, height=2, name="Bolsa S"),
    "M": Container("bag", "M", width=29, length=38, height=4, name="Bolsa M"),
    "L": Container("bag", "L", width=34, length=42, height=6, name="Bolsa L"),
}

BOXES: dict[str, Container] = {
    "XS": Container("box", "XS", width=26, length=16, height=8),
    "S": Container("box", "S", width=20, length=21, height=10),
    "M": Container("box", "M", width=33, length=20, height=10),
    "L": Container("box", "L", width=33, length=26, height=10),
}

# Largest dimension -> container size
BAG_FOR_DIMENSION = {"XS": "S", "S": "S", "M": "M", "L": "L"}
BOX_FOR_DIMENSION = {"XS": "XS", "S": "S", "M": "M", "L": "L", "XL": "L"}


@dataclass(frozen=True)
class CartLine:
    product_id: Optional[uuid.UUID]
    quantity: int


@dataclass(frozen=True)
class PackageDimensions:
    weight: float
    width: int
    height: int
    length: int
    container_type: str
    container_size: str
    box_id: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)

    def carrier_package(self) -> dict:
        """Package block in the carrier's units, clamped to its limits."""
        weight = min(max(Decimal(str(self.weight)), MIN_WEIGHT_KG), MAX_WEIGHT_KG)
        return {
            "weight": float(weight),
            "height": _clamp_cm(self.height),
            "width": _clamp_cm(self.width),
            "length": _clamp_cm(self.length),
        }


def _clamp_cm(value: int) -> int:
    return min(max(int(value), MIN_DIMENSION_CM), MAX_DIMENSION_CM)


def parse_size_value(value: Optional[str]) -> Optional[tuple[str, str]]:
    """Split ``"S-L"`` into ``("S", "L")``. Returns ``None`` when malformed."""
    if not value:
        return None
    parts = value.strip().upper().split("-")
    if len(parts) != 2:
        return None
    dimension, weight = parts
    if dimension not in SIZE_ORDER or weight not in WEIGHT_CLASSES:
        return None
    return dimension, weight


def round_weight(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def box_overrides(boxes: Iterable) -> dict[str, Container]:
    """Build per-size box containers from catalog rows.

    The default box of a size wins, otherwise the first one listed.
    """
    chosen: dict[str, object] = {}
    for box in boxes:
        size = (box.size or "").upper()
        if size not in SIZE_ORDER:
            continue
        current = chosen.get(size)
        if current is None or (box.is_default and not current.is_default):
            chosen[size] = box
    return {size: box_container(box) for size, box in chosen.items()}


def box_container(box) -> Container:
    return Container(
        "box",
        (box.size or "").upper(),
        width=int(box.width),
        length=int(box.length),
        height=int(box.height),
        box_id=str(box.id),
        name=box.name,
    )


def calculate_package(
    items: Iterable[CartLine],
    sizes: Mapping[uuid.UUID, Optional[str]],
    box_configurations: Optional[Mapping[str, Container]] = None,
) -> PackageDimensions:
    """Pick the container and weight for a cart.

    ``sizes`` maps product id to its size value; lines whose product is not
    in ``sizes`` are ignored. An empty cart ships as a medium bag at the
    minimum weight.
    """
    items = list(items)
    if not items:
        bag = BAGS["M"]
        return PackageDimensions(
            weight=float(MIN_WEIGHT_KG),
            width=bag.width,
            height=bag.height,
            length=bag.length,
            container_type=bag.container_type,
            container_size=bag.container_size,
        )

    total_units = 0
    heavy_units = 0
    largest = "XS"
    total_weight = Decimal("0")

    for item in items:
        if item.product_id not in sizes:
            continue
        parsed = parse_size_value(sizes[item.product_id])
        if parsed is None:
            logger.warning(
                "Invalid size %r for product %s, using %s-%s",
                sizes[item.product_id],
                item.product_id,
                *DEFAULT_SIZE,
            )
            parsed = DEFAULT_SIZE
        dimension, weight_class = parsed

        total_units += item.quantity
        if weight_class == "P":
            heavy_units += item.quantity
        if SIZE_ORDER.index(dimension) > SIZE_ORDER.index(largest):
            largest = dimension
        total_weight += PRODUCT_WEIGHTS[dimension][weight_class] * item.quantity

    use_bag = (
        1 <= total_units <= BAG_MAX_UNITS
        and heavy_units <= BAG_MAX_HEAVY_UNITS
        and SIZE_ORDER.index(largest) <= SIZE_ORDER.index(BAG_MAX_DIMENSION)
    )

    if use_bag:
        container = BAGS[BAG_FOR_DIMENSION[largest]]
    else:
        size = BOX_FOR_DIMENSION[largest]
        container = (box_configurations or {}).get(size) or BOXES[size]

    weight = round_weight(
        max(total_weight + PACKAGING_WEIGHT[container.container_type], MIN_WEIGHT_KG)
    )
    return PackageDimensions(
        weight=float(weight),
        width=container.width,
        height=container.height,
        length=container.length,
        container_type=container.container_type,
        container_size=container.container_size,
        box_id=container.box_id,
    )


def with_manual_box(package: PackageDimensions, box) -> PackageDimensions:
    """Keep the calculated weight but ship in a manually chosen box."""
    container = box_container(box)
    return PackageDimensions(
        weight=package.weight,
        width=container.width,
        height=container.height,
        length=container.length,
        container_type="box",
        container_size=container.container_size,
        box_id=container.box_id,
    )
