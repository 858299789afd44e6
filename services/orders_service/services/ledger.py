"""Inventory ledger: append-only stock movements with row-level locking.

``Product.stock`` is only ever written here, always together with the
movement row that explains it, so ``stock == sum(movement.quantity)`` holds
for every product. None of these functions commit; the caller owns the
transaction boundary.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from libs.common.logging import get_logger
from services.orders_service.errors import (
    InvalidMovement,
    InvariantViolation,
    PipelineError,
    ProductNotFound,
    StockExhausted,
)
from services.orders_service.models import (
    DECREMENTING_MOVEMENTS,
    INCREMENTING_MOVEMENTS,
    InventoryMovement,
    MovementType,
    Product,
)
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass
class MovementRequest:
    """A stock change to record. ``quantity`` is signed."""

    product_id: Optional[uuid.UUID]
    movement_type: MovementType
    quantity: int
    reference_id: Optional[str] = None
    reason: Optional[str] = None
    created_by: Optional[str] = None
    cost: Optional[Decimal] = None
    price: Optional[Decimal] = None
    # Optimistic check against the stock the caller last saw
    expected_previous_stock: Optional[int] = None


@dataclass
class BatchFailure:
    request: MovementRequest
    error: str
    message: str


@dataclass
class BatchResult:
    success: list[InventoryMovement] = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.success) + len(self.failed)


@dataclass
class LedgerCheck:
    product_id: uuid.UUID
    product_name: str
    stock: int
    ledger_total: int

    @property
    def consistent(self) -> bool:
        return self.stock == self.ledger_total


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def validate_request(request: MovementRequest) -> None:
    """Reject requests whose sign disagrees with their movement type."""
    if request.product_id is None:
        raise ProductNotFound("Movement has no product")
    if request.quantity == 0:
        raise InvalidMovement("Movement quantity cannot be zero")
    if request.movement_type in DECREMENTING_MOVEMENTS and request.quantity > 0:
        raise InvalidMovement(
            f"{request.movement_type.value} movements must be negative",
            details={"quantity": request.quantity},
        )
    if request.movement_type in INCREMENTING_MOVEMENTS and request.quantity < 0:
        raise InvalidMovement(
            f"{request.movement_type.value} movements must be positive",
            details={"quantity": request.quantity},
        )


async def _lock_product(db: AsyncSession, product_id: uuid.UUID) -> Product:
    result = await db.execute(
        select(Product)
        .where(Product.id == product_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    product = result.scalar_one_or_none()
    if not product:
        raise ProductNotFound(
            f"Product {product_id} not found", details={"product_id": str(product_id)}
        )
    return product


# ---------------------------------------------------------------------------
# Write path
# ---------------------------------------------------------------------------


async def apply_movement(
    db: AsyncSession, request: MovementRequest
) -> InventoryMovement:
    """Record one movement and update the product's stock in the same transaction."""
    validate_request(request)
    product = await _lock_product(db, request.product_id)

    previous_stock = product.stock
    if (
        request.expected_previous_stock is not None
        and request.expected_previous_stock != previous_stock
    ):
        raise InvalidMovement(
            "Stock changed since it was read",
            details={
                "product_id": str(product.id),
                "expected": request.expected_previous_stock,
                "actual": previous_stock,
            },
        )

    new_stock = previous_stock + request.quantity
    if new_stock < 0:
        raise StockExhausted(
            product.name,
            available=previous_stock,
            requested=-request.quantity,
            details={"product_id": str(product.id)},
        )

    movement = InventoryMovement(
        product_id=product.id,
        movement_type=request.movement_type,
        quantity=request.quantity,
        previous_stock=previous_stock,
        new_stock=new_stock,
        cost=request.cost if request.cost is not None else product.acq_price,
        price=request.price if request.price is not None else product.price,
        reference_id=request.reference_id,
        reason=request.reason,
        created_by=request.created_by,
    )
    if movement.previous_stock + movement.quantity != movement.new_stock:
        raise InvariantViolation(
            "Movement snapshot does not add up",
            details={"product_id": str(product.id)},
        )

    db.add(movement)
    product.stock = new_stock
    await db.flush()

    logger.info(
        "Stock %s for %s: %d -> %d (%+d)",
        request.movement_type.value,
        product.name,
        previous_stock,
        new_stock,
        request.quantity,
    )
    return movement


async def apply_batch(
    db: AsyncSession, requests: Sequence[MovementRequest]
) -> list[InventoryMovement]:
    """All-or-nothing batch.

    Every request is validated and the aggregate decrement per product is
    checked against locked stock before the first row is written, so a
    failure never leaves a partial decrement behind.
    """
    for request in requests:
        validate_request(request)

    net_by_product: dict[uuid.UUID, int] = {}
    for request in requests:
        net_by_product[request.product_id] = (
            net_by_product.get(request.product_id, 0) + request.quantity
        )

    # Lock in a stable order so concurrent batches cannot deadlock
    for product_id in sorted(net_by_product, key=str):
        product = await _lock_product(db, product_id)
        requested = -net_by_product[product_id]
        if requested > product.stock:
            raise StockExhausted(
                product.name,
                available=product.stock,
                requested=requested,
                details={"product_id": str(product.id)},
            )

    movements = []
    for request in requests:
        movements.append(await apply_movement(db, request))
    return movements


async def apply_batch_resilient(
    db: AsyncSession, requests: Sequence[MovementRequest]
) -> BatchResult:
    """Apply each movement independently and report per-item failures.

    A failing item (missing product, insufficient stock, invalid sign) is
    rejected before anything is written for it, so the remaining items still
    go through. Database errors are not captured.
    """
    result = BatchResult()
    for request in requests:
        try:
            movement = await apply_movement(db, request)
        except PipelineError as exc:
            logger.warning(
                "Resilient batch item failed: %s",
                exc.message,
                extra={"extra_fields": {
                    "product_id": str(request.product_id) if request.product_id else None,
                    "movement_type": request.movement_type.value,
                    "quantity": request.quantity,
                    "reference_id": request.reference_id,
                }},
            )
            result.failed.append(
                BatchFailure(request=request, error=exc.code, message=exc.message)
            )
        else:
            result.success.append(movement)

    if result.total != len(requests):
        raise InvariantViolation(
            "Resilient batch lost track of items",
            details={"requested": len(requests), "reported": result.total},
        )
    return result


async def record_initial_migration(
    db: AsyncSession, product_id: uuid.UUID, created_by: Optional[str] = None
) -> Optional[InventoryMovement]:
    """Seed the ledger for a product whose stock predates it.

    Returns ``None`` when there is nothing to seed (zero stock).
    """
    product = await _lock_product(db, product_id)
    existing = await db.scalar(
        select(func.count(InventoryMovement.id)).where(
            InventoryMovement.product_id == product_id
        )
    )
    if existing:
        raise InvalidMovement(
            "Product already has ledger history",
            details={"product_id": str(product_id), "movements": existing},
        )
    if product.stock == 0:
        return None

    movement = InventoryMovement(
        product_id=product.id,
        movement_type=MovementType.INITIAL_MIGRATION,
        quantity=product.stock,
        previous_stock=0,
        new_stock=product.stock,
        cost=product.acq_price,
        price=product.price,
        reason="Initial ledger migration",
        created_by=created_by or "system",
    )
    db.add(movement)
    await db.flush()
    logger.info("Seeded ledger for %s with %d units", product.name, product.stock)
    return movement


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------


async def list_movements(
    db: AsyncSession,
    *,
    product_id: Optional[uuid.UUID] = None,
    reference_id: Optional[str] = None,
    movement_types: Optional[Iterable[MovementType]] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[InventoryMovement]:
    query = select(InventoryMovement)
    if product_id:
        query = query.where(InventoryMovement.product_id == product_id)
    if reference_id:
        query = query.where(InventoryMovement.reference_id == reference_id)
    if movement_types:
        query = query.where(InventoryMovement.movement_type.in_(list(movement_types)))
    query = (
        query.order_by(InventoryMovement.created_at.desc(), InventoryMovement.id)
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(query)
    return list(result.scalars().all())


async def ledger_total(db: AsyncSession, product_id: uuid.UUID) -> int:
    total = await db.scalar(
        select(func.coalesce(func.sum(InventoryMovement.quantity), 0)).where(
            InventoryMovement.product_id == product_id
        )
    )
    return int(total or 0)


async def get_stock_summary(db: AsyncSession, product_id: uuid.UUID) -> dict:
    """Current stock plus units in and out per movement type."""
    product = await db.get(Product, product_id)
    if not product:
        raise ProductNotFound(
            f"Product {product_id} not found", details={"product_id": str(product_id)}
        )
    result = await db.execute(
        select(
            InventoryMovement.movement_type,
            func.count(InventoryMovement.id),
            func.sum(InventoryMovement.quantity),
        )
        .where(InventoryMovement.product_id == product_id)
        .group_by(InventoryMovement.movement_type)
    )
    by_type = {
        movement_type.value: {"movements": int(count), "quantity": int(total)}
        for movement_type, count, total in result.all()
    }
    qty = InventoryMovement.quantity
    units_in, units_out = (
        await db.execute(
            select(
                func.coalesce(func.sum(case((qty > 0, qty), else_=0)), 0),
                func.coalesce(func.sum(case((qty < 0, -qty), else_=0)), 0),
            ).where(InventoryMovement.product_id == product_id)
        )
    ).one()
    return {
        "product_id": product.id,
        "product_name": product.name,
        "stock": product.stock,
        "units_in": units_in,
        "units_out": units_out,
        "by_type": by_type,
    }


async def net_quantities_for_reference(
    db: AsyncSession,
    reference_id: str,
    movement_types: Iterable[MovementType],
) -> dict[uuid.UUID, int]:
    """Net signed quantity per product for movements with this reference."""
    result = await db.execute(
        select(InventoryMovement.product_id, func.sum(InventoryMovement.quantity))
        .where(
            InventoryMovement.reference_id == reference_id,
            InventoryMovement.movement_type.in_(list(movement_types)),
        )
        .group_by(InventoryMovement.product_id)
    )
    return {product_id: int(total) for product_id, total in result.all()}


async def verify_product_ledger(
    db: AsyncSession, product_id: uuid.UUID
) -> LedgerCheck:
    """Compare a product's stock to its ledger. Raises on mismatch."""
    product = await db.get(Product, product_id)
    if not product:
        raise ProductNotFound(
            f"Product {product_id} not found", details={"product_id": str(product_id)}
        )
    check = LedgerCheck(
        product_id=product.id,
        product_name=product.name,
        stock=product.stock,
        ledger_total=await ledger_total(db, product_id),
    )
    if not check.consistent:
        logger.critical(
            "Ledger invariant violated for %s: stock=%d ledger=%d",
            product.name,
            check.stock,
            check.ledger_total,
            extra={"extra_fields": {"product_id": str(product.id)}},
        )
        raise InvariantViolation(
            f"Stock for {product.name} does not match its ledger",
            details={
                "product_id": str(product.id),
                "stock": check.stock,
                "ledger_total": check.ledger_total,
            },
        )
    return check


async def audit_ledger(db: AsyncSession) -> list[LedgerCheck]:
    """Return every product whose stock disagrees with its ledger.

    Mismatches are logged at CRITICAL and reported, never corrected.
    """
    totals = (
        select(
            InventoryMovement.product_id.label("product_id"),
            func.sum(InventoryMovement.quantity).label("total"),
        )
        .group_by(InventoryMovement.product_id)
        .subquery()
    )
    result = await db.execute(
        select(Product.id, Product.name, Product.stock, func.coalesce(totals.c.total, 0))
        .outerjoin(totals, totals.c.product_id == Product.id)
        .order_by(Product.name)
    )

    mismatches = []
    for product_id, name, stock, total in result.all():
        check = LedgerCheck(
            product_id=product_id, product_name=name, stock=stock, ledger_total=int(total)
        )
        if not check.consistent:
            logger.critical(
                "Ledger invariant violated for %s: stock=%d ledger=%d",
                name,
                stock,
                check.ledger_total,
                extra={"extra_fields": {"product_id": str(product_id)}},
            )
            mismatches.append(check)
    return mismatches
