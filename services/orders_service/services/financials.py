"""Order financials: cost of goods, gateway fee, net profit and margin.

``compute_financials`` is pure. The snapshot is written onto the order once,
at the PAID transition; rewriting it is only allowed through the historical
backfill (``migration=True``).
"""

import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Mapping, Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.orders_service.errors import FinancialSnapshotExists
from services.orders_service.models import (
    AbcClass,
    InventoryMovement,
    MovementType,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    Product,
)
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")
VAT_RATE = Decimal("0.19")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _gateway_fee(rate: str, fixed: str) -> Callable[[Decimal], Decimal]:
    rate_d, fixed_d = Decimal(rate), Decimal(fixed)

    def fee(amount: Decimal) -> Decimal:
        base = amount * rate_d + fixed_d
        return base * (1 + VAT_RATE)

    return fee


def _no_fee(amount: Decimal) -> Decimal:
    return ZERO


# Fee with VAT, per payment method
GATEWAY_FEES: dict[PaymentMethod, Callable[[Decimal], Decimal]] = {
    PaymentMethod.WOMPI: _gateway_fee("0.0265", "700"),
    PaymentMethod.PAYU: _gateway_fee("0.0349", "900"),
    PaymentMethod.BANK_TRANSFER: _no_fee,
    PaymentMethod.COD: _no_fee,
    PaymentMethod.CASH: _no_fee,
}


@dataclass(frozen=True)
class FinancialLine:
    product_id: Optional[uuid.UUID]
    quantity: int


@dataclass(frozen=True)
class Financials:
    total_product_cost: Decimal
    gateway_fee: Decimal
    shipping_cost: Decimal
    net_profit: Decimal
    profit_margin_pct: Decimal

    def as_dict(self) -> dict[str, Decimal]:
        return {
            "total_product_cost": self.total_product_cost,
            "gateway_fee": self.gateway_fee,
            "shipping_cost": self.shipping_cost,
            "net_profit": self.net_profit,
            "profit_margin_pct": self.profit_margin_pct,
        }


def compute_financials(
    items: Iterable[FinancialLine],
    total_paid: Decimal,
    payment_method: Optional[PaymentMethod],
    shipping_cost: Optional[Decimal],
    product_cost_lookup: Mapping[uuid.UUID, Optional[Decimal]],
) -> Financials:
    total_paid = Decimal(total_paid or 0)
    shipping = Decimal(shipping_cost or 0)

    product_cost = ZERO
    for item in items:
        unit_cost = product_cost_lookup.get(item.product_id) if item.product_id else None
        product_cost += Decimal(unit_cost or 0) * item.quantity

    fee_fn = GATEWAY_FEES.get(payment_method, _no_fee) if payment_method else _no_fee
    gateway_fee = _money(fee_fn(total_paid))

    net_profit = _money(total_paid - product_cost - gateway_fee - shipping)
    margin = (
        _money(net_profit / total_paid * 100) if total_paid != 0 else ZERO.quantize(CENT)
    )
    return Financials(
        total_product_cost=_money(product_cost),
        gateway_fee=gateway_fee,
        shipping_cost=_money(shipping),
        net_profit=net_profit,
        profit_margin_pct=margin,
    )


# ---------------------------------------------------------------------------
# Snapshot persistence
# ---------------------------------------------------------------------------


async def order_cost_lookup(
    db: AsyncSession, order: Order
) -> dict[uuid.UUID, Optional[Decimal]]:
    """Unit acquisition cost per product as recorded when the order was placed.

    Uses the ORDER_PLACED ledger movements first and falls back to the
    product's current ``acq_price`` for lines without one.
    """
    result = await db.execute(
        select(InventoryMovement.product_id, InventoryMovement.cost).where(
            InventoryMovement.reference_id == str(order.id),
            InventoryMovement.movement_type == MovementType.ORDER_PLACED,
        )
    )
    lookup: dict[uuid.UUID, Optional[Decimal]] = {}
    for product_id, cost in result.all():
        if cost is not None:
            lookup.setdefault(product_id, cost)

    missing = [
        item.product_id
        for item in order.items
        if item.product_id and item.product_id not in lookup
    ]
    if missing:
        products = await db.execute(
            select(Product.id, Product.acq_price).where(Product.id.in_(missing))
        )
        for product_id, acq_price in products.all():
            lookup[product_id] = acq_price
    return lookup


def clear_financial_snapshot(order: Order) -> None:
    order.total_product_cost = None
    order.gateway_fee = None
    order.shipping_cost = None
    order.net_profit = None
    order.profit_margin_pct = None


async def apply_financial_snapshot(
    db: AsyncSession,
    order: Order,
    payment_method: Optional[PaymentMethod],
    *,
    migration: bool = False,
) -> Financials:
    """Compute and store the order's financial snapshot.

    Refuses to overwrite an existing snapshot unless ``migration`` is set.
    Does not commit.
    """
    if order.has_financial_snapshot and not migration:
        raise FinancialSnapshotExists(
            "Financial snapshot already recorded for this order",
            details={"order_id": str(order.id)},
        )

    shipping_cost = order.shipping.cost if order.shipping else None
    financials = compute_financials(
        [FinancialLine(item.product_id, item.quantity) for item in order.items],
        order.total,
        payment_method,
        shipping_cost,
        await order_cost_lookup(db, order),
    )
    for key, value in financials.as_dict().items():
        setattr(order, key, value)
    await db.flush()

    logger.info(
        "Financial snapshot for order #%s: net=%s margin=%s%%%s",
        order.order_number,
        financials.net_profit,
        financials.profit_margin_pct,
        " (migration)" if migration else "",
    )
    return financials


async def backfill_financials(
    db: AsyncSession, *, force: bool = False, batch_size: int = 200
) -> dict[str, int]:
    """Historical migration: snapshot PAID/SENT orders that lack one.

    ``force`` recomputes every paid order. Commits per batch.
    """
    query = select(Order).where(Order.status.in_([OrderStatus.PAID, OrderStatus.SENT]))
    if not force:
        query = query.where(Order.total_product_cost.is_(None))
    query = query.order_by(Order.order_number)

    orders = (await db.execute(query)).scalars().all()
    processed = 0
    for order in orders:
        method = order.payment.method if order.payment else None
        await apply_financial_snapshot(db, order, method, migration=True)
        processed += 1
        if processed % batch_size == 0:
            await db.commit()
    await db.commit()

    logger.info("Financial backfill processed %d orders", processed)
    return {"processed": processed}


# ---------------------------------------------------------------------------
# ABC classification
# ---------------------------------------------------------------------------

ABC_A_THRESHOLD = Decimal("70")
ABC_B_THRESHOLD = Decimal("90")


def classify_abc(profit_by_product: Mapping[uuid.UUID, Decimal]) -> dict[uuid.UUID, AbcClass]:
    """Rank products by profit and tag by cumulative contribution.

    Up to 70% of cumulative profit is A, up to 90% is B, the rest C.
    Products with no positive profit are C.
    """
    ranked = sorted(profit_by_product.items(), key=lambda kv: (-kv[1], str(kv[0])))
    total = sum((p for _, p in ranked if p > 0), ZERO)

    classes: dict[uuid.UUID, AbcClass] = {}
    cumulative = ZERO
    for product_id, profit in ranked:
        if total <= 0 or profit <= 0:
            classes[product_id] = AbcClass.C
            continue
        cumulative += profit
        pct = cumulative / total * 100
        if pct <= ABC_A_THRESHOLD:
            classes[product_id] = AbcClass.A
        elif pct <= ABC_B_THRESHOLD:
            classes[product_id] = AbcClass.B
        else:
            classes[product_id] = AbcClass.C
    return classes


async def classify_products_abc(db: AsyncSession, *, days: int = 90) -> dict[str, int]:
    """Recompute every product's ABC tag from paid sales in the last ``days``."""
    since = utc_now() - timedelta(days=days)
    unit_cost = func.coalesce(Product.acq_price, 0)
    unit_price = func.coalesce(OrderItem.price, Product.price)
    result = await db.execute(
        select(
            Product.id,
            func.sum((unit_price - unit_cost) * OrderItem.quantity),
        )
        .join(OrderItem, OrderItem.product_id == Product.id)
        .join(Order, Order.id == OrderItem.order_id)
        .where(
            Order.status.in_([OrderStatus.PAID, OrderStatus.SENT]),
            Order.paid_at >= since,
        )
        .group_by(Product.id)
    )
    profit_by_product = {
        product_id: Decimal(str(profit or 0)) for product_id, profit in result.all()
    }
    classes = classify_abc(profit_by_product)

    products = (await db.execute(select(Product))).scalars().all()
    counts = {AbcClass.A.value: 0, AbcClass.B.value: 0, AbcClass.C.value: 0}
    for product in products:
        product.abc_class = classes.get(product.id, AbcClass.C)
        counts[product.abc_class.value] += 1
    await db.commit()

    logger.info("ABC classification updated: %s", counts)
    return counts
