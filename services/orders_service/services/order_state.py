"""Order state machine.

Owns the allowed status transitions and orchestrates the inventory ledger,
coupon usage, the financial snapshot and the payment/shipping records around
them. Every transition reads and writes the order inside one transaction with
the order row locked, so concurrent webhooks for the same order serialize at
the database.

Allowed transitions::

    CREATED   -> PENDING | PAID | CANCELLED
    PENDING   -> PAID | CANCELLED
    PAID      -> SENT | CANCELLED
    CANCELLED -> PENDING        (only with ALLOW_CANCELLED_REACTIVATION)
    SENT      -> (none)
"""

import enum
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Sequence

from libs.common.config import Settings, get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.orders_service.errors import (
    AmountMismatch,
    InvalidCoupon,
    InvalidTransition,
    OrderNotFound,
    PipelineError,
    ProductNotFound,
)
from services.orders_service.models import (
    Coupon,
    DiscountType,
    EventOutcome,
    MovementType,
    Order,
    OrderItem,
    OrderStatus,
    PaymentDetails,
    PaymentEventLog,
    PaymentMethod,
    PaymentProvider,
    Product,
    Shipping,
    ShippingStatus,
)
from services.orders_service.services import ledger
from services.orders_service.services.financials import (
    apply_financial_snapshot,
    clear_financial_snapshot,
)
from services.orders_service.services.payment_events import PaymentEvent
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class SideEffect(str, enum.Enum):
    NOTIFY_CUSTOMER = "notify_customer"
    ISSUE_INVOICE = "issue_invoice"
    CREATE_SHIPPING_GUIDE = "create_shipping_guide"
    NOTIFY_SHIPPING = "notify_shipping"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset(
        {OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.CANCELLED}
    ),
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.SENT, OrderStatus.CANCELLED}),
    OrderStatus.SENT: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PROVIDER_METHODS = {
    PaymentProvider.WOMPI: PaymentMethod.WOMPI,
    PaymentProvider.PAYU: PaymentMethod.PAYU,
}


@dataclass(frozen=True)
class OrderPolicy:
    """Business choices that are configuration rather than code."""

    cancelled_financials: str = "retain"  # "retain" | "clear"
    allow_reactivation: bool = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "OrderPolicy":
        settings = settings or get_settings()
        return cls(
            cancelled_financials=settings.CANCELLED_FINANCIALS_POLICY,
            allow_reactivation=settings.ALLOW_CANCELLED_REACTIVATION,
        )


@dataclass
class TransitionResult:
    order_id: uuid.UUID
    order_number: int
    previous_status: OrderStatus
    new_status: OrderStatus
    changed: bool
    side_effects: list[SideEffect] = field(default_factory=list)
    restock_failures: list[ledger.BatchFailure] = field(default_factory=list)
    message: Optional[str] = None


def allowed_targets(current: OrderStatus, policy: OrderPolicy) -> frozenset[OrderStatus]:
    targets = ALLOWED_TRANSITIONS[current]
    if current == OrderStatus.CANCELLED and policy.allow_reactivation:
        targets = targets | {OrderStatus.PENDING}
    return targets


def can_transition(current: OrderStatus, target: OrderStatus, policy: OrderPolicy) -> bool:
    return target in allowed_targets(current, policy)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _order_filter(reference: str):
    try:
        return Order.id == uuid.UUID(str(reference))
    except ValueError:
        pass
    if str(reference).isdigit():
        return Order.order_number == int(reference)
    return None


async def lock_order(db: AsyncSession, reference) -> Order:
    """Load an order by id or order number with its row locked."""
    condition = _order_filter(reference)
    if condition is None:
        raise OrderNotFound(
            f"Order not found: {reference}", details={"reference": str(reference)}
        )
    result = await db.execute(
        select(Order)
        .where(condition)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if not order:
        raise OrderNotFound(
            f"Order not found: {reference}", details={"reference": str(reference)}
        )
    return order


async def get_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
    order = await db.get(Order, order_id, populate_existing=True)
    if not order:
        raise OrderNotFound(
            f"Order not found: {order_id}", details={"reference": str(order_id)}
        )
    return order


# ---------------------------------------------------------------------------
# Order creation
# ---------------------------------------------------------------------------


@dataclass
class OrderLine:
    quantity: int
    product_id: Optional[uuid.UUID] = None
    name: Optional[str] = None
    price: Optional[Decimal] = None
    sku: Optional[str] = None


def compute_discount(coupon: Coupon, subtotal: Decimal) -> Decimal:
    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = subtotal * Decimal(coupon.amount) / 100
    else:
        discount = Decimal(coupon.amount)
    return min(discount, subtotal).quantize(Decimal("0.01"))


async def _resolve_coupon(db: AsyncSession, code: str, subtotal: Decimal) -> Coupon:
    coupon = await db.scalar(select(Coupon).where(Coupon.code == code.strip().upper()))
    if not coupon or not coupon.is_active:
        raise InvalidCoupon(f"Coupon {code} is not valid", details={"code": code})
    if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
        raise InvalidCoupon(f"Coupon {code} has no uses left", details={"code": code})
    if coupon.min_order_value is not None and subtotal < coupon.min_order_value:
        raise InvalidCoupon(
            f"Coupon {code} requires a minimum order of {coupon.min_order_value}",
            details={"code": code},
        )
    return coupon


async def next_order_number(db: AsyncSession) -> int:
    current = await db.scalar(select(func.max(Order.order_number)))
    return (current or 0) + 1


async def create_order(
    db: AsyncSession,
    *,
    full_name: str,
    phone: str,
    address: str,
    lines: Sequence[OrderLine],
    email: Optional[str] = None,
    company: Optional[str] = None,
    address2: Optional[str] = None,
    neighborhood: Optional[str] = None,
    address_reference: Optional[str] = None,
    locality_code: Optional[str] = None,
    coupon_code: Optional[str] = None,
) -> Order:
    """Create an order in CREATED status with a snapshot of each line."""
    if not lines:
        raise InvalidTransition("An order needs at least one line")

    items = []
    subtotal = Decimal("0")
    for line in lines:
        if line.product_id:
            product = await db.get(Product, line.product_id)
            if not product:
                raise ProductNotFound(
                    f"Product {line.product_id} not found",
                    details={"product_id": str(line.product_id)},
                )
            price = line.price if line.price is not None else product.price
            name, sku = product.name, product.sku
        else:
            if line.price is None or not line.name:
                raise InvalidTransition("Manual lines need a name and a price")
            price, name, sku = line.price, line.name, line.sku
        subtotal += Decimal(price) * line.quantity
        items.append(
            OrderItem(
                product_id=line.product_id,
                quantity=line.quantity,
                name=name,
                sku=sku,
                price=price,
            )
        )

    coupon = await _resolve_coupon(db, coupon_code, subtotal) if coupon_code else None
    discount = compute_discount(coupon, subtotal) if coupon else Decimal("0")

    order = Order(
        order_number=await next_order_number(db),
        status=OrderStatus.CREATED,
        full_name=full_name,
        email=email,
        phone=phone,
        company=company,
        address=address,
        address2=address2,
        neighborhood=neighborhood,
        address_reference=address_reference,
        locality_code=locality_code,
        subtotal=subtotal,
        discount=discount,
        total=subtotal - discount,
        coupon_id=coupon.id if coupon else None,
        items=items,
    )
    db.add(order)
    await db.commit()
    await db.refresh(order)

    logger.info("Created order #%d (total=%s)", order.order_number, order.total)
    return order


# ---------------------------------------------------------------------------
# Record upserts (find by order id, then insert or update)
# ---------------------------------------------------------------------------


async def upsert_payment_details(
    db: AsyncSession,
    order: Order,
    *,
    method: PaymentMethod,
    transaction_id: Optional[str],
    details: Optional[str],
) -> PaymentDetails:
    payment = await db.scalar(
        select(PaymentDetails)
        .where(PaymentDetails.order_id == order.id)
        .with_for_update()
    )
    if payment is None:
        payment = PaymentDetails(
            order_id=order.id,
            method=method,
            transaction_id=transaction_id,
            details=details,
        )
        db.add(payment)
    else:
        payment.method = method
        if transaction_id:
            payment.transaction_id = transaction_id
        if details:
            payment.details = details
    order.payment = payment
    await db.flush()
    return payment


async def ensure_shipping(db: AsyncSession, order: Order) -> Shipping:
    shipping = await db.scalar(
        select(Shipping).where(Shipping.order_id == order.id).with_for_update()
    )
    if shipping is None:
        shipping = Shipping(order_id=order.id, status=ShippingStatus.PREPARING)
        db.add(shipping)
        order.shipping = shipping
        await db.flush()
        logger.info("Created shipping record for order #%d", order.order_number)
    return shipping


# ---------------------------------------------------------------------------
# Transition effects
# ---------------------------------------------------------------------------


async def _consume_stock(db: AsyncSession, order: Order, actor: str) -> None:
    """Atomic ORDER_PLACED decrement for every line with a product.

    Quantities already placed for this order (net of cancellations) are
    subtracted, so the decrement happens at most once per order.
    """
    reference = str(order.id)
    outstanding = await ledger.net_quantities_for_reference(
        db, reference, [MovementType.ORDER_PLACED, MovementType.ORDER_CANCELLED]
    )

    required: dict[uuid.UUID, int] = {}
    prices: dict[uuid.UUID, Optional[Decimal]] = {}
    for item in order.items:
        if item.product_id is None:
            continue
        required[item.product_id] = required.get(item.product_id, 0) + item.quantity
        prices.setdefault(item.product_id, item.price)

    requests = []
    for product_id, quantity in required.items():
        to_place = quantity + outstanding.get(product_id, 0)
        if to_place <= 0:
            continue
        requests.append(
            ledger.MovementRequest(
                product_id=product_id,
                movement_type=MovementType.ORDER_PLACED,
                quantity=-to_place,
                price=prices[product_id],
                reference_id=reference,
                reason=f"Order #{order.order_number} paid",
                created_by=actor,
            )
        )
    if requests:
        await ledger.apply_batch(db, requests)


async def _restore_stock(
    db: AsyncSession, order: Order, actor: str
) -> list[ledger.BatchFailure]:
    """Reverse exactly what the ledger shows as placed for this order."""
    reference = str(order.id)
    outstanding = await ledger.net_quantities_for_reference(
        db, reference, [MovementType.ORDER_PLACED, MovementType.ORDER_CANCELLED]
    )
    requests = [
        ledger.MovementRequest(
            product_id=product_id,
            movement_type=MovementType.ORDER_CANCELLED,
            quantity=-net,
            reference_id=reference,
            reason=f"Order #{order.order_number} cancelled",
            created_by=actor,
        )
        for product_id, net in sorted(outstanding.items(), key=lambda kv: str(kv[0]))
        if net < 0
    ]
    if not requests:
        return []

    result = await ledger.apply_batch_resilient(db, requests)
    for failure in result.failed:
        logger.error(
            "Restock failed for order #%d: %s",
            order.order_number,
            failure.message,
            extra={"extra_fields": {
                "order_id": str(order.id),
                "product_id": str(failure.request.product_id),
                "quantity": failure.request.quantity,
            }},
        )
    return result.failed


async def _lock_coupon(db: AsyncSession, coupon_id: uuid.UUID) -> Optional[Coupon]:
    result = await db.execute(
        select(Coupon)
        .where(Coupon.id == coupon_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _increment_coupon(db: AsyncSession, order: Order) -> None:
    if not order.coupon_id:
        return
    coupon = await _lock_coupon(db, order.coupon_id)
    if not coupon:
        return
    coupon.used_count += 1
    if coupon.max_uses is not None and coupon.used_count > coupon.max_uses:
        logger.warning(
            "Coupon %s exceeded max uses (%d/%d) with order #%d",
            coupon.code,
            coupon.used_count,
            coupon.max_uses,
            order.order_number,
        )
    await db.flush()


async def _release_coupon(db: AsyncSession, order: Order) -> None:
    if not order.coupon_id:
        return
    coupon = await _lock_coupon(db, order.coupon_id)
    if coupon:
        coupon.used_count = max(coupon.used_count - 1, 0)
    order.coupon_id = None
    order.coupon = None
    await db.flush()


async def _enter_paid(
    db: AsyncSession, order: Order, method: Optional[PaymentMethod], actor: str
) -> list[SideEffect]:
    await _consume_stock(db, order, actor)
    await _increment_coupon(db, order)

    shipping = await ensure_shipping(db, order)
    order.paid_at = utc_now()

    if not order.has_financial_snapshot:
        await apply_financial_snapshot(db, order, method)

    effects = [SideEffect.NOTIFY_CUSTOMER, SideEffect.ISSUE_INVOICE]
    if shipping.carrier_rate_id and not shipping.guide_created:
        effects.append(SideEffect.CREATE_SHIPPING_GUIDE)
    return effects


async def _enter_cancelled(
    db: AsyncSession,
    order: Order,
    previous: OrderStatus,
    actor: str,
    policy: OrderPolicy,
) -> list[ledger.BatchFailure]:
    failures = await _restore_stock(db, order, actor)

    if previous == OrderStatus.PAID:
        await _release_coupon(db, order)
        if policy.cancelled_financials == "clear":
            clear_financial_snapshot(order)

    if order.shipping:
        if order.shipping.guide_created:
            logger.warning(
                "Order #%d cancelled with a carrier guide already created (%s)",
                order.order_number,
                order.shipping.tracking_code,
            )
        else:
            order.shipping.status = ShippingStatus.CANCELLED

    order.cancelled_at = utc_now()
    return failures


async def _enter_status(
    db: AsyncSession,
    order: Order,
    target: OrderStatus,
    *,
    method: Optional[PaymentMethod],
    actor: str,
    policy: OrderPolicy,
) -> TransitionResult:
    previous = order.status
    side_effects: list[SideEffect] = []
    failures: list[ledger.BatchFailure] = []

    if target == OrderStatus.PAID:
        side_effects = await _enter_paid(db, order, method, actor)
    elif target == OrderStatus.CANCELLED:
        failures = await _enter_cancelled(db, order, previous, actor, policy)
        side_effects = [SideEffect.NOTIFY_CUSTOMER]
    elif target == OrderStatus.SENT:
        if order.shipping and order.shipping.status == ShippingStatus.PREPARING:
            order.shipping.status = ShippingStatus.SHIPPED
        side_effects = [SideEffect.NOTIFY_CUSTOMER]
    elif target == OrderStatus.PENDING and previous == OrderStatus.CANCELLED:
        order.cancelled_at = None

    order.status = target
    order.last_error = None
    await db.flush()

    logger.info(
        "Order #%d %s -> %s by %s",
        order.order_number,
        previous.value,
        target.value,
        actor,
    )
    return TransitionResult(
        order_id=order.id,
        order_number=order.order_number,
        previous_status=previous,
        new_status=target,
        changed=True,
        side_effects=side_effects,
        restock_failures=failures,
    )


# ---------------------------------------------------------------------------
# Payment events
# ---------------------------------------------------------------------------


def _expected_cents(order: Order) -> int:
    return int((Decimal(order.total) * 100).to_integral_value())


def _paid_by_other_transaction(order: Order, event: PaymentEvent) -> bool:
    return (
        order.status == OrderStatus.PAID
        and order.payment is not None
        and bool(order.payment.transaction_id)
        and order.payment.transaction_id != event.transaction_id
    )


def _ignore_reason(order: Order, event: PaymentEvent, policy: OrderPolicy) -> Optional[str]:
    """Why a webhook event should not move the order, or None to apply it."""
    current, target = order.status, event.external_status
    if target in (OrderStatus.PAID, OrderStatus.CANCELLED) and _paid_by_other_transaction(
        order, event
    ):
        if target == OrderStatus.PAID:
            return "approval for a different transaction than the one that paid"
        return "decline for a different transaction than the one that paid"
    if current == target:
        return f"order already {current.value}"
    if target == OrderStatus.PENDING and current != OrderStatus.CREATED:
        return f"pending notification for a {current.value} order"
    if target == OrderStatus.PENDING:
        return None
    if not can_transition(current, target, policy):
        return f"transition {current.value} -> {target.value} not allowed"
    return None


def _is_redelivery(order: Order, event: PaymentEvent) -> bool:
    """A redelivery of the event that produced the current status."""
    return order.status == event.external_status and not _paid_by_other_transaction(
        order, event
    )


def _log_event(
    db: AsyncSession, event: PaymentEvent, outcome: EventOutcome, error: Optional[str] = None
) -> PaymentEventLog:
    entry = PaymentEventLog(
        provider=event.provider,
        order_reference=event.order_reference,
        transaction_id=event.transaction_id,
        external_status=event.external_status.value,
        provider_status=event.provider_status,
        amount_cents=event.amount_cents,
        raw_meta={**event.raw_meta, "details": event.details},
        outcome=outcome,
        error=error,
    )
    db.add(entry)
    return entry


async def apply_payment_event(
    db: AsyncSession,
    event: PaymentEvent,
    *,
    policy: Optional[OrderPolicy] = None,
) -> TransitionResult:
    """Apply a normalized payment event to its order.

    Duplicate or out-of-order events are logged no-ops. Any error rolls the
    whole transition back (stock, coupon, financials, records) and is
    re-raised with the order left at its previous status.
    """
    policy = policy or OrderPolicy.from_settings()
    try:
        order = await lock_order(db, event.order_reference)
        previous = order.status

        if event.external_status == OrderStatus.PAID and event.amount_cents is not None:
            expected = _expected_cents(order)
            if event.amount_cents != expected:
                raise AmountMismatch(
                    f"Paid amount {event.amount_cents} does not match order total {expected}",
                    details={
                        "order_id": str(order.id),
                        "amount_cents": event.amount_cents,
                        "expected_cents": expected,
                    },
                )

        reason = _ignore_reason(order, event, policy)
        if reason:
            if _is_redelivery(order, event):
                await upsert_payment_details(
                    db,
                    order,
                    method=event.payment_method,
                    transaction_id=event.transaction_id,
                    details=event.details,
                )
            elif (
                event.external_status == OrderStatus.PAID
                and previous == OrderStatus.PAID
            ):
                order.last_error = (
                    f"Payment {event.transaction_id} approved for an order already paid "
                    f"by {order.payment.transaction_id}"
                )
                logger.warning(
                    "Second approval for paid order #%d",
                    order.order_number,
                    extra={
                        "extra_fields": {
                            **event.to_log_fields(),
                            "paid_transaction_id": order.payment.transaction_id,
                        }
                    },
                )
            elif (
                event.external_status == OrderStatus.PAID
                and previous == OrderStatus.CANCELLED
            ):
                order.last_error = (
                    f"Payment {event.transaction_id} approved for a cancelled order"
                )
            _log_event(db, event, EventOutcome.NO_OP, reason)
            await db.commit()
            logger.info(
                "Payment event ignored for order #%d: %s",
                order.order_number,
                reason,
                extra={"extra_fields": event.to_log_fields()},
            )
            return TransitionResult(
                order_id=order.id,
                order_number=order.order_number,
                previous_status=previous,
                new_status=previous,
                changed=False,
                message=reason,
            )

        await upsert_payment_details(
            db,
            order,
            method=event.payment_method,
            transaction_id=event.transaction_id,
            details=event.details,
        )
        result = await _enter_status(
            db,
            order,
            event.external_status,
            method=event.payment_method,
            actor=f"webhook:{event.provider.value}",
            policy=policy,
        )
        _log_event(db, event, EventOutcome.APPLIED)
        await db.commit()
        return result
    except Exception:
        await db.rollback()
        raise


async def record_payment_failure(
    db: AsyncSession, event: PaymentEvent, exc: PipelineError
) -> None:
    """Capture a failed transition on the order and the event log.

    Runs in its own short transaction after the failed one was rolled back.
    """
    logger.error(
        "Payment event failed for %s: %s",
        event.order_reference,
        exc.message,
        extra={"extra_fields": {**event.to_log_fields(), "error": exc.code, **exc.details}},
    )
    outcome = EventOutcome.REJECTED if isinstance(exc, OrderNotFound) else EventOutcome.FAILED
    _log_event(db, event, outcome, f"{exc.code}: {exc.message}")
    if not isinstance(exc, OrderNotFound):
        condition = _order_filter(event.order_reference)
        order = await db.scalar(select(Order).where(condition)) if condition is not None else None
        if order:
            order.last_error = f"{exc.code}: {exc.message}"
    await db.commit()


async def process_payment_event(
    db: AsyncSession,
    event: PaymentEvent,
    *,
    policy: Optional[OrderPolicy] = None,
) -> TransitionResult:
    """Apply an event, recording business failures before re-raising them."""
    try:
        return await apply_payment_event(db, event, policy=policy)
    except PipelineError as exc:
        await record_payment_failure(db, event, exc)
        raise


async def replay_payment_event(
    db: AsyncSession, log_id: uuid.UUID, *, policy: Optional[OrderPolicy] = None
) -> TransitionResult:
    """Re-apply a logged payment event (manual recovery after a failure)."""
    entry = await db.get(PaymentEventLog, log_id)
    if not entry:
        raise OrderNotFound(
            f"Payment event {log_id} not found", details={"log_id": str(log_id)}
        )
    meta = dict(entry.raw_meta or {})
    event = PaymentEvent(
        provider=entry.provider,
        order_reference=entry.order_reference,
        transaction_id=entry.transaction_id,
        external_status=OrderStatus(entry.external_status),
        amount_cents=entry.amount_cents,
        payment_method=PROVIDER_METHODS.get(entry.provider, PaymentMethod.BANK_TRANSFER),
        provider_status=entry.provider_status,
        details=meta.pop("details", None),
        raw_meta=meta,
    )
    logger.info("Replaying payment event %s for %s", log_id, entry.order_reference)
    return await process_payment_event(db, event, policy=policy)


# ---------------------------------------------------------------------------
# Administrative transitions
# ---------------------------------------------------------------------------


async def transition_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    target: OrderStatus,
    *,
    actor: str = "admin",
    payment_method: Optional[PaymentMethod] = None,
    transaction_id: Optional[str] = None,
    details: Optional[str] = None,
    policy: Optional[OrderPolicy] = None,
) -> TransitionResult:
    """Move an order to ``target`` on behalf of an administrator.

    Unlike webhook events, disallowed transitions raise ``InvalidTransition``.
    """
    policy = policy or OrderPolicy.from_settings()
    try:
        order = await lock_order(db, order_id)
        current = order.status
        if not can_transition(current, target, policy):
            raise InvalidTransition(
                f"Cannot move order from {current.value} to {target.value}",
                details={"from": current.value, "to": target.value},
            )

        method = payment_method or (order.payment.method if order.payment else None)
        if target == OrderStatus.PAID and method is None:
            raise InvalidTransition(
                "A payment method is required to mark an order as paid"
            )
        if payment_method or transaction_id or details:
            await upsert_payment_details(
                db,
                order,
                method=method or PaymentMethod.BANK_TRANSFER,
                transaction_id=transaction_id,
                details=details,
            )

        result = await _enter_status(
            db, order, target, method=method, actor=actor, policy=policy
        )
        await db.commit()
        return result
    except Exception:
        await db.rollback()
        raise
