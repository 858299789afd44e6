"""Unit tests for the order state machine.

Payment events are built directly as ``PaymentEvent`` values; signature
handling is covered by test_signatures.py and the webhook API tests.
"""

import uuid
from decimal import Decimal
import pytest
from services.orders_service.errors import (
    AmountMismatch,
    InvalidCoupon,
    InvalidTransition,
    OrderNotFound,
    StockExhausted,
)
from services.orders_service.models import (
    EventOutcome,
    MovementType,
    OrderStatus,
    PaymentEventLog,
    PaymentMethod,
    PaymentProvider,
    ShippingStatus,
)
from services.orders_service.services.ledger import (
    MovementRequest,
    apply_movement,
    ledger_total,
    list_movements,
)
from services.orders_service.services.order_state import (
    OrderLine,
    OrderPolicy,
    SideEffect,
    apply_payment_event,
    can_transition,
    create_order,
    process_payment_event,
    replay_payment_event,
    transition_order,
)
from services.orders_service.services.payment_events import PaymentEvent
from sqlalchemy import select
from tests.factories import CouponFactory, ShippingFactory, reload, seed_order, seed_product

TXN = "1234-1610641025-49201"
_TOTAL = object()


def _event(
    order,
    status: OrderStatus = OrderStatus.PAID,
    *,
    transaction_id: str = TXN,
    amount_cents=_TOTAL,
    provider: PaymentProvider = PaymentProvider.WOMPI,
) -> PaymentEvent:
    if amount_cents is _TOTAL:
        amount_cents = int(Decimal(order.total) * 100)
    return PaymentEvent(
        provider=provider,
        order_reference=str(order.order_number),
        transaction_id=transaction_id,
        external_status=status,
        amount_cents=amount_cents,
        payment_method=PaymentMethod(provider.value),
        provider_status=status.value.upper(),
        details="Wompi NEQUI",
    )


async def _event_logs(db, order_number) -> list[PaymentEventLog]:
    result = await db.execute(
        select(PaymentEventLog)
        .where(PaymentEventLog.order_reference == str(order_number))
        .order_by(PaymentEventLog.created_at)
    )
    return list(result.scalars().all())


async def _paid_order(db, stock=10, quantity=2, **overrides):
    product = await seed_product(db, stock=stock)
    order = await seed_order(db, [(product, quantity)], status=OrderStatus.PENDING, **overrides)
    await apply_payment_event(db, _event(order))
    return product, await reload(db, order)


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_transition_table():
    policy = OrderPolicy()

    assert can_transition(OrderStatus.CREATED, OrderStatus.PAID, policy)
    assert can_transition(OrderStatus.PENDING, OrderStatus.CANCELLED, policy)
    assert can_transition(OrderStatus.PAID, OrderStatus.SENT, policy)
    assert not can_transition(OrderStatus.SENT, OrderStatus.CANCELLED, policy)
    assert not can_transition(OrderStatus.PENDING, OrderStatus.SENT, policy)
    assert not can_transition(OrderStatus.CANCELLED, OrderStatus.PENDING, policy)
    assert can_transition(
        OrderStatus.CANCELLED, OrderStatus.PENDING, OrderPolicy(allow_reactivation=True)
    )


# ---------------------------------------------------------------------------
# PAID
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_paid_event_consumes_stock_and_snapshots(db_session):
    product = await seed_product(db_session, stock=10)
    order = await seed_order(db_session, [(product, 2)], status=OrderStatus.PENDING)

    result = await apply_payment_event(db_session, _event(order))

    assert result.changed
    assert result.previous_status == OrderStatus.PENDING
    assert result.new_status == OrderStatus.PAID
    assert result.side_effects == [SideEffect.NOTIFY_CUSTOMER, SideEffect.ISSUE_INVOICE]

    order = await reload(db_session, order)
    assert order.status == OrderStatus.PAID
    assert order.paid_at is not None
    assert order.payment.method == PaymentMethod.WOMPI
    assert order.payment.transaction_id == TXN
    assert order.shipping.status == ShippingStatus.PREPARING
    # 2 x 4000 acquisition cost
    assert order.total_product_cost == Decimal("8000.00")
    assert order.gateway_fee > Decimal("0")

    assert (await reload(db_session, product)).stock == 8
    placed = await list_movements(
        db_session, reference_id=str(order.id), movement_types=[MovementType.ORDER_PLACED]
    )
    assert [m.quantity for m in placed] == [-2]
    assert [log.outcome for log in await _event_logs(db_session, order.order_number)] == [
        EventOutcome.APPLIED
    ]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_duplicate_paid_event_is_a_logged_no_op(db_session):
    product, order = await _paid_order(db_session, stock=10, quantity=2)
    snapshot = order.net_profit

    result = await apply_payment_event(db_session, _event(order))

    assert not result.changed
    assert result.new_status == OrderStatus.PAID
    assert (await reload(db_session, product)).stock == 8
    assert await ledger_total(db_session, product.id) == 8
    order = await reload(db_session, order)
    assert order.net_profit == snapshot
    outcomes = [log.outcome for log in await _event_logs(db_session, order.order_number)]
    assert outcomes == [EventOutcome.APPLIED, EventOutcome.NO_OP]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stock_exhausted_rolls_back_whole_transition(db_session):
    """A short second product keeps the order PENDING and the first untouched."""
    plenty = await seed_product(db_session, stock=5)
    empty = await seed_product(db_session, stock=0)
    order = await seed_order(
        db_session, [(plenty, 2), (empty, 1)], status=OrderStatus.PENDING
    )
    event = _event(order)

    with pytest.raises(StockExhausted):
        await process_payment_event(db_session, event)

    order = await reload(db_session, order)
    assert order.status == OrderStatus.PENDING
    assert order.payment is None
    assert order.shipping is None
    assert not order.has_financial_snapshot
    assert order.last_error.startswith("stock_exhausted")
    assert (await reload(db_session, plenty)).stock == 5
    assert await ledger_total(db_session, plenty.id) == 5

    logs = await _event_logs(db_session, order.order_number)
    assert [log.outcome for log in logs] == [EventOutcome.FAILED]
    assert logs[0].error.startswith("stock_exhausted")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_event_can_be_replayed_after_restock(db_session):
    product = await seed_product(db_session, stock=0)
    order = await seed_order(db_session, [(product, 1)], status=OrderStatus.PENDING)
    product_id, order_number = product.id, order.order_number
    with pytest.raises(StockExhausted):
        await process_payment_event(db_session, _event(order))
    (failed_log,) = await _event_logs(db_session, order_number)

    await apply_movement(
        db_session,
        MovementRequest(
            product_id=product_id,
            movement_type=MovementType.RESTOCK_RECEIVED,
            quantity=3,
        ),
    )
    await db_session.commit()
    result = await replay_payment_event(db_session, failed_log.id)

    assert result.changed
    order = await reload(db_session, order)
    assert order.status == OrderStatus.PAID
    assert order.last_error is None
    assert order.payment.details == "Wompi NEQUI"
    assert (await reload(db_session, product)).stock == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_amount_mismatch_is_recorded_and_raised(db_session):
    product = await seed_product(db_session, stock=10)
    order = await seed_order(db_session, [(product, 2)], status=OrderStatus.PENDING)

    with pytest.raises(AmountMismatch):
        await process_payment_event(db_session, _event(order, amount_cents=100))

    order = await reload(db_session, order)
    assert order.status == OrderStatus.PENDING
    assert order.last_error.startswith("amount_mismatch")
    assert (await reload(db_session, product)).stock == 10


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unknown_order_is_logged_as_rejected(db_session):
    event = PaymentEvent(
        provider=PaymentProvider.PAYU,
        order_reference="999999",
        transaction_id="payu-1",
        external_status=OrderStatus.PAID,
        amount_cents=100,
        payment_method=PaymentMethod.PAYU,
    )

    with pytest.raises(OrderNotFound):
        await process_payment_event(db_session, event)

    logs = await _event_logs(db_session, "999999")
    assert [log.outcome for log in logs] == [EventOutcome.REJECTED]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_paid_event_without_amount_skips_amount_check(db_session):
    product = await seed_product(db_session, stock=1)
    order = await seed_order(db_session, [(product, 1)], status=OrderStatus.CREATED)

    result = await apply_payment_event(db_session, _event(order, amount_cents=None))

    assert result.new_status == OrderStatus.PAID


# ---------------------------------------------------------------------------
# Out-of-order and stale events
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stale_pending_event_does_not_regress_paid_order(db_session):
    _, order = await _paid_order(db_session)

    result = await apply_payment_event(db_session, _event(order, OrderStatus.PENDING))

    assert not result.changed
    assert (await reload(db_session, order)).status == OrderStatus.PAID


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pending_event_moves_created_order(db_session):
    product = await seed_product(db_session, stock=1)
    order = await seed_order(db_session, [(product, 1)], status=OrderStatus.CREATED)

    result = await apply_payment_event(db_session, _event(order, OrderStatus.PENDING))

    assert result.changed
    assert result.side_effects == []
    assert (await reload(db_session, product)).stock == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_decline_of_another_transaction_keeps_order_paid(db_session):
    """A failed retry on a different transaction must not cancel a paid order."""
    product, order = await _paid_order(db_session, stock=10, quantity=2)

    result = await apply_payment_event(
        db_session, _event(order, OrderStatus.CANCELLED, transaction_id="other-attempt")
    )

    assert not result.changed
    assert (await reload(db_session, order)).status == OrderStatus.PAID
    assert (await reload(db_session, product)).stock == 8


@pytest.mark.asyncio
@pytest.mark.unit
async def test_second_approval_is_flagged_and_keeps_paying_transaction(db_session):
    product, order = await _paid_order(db_session, stock=10, quantity=2)

    result = await apply_payment_event(
        db_session, _event(order, transaction_id="second-charge-77")
    )

    assert not result.changed
    assert result.message == "approval for a different transaction than the one that paid"
    order = await reload(db_session, order)
    assert order.payment.transaction_id == TXN
    assert "second-charge-77" in order.last_error
    assert TXN in order.last_error
    assert (await reload(db_session, product)).stock == 8

    # The original transaction can still void the order
    voided = await apply_payment_event(db_session, _event(order, OrderStatus.CANCELLED))

    assert voided.new_status == OrderStatus.CANCELLED
    assert (await reload(db_session, product)).stock == 10


@pytest.mark.asyncio
@pytest.mark.unit
async def test_payment_for_cancelled_order_is_flagged_not_applied(db_session):
    product = await seed_product(db_session, stock=3)
    order = await seed_order(db_session, [(product, 1)], status=OrderStatus.CANCELLED)

    result = await apply_payment_event(db_session, _event(order))

    assert not result.changed
    order = await reload(db_session, order)
    assert order.status == OrderStatus.CANCELLED
    assert TXN in order.last_error
    assert (await reload(db_session, product)).stock == 3


# ---------------------------------------------------------------------------
# CANCELLED
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_after_paid_restores_exactly_what_was_placed(db_session):
    product, order = await _paid_order(db_session, stock=10, quantity=3)

    result = await apply_payment_event(db_session, _event(order, OrderStatus.CANCELLED))

    assert result.changed
    assert result.side_effects == [SideEffect.NOTIFY_CUSTOMER]
    assert result.restock_failures == []
    order = await reload(db_session, order)
    assert order.status == OrderStatus.CANCELLED
    assert order.cancelled_at is not None
    assert order.shipping.status == ShippingStatus.CANCELLED
    assert (await reload(db_session, product)).stock == 10

    movements = await list_movements(db_session, reference_id=str(order.id))
    assert sorted(m.quantity for m in movements) == [-3, 3]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_before_payment_touches_no_stock(db_session):
    product = await seed_product(db_session, stock=4)
    order = await seed_order(db_session, [(product, 2)], status=OrderStatus.PENDING)

    result = await apply_payment_event(db_session, _event(order, OrderStatus.CANCELLED))

    assert result.new_status == OrderStatus.CANCELLED
    assert (await reload(db_session, product)).stock == 4
    assert await list_movements(db_session, reference_id=str(order.id)) == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_coupon_usage_follows_paid_and_cancelled(db_session):
    coupon = CouponFactory.create(used_count=2)
    db_session.add(coupon)
    await db_session.commit()

    _, order = await _paid_order(db_session, coupon_id=coupon.id)
    assert (await reload(db_session, coupon)).used_count == 3

    await apply_payment_event(db_session, _event(order, OrderStatus.CANCELLED))

    assert (await reload(db_session, coupon)).used_count == 2
    assert (await reload(db_session, order)).coupon_id is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancelled_financials_are_retained_by_default(db_session):
    _, order = await _paid_order(db_session)

    await apply_payment_event(db_session, _event(order, OrderStatus.CANCELLED))

    assert (await reload(db_session, order)).has_financial_snapshot


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancelled_financials_can_be_cleared_by_policy(db_session):
    _, order = await _paid_order(db_session)

    await apply_payment_event(
        db_session,
        _event(order, OrderStatus.CANCELLED),
        policy=OrderPolicy(cancelled_financials="clear"),
    )

    order = await reload(db_session, order)
    assert not order.has_financial_snapshot
    assert order.net_profit is None


# ---------------------------------------------------------------------------
# Shipping guide side effect
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_quoted_order_requests_guide_on_payment(db_session):
    product = await seed_product(db_session, stock=5)
    order = await seed_order(db_session, [(product, 1)], status=OrderStatus.PENDING)
    db_session.add(
        ShippingFactory.create(order.id, carrier_rate_id=77, cost=Decimal("9000"))
    )
    await db_session.commit()

    result = await apply_payment_event(db_session, _event(order))

    assert SideEffect.CREATE_SHIPPING_GUIDE in result.side_effects
    assert (await reload(db_session, order)).shipping_cost == Decimal("9000.00")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_existing_guide_is_not_requested_again(db_session):
    product = await seed_product(db_session, stock=5)
    order = await seed_order(db_session, [(product, 1)], status=OrderStatus.PENDING)
    db_session.add(
        ShippingFactory.create(order.id, carrier_rate_id=77, carrier_order_id=5551)
    )
    await db_session.commit()

    result = await apply_payment_event(db_session, _event(order))

    assert SideEffect.CREATE_SHIPPING_GUIDE not in result.side_effects


# ---------------------------------------------------------------------------
# Administrative transitions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_admin_mark_paid_requires_a_method(db_session):
    product = await seed_product(db_session, stock=5)
    order = await seed_order(db_session, [(product, 1)], status=OrderStatus.PENDING)
    order_id = order.id

    with pytest.raises(InvalidTransition):
        await transition_order(db_session, order_id, OrderStatus.PAID)

    result = await transition_order(
        db_session,
        order_id,
        OrderStatus.PAID,
        payment_method=PaymentMethod.BANK_TRANSFER,
        transaction_id="consignacion-88",
    )

    assert result.new_status == OrderStatus.PAID
    order = await reload(db_session, order)
    assert order.payment.method == PaymentMethod.BANK_TRANSFER
    assert order.gateway_fee == Decimal("0.00")
    assert (await reload(db_session, product)).stock == 4


@pytest.mark.asyncio
@pytest.mark.unit
async def test_admin_transition_rejects_disallowed_moves(db_session):
    product = await seed_product(db_session, stock=5)
    order = await seed_order(db_session, [(product, 1)], status=OrderStatus.SENT)

    with pytest.raises(InvalidTransition):
        await transition_order(db_session, order.id, OrderStatus.CANCELLED)

    assert (await reload(db_session, order)).status == OrderStatus.SENT


@pytest.mark.asyncio
@pytest.mark.unit
async def test_admin_sent_marks_shipment_shipped(db_session):
    _, order = await _paid_order(db_session)

    result = await transition_order(db_session, order.id, OrderStatus.SENT)

    assert result.side_effects == [SideEffect.NOTIFY_CUSTOMER]
    order = await reload(db_session, order)
    assert order.status == OrderStatus.SENT
    assert order.shipping.status == ShippingStatus.SHIPPED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reactivation_depends_on_policy(db_session):
    product = await seed_product(db_session, stock=5)
    order = await seed_order(db_session, [(product, 1)], status=OrderStatus.PENDING)
    order_id = order.id
    await transition_order(db_session, order_id, OrderStatus.CANCELLED)

    with pytest.raises(InvalidTransition):
        await transition_order(db_session, order_id, OrderStatus.PENDING)

    result = await transition_order(
        db_session,
        order_id,
        OrderStatus.PENDING,
        policy=OrderPolicy(allow_reactivation=True),
    )

    assert result.new_status == OrderStatus.PENDING
    assert (await reload(db_session, order)).cancelled_at is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_transition_unknown_order(db_session):
    with pytest.raises(OrderNotFound):
        await transition_order(db_session, uuid.uuid4(), OrderStatus.CANCELLED)


# ---------------------------------------------------------------------------
# Order creation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_order_snapshots_lines_and_applies_coupon(db_session):
    product = await seed_product(db_session, stock=5, price=Decimal("10000"))
    db_session.add(CouponFactory.create(code="PROMO10", amount=Decimal("10")))
    await db_session.commit()

    order = await create_order(
        db_session,
        full_name="Laura Gomez",
        phone="3001234567",
        address="Carrera 43A #1-50",
        lines=[
            OrderLine(quantity=2, product_id=product.id),
            OrderLine(quantity=1, name="Empaque regalo", price=Decimal("3000")),
        ],
        coupon_code="promo10",
    )

    assert order.status == OrderStatus.CREATED
    assert order.order_number == 1
    assert order.subtotal == Decimal("23000")
    assert order.discount == Decimal("2300.00")
    assert order.total == Decimal("20700.00")
    # Stock moves on payment, not on creation
    assert (await reload(db_session, product)).stock == 5


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_order_rejects_exhausted_coupon(db_session):
    product = await seed_product(db_session, stock=5)
    db_session.add(CouponFactory.create(code="AGOTADO", max_uses=3, used_count=3))
    await db_session.commit()

    with pytest.raises(InvalidCoupon):
        await create_order(
            db_session,
            full_name="Laura Gomez",
            phone="3001234567",
            address="Carrera 43A #1-50",
            lines=[OrderLine(quantity=1, product_id=product.id)],
            coupon_code="AGOTADO",
        )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_order_numbers_increase(db_session):
    product = await seed_product(db_session, stock=5)
    existing = await seed_order(db_session, [(product, 1)])

    order = await create_order(
        db_session,
        full_name="Laura Gomez",
        phone="3001234567",
        address="Carrera 43A #1-50",
        lines=[OrderLine(quantity=1, product_id=product.id)],
    )

    assert order.order_number == existing.order_number + 1
