"""Admin order operations: creation, transitions, recovery and shipping."""

import uuid

from fastapi import APIRouter, Depends, Query, status
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.orders_service.carrier_client import CarrierClient
from services.orders_service.routers._helpers import (
    FollowUpScheduler,
    get_carrier,
    get_follow_up_scheduler,
    get_order_policy,
    transition_response,
)
from services.orders_service.schemas import (
    AbcClassificationResponse,
    BackfillRequest,
    OrderCreate,
    OrderResponse,
    PackageResponse,
    RateResponse,
    SelectRateRequest,
    ShippingResponse,
    TrackingEventResponse,
    TransitionRequest,
    TransitionResponse,
)
from services.orders_service.services import financials, shipping_guides
from services.orders_service.services.order_state import (
    OrderLine,
    OrderPolicy,
    create_order,
    get_order,
    replay_payment_event,
    transition_order,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/admin", tags=["admin-orders"])
logger = get_logger(__name__)


# ============================================================================
# ORDERS
# ============================================================================


@router.post(
    "/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED
)
async def create_order_endpoint(
    order_in: OrderCreate,
    db: AsyncSession = Depends(get_async_db),
):
    """Create an order in CREATED status (checkout plumbing)."""
    order = await create_order(
        db,
        full_name=order_in.full_name,
        phone=order_in.phone,
        address=order_in.address,
        email=order_in.email,
        company=order_in.company,
        address2=order_in.address2,
        neighborhood=order_in.neighborhood,
        address_reference=order_in.address_reference,
        locality_code=order_in.locality_code,
        coupon_code=order_in.coupon_code,
        lines=[
            OrderLine(
                quantity=line.quantity,
                product_id=line.product_id,
                name=line.name,
                price=line.price,
                sku=line.sku,
            )
            for line in order_in.items
        ],
    )
    return await get_order(db, order.id)


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order_endpoint(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
):
    """Order detail including the captured error, payment and shipping."""
    return await get_order(db, order_id)


@router.post("/orders/{order_id}/transition", response_model=TransitionResponse)
async def transition_order_endpoint(
    order_id: uuid.UUID,
    transition: TransitionRequest,
    db: AsyncSession = Depends(get_async_db),
    scheduler: FollowUpScheduler = Depends(get_follow_up_scheduler),
    policy: OrderPolicy = Depends(get_order_policy),
):
    """Manual transition (bank transfer payment, dispatch, cancellation)."""
    result = await transition_order(
        db,
        order_id,
        transition.status,
        actor="admin",
        payment_method=transition.payment_method,
        transaction_id=transition.transaction_id,
        details=transition.details,
        policy=policy,
    )
    scheduler.schedule(result)
    return transition_response(result)


@router.post("/payment-events/{log_id}/replay", response_model=TransitionResponse)
async def replay_payment_event_endpoint(
    log_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
    scheduler: FollowUpScheduler = Depends(get_follow_up_scheduler),
    policy: OrderPolicy = Depends(get_order_policy),
):
    """Re-apply a logged payment event after fixing its cause."""
    result = await replay_payment_event(db, log_id, policy=policy)
    scheduler.schedule(result)
    return transition_response(result)


# ============================================================================
# SHIPPING
# ============================================================================


@router.post("/orders/{order_id}/shipping/quote", response_model=list[RateResponse])
async def quote_shipping_endpoint(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
    carrier: CarrierClient = Depends(get_carrier),
):
    return await shipping_guides.quote_shipping(db, order_id, carrier)


@router.put("/orders/{order_id}/shipping/rate", response_model=ShippingResponse)
async def select_rate_endpoint(
    order_id: uuid.UUID,
    rate: SelectRateRequest,
    db: AsyncSession = Depends(get_async_db),
):
    return await shipping_guides.select_rate(
        db,
        order_id,
        rate_id=rate.rate_id,
        carrier_name=rate.carrier_name,
        cost=rate.cost,
        box_id=rate.box_id,
    )


@router.post("/orders/{order_id}/shipping/guide", response_model=ShippingResponse)
async def create_guide_endpoint(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
    carrier: CarrierClient = Depends(get_carrier),
):
    """Create the carrier guide. Returns 409 with the existing URL on repeats."""
    return await shipping_guides.create_guide(db, order_id, carrier)


@router.get(
    "/orders/{order_id}/shipping/events", response_model=list[TrackingEventResponse]
)
async def tracking_events_endpoint(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
):
    """Carrier checkpoints for the order, newest first."""
    return await shipping_guides.list_tracking_events(db, order_id)


@router.get("/orders/{order_id}/package", response_model=PackageResponse)
async def order_package_endpoint(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
):
    """Recompute the package for an order (manual box honoured)."""
    order = await get_order(db, order_id)
    return await shipping_guides.resolve_package(db, order, order.shipping)


# ============================================================================
# FINANCIALS
# ============================================================================


@router.post("/financials/backfill")
async def backfill_financials_endpoint(
    request: BackfillRequest,
    db: AsyncSession = Depends(get_async_db),
):
    """Historical migration of financial snapshots for paid orders."""
    return await financials.backfill_financials(
        db, force=request.force, batch_size=request.batch_size
    )


@router.post("/products/abc-classification", response_model=AbcClassificationResponse)
async def classify_products_endpoint(
    days: int = Query(90, ge=1, le=730),
    db: AsyncSession = Depends(get_async_db),
):
    return await financials.classify_products_abc(db, days=days)
