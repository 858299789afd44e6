"""Inbound webhooks: payment gateways and carrier tracking.

Payment webhooks are not authenticated by the caller; each one is verified by
its provider signature. Signature and shape failures answer 401/400. Every
other business outcome (unknown order, unsupported event, stock or amount
problems) is acknowledged with 200 so the gateway does not retry-storm; the
failure is captured on the order and the event log for an administrator.
"""

from typing import Any, Mapping

from fastapi import APIRouter, Depends, Request
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from pydantic import ValidationError
from services.orders_service.errors import MalformedPayload, PipelineError, UnsupportedEvent
from services.orders_service.models import PaymentProvider
from services.orders_service.routers._helpers import (
    FollowUpScheduler,
    get_follow_up_scheduler,
    get_order_policy,
    get_webhook_dispatcher,
)
from services.orders_service.schemas import CarrierTrackingPayload
from services.orders_service.services.order_state import (
    OrderPolicy,
    process_payment_event,
)
from services.orders_service.services.shipping_guides import apply_tracking_update
from services.orders_service.services.webhooks import WebhookDispatcher
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(__name__)


def _acknowledge(exc: PipelineError) -> dict[str, Any]:
    return {"received": True, "error": exc.code, "message": exc.message}


async def _handle_payment_webhook(
    provider: PaymentProvider,
    payload: Mapping[str, Any],
    db: AsyncSession,
    dispatcher: WebhookDispatcher,
    scheduler: FollowUpScheduler,
    policy: OrderPolicy,
) -> dict[str, Any]:
    # InvalidSignature and MalformedPayload propagate to the error handler
    try:
        event = dispatcher.dispatch(provider, payload)
    except UnsupportedEvent as exc:
        return _acknowledge(exc)

    try:
        result = await process_payment_event(db, event, policy=policy)
    except PipelineError as exc:
        # Ledger invariant breaks are real server errors; let the gateway retry
        if exc.status_code >= 500:
            raise
        return _acknowledge(exc)

    scheduler.schedule(result)
    return {
        "received": True,
        "order_number": result.order_number,
        "status": result.new_status.value,
        "changed": result.changed,
    }


@router.post("/wompi")
async def wompi_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
    scheduler: FollowUpScheduler = Depends(get_follow_up_scheduler),
    policy: OrderPolicy = Depends(get_order_policy),
):
    """Wompi event envelope (JSON, verified by ``signature.checksum``)."""
    try:
        payload = await request.json()
    except ValueError:
        raise MalformedPayload("Webhook body is not valid JSON")
    return await _handle_payment_webhook(
        PaymentProvider.WOMPI, payload, db, dispatcher, scheduler, policy
    )


@router.post("/payu")
async def payu_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
    scheduler: FollowUpScheduler = Depends(get_follow_up_scheduler),
    policy: OrderPolicy = Depends(get_order_policy),
):
    """PayU confirmation page (form-encoded, verified by ``sign``)."""
    form = await request.form()
    payload = {key: value for key, value in form.items() if isinstance(value, str)}
    return await _handle_payment_webhook(
        PaymentProvider.PAYU, payload, db, dispatcher, scheduler, policy
    )


@router.post("/carrier")
async def carrier_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    scheduler: FollowUpScheduler = Depends(get_follow_up_scheduler),
    policy: OrderPolicy = Depends(get_order_policy),
):
    """Carrier tracking notification. Unknown shipments are acknowledged.

    A shipping status change notifies the customer; when the same update
    marks the order SENT, the order notification covers it.
    """
    try:
        body = await request.json()
        payload = CarrierTrackingPayload.model_validate(body)
    except (ValueError, ValidationError):
        raise MalformedPayload("Malformed carrier tracking payload")

    try:
        update = await apply_tracking_update(
            db, payload.model_dump(exclude_none=True), policy=policy
        )
    except PipelineError as exc:
        if exc.status_code >= 500:
            raise
        logger.warning("Carrier tracking update not applied: %s", exc.message)
        return _acknowledge(exc)

    if update is None:
        return {"received": True, "matched": False}
    if update.transition:
        scheduler.schedule(update.transition)
    scheduler.schedule_effects(
        update.order_id, update.order_number, update.side_effects
    )
    return {
        "received": True,
        "matched": True,
        "shipping_status": update.shipping.status.value,
        "events_recorded": update.events_recorded,
    }
