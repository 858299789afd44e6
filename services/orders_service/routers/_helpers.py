"""Shared dependencies and response helpers for orders routers."""

import uuid
from typing import Iterable

from fastapi import BackgroundTasks
from libs.common.logging import get_logger
from services.orders_service.carrier_client import CarrierClient, get_carrier_client
from services.orders_service.schemas import BatchFailureResponse, TransitionResponse
from services.orders_service.services.ledger import BatchFailure
from services.orders_service.services.order_state import (
    OrderPolicy,
    SideEffect,
    TransitionResult,
)
from services.orders_service.services.signatures import (
    ProviderCredentials,
    SignatureVerifier,
)
from services.orders_service.services.webhooks import WebhookDispatcher
from services.orders_service.tasks import run_order_follow_ups

logger = get_logger(__name__)


def get_webhook_dispatcher() -> WebhookDispatcher:
    return WebhookDispatcher(SignatureVerifier(ProviderCredentials.from_settings()))


def get_order_policy() -> OrderPolicy:
    return OrderPolicy.from_settings()


def get_carrier() -> CarrierClient:
    return get_carrier_client()


class FollowUpScheduler:
    """Queues side effects to run after the response is sent."""

    def __init__(self, background_tasks: BackgroundTasks):
        self.background_tasks = background_tasks

    def schedule(self, result: TransitionResult) -> None:
        if not result.changed or not result.side_effects:
            return
        self.schedule_effects(result.order_id, result.order_number, result.side_effects)

    def schedule_effects(
        self, order_id: uuid.UUID, order_number: int, side_effects: Iterable[SideEffect]
    ) -> None:
        side_effects = list(side_effects)
        if not side_effects:
            return
        self.background_tasks.add_task(run_order_follow_ups, order_id, side_effects)
        logger.info(
            "Scheduled follow-ups for order #%d: %s",
            order_number,
            ", ".join(effect.value for effect in side_effects),
        )


def get_follow_up_scheduler(
    background_tasks: BackgroundTasks,
) -> FollowUpScheduler:
    return FollowUpScheduler(background_tasks)


def batch_failure_response(failure: BatchFailure) -> BatchFailureResponse:
    return BatchFailureResponse(
        product_id=failure.request.product_id,
        movement_type=failure.request.movement_type,
        quantity=failure.request.quantity,
        error=failure.error,
        message=failure.message,
    )


def transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        order_id=result.order_id,
        order_number=result.order_number,
        previous_status=result.previous_status,
        new_status=result.new_status,
        changed=result.changed,
        side_effects=[effect.value for effect in result.side_effects],
        restock_failures=[batch_failure_response(f) for f in result.restock_failures],
        message=result.message,
    )
