"""Background follow-ups and periodic jobs for the orders service.

Follow-ups run after the transition that scheduled them has committed. Each
one is independent: a failure is logged and never affects the order status
or the other follow-ups.
"""

from __future__ import annotations

import uuid
from typing import Iterable, Optional

from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.orders_service.carrier_client import CarrierClient, get_carrier_client
from services.orders_service.collaborators import (
    InvoiceClient,
    NotificationClient,
    get_invoice_client,
    get_notification_client,
)
from services.orders_service.errors import AlreadyCreated, PipelineError
from services.orders_service.models import Order
from services.orders_service.services import ledger, shipping_guides
from services.orders_service.services.order_state import SideEffect

logger = get_logger(__name__)


async def run_order_follow_ups(
    order_id: uuid.UUID,
    side_effects: Iterable[SideEffect],
    *,
    session_factory=None,
    notifier: Optional[NotificationClient] = None,
    invoicer: Optional[InvoiceClient] = None,
    carrier: Optional[CarrierClient] = None,
) -> dict[str, bool]:
    """Run the side effects of a committed transition, best-effort."""
    session_factory = session_factory or AsyncSessionLocal
    outcome: dict[str, bool] = {}

    async with session_factory() as db:
        for effect in side_effects:
            try:
                order = await db.get(Order, order_id, populate_existing=True)
                if order is None:
                    logger.warning("Follow-up %s skipped, order %s is gone", effect.value, order_id)
                    outcome[effect.value] = False
                    continue

                if effect == SideEffect.NOTIFY_CUSTOMER:
                    notifier = notifier or get_notification_client()
                    outcome[effect.value] = await notifier.send_order_status(order, order.status)
                elif effect == SideEffect.NOTIFY_SHIPPING:
                    notifier = notifier or get_notification_client()
                    outcome[effect.value] = (
                        order.shipping is not None
                        and await notifier.send_shipping_status(order, order.shipping.status)
                    )
                elif effect == SideEffect.ISSUE_INVOICE:
                    invoicer = invoicer or get_invoice_client()
                    outcome[effect.value] = await invoicer.issue(order)
                elif effect == SideEffect.CREATE_SHIPPING_GUIDE:
                    await shipping_guides.create_guide(
                        db, order_id, carrier or get_carrier_client()
                    )
                    outcome[effect.value] = True
            except AlreadyCreated:
                outcome[effect.value] = True
            except PipelineError as exc:
                # Recorded on the shipment; the retry job picks it up
                logger.warning(
                    "Follow-up %s failed for order %s: %s", effect.value, order_id, exc.message
                )
                outcome[effect.value] = False
            except Exception:
                logger.exception("Follow-up %s crashed for order %s", effect.value, order_id)
                await db.rollback()
                outcome[effect.value] = False

    return outcome


async def retry_pending_guides(*, session_factory=None) -> dict[str, int]:
    """Retry guide creation for paid, quoted orders still without a guide."""
    session_factory = session_factory or AsyncSessionLocal
    async with session_factory() as db:
        return await shipping_guides.retry_pending_guides(db, get_carrier_client())


async def audit_inventory_ledger(*, session_factory=None) -> int:
    """Report products whose stock disagrees with their ledger."""
    session_factory = session_factory or AsyncSessionLocal
    async with session_factory() as db:
        mismatches = await ledger.audit_ledger(db)
    if mismatches:
        logger.critical("Ledger audit found %d inconsistent products", len(mismatches))
    else:
        logger.info("Ledger audit clean")
    return len(mismatches)
