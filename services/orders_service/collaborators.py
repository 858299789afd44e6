"""
HTTP clients for the services the orders pipeline notifies after a transition.

- NotificationClient: customer order and shipping messages through the Communications Service
- InvoiceClient: electronic invoice issuance through the Invoicing Service

Both are best-effort. They return False on failure instead of raising, so a
notification outage never undoes a committed order transition.
"""

from typing import Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.service_client import internal_post
from services.orders_service.models import Order, OrderStatus, ShippingStatus

logger = get_logger(__name__)

CALLING_SERVICE = "orders"


class NotificationClient:
    """Sends order and shipping status notifications to customers."""

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = base_url or get_settings().COMMUNICATIONS_SERVICE_URL

    async def send_order_status(self, order: Order, status: OrderStatus) -> bool:
        payload = {
            "template_type": f"order_{status.value}",
            "to_email": order.email,
            "to_phone": order.phone,
            "template_data": {
                "customer_name": order.full_name,
                "order_number": order.order_number,
                "status": status.value,
                "total": str(order.total),
                "tracking_code": order.shipping.tracking_code if order.shipping else None,
                "guide_url": order.shipping.guide_url if order.shipping else None,
            },
        }
        return await self._send(
            order,
            "/internal/notifications/order-status",
            payload,
            idempotency_key=f"order-{order.id}-{status.value}",
            label=status.value,
        )

    async def send_shipping_status(self, order: Order, status: ShippingStatus) -> bool:
        """Tell the customer where the parcel is (picked up, delivered, ...)."""
        shipping = order.shipping
        payload = {
            "template_type": f"shipping_{status.value}",
            "to_email": order.email,
            "to_phone": order.phone,
            "template_data": {
                "customer_name": order.full_name,
                "order_number": order.order_number,
                "status": status.value,
                "carrier_name": shipping.carrier_name if shipping else None,
                "tracking_code": shipping.tracking_code if shipping else None,
                "estimated_delivery_at": (
                    shipping.estimated_delivery_at.isoformat()
                    if shipping and shipping.estimated_delivery_at
                    else None
                ),
            },
        }
        return await self._send(
            order,
            "/internal/notifications/shipping-status",
            payload,
            idempotency_key=f"shipping-{order.id}-{status.value}",
            label=f"shipping {status.value}",
        )

    async def _send(
        self, order: Order, path: str, payload: dict, *, idempotency_key: str, label: str
    ) -> bool:
        if not order.email and not order.phone:
            logger.info(
                "Order #%d has no contact details, skipping notification", order.order_number
            )
            return False

        try:
            resp = await internal_post(
                service_url=self.base_url,
                path=path,
                calling_service=CALLING_SERVICE,
                json=payload,
                idempotency_key=idempotency_key,
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Order notification request failed for #%d: %s", order.order_number, exc
            )
            return False

        if resp.status_code >= 400:
            logger.warning(
                "Order notification failed for #%d (http %d): %s",
                order.order_number,
                resp.status_code,
                resp.text,
            )
            return False
        logger.info("Sent %s notification for order #%d", label, order.order_number)
        return True


class InvoiceClient:
    """Requests the electronic invoice for a paid order."""

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = base_url or get_settings().INVOICING_SERVICE_URL

    async def issue(self, order: Order) -> bool:
        payload = {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "customer": {
                "full_name": order.full_name,
                "email": order.email,
                "phone": order.phone,
                "address": order.address,
            },
            "items": [
                {
                    "sku": item.sku,
                    "name": item.name,
                    "quantity": item.quantity,
                    "unit_price": str(item.price),
                }
                for item in order.items
            ],
            "discount": str(order.discount),
            "total": str(order.total),
            "payment_method": order.payment.method.value if order.payment else None,
        }
        try:
            resp = await internal_post(
                service_url=self.base_url,
                path="/internal/invoices",
                calling_service=CALLING_SERVICE,
                json=payload,
                idempotency_key=f"invoice-{order.id}",
            )
        except httpx.HTTPError as exc:
            logger.warning("Invoice request failed for #%d: %s", order.order_number, exc)
            return False

        if resp.status_code >= 400:
            logger.warning(
                "Invoice issuance failed for #%d (http %d): %s",
                order.order_number,
                resp.status_code,
                resp.text,
            )
            return False
        logger.info("Issued invoice for order #%d", order.order_number)
        return True


_notification_client: Optional[NotificationClient] = None
_invoice_client: Optional[InvoiceClient] = None


def get_notification_client() -> NotificationClient:
    global _notification_client
    if _notification_client is None:
        _notification_client = NotificationClient()
    return _notification_client


def get_invoice_client() -> InvoiceClient:
    global _invoice_client
    if _invoice_client is None:
        _invoice_client = InvoiceClient()
    return _invoice_client
