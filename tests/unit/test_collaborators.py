"""Unit tests for the notification and invoicing clients."""

from datetime import datetime, timezone

import httpx
import pytest
from services.orders_service import collaborators
from services.orders_service.collaborators import InvoiceClient, NotificationClient
from services.orders_service.models import OrderStatus, ShippingStatus
from tests.factories import OrderFactory, OrderItemFactory, ProductFactory, ShippingFactory


class RecordingPost:
    def __init__(self, response=None, error=None):
        self.calls = []
        self.response = response or httpx.Response(202)
        self.error = error

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return self.response


@pytest.fixture
def order():
    product = ProductFactory.create(name="Resaltador", sku="RES-01")
    return OrderFactory.create(items=[OrderItemFactory.create(product, quantity=3)])


@pytest.mark.asyncio
@pytest.mark.unit
async def test_status_notification_payload(monkeypatch, order):
    post = RecordingPost()
    monkeypatch.setattr(collaborators, "internal_post", post)

    sent = await NotificationClient("http://comms").send_order_status(order, OrderStatus.PAID)

    assert sent is True
    (call,) = post.calls
    assert call["service_url"] == "http://comms"
    assert call["path"] == "/internal/notifications/order-status"
    assert call["calling_service"] == "orders"
    assert call["idempotency_key"] == f"order-{order.id}-paid"
    assert call["json"]["template_type"] == "order_paid"
    assert call["json"]["template_data"]["order_number"] == order.order_number


@pytest.mark.asyncio
@pytest.mark.unit
async def test_shipping_notification_payload(monkeypatch, order):
    post = RecordingPost()
    monkeypatch.setattr(collaborators, "internal_post", post)
    order.shipping = ShippingFactory.create(
        order.id,
        status=ShippingStatus.IN_TRANSIT,
        carrier_name="Coordinadora",
        tracking_code="TRK-77",
        estimated_delivery_at=datetime(2026, 3, 4, 17, 0, tzinfo=timezone.utc),
    )

    sent = await NotificationClient("http://comms").send_shipping_status(
        order, ShippingStatus.IN_TRANSIT
    )

    assert sent is True
    (call,) = post.calls
    assert call["path"] == "/internal/notifications/shipping-status"
    assert call["idempotency_key"] == f"shipping-{order.id}-in_transit"
    assert call["json"]["template_type"] == "shipping_in_transit"
    assert call["json"]["template_data"]["tracking_code"] == "TRK-77"
    template_data = call["json"]["template_data"]
    assert template_data["estimated_delivery_at"] == "2026-03-04T17:00:00+00:00"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_notification_skipped_without_contact(monkeypatch, order):
    post = RecordingPost()
    monkeypatch.setattr(collaborators, "internal_post", post)
    order.email = None
    order.phone = ""

    assert await NotificationClient("http://comms").send_order_status(order, OrderStatus.SENT) is False
    assert post.calls == []


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize(
    "post",
    [
        RecordingPost(response=httpx.Response(503, text="down")),
        RecordingPost(error=httpx.ConnectError("connection refused")),
    ],
)
async def test_notification_failures_return_false(monkeypatch, order, post):
    monkeypatch.setattr(collaborators, "internal_post", post)

    assert await NotificationClient("http://comms").send_order_status(order, OrderStatus.PAID) is False


@pytest.mark.asyncio
@pytest.mark.unit
async def test_invoice_payload(monkeypatch, order):
    post = RecordingPost()
    monkeypatch.setattr(collaborators, "internal_post", post)

    assert await InvoiceClient("http://invoicing").issue(order) is True

    (call,) = post.calls
    assert call["path"] == "/internal/invoices"
    assert call["idempotency_key"] == f"invoice-{order.id}"
    assert call["json"]["items"] == [
        {"sku": "RES-01", "name": "Resaltador", "quantity": 3, "unit_price": "10000.00"}
    ]
    assert call["json"]["payment_method"] is None
