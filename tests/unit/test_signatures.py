"""Unit tests for webhook signature verification and dispatch.

Payloads are signed by the helpers in tests/payloads.py, which follow the
gateways' documented schemes independently of the verifier.
"""

from dataclasses import replace
from decimal import Decimal

import pytest
from services.orders_service.errors import (
    InvalidSignature,
    MalformedPayload,
    UnsupportedEvent,
)
from services.orders_service.models import OrderStatus, PaymentMethod, PaymentProvider
from services.orders_service.services.payment_events import (
    map_payu_state,
    map_wompi_status,
)
from services.orders_service.services.signatures import (
    SignatureVerifier,
    format_payu_value,
    resolve_property,
)
from services.orders_service.services.webhooks import WebhookDispatcher
from tests.payloads import payu_form, wompi_event


@pytest.fixture
def dispatcher(credentials) -> WebhookDispatcher:
    return WebhookDispatcher(SignatureVerifier(credentials))


# ---------------------------------------------------------------------------
# Wompi
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_wompi_valid_checksum_normalizes_event(dispatcher):
    """A correctly signed approval becomes a PAID payment event."""
    event = dispatcher.dispatch(PaymentProvider.WOMPI, wompi_event("1001"))

    assert event.provider == PaymentProvider.WOMPI
    assert event.order_reference == "1001"
    assert event.transaction_id == "1234-1610641025-49201"
    assert event.external_status == OrderStatus.PAID
    assert event.amount_cents == 2000000
    assert event.payment_method == PaymentMethod.WOMPI
    assert event.details == "Wompi NEQUI"


@pytest.mark.unit
def test_wompi_checksum_is_case_insensitive(dispatcher):
    payload = wompi_event("1001")
    payload["signature"]["checksum"] = payload["signature"]["checksum"].lower()

    event = dispatcher.dispatch(PaymentProvider.WOMPI, payload)

    assert event.external_status == OrderStatus.PAID


@pytest.mark.unit
@pytest.mark.parametrize(
    "field, tampered",
    [
        ("id", "9999-1610641025-00000"),
        ("status", "DECLINED"),
        ("amount_in_cents", 100),
    ],
)
def test_wompi_tampered_signed_property_is_rejected(dispatcher, field, tampered):
    """Changing any signed property after signing invalidates the checksum."""
    payload = wompi_event("1001")
    payload["data"]["transaction"][field] = tampered

    with pytest.raises(InvalidSignature):
        dispatcher.dispatch(PaymentProvider.WOMPI, payload)


@pytest.mark.unit
def test_wompi_tampered_timestamp_is_rejected(dispatcher):
    payload = wompi_event("1001")
    payload["timestamp"] += 60

    with pytest.raises(InvalidSignature):
        dispatcher.dispatch(PaymentProvider.WOMPI, payload)


@pytest.mark.unit
def test_wompi_wrong_secret_is_rejected(dispatcher):
    payload = wompi_event("1001", events_key="someone-elses-key")

    with pytest.raises(InvalidSignature):
        dispatcher.dispatch(PaymentProvider.WOMPI, payload)


@pytest.mark.unit
def test_wompi_missing_signed_property_is_malformed(dispatcher):
    payload = wompi_event("1001")
    payload["signature"]["properties"].append("transaction.not_there")

    with pytest.raises(MalformedPayload):
        dispatcher.dispatch(PaymentProvider.WOMPI, payload)


@pytest.mark.unit
def test_wompi_missing_signature_block_is_malformed(dispatcher):
    payload = wompi_event("1001")
    del payload["signature"]

    with pytest.raises(MalformedPayload):
        dispatcher.dispatch(PaymentProvider.WOMPI, payload)


@pytest.mark.unit
def test_wompi_fails_closed_without_secret(credentials):
    """An unconfigured events key rejects everything instead of accepting."""
    dispatcher = WebhookDispatcher(
        SignatureVerifier(replace(credentials, wompi_events_key=""))
    )

    with pytest.raises(InvalidSignature):
        dispatcher.dispatch(PaymentProvider.WOMPI, wompi_event("1001", events_key=""))


@pytest.mark.unit
def test_wompi_unsupported_event_after_valid_signature(dispatcher):
    payload = wompi_event("1001", event="payment_link.created")

    with pytest.raises(UnsupportedEvent):
        dispatcher.dispatch(PaymentProvider.WOMPI, payload)


@pytest.mark.unit
def test_wompi_unknown_status_maps_to_pending(dispatcher):
    event = dispatcher.dispatch(
        PaymentProvider.WOMPI, wompi_event("1001", status="IN_REVIEW")
    )

    assert event.external_status == OrderStatus.PENDING
    assert event.provider_status == "IN_REVIEW"


@pytest.mark.unit
def test_resolve_property_walks_dotted_paths():
    data = {"transaction": {"id": "abc", "customer": {"email": "x@y.co"}}}

    assert resolve_property(data, "transaction.id") == "abc"
    assert resolve_property(data, "transaction.customer.email") == "x@y.co"
    missing = resolve_property(data, "transaction.reference")
    assert resolve_property(data, "transaction.id.deeper") is missing
    assert resolve_property(data, "transaction.reference") is not None


# ---------------------------------------------------------------------------
# PayU
# ---------------------------------------------------------------------------


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw, expected",
    [
        ("150.00", "150.0"),
        ("150.26", "150.26"),
        ("150.255", "150.26"),
        ("150.245", "150.24"),
        ("150.10", "150.1"),
        (Decimal("20000"), "20000.0"),
    ],
)
def test_format_payu_value(raw, expected):
    assert format_payu_value(raw) == expected


@pytest.mark.unit
def test_format_payu_value_rejects_garbage():
    with pytest.raises(MalformedPayload):
        format_payu_value("veinte mil")


@pytest.mark.unit
def test_payu_valid_signature_normalizes_event(dispatcher):
    event = dispatcher.dispatch(PaymentProvider.PAYU, payu_form("1001"))

    assert event.provider == PaymentProvider.PAYU
    assert event.order_reference == "1001"
    assert event.external_status == OrderStatus.PAID
    assert event.amount_cents == 2000000
    assert event.payment_method == PaymentMethod.PAYU
    assert event.details == "PayU PSE"


@pytest.mark.unit
def test_payu_declined_state(dispatcher):
    event = dispatcher.dispatch(PaymentProvider.PAYU, payu_form("1001", state_pol="6"))

    assert event.external_status == OrderStatus.CANCELLED


@pytest.mark.unit
def test_payu_wrong_merchant_is_rejected(dispatcher):
    payload = payu_form("1001", merchant_id="999999")

    with pytest.raises(InvalidSignature):
        dispatcher.dispatch(PaymentProvider.PAYU, payload)


@pytest.mark.unit
@pytest.mark.parametrize(
    "field, tampered",
    [
        ("reference_sale", "1002"),
        ("value", "1.00"),
        ("currency", "USD"),
        ("state_pol", "6"),
    ],
)
def test_payu_tampered_signed_field_is_rejected(dispatcher, field, tampered):
    payload = payu_form("1001")
    payload[field] = tampered

    with pytest.raises(InvalidSignature):
        dispatcher.dispatch(PaymentProvider.PAYU, payload)


@pytest.mark.unit
def test_payu_missing_field_is_malformed(dispatcher):
    payload = payu_form("1001")
    del payload["sign"]

    with pytest.raises(MalformedPayload):
        dispatcher.dispatch(PaymentProvider.PAYU, payload)


# ---------------------------------------------------------------------------
# Status tables
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_status_tables_never_default_to_terminal_states():
    assert map_wompi_status("approved") == OrderStatus.PAID
    assert map_wompi_status("VOIDED") == OrderStatus.CANCELLED
    assert map_wompi_status(None) == OrderStatus.PENDING
    assert map_payu_state("4") == OrderStatus.PAID
    assert map_payu_state("5") == OrderStatus.CANCELLED
    assert map_payu_state("7") == OrderStatus.PENDING
