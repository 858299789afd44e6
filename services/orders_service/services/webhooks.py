"""Webhook dispatcher: provider payload in, normalized ``PaymentEvent`` out.

Checks run in a fixed order: envelope shape (``MalformedPayload``),
authenticity (``InvalidSignature``), then event relevance
(``UnsupportedEvent``, a soft failure the routes acknowledge with 200).
"""

from typing import Any, Mapping, Union

from libs.common.logging import get_logger
from pydantic import ValidationError
from services.orders_service.errors import MalformedPayload, UnsupportedEvent
from services.orders_service.models import PaymentMethod, PaymentProvider
from services.orders_service.services.payment_events import (
    WOMPI_SUPPORTED_EVENTS,
    PaymentEvent,
    PayUNotification,
    WompiEvent,
    map_payu_state,
    map_wompi_status,
    provider_payload_adapter,
)
from services.orders_service.services.signatures import SignatureVerifier

logger = get_logger(__name__)


def _validation_details(exc: ValidationError) -> dict[str, Any]:
    return {
        "errors": [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
    }


class WebhookDispatcher:
    """Parses, verifies and normalizes inbound payment webhooks."""

    def __init__(self, verifier: SignatureVerifier):
        self.verifier = verifier

    def parse(
        self, provider: PaymentProvider, payload: Mapping[str, Any]
    ) -> Union[WompiEvent, PayUNotification]:
        if not isinstance(payload, Mapping):
            raise MalformedPayload("Webhook body must be an object")
        try:
            return provider_payload_adapter.validate_python(
                {**payload, "provider": provider.value}
            )
        except ValidationError as exc:
            raise MalformedPayload(
                f"Malformed {provider.value} payload", details=_validation_details(exc)
            )

    def dispatch(
        self, provider: PaymentProvider, payload: Mapping[str, Any]
    ) -> PaymentEvent:
        if provider not in (PaymentProvider.WOMPI, PaymentProvider.PAYU):
            raise UnsupportedEvent(f"No webhook adapter for provider {provider.value}")

        parsed = self.parse(provider, payload)
        if isinstance(parsed, WompiEvent):
            return self._from_wompi(parsed)
        return self._from_payu(parsed)

    # ------------------------------------------------------------------
    # Provider adapters
    # ------------------------------------------------------------------

    def _from_wompi(self, event: WompiEvent) -> PaymentEvent:
        self.verifier.verify_wompi(event)

        if event.event not in WOMPI_SUPPORTED_EVENTS:
            logger.info("Ignoring unsupported Wompi event %s", event.event)
            raise UnsupportedEvent(
                f"Event not supported: {event.event}", details={"event": event.event}
            )

        try:
            transaction = event.transaction()
        except ValidationError as exc:
            raise MalformedPayload(
                "Transaction not found on webhook", details=_validation_details(exc)
            )

        method_type = transaction.payment_method_type
        return PaymentEvent(
            provider=PaymentProvider.WOMPI,
            order_reference=transaction.reference,
            transaction_id=transaction.id,
            external_status=map_wompi_status(transaction.status),
            amount_cents=transaction.amount_in_cents,
            payment_method=PaymentMethod.WOMPI,
            provider_status=transaction.status,
            details=f"Wompi {method_type}" if method_type else "Wompi",
            raw_meta={
                "event": event.event,
                "timestamp": event.timestamp,
                "environment": event.environment,
                "currency": transaction.currency,
                "payment_method_type": method_type,
                "customer_email": transaction.customer_email,
            },
        )

    def _from_payu(self, notification: PayUNotification) -> PaymentEvent:
        self.verifier.verify_payu(notification)

        method_name = notification.payment_method_name
        return PaymentEvent(
            provider=PaymentProvider.PAYU,
            order_reference=notification.reference_sale,
            transaction_id=notification.transaction_id or notification.reference_pol,
            external_status=map_payu_state(notification.state_pol),
            amount_cents=notification.amount_cents(),
            payment_method=PaymentMethod.PAYU,
            provider_status=notification.state_pol,
            details=f"PayU {method_name}" if method_name else "PayU",
            raw_meta={
                "reference_pol": notification.reference_pol,
                "currency": notification.currency,
                "value": notification.value,
                "payment_method_name": method_name,
                "email_buyer": notification.email_buyer,
                "response_message_pol": notification.response_message_pol,
            },
        )
