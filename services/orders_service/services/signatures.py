"""Webhook signature verification for the payment gateways.

Wompi signs events with a checksum: sha256 over the values of the properties
listed in ``signature.properties`` (in order), then the event timestamp, then
the events secret.

PayU signs confirmations with ``hash(apiKey~merchantId~reference~value~currency~state_pol)``
where ``value`` is normalized the way PayU formats it before hashing.
"""

import hashlib
import hmac
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Union

from libs.common.config import Settings, get_settings
from libs.common.logging import get_logger
from services.orders_service.errors import InvalidSignature, MalformedPayload
from services.orders_service.services.payment_events import PayUNotification, WompiEvent

logger = get_logger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class ProviderCredentials:
    """Shared secrets for every payment gateway."""

    wompi_events_key: str
    payu_api_key: str
    payu_merchant_id: str
    payu_hash_algorithm: str = "md5"

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ProviderCredentials":
        settings = settings or get_settings()
        return cls(
            wompi_events_key=settings.WOMPI_EVENTS_KEY,
            payu_api_key=settings.PAYU_API_KEY,
            payu_merchant_id=settings.PAYU_MERCHANT_ID,
            payu_hash_algorithm=settings.PAYU_HASH_ALGORITHM,
        )


# ---------------------------------------------------------------------------
# Wompi
# ---------------------------------------------------------------------------


def _stringify(value: Any) -> str:
    # Match the gateway's JavaScript string concatenation
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_property(data: Mapping[str, Any], path: str) -> Any:
    """Walk a dotted property path (``transaction.amount_in_cents``) into ``data``."""
    value: Any = data
    for key in path.split("."):
        if not isinstance(value, Mapping):
            return _MISSING
        value = value.get(key, _MISSING)
        if value is _MISSING:
            return _MISSING
    return value


def wompi_checksum(
    data: Mapping[str, Any],
    properties: list[str],
    timestamp: Union[int, str],
    events_key: str,
) -> str:
    parts = []
    for path in properties:
        value = resolve_property(data, path)
        if value is _MISSING:
            raise MalformedPayload(
                f"Signed property {path!r} missing from payload",
                details={"property": path},
            )
        parts.append(_stringify(value))
    to_hash = "".join(parts) + _stringify(timestamp) + events_key
    return hashlib.sha256(to_hash.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# PayU
# ---------------------------------------------------------------------------


def format_payu_value(value: Union[str, Decimal, float, int]) -> str:
    """Normalize an amount to PayU's signing format.

    Two decimals rounded half-even, shortened to one decimal when the second
    decimal is zero: ``150.00 -> "150.0"``, ``150.26 -> "150.26"``,
    ``150.255 -> "150.26"``, ``150.245 -> "150.24"``.
    """
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise MalformedPayload("Invalid amount value", details={"value": str(value)})

    formatted = str(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_EVEN))
    if formatted.endswith("0"):
        formatted = str(amount.quantize(Decimal("0.1"), rounding=ROUND_HALF_EVEN))
    return formatted


def payu_signature(
    *,
    api_key: str,
    merchant_id: str,
    reference: str,
    amount: str,
    currency: str = "COP",
    state_pol: Optional[str] = None,
    algorithm: str = "md5",
) -> str:
    to_sign = f"{api_key}~{merchant_id}~{reference}~{amount}~{currency}"
    if state_pol:
        to_sign += f"~{state_pol}"
    return hashlib.new(algorithm, to_sign.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class SignatureVerifier:
    """Validates webhook authenticity using injected provider credentials."""

    def __init__(self, credentials: ProviderCredentials):
        self.credentials = credentials

    @staticmethod
    def _matches(expected: str, supplied: str) -> bool:
        return hmac.compare_digest(expected.lower(), supplied.strip().lower())

    def verify_wompi(self, event: WompiEvent) -> None:
        if not self.credentials.wompi_events_key:
            # Fail closed when the secret is not configured
            raise InvalidSignature("Wompi events key is not configured")

        expected = wompi_checksum(
            event.data,
            event.signature.properties,
            event.timestamp,
            self.credentials.wompi_events_key,
        )
        if not self._matches(expected, event.signature.checksum):
            logger.warning(
                "Wompi checksum mismatch",
                extra={"extra_fields": {"event": event.event, "properties": event.signature.properties}},
            )
            raise InvalidSignature("Checksum of transaction is not valid")

    def verify_payu(self, notification: PayUNotification) -> None:
        if not self.credentials.payu_api_key:
            raise InvalidSignature("PayU API key is not configured")

        if notification.merchant_id != self.credentials.payu_merchant_id:
            raise InvalidSignature(
                "Unknown PayU merchant",
                details={"merchant_id": notification.merchant_id},
            )

        expected = payu_signature(
            api_key=self.credentials.payu_api_key,
            merchant_id=notification.merchant_id,
            reference=notification.reference_sale,
            amount=format_payu_value(notification.value),
            currency=notification.currency,
            state_pol=notification.state_pol,
            algorithm=self.credentials.payu_hash_algorithm,
        )
        if not self._matches(expected, notification.sign):
            logger.warning(
                "PayU signature mismatch",
                extra={"extra_fields": {"reference_sale": notification.reference_sale}},
            )
            raise InvalidSignature("Signature is not valid")
