"""Provider payload models and the normalized payment event.

Raw webhook bodies are parsed into one of the provider models immediately at
the HTTP boundary. Everything past the dispatcher works on ``PaymentEvent``.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from services.orders_service.models import OrderStatus, PaymentMethod, PaymentProvider

# ---------------------------------------------------------------------------
# Status tables
# ---------------------------------------------------------------------------

# Anything not listed maps to PENDING, never to PAID or CANCELLED.
WOMPI_STATUS_MAP: dict[str, OrderStatus] = {
    "APPROVED": OrderStatus.PAID,
    "DECLINED": OrderStatus.CANCELLED,
    "ERROR": OrderStatus.CANCELLED,
    "VOIDED": OrderStatus.CANCELLED,
}

# PayU state_pol: 4 approved, 5 expired, 6 declined
PAYU_STATE_MAP: dict[str, OrderStatus] = {
    "4": OrderStatus.PAID,
    "5": OrderStatus.CANCELLED,
    "6": OrderStatus.CANCELLED,
}

WOMPI_SUPPORTED_EVENTS = frozenset({"transaction.updated", "nequi_token.updated"})


def map_wompi_status(status: Optional[str]) -> OrderStatus:
    return WOMPI_STATUS_MAP.get((status or "").upper(), OrderStatus.PENDING)


def map_payu_state(state_pol: Optional[str]) -> OrderStatus:
    return PAYU_STATE_MAP.get((state_pol or "").strip(), OrderStatus.PENDING)


# ---------------------------------------------------------------------------
# Provider payloads
# ---------------------------------------------------------------------------


class WompiSignature(BaseModel):
    properties: list[str] = Field(min_length=1)
    checksum: str = Field(min_length=1)


class WompiTransaction(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    reference: str
    status: str
    amount_in_cents: int
    currency: str = "COP"
    payment_method_type: Optional[str] = None
    customer_email: Optional[str] = None


class WompiEvent(BaseModel):
    """JSON envelope: ``{event, data: {transaction}, signature, timestamp}``."""

    model_config = ConfigDict(extra="allow")

    provider: Literal["wompi"] = "wompi"
    event: str = Field(min_length=1)
    data: dict[str, Any]
    signature: WompiSignature
    timestamp: Union[int, str]
    environment: Optional[str] = None

    def transaction(self) -> WompiTransaction:
        return WompiTransaction.model_validate(self.data.get("transaction"))


class PayUNotification(BaseModel):
    """Form-encoded confirmation page payload."""

    model_config = ConfigDict(extra="allow")

    provider: Literal["payu"] = "payu"
    merchant_id: str = Field(min_length=1)
    reference_sale: str = Field(min_length=1)
    value: str = Field(min_length=1)
    currency: str = Field(min_length=1)
    state_pol: str = Field(min_length=1)
    sign: str = Field(min_length=1)
    transaction_id: str = ""
    reference_pol: str = ""
    email_buyer: str = ""
    payment_method_name: str = ""
    response_message_pol: str = ""

    def amount_cents(self) -> Optional[int]:
        try:
            return int((Decimal(self.value) * 100).to_integral_value())
        except InvalidOperation:
            return None


ProviderPayload = Annotated[
    Union[WompiEvent, PayUNotification], Field(discriminator="provider")
]
provider_payload_adapter: TypeAdapter[Union[WompiEvent, PayUNotification]] = TypeAdapter(
    ProviderPayload
)


# ---------------------------------------------------------------------------
# Normalized event
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentEvent:
    """Provider-independent payment notification consumed by the state machine."""

    provider: PaymentProvider
    order_reference: str
    transaction_id: str
    external_status: OrderStatus  # PAID, CANCELLED or PENDING
    amount_cents: Optional[int]
    payment_method: PaymentMethod
    provider_status: Optional[str] = None
    details: Optional[str] = None
    raw_meta: dict[str, Any] = field(default_factory=dict)

    def to_log_fields(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "order_reference": self.order_reference,
            "transaction_id": self.transaction_id,
            "external_status": self.external_status.value,
            "provider_status": self.provider_status,
        }
