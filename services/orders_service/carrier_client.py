"""
Carrier API client (EnvioClick Pro) for shipment quotes and guides.

Provides async methods for:
- Quoting a shipment (available rates per carrier)
- Creating a shipment guide (tracking code, PDF guide, carrier order id)

Timeouts and connection failures raise ``CarrierTransportError`` (retryable);
answers other than ``status == "OK"`` raise ``CarrierRejected``.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import httpx
from libs.common.config import Settings, get_settings
from libs.common.logging import get_logger
from services.orders_service.errors import CarrierRejected, CarrierTransportError

logger = get_logger(__name__)

USER_AGENT = "EcUserAgent-2/27248"


@dataclass
class CarrierRate:
    """One quoted rate."""

    rate_id: int
    carrier: str
    product: str
    cost: Decimal
    delivery_days: Optional[int] = None
    cod: bool = False


@dataclass
class ShipmentResult:
    """Result of creating a shipment guide."""

    carrier_order_id: int
    tracking_code: str
    guide_url: Optional[str]
    guide_document: Optional[str]  # base64 PDF
    external_order_id: Optional[str]
    request_pickup: Optional[bool]
    origin: dict = field(default_factory=dict)
    destination: dict = field(default_factory=dict)


class CarrierClient:
    """Async client for the carrier quotation and shipment APIs."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or get_settings()
        self.base_url = settings.CARRIER_API_URL.rstrip("/")
        self.timeout = settings.CARRIER_TIMEOUT_SECONDS
        self.sandbox = not settings.is_production
        self._transport = transport
        self._headers = {
            "Authorization": settings.CARRIER_API_KEY,
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    async def _request(self, endpoint: str, payload: dict) -> dict:
        """POST to the carrier API and return the ``OK`` body."""
        url = f"{self.base_url}{endpoint}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(url, headers=self._headers, json=payload)
        except httpx.TimeoutException as e:
            logger.warning("Carrier API timeout on %s: %s", endpoint, e)
            raise CarrierTransportError(
                "Carrier API timed out", details={"endpoint": endpoint}
            )
        except httpx.RequestError as e:
            logger.warning("Carrier API connection error on %s: %s", endpoint, e)
            raise CarrierTransportError(
                "Could not reach the carrier API", details={"endpoint": endpoint}
            )

        if response.status_code >= 500:
            raise CarrierTransportError(
                f"Carrier API unavailable ({response.status_code})",
                details={"endpoint": endpoint, "status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError:
            raise CarrierRejected(
                "Carrier API returned a non-JSON response",
                details={"endpoint": endpoint, "status_code": response.status_code},
            )

        if not response.is_success or data.get("status") != "OK":
            message = _error_message(data)
            logger.error(
                "Carrier API error on %s: %s - %s",
                endpoint,
                response.status_code,
                message,
            )
            raise CarrierRejected(
                message,
                details={"endpoint": endpoint, "status_code": response.status_code},
            )
        return data

    async def quote_shipment(self, payload: dict) -> list[CarrierRate]:
        """Quote a shipment. Returns available rates, cheapest first."""
        data = await self._request("/api/v2/quotation", payload)
        rates = [
            CarrierRate(
                rate_id=int(rate["idRate"]),
                carrier=rate.get("carrier", ""),
                product=rate.get("product", ""),
                cost=Decimal(str(rate.get("flete", 0)))
                + Decimal(str(rate.get("minimumInsurance", 0) or 0)),
                delivery_days=rate.get("deliveryDays"),
                cod=bool(rate.get("cod")),
            )
            for rate in (data.get("data") or {}).get("rates", [])
        ]
        return sorted(rates, key=lambda r: r.cost)

    async def create_shipment(self, payload: dict) -> ShipmentResult:
        """Create a shipment guide (sandbox endpoint outside production)."""
        endpoint = "/api/v2/shipment_sandbox" if self.sandbox else "/api/v2/shipment"
        data = (await self._request(endpoint, payload)).get("data") or {}

        if not data.get("idOrder") or not data.get("tracker"):
            raise CarrierRejected(
                "Carrier response is missing the order id or tracking code",
                details={"endpoint": endpoint},
            )

        external_order_id = data.get("external_order_id")
        return ShipmentResult(
            carrier_order_id=int(data["idOrder"]),
            tracking_code=str(data["tracker"]),
            guide_url=data.get("url"),
            guide_document=data.get("guide"),
            external_order_id=str(external_order_id) if external_order_id else None,
            request_pickup=data.get("requestPickup"),
            origin=data.get("origin") or {},
            destination=data.get("destination") or {},
        )


def _error_message(data: Any) -> str:
    if not isinstance(data, dict):
        return "Unknown carrier error"
    messages = data.get("status_messages")
    if isinstance(messages, list) and messages:
        first = messages[0]
        if isinstance(first, dict):
            return str(first.get("error") or first.get("request") or first)
        return str(first)
    if isinstance(messages, dict):
        return str(messages.get("error") or messages)
    return str(data.get("message") or "Unknown carrier error")


_carrier_client: Optional[CarrierClient] = None


def get_carrier_client() -> CarrierClient:
    """Return the process-wide carrier client."""
    global _carrier_client
    if _carrier_client is None:
        _carrier_client = CarrierClient()
    return _carrier_client
