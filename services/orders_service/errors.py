"""Error taxonomy for the payment and inventory pipeline."""

from typing import Any, Optional

from fastapi import status
from libs.common.error_handler import ServiceError

# Literal: the Starlette constant name changed between releases
UNPROCESSABLE = 422


class PipelineError(ServiceError):
    """Base class for every orders service error."""

    code = "pipeline_error"


# ---------------------------------------------------------------------------
# Webhook boundary
# ---------------------------------------------------------------------------


class InvalidSignature(PipelineError):
    code = "invalid_signature"
    status_code = status.HTTP_401_UNAUTHORIZED


class MalformedPayload(PipelineError):
    code = "malformed_payload"
    status_code = status.HTTP_400_BAD_REQUEST


class UnsupportedEvent(PipelineError):
    code = "unsupported_event"
    status_code = status.HTTP_200_OK


class OrderNotFound(PipelineError):
    """Order reference no longer resolvable. Soft on webhooks, 404 elsewhere."""

    code = "order_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class AmountMismatch(PipelineError):
    code = "amount_mismatch"
    status_code = UNPROCESSABLE


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


class StockExhausted(PipelineError):
    code = "stock_exhausted"
    status_code = UNPROCESSABLE

    def __init__(
        self,
        product_name: str,
        available: int,
        requested: int,
        details: Optional[dict[str, Any]] = None,
    ):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {product_name}: {available} available, {requested} requested",
            details={
                "product_name": product_name,
                "available": available,
                "requested": requested,
                **(details or {}),
            },
        )


class InvalidMovement(PipelineError):
    code = "invalid_movement"
    status_code = UNPROCESSABLE


class ProductNotFound(PipelineError):
    code = "product_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InvariantViolation(PipelineError):
    """Ledger and stock disagree. Never healed automatically."""

    code = "invariant_violation"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


# ---------------------------------------------------------------------------
# Order state machine
# ---------------------------------------------------------------------------


class InvalidTransition(PipelineError):
    code = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT


class InvalidCoupon(PipelineError):
    code = "invalid_coupon"
    status_code = status.HTTP_400_BAD_REQUEST


class FinancialSnapshotExists(PipelineError):
    code = "financial_snapshot_exists"
    status_code = status.HTTP_409_CONFLICT


# ---------------------------------------------------------------------------
# Shipping
# ---------------------------------------------------------------------------


class AlreadyCreated(PipelineError):
    code = "guide_already_created"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, guide_url: Optional[str], details: Optional[dict[str, Any]] = None):
        self.guide_url = guide_url
        super().__init__(
            "A shipping guide already exists for this order",
            details={"guide_url": guide_url, **(details or {})},
        )


class NotQuoted(PipelineError):
    code = "shipping_not_quoted"
    status_code = status.HTTP_400_BAD_REQUEST


class NotPaid(PipelineError):
    code = "order_not_paid"
    status_code = status.HTTP_400_BAD_REQUEST


class CarrierTransportError(PipelineError):
    """Timeout or connection failure talking to the carrier. Retryable."""

    code = "carrier_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class CarrierRejected(PipelineError):
    """The carrier answered but refused the request."""

    code = "carrier_rejected"
    status_code = status.HTTP_502_BAD_GATEWAY
    retryable = False
