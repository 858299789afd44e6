import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from services.orders_service.models import (
    MovementType,
    OrderStatus,
    PaymentMethod,
    ShippingStatus,
)

# ============================================================================
# ORDERS
# ============================================================================


class OrderLineCreate(BaseModel):
    quantity: int = Field(ge=1)
    product_id: Optional[uuid.UUID] = None
    # Manual lines (no catalog product) carry their own snapshot
    name: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    sku: Optional[str] = None


class OrderCreate(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    phone: str = Field(min_length=7, max_length=50)
    address: str = Field(min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    company: Optional[str] = None
    address2: Optional[str] = None
    neighborhood: Optional[str] = None
    address_reference: Optional[str] = None
    locality_code: Optional[str] = Field(default=None, max_length=16)
    coupon_code: Optional[str] = None
    items: list[OrderLineCreate] = Field(min_length=1)


class OrderItemResponse(BaseModel):
    id: uuid.UUID
    product_id: Optional[uuid.UUID] = None
    quantity: int
    name: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class PaymentDetailsResponse(BaseModel):
    method: PaymentMethod
    transaction_id: Optional[str] = None
    details: Optional[str] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ShippingResponse(BaseModel):
    id: uuid.UUID
    status: ShippingStatus
    carrier_rate_id: Optional[int] = None
    carrier_name: Optional[str] = None
    cost: Optional[Decimal] = None
    box_id: Optional[uuid.UUID] = None
    package_dimensions: Optional[dict[str, Any]] = None
    carrier_order_id: Optional[int] = None
    external_order_id: Optional[str] = None
    tracking_code: Optional[str] = None
    guide_url: Optional[str] = None
    pickup_date: Optional[date] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery_at: Optional[datetime] = None
    received_by: Optional[str] = None
    guide_error: Optional[str] = None
    guide_attempts: int = 0

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    id: uuid.UUID
    order_number: int
    status: OrderStatus
    full_name: str
    email: Optional[str] = None
    phone: str
    address: str
    locality_code: Optional[str] = None
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    coupon_id: Optional[uuid.UUID] = None

    # Financial snapshot
    total_product_cost: Optional[Decimal] = None
    gateway_fee: Optional[Decimal] = None
    shipping_cost: Optional[Decimal] = None
    net_profit: Optional[Decimal] = None
    profit_margin_pct: Optional[Decimal] = None

    last_error: Optional[str] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    items: list[OrderItemResponse] = []
    payment: Optional[PaymentDetailsResponse] = None
    shipping: Optional[ShippingResponse] = None

    model_config = ConfigDict(from_attributes=True)


class TransitionRequest(BaseModel):
    status: OrderStatus
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = Field(default=None, max_length=128)
    details: Optional[str] = None


class BatchFailureResponse(BaseModel):
    product_id: Optional[uuid.UUID] = None
    movement_type: MovementType
    quantity: int
    error: str
    message: str


class TransitionResponse(BaseModel):
    order_id: uuid.UUID
    order_number: int
    previous_status: OrderStatus
    new_status: OrderStatus
    changed: bool
    side_effects: list[str] = []
    restock_failures: list[BatchFailureResponse] = []
    message: Optional[str] = None


class BackfillRequest(BaseModel):
    force: bool = False
    batch_size: int = Field(default=200, ge=1, le=1000)


class AbcClassificationResponse(BaseModel):
    A: int = 0
    B: int = 0
    C: int = 0


# ============================================================================
# SHIPPING
# ============================================================================


class RateResponse(BaseModel):
    rate_id: int
    carrier: str
    product: str
    cost: Decimal
    delivery_days: Optional[int] = None
    cod: bool = False

    model_config = ConfigDict(from_attributes=True)


class SelectRateRequest(BaseModel):
    rate_id: int
    carrier_name: Optional[str] = Field(default=None, max_length=100)
    cost: Optional[Decimal] = Field(default=None, ge=0)
    box_id: Optional[uuid.UUID] = None


class PackageResponse(BaseModel):
    weight: float
    width: int
    height: int
    length: int
    container_type: str
    container_size: str
    box_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class CarrierTrackingEvent(BaseModel):
    """One checkpoint of a carrier notification."""

    statusStep: Optional[str] = None
    status: Optional[str] = None
    statusDetail: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    timestamp: Optional[str] = None
    receivedBy: Optional[str] = None
    incidence: Optional[Union[bool, str]] = None
    incidenceType: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class CarrierTrackingPayload(BaseModel):
    """Carrier tracking notification; ``events`` are ordered newest first."""

    idOrder: Optional[int] = None
    myShipmentReference: Optional[str] = None
    trackingCode: Optional[str] = None
    realPickupDate: Optional[str] = None
    arrivalDate: Optional[str] = None
    realDeliveryDate: Optional[str] = None
    events: list[CarrierTrackingEvent] = Field(default_factory=list)
    # Older notifications carry the status at the top level
    status: Optional[str] = None
    statusCode: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class TrackingEventResponse(BaseModel):
    status: str
    description: Optional[str] = None
    location: Optional[str] = None
    occurred_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# INVENTORY
# ============================================================================


class MovementCreate(BaseModel):
    product_id: uuid.UUID
    movement_type: MovementType
    quantity: int
    reference_id: Optional[str] = Field(default=None, max_length=64)
    reason: Optional[str] = None
    created_by: Optional[str] = Field(default=None, max_length=100)
    cost: Optional[Decimal] = Field(default=None, ge=0)
    price: Optional[Decimal] = Field(default=None, ge=0)
    expected_previous_stock: Optional[int] = Field(default=None, ge=0)


class MovementResponse(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID
    movement_type: MovementType
    quantity: int
    previous_stock: int
    new_stock: int
    cost: Optional[Decimal] = None
    price: Optional[Decimal] = None
    reference_id: Optional[str] = None
    reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BatchMovementRequest(BaseModel):
    movements: list[MovementCreate] = Field(min_length=1)


class BatchMovementResponse(BaseModel):
    success: list[MovementResponse] = []
    failed: list[BatchFailureResponse] = []
    total: int = 0


class LedgerCheckResponse(BaseModel):
    product_id: uuid.UUID
    product_name: str
    stock: int
    ledger_total: int
    consistent: bool

    model_config = ConfigDict(from_attributes=True)


class LedgerAuditResponse(BaseModel):
    consistent: bool
    mismatches: list[LedgerCheckResponse] = []


class StockSummaryResponse(BaseModel):
    product_id: uuid.UUID
    product_name: str
    stock: int
    units_in: int
    units_out: int
    by_type: dict[str, dict[str, int]] = {}


class PackagePreviewLine(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(ge=1)


class PackagePreviewRequest(BaseModel):
    items: list[PackagePreviewLine] = []
