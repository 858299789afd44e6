"""Order models: orders, line items, payment details, payment event log."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JsonType
from services.orders_service.models.enums import (
    EventOutcome,
    OrderStatus,
    PaymentMethod,
    PaymentProvider,
    enum_values,
)
from sqlalchemy import CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

# ============================================================================
# ORDER MODELS
# ============================================================================


class Order(Base):
    """Customer orders. Status changes go through the order state machine."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[int] = mapped_column(
        Integer, unique=True, nullable=False, index=True
    )

    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(OrderStatus, values_callable=enum_values, name="order_status_enum"),
        default=OrderStatus.CREATED,
        nullable=False,
    )

    # Customer / address snapshot
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[str] = mapped_column(String(50), nullable=False)
    company: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    address: Mapped[str] = mapped_column(String(255), nullable=False)
    address2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    neighborhood: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    address_reference: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    locality_code: Mapped[Optional[str]] = mapped_column(
        String(8), nullable=True
    )  # DANE code of the destination city

    # Pricing
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=0, server_default="0", nullable=False
    )
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    coupon_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True
    )

    # Financial snapshot (written once at PAID)
    total_product_cost: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    gateway_fee: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    shipping_cost: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    net_profit: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    profit_margin_pct: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(7, 2), nullable=True
    )

    # Last business error captured while applying a payment event
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    # Relationships
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    coupon = relationship("Coupon", lazy="selectin")
    payment = relationship(
        "PaymentDetails", back_populates="order", uselist=False, lazy="selectin"
    )
    shipping = relationship(
        "Shipping", back_populates="order", uselist=False, lazy="selectin"
    )

    @property
    def has_financial_snapshot(self) -> bool:
        return self.total_product_cost is not None

    def __repr__(self):
        return f"<Order #{self.order_number} {self.status.value}>"


class OrderItem(Base):
    """Order line items (snapshot at order time)."""

    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Null for manually entered lines or products deleted after the sale
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    # Snapshot at order time (products may change)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    __table_args__ = (CheckConstraint("quantity > 0", name="order_item_quantity_positive"),)

    # Relationships
    order = relationship("Order", back_populates="items")
    product = relationship("Product", lazy="selectin")

    def __repr__(self):
        return f"<OrderItem {self.name} x{self.quantity}>"


# ============================================================================
# PAYMENT MODELS
# ============================================================================


class PaymentDetails(Base):
    """Payment record, one per order. Upserted by order id."""

    __tablename__ = "payment_details"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orders.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(PaymentMethod, values_callable=enum_values, name="payment_method_enum"),
        nullable=False,
    )
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(128), index=True, nullable=True
    )
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    order = relationship("Order", back_populates="payment")

    def __repr__(self):
        return f"<PaymentDetails {self.method.value} txn={self.transaction_id}>"


class PaymentEventLog(Base):
    """Every verified payment event with the outcome of applying it."""

    __tablename__ = "payment_event_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[PaymentProvider] = mapped_column(
        SAEnum(
            PaymentProvider, values_callable=enum_values, name="payment_provider_enum"
        ),
        nullable=False,
    )
    order_reference: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(128), nullable=False)
    external_status: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    raw_meta: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)

    outcome: Mapped[EventOutcome] = mapped_column(
        SAEnum(EventOutcome, values_callable=enum_values, name="event_outcome_enum"),
        nullable=False,
    )
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<PaymentEventLog {self.provider.value} {self.order_reference} {self.outcome.value}>"
