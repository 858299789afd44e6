"""Shipping model: one carrier shipment per order."""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JsonType
from services.orders_service.models.enums import ShippingStatus, enum_values
from sqlalchemy import Boolean, Date, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

# ============================================================================
# SHIPPING MODELS
# ============================================================================


class Shipping(Base):
    """Carrier shipment for an order. Created lazily on first payment."""

    __tablename__ = "shippings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orders.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    status: Mapped[ShippingStatus] = mapped_column(
        SAEnum(ShippingStatus, values_callable=enum_values, name="shipping_status_enum"),
        default=ShippingStatus.PREPARING,
        nullable=False,
    )

    # Quote / rate selection
    carrier_rate_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    carrier_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    # Package
    box_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("boxes.id", ondelete="SET NULL"), nullable=True
    )  # Manually chosen box
    package_dimensions: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)

    # Carrier artifacts
    carrier_order_id: Mapped[Optional[int]] = mapped_column(
        Integer, index=True, nullable=True
    )
    external_order_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True
    )
    tracking_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    guide_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    guide_document: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True
    )  # base64 PDF
    request_pickup: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    pickup_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    origin_data: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    destination_data: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)

    # Tracking dates reported by the carrier
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    estimated_delivery_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    received_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Guide creation failures (kept apart from the carrier artifacts)
    guide_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    guide_attempts: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    order = relationship("Order", back_populates="shipping")

    @property
    def guide_created(self) -> bool:
        return bool(self.external_order_id or self.carrier_order_id)

    def __repr__(self):
        return f"<Shipping order={self.order_id} {self.status.value}>"


class ShippingTrackingEvent(Base):
    """One carrier checkpoint. Redelivered events are stored once."""

    __tablename__ = "shipping_tracking_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shipping_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("shippings.id", ondelete="CASCADE"), nullable=False
    )

    status: Mapped[str] = mapped_column(String(100), nullable=False)  # carrier step text
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        UniqueConstraint(
            "shipping_id", "occurred_at", "status", name="uq_tracking_event_checkpoint"
        ),
        Index("ix_tracking_events_shipping_occurred", "shipping_id", "occurred_at"),
    )

    def __repr__(self):
        return f"<ShippingTrackingEvent {self.status} at {self.occurred_at}>"
