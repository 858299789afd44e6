"""Catalog models referenced by the pipeline: products, coupons, boxes."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.orders_service.models.enums import AbcClass, DiscountType, enum_values
from sqlalchemy import Boolean, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

# ============================================================================
# PRODUCT MODELS
# ============================================================================


class Product(Base):
    """Sellable product. ``stock`` is only written by the inventory ledger."""

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    acq_price: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )  # Acquisition cost

    stock: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )

    # "<dimension>-<weight>", e.g. "S-L" (small, light) or "XL-P" (extra large, heavy)
    size_value: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    abc_class: Mapped[Optional[AbcClass]] = mapped_column(
        SAEnum(AbcClass, values_callable=enum_values, name="abc_class_enum"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("stock >= 0", name="product_stock_non_negative"),)

    def __repr__(self):
        return f"<Product {self.name} stock={self.stock}>"


class Coupon(Base):
    """Discount coupon. ``used_count`` follows PAID / CANCELLED transitions."""

    __tablename__ = "coupons"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    discount_type: Mapped[DiscountType] = mapped_column(
        SAEnum(DiscountType, values_callable=enum_values, name="discount_type_enum"),
        default=DiscountType.PERCENTAGE,
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    min_order_value: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        CheckConstraint("used_count >= 0", name="coupon_used_count_non_negative"),
    )

    def __repr__(self):
        return f"<Coupon {self.code} used={self.used_count}>"


class Box(Base):
    """Shipping box catalog. Overrides the built-in box sizes when present."""

    __tablename__ = "boxes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    size: Mapped[str] = mapped_column(String(4), nullable=False)  # XS..XL
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    length: Mapped[int] = mapped_column(Integer, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<Box {self.size} {self.width}x{self.length}x{self.height}>"
