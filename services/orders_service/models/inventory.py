"""Inventory ledger model: append-only stock movements."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.orders_service.models.enums import MovementType, enum_values
from sqlalchemy import CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, Text, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column

# ============================================================================
# INVENTORY MODELS
# ============================================================================


class InventoryMovement(Base):
    """One immutable stock change with its before/after snapshot."""

    __tablename__ = "inventory_movements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )

    movement_type: Mapped[MovementType] = mapped_column(
        SAEnum(MovementType, values_callable=enum_values, name="movement_type_enum"),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(
        Integer, nullable=False
    )  # Positive = add, negative = subtract

    previous_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    new_stock: Mapped[int] = mapped_column(Integer, nullable=False)

    # Unit cost / price at the time of the movement
    cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    reference_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )  # order id, restock id, ...
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        CheckConstraint("quantity <> 0", name="movement_quantity_non_zero"),
        CheckConstraint(
            "previous_stock + quantity = new_stock", name="movement_snapshot_consistent"
        ),
        CheckConstraint("new_stock >= 0", name="movement_new_stock_non_negative"),
        Index("ix_inventory_movements_product_created", "product_id", "created_at"),
        Index("ix_inventory_movements_reference", "reference_id"),
    )

    def __repr__(self):
        return f"<InventoryMovement {self.movement_type.value} {self.quantity:+d} product={self.product_id}>"


@event.listens_for(InventoryMovement, "before_update")
def _reject_movement_update(mapper, connection, target):
    from services.orders_service.errors import InvariantViolation

    raise InvariantViolation(
        "Inventory movements are append-only",
        details={"movement_id": str(target.id)},
    )


@event.listens_for(InventoryMovement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    from services.orders_service.errors import InvariantViolation

    raise InvariantViolation(
        "Inventory movements are append-only",
        details={"movement_id": str(target.id)},
    )
