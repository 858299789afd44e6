"""Enum definitions for orders service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class OrderStatus(str, enum.Enum):
    CREATED = "created"
    PENDING = "pending"
    PAID = "paid"
    SENT = "sent"
    CANCELLED = "cancelled"


class PaymentMethod(str, enum.Enum):
    WOMPI = "wompi"
    PAYU = "payu"
    BANK_TRANSFER = "bank_transfer"
    COD = "cod"
    CASH = "cash"


class MovementType(str, enum.Enum):
    INITIAL_INTAKE = "initial_intake"
    RESTOCK_RECEIVED = "restock_received"
    ORDER_PLACED = "order_placed"
    ORDER_CANCELLED = "order_cancelled"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    INITIAL_MIGRATION = "initial_migration"
    RETURN = "return"
    DAMAGE = "damage"
    LOST = "lost"
    STORE_USE = "store_use"
    PROMOTION = "promotion"


# Movement types whose quantity must be strictly negative / positive.
# Types in neither set accept either sign.
DECREMENTING_MOVEMENTS = frozenset(
    {
        MovementType.ORDER_PLACED,
        MovementType.DAMAGE,
        MovementType.LOST,
        MovementType.STORE_USE,
        MovementType.PROMOTION,
    }
)
INCREMENTING_MOVEMENTS = frozenset(
    {
        MovementType.INITIAL_INTAKE,
        MovementType.RESTOCK_RECEIVED,
        MovementType.ORDER_CANCELLED,
        MovementType.RETURN,
    }
)


class ShippingStatus(str, enum.Enum):
    PREPARING = "preparing"
    SHIPPED = "shipped"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED_DELIVERY = "failed_delivery"
    RETURNED = "returned"
    CANCELLED = "cancelled"
    EXCEPTION = "exception"


class AbcClass(str, enum.Enum):
    A = "A"
    B = "B"
    C = "C"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class PaymentProvider(str, enum.Enum):
    WOMPI = "wompi"
    PAYU = "payu"
    MANUAL = "manual"


class EventOutcome(str, enum.Enum):
    APPLIED = "applied"
    NO_OP = "no_op"
    REJECTED = "rejected"
    FAILED = "failed"
