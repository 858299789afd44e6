"""Orders Service models package."""

from services.orders_service.models.catalog import Box, Coupon, Product
from services.orders_service.models.enums import (
    DECREMENTING_MOVEMENTS,
    INCREMENTING_MOVEMENTS,
    AbcClass,
    DiscountType,
    EventOutcome,
    MovementType,
    OrderStatus,
    PaymentMethod,
    PaymentProvider,
    ShippingStatus,
)
from services.orders_service.models.inventory import InventoryMovement
from services.orders_service.models.orders import (
    Order,
    OrderItem,
    PaymentDetails,
    PaymentEventLog,
)
from services.orders_service.models.shipping import Shipping, ShippingTrackingEvent

__all__ = [
    "AbcClass",
    "Box",
    "Coupon",
    "DECREMENTING_MOVEMENTS",
    "DiscountType",
    "EventOutcome",
    "INCREMENTING_MOVEMENTS",
    "InventoryMovement",
    "MovementType",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentDetails",
    "PaymentEventLog",
    "PaymentMethod",
    "PaymentProvider",
    "Product",
    "Shipping",
    "ShippingStatus",
    "ShippingTrackingEvent",
]
