"""Routers package."""

from services.orders_service.routers.admin_inventory import (
    router as admin_inventory_router,
)
from services.orders_service.routers.admin_orders import router as admin_orders_router
from services.orders_service.routers.webhooks import router as webhooks_router

__all__ = [
    "admin_inventory_router",
    "admin_orders_router",
    "webhooks_router",
]
