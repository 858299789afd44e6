"""FastAPI application for the Orders Service."""

from fastapi import FastAPI
from libs.common.error_handler import add_exception_handlers
from libs.common.middleware import add_observability_middleware
from services.orders_service.routers import (
    admin_inventory_router,
    admin_orders_router,
    webhooks_router,
)


def create_app() -> FastAPI:
    """Create and configure the Orders Service FastAPI app."""
    app = FastAPI(
        title="Orders Service",
        version="0.1.0",
        description="Payment webhooks, order lifecycle, inventory ledger and shipping guides.",
    )

    # Add observability (structured logging + request tracing)
    add_observability_middleware(app)

    # Add global exception handlers for consistent error responses
    add_exception_handlers(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "orders"}

    app.include_router(webhooks_router)
    app.include_router(admin_orders_router)
    app.include_router(admin_inventory_router)

    return app


app = create_app()
