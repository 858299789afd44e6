"""Admin inventory ledger router."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.orders_service.models import Box, MovementType, Product
from services.orders_service.routers._helpers import batch_failure_response
from services.orders_service.schemas import (
    BatchMovementRequest,
    BatchMovementResponse,
    LedgerAuditResponse,
    LedgerCheckResponse,
    MovementCreate,
    MovementResponse,
    PackagePreviewRequest,
    PackageResponse,
    StockSummaryResponse,
)
from services.orders_service.services import ledger
from services.orders_service.services.packaging import (
    CartLine,
    box_overrides,
    calculate_package,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/admin/inventory", tags=["admin-inventory"])
logger = get_logger(__name__)


def _to_request(movement: MovementCreate) -> ledger.MovementRequest:
    return ledger.MovementRequest(
        product_id=movement.product_id,
        movement_type=movement.movement_type,
        quantity=movement.quantity,
        reference_id=movement.reference_id,
        reason=movement.reason,
        created_by=movement.created_by or "admin",
        cost=movement.cost,
        price=movement.price,
        expected_previous_stock=movement.expected_previous_stock,
    )


def _check_response(check: ledger.LedgerCheck) -> LedgerCheckResponse:
    return LedgerCheckResponse(
        product_id=check.product_id,
        product_name=check.product_name,
        stock=check.stock,
        ledger_total=check.ledger_total,
        consistent=check.consistent,
    )


# ============================================================================
# MOVEMENTS
# ============================================================================


@router.get("/movements", response_model=list[MovementResponse])
async def list_movements(
    product_id: Optional[uuid.UUID] = None,
    reference_id: Optional[str] = None,
    movement_type: Optional[MovementType] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_async_db),
):
    """Read-only movement history, newest first."""
    return await ledger.list_movements(
        db,
        product_id=product_id,
        reference_id=reference_id,
        movement_types=[movement_type] if movement_type else None,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/movements", response_model=MovementResponse, status_code=status.HTTP_201_CREATED
)
async def apply_movement(
    movement_in: MovementCreate,
    db: AsyncSession = Depends(get_async_db),
):
    movement = await ledger.apply_movement(db, _to_request(movement_in))
    await db.commit()
    return movement


@router.post("/movements/batch", response_model=BatchMovementResponse)
async def apply_movement_batch(
    batch: BatchMovementRequest,
    resilient: bool = False,
    db: AsyncSession = Depends(get_async_db),
):
    """Apply several movements.

    By default the batch is all-or-nothing. With ``resilient=true`` each item
    is applied on its own and failures are reported per item.
    """
    requests = [_to_request(movement) for movement in batch.movements]
    if resilient:
        result = await ledger.apply_batch_resilient(db, requests)
        await db.commit()
        return BatchMovementResponse(
            success=[MovementResponse.model_validate(m) for m in result.success],
            failed=[batch_failure_response(f) for f in result.failed],
            total=result.total,
        )

    movements = await ledger.apply_batch(db, requests)
    await db.commit()
    return BatchMovementResponse(
        success=[MovementResponse.model_validate(m) for m in movements],
        total=len(movements),
    )


# ============================================================================
# PRODUCT LEDGER
# ============================================================================


@router.get("/products/{product_id}/summary", response_model=StockSummaryResponse)
async def stock_summary(
    product_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
):
    return await ledger.get_stock_summary(db, product_id)


@router.get("/products/{product_id}/verify", response_model=LedgerCheckResponse)
async def verify_product(
    product_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
):
    """Compare stock with its ledger. A mismatch answers 500, never auto-heals."""
    return _check_response(await ledger.verify_product_ledger(db, product_id))


@router.post(
    "/products/{product_id}/initial-migration",
    response_model=Optional[MovementResponse],
)
async def seed_product_ledger(
    product_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
):
    """Seed the ledger for a product whose stock predates it."""
    movement = await ledger.record_initial_migration(db, product_id, created_by="admin")
    await db.commit()
    if movement is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return movement


@router.get("/audit", response_model=LedgerAuditResponse)
async def audit_ledger(db: AsyncSession = Depends(get_async_db)):
    mismatches = await ledger.audit_ledger(db)
    return LedgerAuditResponse(
        consistent=not mismatches,
        mismatches=[_check_response(check) for check in mismatches],
    )


# ============================================================================
# PACKAGE PREVIEW
# ============================================================================


@router.post("/package-preview", response_model=PackageResponse)
async def package_preview(
    preview: PackagePreviewRequest,
    db: AsyncSession = Depends(get_async_db),
):
    """Package the calculator would choose for a cart."""
    product_ids = [line.product_id for line in preview.items]
    sizes = {}
    if product_ids:
        result = await db.execute(
            select(Product.id, Product.size_value).where(Product.id.in_(product_ids))
        )
        sizes = {product_id: size for product_id, size in result.all()}
    boxes = (await db.execute(select(Box))).scalars().all()
    return calculate_package(
        [CartLine(line.product_id, line.quantity) for line in preview.items],
        sizes,
        box_overrides(boxes),
    )
