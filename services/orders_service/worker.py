"""ARQ worker for shipping guide retries and inventory audits."""

from arq import cron
from libs.common.arq_config import get_redis_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)


async def task_retry_pending_guides(ctx: dict):
    from services.orders_service.tasks import retry_pending_guides

    logger.info("Running: retry_pending_guides")
    await retry_pending_guides()


async def task_audit_inventory_ledger(ctx: dict):
    from services.orders_service.tasks import audit_inventory_ledger

    logger.info("Running: audit_inventory_ledger")
    await audit_inventory_ledger()


async def task_classify_products_abc(ctx: dict):
    from libs.db.config import AsyncSessionLocal
    from services.orders_service.services.financials import classify_products_abc

    logger.info("Running: classify_products_abc")
    async with AsyncSessionLocal() as db:
        await classify_products_abc(db)


class WorkerSettings:
    redis_settings = get_redis_settings()

    functions = [
        task_retry_pending_guides,
        task_audit_inventory_ledger,
        task_classify_products_abc,
    ]

    cron_jobs = [
        cron(
            task_retry_pending_guides,
            minute={2, 12, 22, 32, 42, 52},
            run_at_startup=True,
        ),
        cron(task_audit_inventory_ledger, hour={3}, minute={15}),
        cron(task_classify_products_abc, weekday=0, hour={4}, minute={0}),
    ]
