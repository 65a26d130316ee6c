"""
Celery Tasks - reconciliation sweeps and housekeeping

Each task runs its coroutine on a fresh event loop with its own engine
(get_task_session) and a new correlation ID.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.domain.services.event_publisher import get_event_publisher
from app.domain.services.gateway.provider_factory import get_payment_gateway
from app.domain.services.payment_service import PaymentService
from app.domain.services.payout_service import PayoutService
from app.domain.services.webhook_service import cleanup_old_webhook_events as _cleanup_webhook_events
from app.core.exceptions import AppException
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis singleton is bound to this loop; drop it before the loop closes
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _reconcile_all_pending_transfers(stale_minutes: int | None = None) -> dict:
    gateway = get_payment_gateway()
    publisher = get_event_publisher()
    async with get_task_session() as db:
        service = PayoutService(db, gateway, publisher)
        driver_ids = await service.list_drivers_with_stale_transfers(stale_minutes)
        totals = {"drivers": len(driver_ids), "completed": 0, "failed": 0, "flagged": 0, "errors": 0}

        for driver_id in driver_ids:
            try:
                stats = await service.reconcile_pending_transfers(driver_id)
            except AppException as e:
                await db.rollback()
                totals["errors"] += 1
                logger.error(
                    "Transfer reconciliation failed for driver",
                    extra_data={"driver_id": driver_id, "error": e.message},
                    exc_info=True,
                )
                continue
            for key in ("completed", "failed", "flagged", "errors"):
                totals[key] += stats.get(key, 0)

    if driver_ids:
        logger.info("Pending transfer sweep finished", extra_data=totals)
    return totals


@celery_app.task(name="app.workers.tasks.reconcile_pending_transfers")
def reconcile_pending_transfers(stale_minutes: int | None = None):
    """Settle payouts whose webhook never arrived."""
    return run_async(_reconcile_all_pending_transfers(stale_minutes))


@celery_app.task(name="app.workers.tasks.reconcile_stale_payments")
def reconcile_stale_payments(older_than_minutes: int | None = None):
    """Re-verify card payments stuck in processing past the checkout expiry."""

    async def _reconcile():
        async with get_task_session() as db:
            service = PaymentService(db, get_payment_gateway(), get_event_publisher())
            return await service.reconcile_stale_payments(older_than_minutes)

    return run_async(_reconcile())


@celery_app.task(name="app.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int | None = None):
    """Delete completed gateway webhook records past retention."""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await _cleanup_webhook_events(db, days)
            logger.info(
                "Cleaned up old webhook events",
                extra_data={"deleted": deleted, "cutoff_days": days},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
