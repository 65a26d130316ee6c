"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "fleetpay",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Africa/Lagos",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Payouts whose webhook never arrived
    "reconcile-pending-transfers-every-10-minutes": {
        "task": "app.workers.tasks.reconcile_pending_transfers",
        "schedule": 600.0,
    },
    # Card checkouts left in processing past the link expiry
    "reconcile-stale-payments-every-5-minutes": {
        "task": "app.workers.tasks.reconcile_stale_payments",
        "schedule": 300.0,
    },
    "cleanup-old-webhook-events-daily": {
        "task": "app.workers.tasks.cleanup_old_webhook_events",
        "schedule": 86400.0,  # 24 hours
    },
}
