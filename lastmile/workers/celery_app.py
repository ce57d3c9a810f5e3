"""
Celery app for dispatch retries and the pending-delivery sweep.

Both tasks go to the ``dispatch`` queue. Workers log through the same JSON
formatter as the API instead of Celery's own root logger setup.
"""
from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from lastmile.core.config import settings
from lastmile.core.logging import setup_logging

DISPATCH_QUEUE = "dispatch"

celery_app = Celery(
    "lastmile",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["lastmile.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_default_queue=DISPATCH_QUEUE,
    task_routes={"lastmile.workers.tasks.*": {"queue": DISPATCH_QUEUE}},
    # a dispatch attempt is a few queries; anything longer is stuck
    task_time_limit=120,
    task_soft_time_limit=90,
    # redelivered if the worker dies mid-dispatch; claims are idempotent
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,
    beat_schedule={
        # deliveries left pending after NO_COURIER_AVAILABLE or a lost retry message
        "dispatch-pending-deliveries": {
            "task": "lastmile.workers.tasks.dispatch_pending_deliveries",
            "schedule": settings.DISPATCH_SWEEP_INTERVAL_SECONDS,
        },
    },
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    setup_logging(
        level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG,
        app_name="lastmile-worker",
    )
