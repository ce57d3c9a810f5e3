"""
Celery Tasks for background dispatch

dispatch_delivery re-runs the dispatcher for one delivery and reschedules
itself with exponential backoff while no courier is available.
dispatch_pending_deliveries is the periodic safety net for every delivery
still pending.
"""
import asyncio
from contextlib import contextmanager
from typing import Any, Dict

from lastmile.workers.celery_app import celery_app
from lastmile.db.database import get_task_session
from lastmile.domain.services.delivery_service import DeliveryService
from lastmile.domain.services.dispatcher import Dispatcher, DispatchOutcome
from lastmile.core.config import settings
from lastmile.core.exceptions import AlreadyAssignedError, DeliveryNotFoundError
from lastmile.core.logging import get_logger, set_correlation_id, bind_log_context

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Fresh event loop per task, closed afterwards.

    The Redis singleton is bound to the loop that created it, so it is closed
    before the loop goes away.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            from lastmile.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning("Failed to close Redis after task", extra_data={"error": str(e)})
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Run a coroutine from a sync Celery task"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def retry_countdown(retries: int) -> int:
    """Exponential backoff: base * 2**retries, capped."""
    return min(
        settings.DISPATCH_RETRY_COUNTDOWN_SECONDS * (2 ** retries),
        settings.DISPATCH_RETRY_MAX_COUNTDOWN_SECONDS,
    )


async def _dispatch_one(db, delivery_id: int) -> Dict[str, Any]:
    with bind_log_context(delivery_id=delivery_id):
        try:
            result = await Dispatcher(db).assign(delivery_id)
        except (AlreadyAssignedError, DeliveryNotFoundError) as e:
            # nothing left to dispatch; not a task failure
            logger.info("Dispatch skipped", extra_data={"reason": e.kind})
            return {"delivery_id": delivery_id, "outcome": "skipped", "reason": e.kind}

    return {
        "delivery_id": delivery_id,
        "outcome": result.outcome.value,
        "courier_id": result.courier_id,
        "attempts": result.attempts,
        "reason": result.reason,
    }


@celery_app.task(
    bind=True,
    name="lastmile.workers.tasks.dispatch_delivery",
    max_retries=settings.DISPATCH_TASK_MAX_RETRIES,
)
def dispatch_delivery(self, delivery_id: int):
    """Assign a courier to a pending delivery, retrying with backoff."""

    async def _dispatch():
        async with get_task_session() as db:
            return await _dispatch_one(db, delivery_id)

    outcome = run_async(_dispatch())

    if outcome["outcome"] == DispatchOutcome.NO_COURIER_AVAILABLE.value:
        if self.request.retries >= self.max_retries:
            logger.warning(
                "Dispatch retries exhausted, leaving delivery to the sweep",
                extra_data={"delivery_id": delivery_id, "retries": self.request.retries},
            )
            return outcome
        countdown = retry_countdown(self.request.retries)
        logger.info(
            "Dispatch rescheduled",
            extra_data={"delivery_id": delivery_id, "countdown": countdown},
        )
        raise self.retry(countdown=countdown)

    return outcome


@celery_app.task(name="lastmile.workers.tasks.dispatch_pending_deliveries")
def dispatch_pending_deliveries(limit: int = None):
    """Periodic sweep over deliveries still pending, oldest first."""

    async def _sweep():
        async with get_task_session() as db:
            delivery_ids = await DeliveryService(db).get_pending_delivery_ids(
                limit or settings.DISPATCH_SWEEP_BATCH_SIZE
            )
            results = []
            for delivery_id in delivery_ids:
                results.append(await _dispatch_one(db, delivery_id))

        assigned = sum(1 for r in results if r["outcome"] == DispatchOutcome.ASSIGNED.value)
        logger.info(
            "Pending delivery sweep finished",
            extra_data={"checked": len(results), "assigned": assigned},
        )
        return {"checked": len(results), "assigned": assigned, "results": results}

    return run_async(_sweep())


def enqueue_dispatch(delivery_id: int, countdown: int = None) -> bool:
    """Schedule a background dispatch; broker failures are logged, the sweep covers them."""
    try:
        dispatch_delivery.apply_async(
            args=[delivery_id],
            countdown=countdown if countdown is not None else settings.DISPATCH_RETRY_COUNTDOWN_SECONDS,
        )
        return True
    except Exception as e:
        logger.error(
            "Failed to enqueue dispatch retry",
            extra_data={"delivery_id": delivery_id, "error": str(e)},
        )
        return False
