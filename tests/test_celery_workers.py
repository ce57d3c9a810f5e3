"""
Tests for the Celery dispatch tasks - lastmile/workers/tasks.py

Covers:
- event loop management for sync tasks
- retry backoff
- single-delivery dispatch and the pending sweep
- enqueueing with a broken broker
"""
from contextlib import contextmanager
from unittest.mock import AsyncMock, patch

import pytest
from celery.exceptions import Retry

from lastmile.core.config import settings
from lastmile.workers.celery_app import DISPATCH_QUEUE, celery_app, configure_worker_logging
from lastmile.db.models.delivery import DeliveryStatus
from lastmile.workers.tasks import (
    _dispatch_one,
    dispatch_delivery,
    dispatch_pending_deliveries,
    enqueue_dispatch,
    get_event_loop,
    retry_countdown,
    run_async,
)


@contextmanager
def _task_session(db_session):
    """Make get_task_session yield the test session."""
    with patch("lastmile.workers.tasks.get_task_session") as mock_session_ctx:
        mock_session_ctx.return_value.__aenter__ = AsyncMock(return_value=db_session)
        mock_session_ctx.return_value.__aexit__ = AsyncMock(return_value=None)
        yield mock_session_ctx


def _returning(outcome: dict):
    """run_async replacement that skips the coroutine and returns ``outcome``."""
    def _run(coro):
        coro.close()
        return outcome
    return _run


class TestEventLoopManagement:

    def test_get_event_loop_creates_and_closes(self) -> None:
        with get_event_loop() as loop:
            assert loop is not None
            assert loop.is_running() is False

        assert loop.is_closed()

    def test_run_async_executes_coroutine(self) -> None:
        async def _coro():
            return 42

        assert run_async(_coro()) == 42


class TestRetryCountdown:

    @pytest.mark.unit
    @pytest.mark.parametrize("retries, expected", [(0, 30), (1, 60), (3, 240), (5, 600), (9, 600)])
    def test_exponential_backoff_capped(self, retries, expected) -> None:
        assert retry_countdown(retries) == expected


class TestDispatchOne:

    @pytest.mark.unit
    async def test_assigns(self, db_session, pending_delivery, courier_factory) -> None:
        courier = await courier_factory()
        result = await _dispatch_one(db_session, pending_delivery.id)
        assert result["outcome"] == "assigned"
        assert result["courier_id"] == courier.id

    @pytest.mark.unit
    async def test_no_courier(self, db_session, pending_delivery) -> None:
        result = await _dispatch_one(db_session, pending_delivery.id)
        assert result["outcome"] == "no_courier_available"
        assert result["reason"] == "no_candidates"

    @pytest.mark.unit
    async def test_skips_deliveries_no_longer_pending(self, db_session, order_factory, delivery_factory) -> None:
        cancelled = await delivery_factory(await order_factory(), status=DeliveryStatus.CANCELLED)

        result = await _dispatch_one(db_session, cancelled.id)

        assert result["outcome"] == "skipped"
        assert result["reason"] == "AlreadyAssigned"

    @pytest.mark.unit
    async def test_skips_unknown_delivery(self, db_session) -> None:
        result = await _dispatch_one(db_session, 5555)
        assert result == {"delivery_id": 5555, "outcome": "skipped", "reason": "NotFound"}


class TestDispatchDeliveryTask:

    @pytest.mark.unit
    def test_assigned_returns_outcome(self) -> None:
        outcome = {"delivery_id": 7, "outcome": "assigned", "courier_id": 3, "attempts": 1, "reason": None}

        with patch("lastmile.workers.tasks.run_async", side_effect=_returning(outcome)):
            assert dispatch_delivery(7) == outcome

    @pytest.mark.unit
    def test_no_courier_retries_with_backoff(self) -> None:
        outcome = {"delivery_id": 7, "outcome": "no_courier_available", "reason": "no_candidates"}

        with patch("lastmile.workers.tasks.run_async", side_effect=_returning(outcome)), \
                patch.object(dispatch_delivery, "retry", side_effect=Retry()) as mock_retry:
            with pytest.raises(Retry):
                dispatch_delivery(7)

        mock_retry.assert_called_once_with(countdown=settings.DISPATCH_RETRY_COUNTDOWN_SECONDS)

    @pytest.mark.unit
    def test_exhausted_retries_leave_delivery_to_sweep(self) -> None:
        outcome = {"delivery_id": 7, "outcome": "no_courier_available", "reason": "no_candidates"}

        dispatch_delivery.push_request(retries=settings.DISPATCH_TASK_MAX_RETRIES)
        try:
            with patch("lastmile.workers.tasks.run_async", side_effect=_returning(outcome)), \
                    patch.object(dispatch_delivery, "retry") as mock_retry:
                assert dispatch_delivery.run(7) == outcome
        finally:
            dispatch_delivery.pop_request()

        mock_retry.assert_not_called()


class TestPendingSweep:

    @pytest.mark.unit
    async def test_sweep_assigns_oldest_first(
        self, db_session, order_factory, delivery_factory, courier_factory
    ) -> None:
        courier = await courier_factory()
        oldest = await delivery_factory(await order_factory())
        newer = await delivery_factory(await order_factory())

        with _task_session(db_session), \
                patch("lastmile.workers.tasks.run_async", side_effect=lambda coro: coro):
            summary = await dispatch_pending_deliveries(limit=10)

        assert summary["checked"] == 2
        assert summary["assigned"] == 1
        first, second = summary["results"]
        assert (first["delivery_id"], first["courier_id"]) == (oldest.id, courier.id)
        assert (second["delivery_id"], second["outcome"]) == (newer.id, "no_courier_available")

    @pytest.mark.unit
    async def test_sweep_with_nothing_pending(self, db_session) -> None:
        with _task_session(db_session), \
                patch("lastmile.workers.tasks.run_async", side_effect=lambda coro: coro):
            summary = await dispatch_pending_deliveries()

        assert summary == {"checked": 0, "assigned": 0, "results": []}


class TestEnqueueDispatch:

    @pytest.mark.unit
    def test_enqueues_with_default_countdown(self) -> None:
        with patch.object(dispatch_delivery, "apply_async") as mock_apply:
            assert enqueue_dispatch(12) is True
        mock_apply.assert_called_once_with(
            args=[12], countdown=settings.DISPATCH_RETRY_COUNTDOWN_SECONDS
        )

    @pytest.mark.unit
    def test_broker_failure_returns_false(self) -> None:
        with patch.object(dispatch_delivery, "apply_async", side_effect=ConnectionError("broker down")):
            assert enqueue_dispatch(12, countdown=5) is False


class TestCeleryConfig:

    @pytest.mark.unit
    def test_tasks_routed_to_dispatch_queue(self) -> None:
        assert celery_app.conf.task_routes == {"lastmile.workers.tasks.*": {"queue": DISPATCH_QUEUE}}
        assert celery_app.conf.task_default_queue == DISPATCH_QUEUE

    @pytest.mark.unit
    def test_sweep_is_scheduled(self) -> None:
        entry = celery_app.conf.beat_schedule["dispatch-pending-deliveries"]
        assert entry["task"] == dispatch_pending_deliveries.name
        assert entry["schedule"] == settings.DISPATCH_SWEEP_INTERVAL_SECONDS

    @pytest.mark.unit
    def test_worker_logging_uses_app_formatter(self) -> None:
        with patch("lastmile.workers.celery_app.setup_logging") as mock_setup:
            configure_worker_logging()
        mock_setup.assert_called_once_with(
            level="DEBUG" if settings.DEBUG else "INFO",
            json_format=not settings.DEBUG,
            app_name="lastmile-worker",
        )
