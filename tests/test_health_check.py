"""
Unit tests for the health endpoints - liveness and readiness.
"""
from contextlib import ExitStack
from unittest.mock import AsyncMock, patch

import httpx
import pytest

_SERVICE = "lastmile.domain.services.health_service"


def _patch_checks(**results: str) -> ExitStack:
    stack = ExitStack()
    for name in ("db", "redis", "celery"):
        stack.enter_context(patch(
            f"{_SERVICE}._check_{name}",
            new_callable=AsyncMock,
            return_value=results.get(name, "ok"),
        ))
    return stack


class TestLivenessProbe:

    @pytest.mark.unit
    async def test_liveness_returns_healthy(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestReadinessProbe:

    @pytest.mark.unit
    async def test_readiness_all_healthy(self, test_client: httpx.AsyncClient) -> None:
        with _patch_checks():
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "db": "ok", "redis": "ok", "celery": "ok"}

    @pytest.mark.unit
    @pytest.mark.parametrize("dependency, error", [
        ("db", "error: db_unavailable"),
        ("redis", "error: redis_unavailable"),
        ("celery", "error: celery_unavailable"),
    ])
    async def test_readiness_degraded(self, test_client: httpx.AsyncClient, dependency, error) -> None:
        with _patch_checks(**{dependency: error}):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data[dependency] == error


class TestDependencyChecks:

    @pytest.mark.unit
    async def test_redis_check_uses_shared_client(self, fake_redis) -> None:
        from lastmile.domain.services.health_service import _check_redis

        assert await _check_redis() == "ok"

    @pytest.mark.unit
    async def test_redis_check_reports_failure(self) -> None:
        from lastmile.domain.services.health_service import _check_redis

        with patch(
            "lastmile.core.redis_client.get_redis",
            new_callable=AsyncMock,
            side_effect=ConnectionError("refused"),
        ):
            assert await _check_redis() == "error: redis_unavailable"

    @pytest.mark.unit
    async def test_celery_check_reports_failure(self) -> None:
        from lastmile.domain.services.health_service import _check_celery

        with patch(f"{_SERVICE}.aioredis.from_url", side_effect=ValueError("bad url")):
            assert await _check_celery() == "error: celery_unavailable"

    @pytest.mark.unit
    async def test_slow_dependency_times_out(self) -> None:
        import asyncio

        from lastmile.domain.services import health_service

        async def _hang() -> None:
            await asyncio.sleep(5)

        with patch.object(health_service.settings, "HEALTH_CHECK_TIMEOUT_SECONDS", 0.01):
            assert await health_service._probe("db", _hang) == "error: db_unavailable"
