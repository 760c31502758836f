"""Health-check registry and the ``/health`` router.

Other components register async probes returning ``True`` when healthy. Each
``/health`` request runs every probe concurrently, racing each one against a
fixed timeout; a probe that raises or loses the race counts as ``False``.
"""

from __future__ import annotations

import asyncio
import socket
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from service_fastapi.errors import CapacityExceeded, DuplicateCheck

log = structlog.get_logger()

HealthCheck = Callable[[], Awaitable[bool]]

MAX_HEALTH_CHECKS = 10
PROBE_TIMEOUT_SECONDS = 0.5


class HealthRegistry:
    """Bounded mapping of ``"<plugin>-<check>"`` to probe."""

    def __init__(
        self,
        *,
        max_checks: int = MAX_HEALTH_CHECKS,
        timeout: float = PROBE_TIMEOUT_SECONDS,
    ) -> None:
        self._checks: dict[str, HealthCheck] = {}
        self._lock = asyncio.Lock()
        self._max_checks = max_checks
        self._timeout = timeout
        # Probes that lost their race; kept referenced until they finish.
        self._abandoned: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._checks)

    def __contains__(self, key: object) -> bool:
        return key in self._checks

    @property
    def keys(self) -> list[str]:
        return list(self._checks)

    async def register(
        self, plugin_name: str, check_name: str, probe: HealthCheck
    ) -> None:
        """Store ``probe`` under ``plugin_name-check_name``.

        Raises:
            CapacityExceeded: the registry already holds ``max_checks`` entries.
            DuplicateCheck: the key is already registered.
        """
        key = f"{plugin_name}-{check_name}"
        async with self._lock:
            if len(self._checks) >= self._max_checks:
                raise CapacityExceeded(self._max_checks)
            if key in self._checks:
                raise DuplicateCheck(key)
            self._checks[key] = probe
        log.info("health_check_registered", key=key, total=len(self._checks))

    async def aggregate(self) -> dict[str, bool]:
        """Run every probe concurrently and return a fresh key → outcome map."""
        checks = list(self._checks.items())
        outcomes = await asyncio.gather(*(self._race(key, probe) for key, probe in checks))
        return {key: outcome for (key, _), outcome in zip(checks, outcomes)}

    async def _race(self, key: str, probe: HealthCheck) -> bool:
        try:
            task = asyncio.ensure_future(probe())
        except Exception as exc:
            log.warning("health_check_failed", key=key, error=str(exc))
            return False

        done, _ = await asyncio.wait({task}, timeout=self._timeout)
        if not done:
            log.warning("health_check_timed_out", key=key, timeout=self._timeout)
            self._abandon(task)
            return False

        exc = task.exception()
        if exc is not None:
            log.warning("health_check_failed", key=key, error=str(exc))
            return False
        return task.result() is True

    def _abandon(self, task: asyncio.Task[Any]) -> None:
        self._abandoned.add(task)
        task.add_done_callback(_discard_outcome)
        task.add_done_callback(self._abandoned.discard)


def _discard_outcome(task: asyncio.Task[Any]) -> None:
    if not task.cancelled():
        task.exception()


def create_health_router(
    registry: HealthRegistry,
    *,
    status_code: int = status.HTTP_200_OK,
) -> APIRouter:
    """Build a router exposing ``GET /health`` backed by ``registry``.

    Args:
        registry: Source of the probes to aggregate.
        status_code: 202 on a dedicated health listener, 200 when sharing the
            application listener.

    Returns:
        A FastAPI ``APIRouter`` with ``/health``.
    """
    router = APIRouter(tags=["health"])
    cluster_id = socket.gethostname()

    @router.get("/health", summary="Aggregated health probes")
    async def health(request: Request) -> JSONResponse:
        checks = await registry.aggregate()
        request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        return JSONResponse(
            status_code=status_code,
            content={
                "requestId": request_id,
                "checks": checks,
                "requestHostname": request.url.hostname,
                "time": int(time.time() * 1000),
                "alive": True,
                "clusterId": cluster_id,
            },
        )

    return router
