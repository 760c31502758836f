"""Control-plane facade exposed to other components of the host process.

``FastAPIService`` owns the listener pool, the health registry and the route
gateway. Callers on the far side of the inter-plugin call boundary reach it
through ``call_method`` using the contract method names.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from fastapi import FastAPI, status

from service_fastapi.config import ServerSettings
from service_fastapi.errors import UnknownMethod
from service_fastapi.gateway import BodyHandler, NoBodyHandler, RouteGateway
from service_fastapi.health import HealthCheck, HealthRegistry, create_health_router
from service_fastapi.listeners import ListenerPool
from service_fastapi.metrics import Metrics

log = structlog.get_logger()


class FastAPIService:
    """Facade over the listener pool, health registry and route gateway."""

    def __init__(self, settings: ServerSettings, metrics: Metrics | None = None) -> None:
        self.settings = settings
        self.pool = ListenerPool(settings, metrics)
        self.health = HealthRegistry()
        self.gateway = RouteGateway(self.pool)
        self._methods: dict[str, Callable[..., Awaitable[Any]]] = {
            "addHealthCheck": self.add_health_check,
            "getServerInstance": self.get_server_instance,
            "register": self.register,
            "head": self.head,
            "get": self.get,
            "getCustom": self.get_custom,
            "post": self.post,
            "put": self.put,
            "delete": self.delete,
            "patch": self.patch,
            "options": self.options,
            "all": self.all,
        }

    # ── Lifecycle ─────────────────────────────

    async def init(self) -> None:
        """Mount ``/health`` when enabled."""
        if not self.settings.health:
            return
        health_listener = self.pool.health_listener
        if health_listener is not None:
            router = create_health_router(self.health, status_code=status.HTTP_202_ACCEPTED)
            health_listener.app.include_router(router)
            log.info("health_route_ready", listener=health_listener.kind.value, port=health_listener.port)
        else:
            selected = self.pool.selected
            router = create_health_router(self.health, status_code=status.HTTP_200_OK)
            selected.app.include_router(router)
            log.info("health_route_ready", listener=selected.kind.value, port=selected.port)

    async def run(self) -> None:
        log.info("service_starting", host=self.settings.host, type=self.settings.server_type)
        await self.pool.start()

    async def dispose(self) -> None:
        await self.pool.stop()
        log.info("service_stopped")

    # ── Call boundary ─────────────────────────

    @property
    def method_names(self) -> list[str]:
        return list(self._methods)

    async def call_method(self, method: str, *args: Any) -> Any:
        """Invoke a contract method by name with positional arguments."""
        try:
            target = self._methods[method]
        except KeyError:
            raise UnknownMethod(method) from None
        return await target(*args)

    # ── Operations ────────────────────────────

    async def add_health_check(
        self, plugin_name: str, check_name: str, probe: HealthCheck
    ) -> None:
        log.info("add_health_check", plugin=plugin_name, check=check_name)
        await self.health.register(plugin_name, check_name, probe)

    async def get_server_instance(self) -> FastAPI:
        return self.gateway.server_instance()

    async def register(self, plugin: Any, opts: dict[str, Any] | None = None) -> None:
        await self.gateway.register(plugin, opts)

    async def head(self, path: str, handler: NoBodyHandler) -> None:
        await self.gateway.head(path, handler)

    async def get(self, path: str, handler: NoBodyHandler) -> None:
        await self.gateway.get(path, handler)

    async def get_custom(
        self, path: str, opts: dict[str, Any] | None, handler: Callable[..., Any]
    ) -> None:
        await self.gateway.get_custom(path, opts, handler)

    async def post(self, path: str, handler: BodyHandler) -> None:
        await self.gateway.post(path, handler)

    async def put(self, path: str, handler: BodyHandler) -> None:
        await self.gateway.put(path, handler)

    async def delete(self, path: str, handler: BodyHandler) -> None:
        await self.gateway.delete(path, handler)

    async def patch(self, path: str, handler: BodyHandler) -> None:
        await self.gateway.patch(path, handler)

    async def options(self, path: str, handler: NoBodyHandler) -> None:
        await self.gateway.options(path, handler)

    async def all(self, path: str, handler: BodyHandler) -> None:
        await self.gateway.all(path, handler)
