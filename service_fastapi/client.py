"""Caller-side proxy for the control plane.

Components that do not own the listeners talk to ``FastAPIService`` through
a channel exposing ``call_method(method, *args)``. The transport behind the
channel is up to the host; ``FastAPIService`` itself is a valid channel.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from fastapi import FastAPI

from service_fastapi.gateway import BodyHandler, NoBodyHandler
from service_fastapi.health import HealthCheck


class Channel(Protocol):
    async def call_method(self, method: str, *args: Any) -> Any: ...


class FastAPIServiceClient:
    """Forwards every operation, in argument order, across ``channel``."""

    plugin_name = "service-fastapi"

    def __init__(self, channel: Channel) -> None:
        self._channel = channel

    async def add_health_check(
        self, plugin_name: str, check_name: str, probe: HealthCheck
    ) -> None:
        await self._channel.call_method("addHealthCheck", plugin_name, check_name, probe)

    async def register(self, plugin: Any, opts: dict[str, Any] | None = None) -> None:
        await self._channel.call_method("register", plugin, opts)

    async def get_server(self) -> FastAPI:
        return await self._channel.call_method("getServerInstance")

    async def head(self, path: str, handler: NoBodyHandler) -> None:
        await self._channel.call_method("head", path, handler)

    async def get(self, path: str, handler: NoBodyHandler) -> None:
        await self._channel.call_method("get", path, handler)

    async def get_custom(
        self, path: str, opts: dict[str, Any] | None, handler: Callable[..., Any]
    ) -> None:
        await self._channel.call_method("getCustom", path, opts, handler)

    async def post(self, path: str, handler: BodyHandler) -> None:
        await self._channel.call_method("post", path, handler)

    async def put(self, path: str, handler: BodyHandler) -> None:
        await self._channel.call_method("put", path, handler)

    async def delete(self, path: str, handler: BodyHandler) -> None:
        await self._channel.call_method("delete", path, handler)

    async def patch(self, path: str, handler: BodyHandler) -> None:
        await self._channel.call_method("patch", path, handler)

    async def options(self, path: str, handler: NoBodyHandler) -> None:
        await self._channel.call_method("options", path, handler)

    async def all(self, path: str, handler: BodyHandler) -> None:
        await self._channel.call_method("all", path, handler)
