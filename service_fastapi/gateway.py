"""Route gateway: verb registration and sub-application mounting.

Routes always land on the pool's selected application listener. Paths are
normalized before registration so ``/users/`` and ``/users`` name the same
route. Handlers registered through the gateway receive a ``Reply`` plus the
already-extracted path parameters, query and (for body-bearing verbs) body.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import structlog
from fastapi import APIRouter, FastAPI
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response

from service_fastapi.listeners import ListenerHandle, ListenerPool

log = structlog.get_logger()

PLUGIN_NAME_ATTR = "__plugin_name__"
ANONYMOUS_PLUGIN = "unknown/internal/custom"


class Verb(str, Enum):
    GET = "GET"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    ALL = "ALL"

    @property
    def has_body(self) -> bool:
        return self not in _BODYLESS_VERBS

    @property
    def methods(self) -> list[str]:
        if self is Verb.ALL:
            return ["DELETE", "GET", "HEAD", "PATCH", "POST", "PUT", "OPTIONS"]
        return [self.value]


_BODYLESS_VERBS = frozenset({Verb.GET, Verb.HEAD, Verb.OPTIONS})

NoBodyHandler = Callable[[Any, dict[str, str], dict[str, str], Request], Awaitable[Any]]
BodyHandler = Callable[[Any, dict[str, str], dict[str, str], Any, Request], Awaitable[Any]]
RouteHandler = NoBodyHandler | BodyHandler


def normalize_path(path: str) -> str:
    """Strip one trailing slash unless the path is the root."""
    if path.endswith("/") and path != "/":
        return path[:-1]
    return path


def named_plugin(plugin: Any, name: str) -> Any:
    """Declare the name a sub-application is deduplicated under."""
    setattr(plugin, PLUGIN_NAME_ATTR, name)
    return plugin


def plugin_name(plugin: Any) -> str | None:
    return getattr(plugin, PLUGIN_NAME_ATTR, None)


class Reply:
    """Response builder handed to gateway route handlers."""

    def __init__(self) -> None:
        self.status_code = 200
        self.headers: dict[str, str] = {}
        self.payload: Any = None
        self.sent = False

    def code(self, status_code: int) -> Reply:
        self.status_code = status_code
        return self

    def header(self, name: str, value: str) -> Reply:
        self.headers[name] = value
        return self

    def send(self, payload: Any = None) -> Reply:
        self.payload = payload
        self.sent = True
        return self

    def to_response(self) -> Response:
        payload = self.payload
        if isinstance(payload, Response):
            return payload
        if payload is None:
            return Response(status_code=self.status_code, headers=self.headers)
        if isinstance(payload, bytes):
            return Response(payload, status_code=self.status_code, headers=self.headers)
        if isinstance(payload, str):
            return PlainTextResponse(payload, status_code=self.status_code, headers=self.headers)
        return JSONResponse(payload, status_code=self.status_code, headers=self.headers)


async def read_body(request: Request) -> Any:
    """Parse the request body by content type.

    Raises:
        HTTPException: 400 when a JSON body cannot be decoded.
    """
    raw = await request.body()
    if not raw:
        return None
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type == "application/json" or content_type.endswith("+json"):
        try:
            return json.loads(raw)
        except ValueError:
            raise HTTPException(
                status_code=400, detail="Body is not valid JSON"
            ) from None
    if content_type.startswith("text/"):
        return raw.decode("utf-8", errors="replace")
    return raw


def _adapt(verb: Verb, handler: RouteHandler) -> Callable[[Request], Awaitable[Response]]:
    async def endpoint(request: Request) -> Response:
        reply = Reply()
        params = dict(request.path_params)
        query = dict(request.query_params)
        if verb.has_body:
            body = await read_body(request)
            result = handler(reply, params, query, body, request)
        else:
            result = handler(reply, params, query, request)
        if inspect.isawaitable(result):
            result = await result

        if isinstance(result, Response):
            return result
        if result is not None and not reply.sent:
            reply.send(result)
        return reply.to_response()

    return endpoint


class RouteGateway:
    """Registers routes and sub-applications on the selected listener."""

    def __init__(self, pool: ListenerPool) -> None:
        self._pool = pool
        self._mounted: set[str] = set()

    @property
    def listener(self) -> ListenerHandle:
        return self._pool.selected

    def server_instance(self) -> FastAPI:
        return self.listener.app

    @property
    def mounted(self) -> frozenset[str]:
        return frozenset(self._mounted)

    async def route(self, verb: Verb, path: str, handler: RouteHandler) -> None:
        listener = self.listener
        final_path = normalize_path(path)
        log.debug(
            "route_registering",
            listener=listener.kind.value,
            verb=verb.value,
            path=final_path,
        )
        listener.app.add_route(
            final_path,
            _adapt(verb, handler),
            methods=verb.methods,
            include_in_schema=False,
        )
        log.debug("route_registered", listener=listener.kind.value, verb=verb.value)

    async def head(self, path: str, handler: NoBodyHandler) -> None:
        await self.route(Verb.HEAD, path, handler)

    async def get(self, path: str, handler: NoBodyHandler) -> None:
        await self.route(Verb.GET, path, handler)

    async def options(self, path: str, handler: NoBodyHandler) -> None:
        await self.route(Verb.OPTIONS, path, handler)

    async def post(self, path: str, handler: BodyHandler) -> None:
        await self.route(Verb.POST, path, handler)

    async def put(self, path: str, handler: BodyHandler) -> None:
        await self.route(Verb.PUT, path, handler)

    async def patch(self, path: str, handler: BodyHandler) -> None:
        await self.route(Verb.PATCH, path, handler)

    async def delete(self, path: str, handler: BodyHandler) -> None:
        await self.route(Verb.DELETE, path, handler)

    async def all(self, path: str, handler: BodyHandler) -> None:
        await self.route(Verb.ALL, path, handler)

    async def get_custom(
        self,
        path: str,
        opts: dict[str, Any] | None,
        handler: Callable[..., Any],
    ) -> None:
        """Register a native FastAPI GET endpoint with extra route options."""
        listener = self.listener
        final_path = normalize_path(path)
        log.debug(
            "route_registering",
            listener=listener.kind.value,
            verb="GET CUSTOM",
            path=final_path,
        )
        listener.app.add_api_route(final_path, handler, methods=["GET"], **(opts or {}))
        log.debug("route_registered", listener=listener.kind.value, verb="GET CUSTOM")

    async def register(self, plugin: Any, opts: dict[str, Any] | None = None) -> None:
        """Mount a sub-application, at most once per declared name."""
        listener = self.listener
        name = plugin_name(plugin)
        display = name or ANONYMOUS_PLUGIN
        log.debug("plugin_registering", listener=listener.kind.value, plugin=display)

        if name is not None:
            if name in self._mounted:
                log.warning(
                    "plugin_already_registered",
                    listener=listener.kind.value,
                    plugin=display,
                )
                return
            # Claimed before forwarding; a plugin may register its own children
            self._mounted.add(name)

        try:
            await self._forward(listener.app, plugin, dict(opts or {}))
        except Exception:
            if name is not None:
                self._mounted.discard(name)
            raise

        log.debug("plugin_registered", listener=listener.kind.value, plugin=display)

    async def _forward(self, app: FastAPI, plugin: Any, opts: dict[str, Any]) -> None:
        if isinstance(plugin, APIRouter):
            app.include_router(plugin, **opts)
        elif isinstance(plugin, Starlette):
            prefix = normalize_path(opts.get("prefix") or "")
            if prefix in ("", "/"):
                raise ValueError("Sub-applications must be mounted under a non-root prefix")
            app.mount(prefix, plugin, name=opts.get("name"))
        elif callable(plugin):
            result = plugin(app, opts)
            if inspect.isawaitable(result):
                await result
        else:
            raise TypeError(f"Cannot register {type(plugin).__name__} as a sub-application")
