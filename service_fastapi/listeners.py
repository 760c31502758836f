"""Listener pool: builds, starts and stops the HTTP/HTTPS/health servers.

Each listener is a FastAPI application served by its own uvicorn server on a
socket bound by the pool. Listeners start and fail independently; a bind
failure on one never prevents its siblings from serving.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import socket
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from enum import Enum

import structlog
import uvicorn
from fastapi import FastAPI

from service_fastapi.config import ServerSettings
from service_fastapi.errors import ListenerConfigError
from service_fastapi.metrics import LogMetrics, Metrics
from service_fastapi.middleware import (
    RequestLoggingMiddleware,
    TrustedProxyMiddleware,
    install_error_boundary,
)

log = structlog.get_logger()

_STARTUP_POLL_SECONDS = 0.01


class ListenerKind(str, Enum):
    HTTP = "HTTP"
    HTTPS = "HTTPS"
    HEALTH = "HEALTH"


@dataclass
class ListenerHandle:
    """One listener and the server objects it exclusively owns."""

    kind: ListenerKind
    port: int
    app: FastAPI
    scheme: str = "http"
    server: uvicorn.Server | None = None
    bound_address: str | None = None
    closed: bool = False
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class _ListenerServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def _lifespan(kind: ListenerKind):
    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("listener starting up", listener=kind.value)
        yield
        log.info("listener shutting down", listener=kind.value)

    return lifespan


def create_listener_app(
    kind: ListenerKind, settings: ServerSettings, metrics: Metrics
) -> FastAPI:
    """Construct the FastAPI application behind one listener."""
    application = FastAPI(
        title=f"{settings.service_name} [{kind.value}]",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=_lifespan(kind),
    )

    install_error_boundary(application, kind.value)
    application.add_middleware(
        RequestLoggingMiddleware,
        listener=kind.value,
        metrics=metrics,
        production=settings.is_production,
    )
    # Added last so it wraps everything else
    if settings.behind_traefik_with_cloudflare_warp:
        log.info("cloudflarewarp parser enabled", listener=kind.value)
        application.add_middleware(
            TrustedProxyMiddleware, production=settings.is_production
        )

    return application


def _require_file(path: str | None, what: str) -> str:
    if not path or not os.path.isfile(path) or not os.access(path, os.R_OK):
        raise ListenerConfigError(
            f"HTTPS cert config is invalid - {what}:{path if path else 'null'}"
        )
    return path


def _bind_socket(
    host: str, port: int, *, exclusive: bool, ipv6_only: bool
) -> socket.socket:
    family, sock_type, proto, _, address = socket.getaddrinfo(
        host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
    )[0]
    sock = socket.socket(family, sock_type, proto)
    try:
        if not exclusive:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if family == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, int(ipv6_only))
        sock.bind(address)
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def _format_address(scheme: str, sock: socket.socket) -> str:
    host, port = sock.getsockname()[:2]
    if sock.family == socket.AF_INET6:
        host = f"[{host}]"
    return f"{scheme}://{host}:{port}"


class ListenerPool:
    """Owns the application listener and the optional dedicated health listener."""

    def __init__(self, settings: ServerSettings, metrics: Metrics | None = None) -> None:
        self._settings = settings
        self._metrics = metrics or LogMetrics()
        self._handles: dict[ListenerKind, ListenerHandle] = {}

        if settings.server_type == "https":
            self._tls = (
                _require_file(settings.https_cert, "cert"),
                _require_file(settings.https_key, "key"),
            )
        else:
            self._tls = None

        if settings.health_on_dedicated_listener:
            self._add(ListenerKind.HEALTH, settings.health_server_port)
        if settings.server_type == "http":
            self._add(ListenerKind.HTTP, settings.http_port)
        else:
            self._add(ListenerKind.HTTPS, settings.https_port, scheme="https")

    def _add(self, kind: ListenerKind, port: int, scheme: str = "http") -> None:
        app = create_listener_app(kind, self._settings, self._metrics)
        self._handles[kind] = ListenerHandle(kind=kind, port=port, app=app, scheme=scheme)
        log.info(
            "listener_ready",
            listener=kind.value,
            host=self._settings.host,
            port=port,
        )

    @property
    def handles(self) -> list[ListenerHandle]:
        return list(self._handles.values())

    def get(self, kind: ListenerKind) -> ListenerHandle | None:
        return self._handles.get(kind)

    @property
    def selected(self) -> ListenerHandle:
        """The listener that serves application routes."""
        if self._settings.server_type == "http":
            return self._handles[ListenerKind.HTTP]
        return self._handles[ListenerKind.HTTPS]

    @property
    def health_listener(self) -> ListenerHandle | None:
        return self._handles.get(ListenerKind.HEALTH)

    async def start(self) -> None:
        """Bind and serve every listener; failures are reported per listener."""
        for handle in self._handles.values():
            if handle.task is None and not handle.closed:
                await self._start_listener(handle)

    async def _start_listener(self, handle: ListenerHandle) -> None:
        settings = self._settings
        try:
            sock = _bind_socket(
                settings.host,
                handle.port,
                exclusive=settings.exclusive,
                ipv6_only=settings.ipv6_only,
            )
        except OSError as exc:
            self._report_failure(handle, exc)
            return

        config = uvicorn.Config(
            handle.app,
            log_config=None,
            access_log=False,
            # Client addresses are only rewritten by the trust gate
            proxy_headers=False,
            lifespan="auto",
            ssl_certfile=self._tls[0] if handle.kind is ListenerKind.HTTPS else None,
            ssl_keyfile=self._tls[1] if handle.kind is ListenerKind.HTTPS else None,
        )
        server = _ListenerServer(config)
        handle.server = server
        handle.task = asyncio.create_task(
            server.serve(sockets=[sock]), name=f"listener-{handle.kind.value}"
        )

        while not server.started and not handle.task.done():
            await asyncio.sleep(_STARTUP_POLL_SECONDS)

        if not server.started:
            exc = handle.task.exception() or RuntimeError("server exited during startup")
            sock.close()
            handle.server = None
            handle.task = None
            self._report_failure(handle, exc)
            return

        handle.bound_address = _format_address(handle.scheme, sock)
        log.info(
            "listener_listening",
            listener=handle.kind.value,
            address=handle.bound_address,
        )

    def _report_failure(self, handle: ListenerHandle, exc: BaseException) -> None:
        log.error(
            "listener_bind_failed",
            listener=handle.kind.value,
            host=self._settings.host,
            port=handle.port,
            error=str(exc),
        )
        self._metrics.event(
            "listener_bind_failed",
            listener=handle.kind.value,
            port=handle.port,
            error=str(exc),
        )

    async def stop(self) -> None:
        """Close every started listener exactly once."""
        for handle in self._handles.values():
            await self._stop_listener(handle)

    async def _stop_listener(self, handle: ListenerHandle) -> None:
        if handle.closed or handle.task is None:
            return
        handle.closed = True
        if handle.server is not None:
            handle.server.should_exit = True
        try:
            await handle.task
        except Exception as exc:
            log.error("listener_close_failed", listener=handle.kind.value, error=str(exc))
            return
        log.info("listener_closed", listener=handle.kind.value)
