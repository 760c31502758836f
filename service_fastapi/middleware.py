"""ASGI middleware and hooks shared by every listener.

Per request, hooks run in a fixed order: trust gate, request logging
("on request"), route handler, request logging ("on response"). Unhandled
handler errors are answered by the error boundary with a bare 500.
"""

from __future__ import annotations

import socket
import time
import uuid

import structlog
from fastapi import FastAPI
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.types import ASGIApp

from service_fastapi.metrics import Metrics

log = structlog.get_logger()

_REQUEST_HEADER = "X-Request-ID"

TRUST_HEADER = "X-Is-Trusted"
TRUSTED_VALUE = "yes"
REAL_IP_HEADER = "X-Real-Ip"

SERVER_ERROR_BODY = "SERVER ERROR"

_MAX_LOGGED_LENGTH = 255
_NODE = socket.gethostname()


def _clean(value: str | None) -> str:
    return (value or "")[:_MAX_LOGGED_LENGTH]


def _client_host(request: Request) -> str | None:
    return request.client.host if request.client else None


def _content_length(raw: str | None) -> int:
    try:
        return int(raw) if raw is not None else -1
    except ValueError:
        return -1


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a request ID, logs requests/responses and emits request metrics."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        listener: str,
        metrics: Metrics,
        production: bool = False,
    ) -> None:
        super().__init__(app)
        self._listener = listener
        self._metrics = metrics
        self._production = production

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(_REQUEST_HEADER, str(uuid.uuid4()))
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            listener=self._listener,
        )

        labels = {
            "listener": self._listener,
            "method": request.method,
            "hostname": _clean(request.url.hostname),
            "path": _clean(request.url.path),
        }
        self._metrics.counter("http_requests", 1, node=_NODE, **labels)
        self._metrics.gauge(
            "http_request_content_length",
            _content_length(request.headers.get("content-length")),
            **labels,
        )
        if not self._production:
            log.debug(
                "request_received",
                method=request.method,
                hostname=_clean(request.url.hostname),
                url=_clean(str(request.url)),
                ip=_client_host(request),
                headers=", ".join(f"{k}={v}" for k, v in request.headers.items()),
            )

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._record_response(request, labels, 500, started)
            raise

        response.headers[_REQUEST_HEADER] = request_id
        self._record_response(request, labels, response.status_code, started)
        return response

    def _record_response(
        self,
        request: Request,
        labels: dict[str, str],
        status_code: int,
        started: float,
    ) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000
        self._metrics.gauge("http_response_status", status_code, node=_NODE, **labels)
        self._metrics.gauge("http_response_time_ms", elapsed_ms, node=_NODE, **labels)
        if not self._production:
            log.debug(
                "request_completed",
                method=request.method,
                hostname=_clean(request.url.hostname),
                url=_clean(str(request.url)),
                ip=_client_host(request),
                status_code=status_code,
                duration_ms=round(elapsed_ms, 2),
            )


class TrustedProxyMiddleware(BaseHTTPMiddleware):
    """Trust gate for deployments behind traefik with the cloudflarewarp plugin.

    Requests whose ``X-Is-Trusted`` header is not exactly ``yes`` are refused
    with 403. Trusted requests have their client address replaced with the
    ``X-Real-Ip`` header so that everything downstream sees the real caller.
    Must be the outermost middleware.
    """

    def __init__(self, app: ASGIApp, *, production: bool = False) -> None:
        super().__init__(app)
        self._production = production

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        status = request.headers.get(TRUST_HEADER)
        source = _client_host(request)
        if status != TRUSTED_VALUE:
            log.warning(
                "cloudflarewarp_untrusted_request",
                status=status if status is not None else "unset",
                ip=source,
            )
            return PlainTextResponse("Forbidden", status_code=403)

        real_ip = request.headers.get(REAL_IP_HEADER)
        if not self._production:
            log.debug(
                "cloudflarewarp_client_rewritten",
                status=status,
                ip=source,
                real_ip=real_ip or "unset",
            )
        if real_ip:
            port = request.client.port if request.client else 0
            request.scope["client"] = (real_ip, port)
        return await call_next(request)


def install_error_boundary(app: FastAPI, listener: str) -> None:
    """Answer any unhandled handler exception with a 500 and a fixed body."""

    async def handle_error(request: Request, exc: Exception) -> Response:
        log.error(
            "request_error_handled",
            listener=listener,
            status_code=getattr(exc, "status_code", "-"),
            message=str(exc),
        )
        return PlainTextResponse(SERVER_ERROR_BODY, status_code=500)

    app.add_exception_handler(Exception, handle_error)
