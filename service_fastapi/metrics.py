"""Narrow metrics interface.

The control plane only ever emits events, counters and gauges. ``LogMetrics``
writes each sample as a structured ``metric`` log line; hosts with a real
metrics backend pass their own implementation.
"""

from __future__ import annotations

from typing import Any, Protocol

import structlog


class Metrics(Protocol):
    def event(self, name: str, **fields: Any) -> None: ...

    def counter(self, name: str, value: float = 1, **labels: Any) -> None: ...

    def gauge(self, name: str, value: float, **labels: Any) -> None: ...


class LogMetrics:
    """Metrics sink backed by structlog."""

    def __init__(self, logger: structlog.stdlib.BoundLogger | None = None) -> None:
        self._log = logger or structlog.get_logger("service_fastapi.metrics")

    def event(self, name: str, **fields: Any) -> None:
        self._log.info("metric", kind="event", name=name, **fields)

    def counter(self, name: str, value: float = 1, **labels: Any) -> None:
        self._log.debug("metric", kind="counter", name=name, value=value, **labels)

    def gauge(self, name: str, value: float, **labels: Any) -> None:
        self._log.debug("metric", kind="gauge", name=name, value=value, **labels)
