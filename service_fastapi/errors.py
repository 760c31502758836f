"""Exceptions raised by the listener control plane."""

from __future__ import annotations


class ServiceFastAPIError(Exception):
    """Base class for all control-plane errors."""


class ListenerConfigError(ServiceFastAPIError):
    """A listener cannot be built from the given settings.

    Raised at construction, before any socket is bound.
    """


class HealthCheckError(ServiceFastAPIError):
    """A health check could not be registered."""


class CapacityExceeded(HealthCheckError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Cannot add more than {limit} health checks")
        self.limit = limit


class DuplicateCheck(HealthCheckError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Cannot set health check where one already exists: {key}")
        self.key = key


class UnknownMethod(ServiceFastAPIError):
    def __init__(self, method: str) -> None:
        super().__init__(f"Unknown method: {method}")
        self.method = method
