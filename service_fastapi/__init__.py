"""Control plane for HTTP/HTTPS listeners: route gateway and health registry."""

from service_fastapi.client import FastAPIServiceClient
from service_fastapi.config import ServerSettings
from service_fastapi.gateway import Reply, Verb, named_plugin, normalize_path
from service_fastapi.logging import setup_logging
from service_fastapi.service import FastAPIService

__all__ = [
    "FastAPIService",
    "FastAPIServiceClient",
    "Reply",
    "ServerSettings",
    "Verb",
    "named_plugin",
    "normalize_path",
    "setup_logging",
]
