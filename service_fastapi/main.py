"""service-fastapi — process entry point.

Builds the listeners from environment/.env settings, serves until SIGINT or
SIGTERM, then closes every listener.
"""

from __future__ import annotations

import asyncio
import signal

import structlog

from service_fastapi.config import ServerSettings
from service_fastapi.logging import setup_logging
from service_fastapi.service import FastAPIService

log = structlog.get_logger()


async def main(
    settings: ServerSettings | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """Start the control plane and block until a shutdown signal arrives."""
    settings = settings or ServerSettings()
    setup_logging(
        log_level=settings.log_level,
        json_logs=settings.json_logs,
        service_name=settings.service_name,
    )

    service = FastAPIService(settings)
    await service.init()

    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows doesn't support add_signal_handler

    await service.run()
    await stop.wait()

    log.info("service-fastapi received shutdown signal")
    await service.dispose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
