from __future__ import annotations

"""Service entrypoint: store -> engine -> supervisor -> host in one process."""

import asyncio

from loguru import logger

from .config import Settings, get_settings
from .host import AsyncioHost
from .main import build_service, configure_logger


async def run_app(settings: Settings | None = None) -> bool:
    """Boot the monitoring service and run until SIGINT/SIGTERM."""
    settings = settings or get_settings()
    configure_logger(settings)

    engine, supervisor = build_service(settings)
    host = AsyncioHost(engine, supervisor, settings)
    logger.info(
        "netguard starting state_dir={} targets={} background={}",
        settings.STATE_DIR,
        len(engine.targets),
        engine.is_background(),
    )
    try:
        return await host.run()
    finally:
        engine.on_suspend()


def main() -> None:
    """Console script entrypoint for the long-running service."""
    raise SystemExit(0 if asyncio.run(run_app()) else 2)


if __name__ == "__main__":
    main()
