"""Standalone runner for the maintenance sweep.

Usage: python -m worldhub.workers.maintenance_runner
"""

from __future__ import annotations

import asyncio
import logging
import signal

from worldhub.config import get_settings
from worldhub.database import close_db, create_schema, get_session_factory, init_db
from worldhub.middleware.logging import setup_logging
from worldhub.redis_client import close_redis, get_redis, init_redis
from worldhub.services import build_services
from worldhub.workers.maintenance import MaintenanceSweeper

logger = logging.getLogger(__name__)


async def main() -> None:
    """Run the maintenance sweep until SIGINT/SIGTERM."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    await create_schema()
    await init_redis(settings.redis_url)

    services = build_services(settings, get_session_factory(), redis=get_redis())
    sweeper = MaintenanceSweeper(services)

    loop = asyncio.get_running_loop()
    task = asyncio.create_task(sweeper.run_forever())

    def _stop() -> None:
        sweeper.stop()
        task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _stop)

    logger.info("Starting maintenance sweep (interval=%ss)", settings.maintenance_interval_seconds)

    try:
        await task
    except asyncio.CancelledError:
        pass
    finally:
        await services.close()
        await close_redis()
        await close_db()
        logger.info("Maintenance sweep stopped")


if __name__ == "__main__":
    asyncio.run(main())
