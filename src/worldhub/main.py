"""FastAPI application factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress

import structlog
from fastapi import FastAPI

from worldhub.auth.router import router as auth_router
from worldhub.config import get_settings
from worldhub.database import close_db, create_schema, get_session_factory, init_db
from worldhub.health.router import router as health_router
from worldhub.hub.router import router as hub_router
from worldhub.middleware import setup_middleware
from worldhub.privacy.router import router as privacy_router
from worldhub.redis_client import close_redis, get_redis, init_redis
from worldhub.services import build_services
from worldhub.sync.router import router as sync_router
from worldhub.workers.maintenance import MaintenanceSweeper
from worldhub.worlds.router import router as worlds_router
from worldhub.ws.bridge import PubSubBridge
from worldhub.ws.router import router as ws_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await create_schema()
    await init_redis(settings.redis_url)

    redis = get_redis()
    services = build_services(settings, get_session_factory(), redis=redis)
    app.state.services = services

    bridge = PubSubBridge(redis)
    sweeper = MaintenanceSweeper(services)
    tasks = [asyncio.create_task(bridge.start()), asyncio.create_task(sweeper.run_forever())]
    logger.info("worldhub_started", version=settings.app_version, environment=settings.environment)

    yield

    await bridge.stop()
    sweeper.stop()
    for task in tasks:
        task.cancel()
    for task in tasks:
        with suppress(asyncio.CancelledError):
            await task

    await services.close()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="World Hub API",
        description="Progression engine for multi-world training sessions",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(auth_router)
    app.include_router(hub_router)
    app.include_router(worlds_router)
    app.include_router(sync_router)
    app.include_router(privacy_router)
    app.include_router(ws_router)

    return app


app = create_app()
