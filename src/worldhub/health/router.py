"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import text

from worldhub.config import get_settings
from worldhub.dependencies import get_services
from worldhub.redis_client import get_redis
from worldhub.services import Services

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness check: 200 if the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(services: Services = Depends(get_services)) -> dict[str, object]:
    """Readiness check: checks DB and Redis connectivity and pending commits."""
    checks: dict[str, object] = {}

    try:
        async with services.store.session_factory() as db:
            result = await db.execute(text("SELECT 1"))
            result.scalar()
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    try:
        redis = get_redis()
        await redis.ping()
        checks["redis"] = "ok"
    except Exception as exc:
        checks["redis"] = f"error: {exc}"

    all_ok = all(v == "ok" for v in checks.values())
    return {
        "status": "ready" if all_ok else "degraded",
        "checks": checks,
        "provisional_commits": services.commits.pending_count,
        "world_cache": services.cache.stats,
    }


@router.get("/version")
async def version() -> dict[str, str]:
    """Return API version and environment."""
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
    }
