"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from fastapi import Request

from worldhub.redis_client import get_redis as _get_redis
from worldhub.services import Services


def get_services(request: Request) -> Services:
    """The engine wired up at startup."""
    return request.app.state.services


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client as a FastAPI dependency."""
    yield _get_redis()
