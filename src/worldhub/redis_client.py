"""Redis connection pool and worldhub key naming.

Every key and channel lives under the ``worldhub:`` namespace so several
services can share one Redis instance.
"""

import redis.asyncio as redis

KEY_PREFIX = "worldhub"
SESSION_CHANNEL_PREFIX = f"{KEY_PREFIX}:session:"
SESSION_CHANNEL_PATTERN = f"{SESSION_CHANNEL_PREFIX}*"

_pool: redis.Redis | None = None


def session_channel(session_id: str) -> str:
    """Pub/sub channel carrying committed hub states of one session."""
    return f"{SESSION_CHANNEL_PREFIX}{session_id}"


def session_from_channel(channel: str) -> str | None:
    """Inverse of ``session_channel``; None for foreign channels."""
    if not channel.startswith(SESSION_CHANNEL_PREFIX):
        return None
    return channel[len(SESSION_CHANNEL_PREFIX):] or None


def rate_limit_key(bucket: str, client: str, window: int) -> str:
    """Counter for one client in one fixed rate-limit window."""
    return f"{KEY_PREFIX}:ratelimit:{bucket}:{client}:{window}"


async def init_redis(url: str) -> None:
    """Initialize the Redis connection pool."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis:
    """Get the Redis client (FastAPI dependency)."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool
