"""Bridges Redis pub/sub to WebSocket clients.

Hub commits are published on ``worldhub:session:<session_id>``; every API process
forwards them to its own sockets for that session, skipping the device the
change came from.
"""

import asyncio
import json

import redis.asyncio as aioredis
import structlog

from worldhub.redis_client import SESSION_CHANNEL_PATTERN, session_from_channel
from worldhub.ws.manager import ConnectionManager, manager

logger = structlog.get_logger()


class PubSubBridge:
    """Subscribes to Redis pub/sub and pushes messages to WebSocket clients."""

    def __init__(self, redis_client: aioredis.Redis, connections: ConnectionManager = manager) -> None:
        self.redis = redis_client
        self.connections = connections
        self._running = False

    async def dispatch(self, redis_channel: str, data: str | bytes) -> int:
        """Forward one published message. Returns the number of recipients."""
        session_id = session_from_channel(redis_channel)
        if session_id is None:
            return 0
        try:
            if isinstance(data, bytes):
                data = data.decode()
            payload = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("pubsub_invalid_message", channel=redis_channel)
            return 0

        sent = await self.connections.send_to_session(
            session_id,
            {"type": payload.get("event", "hub_updated"), "payload": payload.get("data", payload)},
            exclude_device=payload.get("origin_device"),
        )
        if sent > 0:
            logger.debug("hub_update_forwarded", session_id=session_id, recipients=sent)
        return sent

    async def start(self) -> None:
        """Start listening to the session channels."""
        self._running = True
        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(SESSION_CHANNEL_PATTERN)
        logger.info("pubsub_bridge_started", patterns=[SESSION_CHANNEL_PATTERN])

        try:
            while self._running:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                redis_channel = message.get("channel", "")
                if isinstance(redis_channel, bytes):
                    redis_channel = redis_channel.decode()
                await self.dispatch(redis_channel, message.get("data", b""))
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.punsubscribe()
            await pubsub.close()
            logger.info("pubsub_bridge_stopped")

    async def stop(self) -> None:
        """Signal the bridge to stop."""
        self._running = False
