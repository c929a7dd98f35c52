"""WebSocket connection manager.

Tracks the live connections of every hub session, keyed by device, and fans
hub updates out to them.
"""

import json
import time
from collections import defaultdict
from dataclasses import dataclass, field

import structlog
from fastapi import WebSocket

logger = structlog.get_logger()


@dataclass
class ClientConnection:
    """Represents a single WebSocket client."""

    websocket: WebSocket
    session_id: str
    device_id: str
    connected_at: float = field(default_factory=time.time)
    messages_sent: int = 0


class ConnectionManager:
    """Manages all active WebSocket connections.

    Safe for asyncio via the single-threaded event loop.
    """

    def __init__(self) -> None:
        self._connections: dict[str, ClientConnection] = {}  # conn_id -> client
        self._sessions: dict[str, set[str]] = defaultdict(set)  # session_id -> {conn_ids}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket, conn_id: str, session_id: str, device_id: str) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self._connections[conn_id] = ClientConnection(
            websocket=websocket,
            session_id=session_id,
            device_id=device_id,
        )
        self._sessions[session_id].add(conn_id)
        logger.info("ws_connected", conn_id=conn_id, session_id=session_id, device_id=device_id)

    async def disconnect(self, conn_id: str) -> None:
        client = self._connections.pop(conn_id, None)
        if client is None:
            return
        self._sessions[client.session_id].discard(conn_id)
        if not self._sessions[client.session_id]:
            del self._sessions[client.session_id]
        logger.info("ws_disconnected", conn_id=conn_id, session_id=client.session_id)

    async def send_to_session(self, session_id: str, message: dict, exclude_device: str | None = None) -> int:
        """Send ``message`` to every connection of the session except ``exclude_device``.

        Returns the number of clients that received it.
        """
        conn_ids = list(self._sessions.get(session_id, set()))
        payload = json.dumps(message)
        sent = 0
        failed: list[str] = []

        for conn_id in conn_ids:
            client = self._connections.get(conn_id)
            if client is None:
                failed.append(conn_id)
                continue
            if exclude_device is not None and client.device_id == exclude_device:
                continue
            try:
                await client.websocket.send_text(payload)
                client.messages_sent += 1
                sent += 1
            except Exception:
                failed.append(conn_id)

        for conn_id in failed:
            await self.disconnect(conn_id)
        return sent

    async def close_session(self, session_id: str, code: int = 4004, reason: str = "Session erased") -> None:
        for conn_id in list(self._sessions.get(session_id, set())):
            client = self._connections.get(conn_id)
            if client is not None:
                try:
                    await client.websocket.close(code=code, reason=reason)
                except Exception:
                    logger.debug("ws_close_failed", conn_id=conn_id, exc_info=True)
            await self.disconnect(conn_id)

    def get_stats(self) -> dict:
        return {
            "total_connections": len(self._connections),
            "sessions": len(self._sessions),
        }


# Global singleton
manager = ConnectionManager()
