"""Device-side replica: a logical clock and an offline buffer of deltas."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from worldhub.errors import PersistenceUnavailable
from worldhub.hub.state import HubState
from worldhub.sync.delta import SyncDelta
from worldhub.sync.service import SyncResult, Synchronizer

logger = structlog.get_logger()


class DeviceReplica:
    """What one device knows about a session.

    Changes made while offline are buffered as deltas stamped with the
    device's Lamport clock and sent on the next ``flush``.
    """

    def __init__(self, session_id: str, device_id: str, state: HubState | None = None) -> None:
        self.session_id = session_id
        self.device_id = device_id
        self.state = state
        self.clock = state.clock if state is not None else 0
        self.buffer: list[SyncDelta] = []
        self.syncing = False

    def record(self, *ops: dict[str, Any]) -> SyncDelta:
        self.clock += 1
        delta = SyncDelta(device_id=self.device_id, session_id=self.session_id, clock=self.clock, ops=list(ops))
        self.buffer.append(delta)
        return delta

    def observe(self, state: HubState) -> None:
        self.state = state
        self.clock = max(self.clock, state.clock)

    async def flush(self, synchronizer: Synchronizer, timeout: float | None = None) -> SyncResult | None:
        """Send buffered deltas. On failure the buffer is kept for the next attempt."""
        if not self.buffer:
            return None
        self.syncing = True
        try:
            result = await asyncio.wait_for(
                synchronizer.push(self.session_id, self.device_id, list(self.buffer)),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, PersistenceUnavailable):
            logger.info("replica_flush_deferred", session_id=self.session_id, device_id=self.device_id)
            return None
        finally:
            self.syncing = False
        self.buffer.clear()
        self.observe(result.state)
        return result

    async def refresh(self, synchronizer: Synchronizer) -> HubState:
        self.observe(await synchronizer.pull(self.session_id))
        return self.state
