"""Cross-device synchronizer.

Devices push buffered deltas; the synchronizer logs them, merges them into
the hub through the hub's single writer path, and every committed hub change
is fanned out over Redis to the other devices of the session.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from dataclasses import dataclass

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from worldhub.config import Settings
from worldhub.errors import PersistenceUnavailable
from worldhub.hub.schemas import HubResponse
from worldhub.hub.service import HubStateManager
from worldhub.hub.state import HubState
from worldhub.persistence.store import SessionStore
from worldhub.redis_client import session_channel
from worldhub.sync.delta import SyncDelta
from worldhub.sync.merge import MergeReport, apply_deltas

logger = structlog.get_logger()

@dataclass
class SyncResult:
    state: HubState
    report: MergeReport
    logged: int


class Synchronizer:
    """Reconciles concurrent updates from the devices sharing one code."""

    def __init__(
        self,
        hub: HubStateManager,
        store: SessionStore,
        settings: Settings,
        redis: aioredis.Redis | None = None,
    ) -> None:
        self._hub = hub
        self._store = store
        self._settings = settings
        self._redis = redis
        hub.add_listener(self.broadcast)

    async def push(self, session_id: str, device_id: str, deltas: Iterable[SyncDelta]) -> SyncResult:
        """Merge a device's buffered deltas and return the reconciled state.

        Re-sending the same deltas is harmless: every merge rule is a max or
        a union, so replays leave the state unchanged.
        """
        batch = []
        for delta in deltas:
            delta.session_id = session_id
            delta.device_id = device_id
            batch.append(delta)

        now = self._hub.now()
        try:
            logged = await self._store.append_deltas(batch, now)
        except PersistenceUnavailable:
            logged = 0
            logger.warning("sync_log_unavailable", session_id=session_id, device_id=device_id, exc_info=True)

        report = MergeReport()

        async def merge(state: HubState) -> bool:
            nonlocal report
            report = apply_deltas(state, batch, now)
            return report.applied > 0

        state = await self._hub.mutate(session_id, merge, device_id=device_id)

        try:
            await self._store.mark_applied(d.delta_id for d in batch)
        except PersistenceUnavailable:
            logger.warning("sync_mark_applied_failed", session_id=session_id, exc_info=True)

        logger.info(
            "sync_push",
            session_id=session_id,
            device_id=device_id,
            deltas=len(batch),
            applied=report.applied,
            rejected=report.rejected,
            conflicts=report.conflicts,
        )
        return SyncResult(state=state, report=report, logged=logged)

    async def pull(self, session_id: str) -> HubState:
        """Authoritative state for a device catching up."""
        return await self._hub.get(session_id)

    async def broadcast(self, state: HubState, origin_device: str) -> None:
        """Publish a committed hub state to the session's other devices."""
        if self._redis is None:
            return
        message = {
            "event": "hub_updated",
            "origin_device": origin_device,
            "data": HubResponse.from_state(state).model_dump(mode="json"),
        }
        try:
            await asyncio.wait_for(
                self._redis.publish(session_channel(state.session_id), json.dumps(message)),
                timeout=self._settings.sync_timeout_seconds,
            )
        except (asyncio.TimeoutError, RedisError, OSError):
            # Devices fall back to pull and show a syncing indicator
            logger.warning("sync_broadcast_failed", session_id=state.session_id, exc_info=True)
