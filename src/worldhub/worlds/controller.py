"""World session controller.

Checks a world slot out of the hub under a lease, loads its content within
the load ceiling, and hands checkpoints and results back to the hub. A device
whose lease has lapsed is not refused outright: its late writes are turned
into sync deltas and reconciled like any other concurrent change.
"""

from __future__ import annotations

import asyncio
import base64
import uuid
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog

from worldhub.config import Settings
from worldhub.errors import ContentLoadTimeout, HandleNotFound, WorldAlreadyActive, WorldLocked
from worldhub.hub.service import HubStateManager
from worldhub.hub.state import WORLD_COUNT, HubState, WorldStatus, check_world_index, validate_transition
from worldhub.persistence.codec import compress_blob, decompress_blob
from worldhub.persistence.store import LeaseRecord, SessionStore
from worldhub.sync.delta import OP_ACHIEVEMENT, OP_CHECKPOINT, OP_COMPLETE, SyncDelta
from worldhub.worlds.cache import WorldCache
from worldhub.worlds.content import (
    ContentBundle,
    ContentProvider,
    Fidelity,
    NetworkProfile,
    resolve_variant,
)

if TYPE_CHECKING:
    from worldhub.sync.service import Synchronizer

logger = structlog.get_logger()

FINISHED_HANDLES_KEPT = 1024


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WorldHandle:
    """Transient checked-out view of one world slot."""

    handle_id: str
    session_id: str
    world_index: int
    device_id: str
    fidelity: Fidelity
    bundle: ContentBundle
    lease_expires_at: datetime
    entered_at: datetime
    resumed: bool = False
    replay: bool = False
    clock: int = 0
    state_blob: bytes | None = None
    tasks: set[asyncio.Task] = field(default_factory=set, repr=False)


class WorldSessionController:
    def __init__(
        self,
        hub: HubStateManager,
        store: SessionStore,
        content: ContentProvider,
        cache: WorldCache,
        settings: Settings,
        synchronizer: Synchronizer | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._hub = hub
        self._store = store
        self._content = content
        self._cache = cache
        self._settings = settings
        self._clock = clock
        self._handles: dict[str, WorldHandle] = {}
        self._finished: OrderedDict[str, WorldHandle] = OrderedDict()
        self.synchronizer = synchronizer

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(seconds=self._settings.lease_idle_seconds)

    def handle(self, handle_id: str) -> WorldHandle:
        handle = self._handles.get(handle_id)
        if handle is None:
            raise HandleNotFound(handle_id=handle_id)
        return handle

    def lookup(self, handle_id: str) -> WorldHandle:
        """A live handle, or a recently completed one that may be retried."""
        handle = self._handles.get(handle_id) or self._finished.get(handle_id)
        if handle is None:
            raise HandleNotFound(handle_id=handle_id)
        return handle

    def active_handles(self, session_id: str) -> list[WorldHandle]:
        return [h for h in self._handles.values() if h.session_id == session_id]

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    async def enter(
        self,
        session_id: str,
        world_index: int,
        device_id: str,
        network: NetworkProfile | None = None,
    ) -> WorldHandle:
        """Check a world out for ``device_id``.

        Raises WorldLocked when the unlock rule is unmet and
        WorldAlreadyActive when another device holds a live lease.
        """
        check_world_index(world_index)
        handle_id = str(uuid.uuid4())
        outcome: dict[str, object] = {}

        async def checkout(state: HubState) -> bool:
            now = self._clock()
            world = state.world(world_index)
            if world.status is WorldStatus.LOCKED:
                raise WorldLocked(world_index=world_index)

            lease = await self._store.get_lease(session_id, world_index)
            if lease is not None and lease.is_active(now) and lease.device_id != device_id:
                logger.info(
                    "lease_conflict",
                    session_id=session_id, world_index=world_index, holder=lease.device_id, device_id=device_id,
                )
                raise WorldAlreadyActive(world_index=world_index)
            if lease is not None and lease.device_id == device_id:
                # Re-entry from the same device supersedes its previous handle
                self._forget_handle(lease.handle_id)

            await self._store.put_lease(LeaseRecord(
                session_id=session_id,
                world_index=world_index,
                handle_id=handle_id,
                device_id=device_id,
                acquired_at=now,
                expires_at=now + self.lease_duration,
            ))
            outcome["lease_expires_at"] = now + self.lease_duration
            outcome["resumed"] = world.status is WorldStatus.ABANDONED
            outcome["replay"] = world.is_completed
            outcome["blob"] = world.state_blob
            outcome["variant"] = state.cultural_context

            if world.status in (WorldStatus.UNLOCKED, WorldStatus.ABANDONED):
                validate_transition(world.status, WorldStatus.IN_PROGRESS)
                world.status = WorldStatus.IN_PROGRESS
                state.stamp(f"world.{world_index}.status", device_id)
            if world.started_at is None:
                world.started_at = now
            state.current_world_index = world_index
            return True

        entered = await self._hub.mutate(session_id, checkout, device_id=device_id)
        logger.info("lease_acquired", session_id=session_id, world_index=world_index, device_id=device_id)

        try:
            bundle = await self._load(session_id, world_index, str(outcome["variant"]), network)
        except ContentLoadTimeout:
            await self._store.release_lease(session_id, world_index, handle_id)
            await self._abandon(session_id, world_index, device_id)
            raise

        await self._apply_bundle_threshold(session_id, bundle, device_id)

        blob = outcome["blob"]
        handle = WorldHandle(
            handle_id=handle_id,
            session_id=session_id,
            world_index=world_index,
            device_id=device_id,
            fidelity=bundle.fidelity,
            bundle=bundle,
            lease_expires_at=outcome["lease_expires_at"],
            entered_at=self._clock(),
            resumed=bool(outcome["resumed"]),
            replay=bool(outcome["replay"]),
            clock=entered.clock,
            state_blob=decompress_blob(blob) if blob else None,
        )
        self._handles[handle_id] = handle
        logger.info(
            "world_entered",
            session_id=session_id, world_index=world_index, fidelity=bundle.fidelity.value,
            resumed=handle.resumed, replay=handle.replay,
        )
        return handle

    async def _load(
        self,
        session_id: str,
        world_index: int,
        cultural_context: str,
        network: NetworkProfile | None,
    ) -> ContentBundle:
        """Load a bundle within the ceiling, degrading to reduced fidelity."""
        key = (session_id, world_index)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.set_active(key, True)
            return cached

        ceiling = self._settings.content_load_ceiling_seconds
        descriptor = await self._content.describe(world_index, resolve_variant(cultural_context))
        fidelity = Fidelity.FULL
        if network is not None and network.estimated_seconds(descriptor.full_size_bytes) > ceiling:
            fidelity = Fidelity.REDUCED
            logger.info(
                "content_load_degraded",
                session_id=session_id, world_index=world_index, reason="estimate_over_ceiling",
            )

        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            bundle = await asyncio.wait_for(self._content.fetch(descriptor, fidelity), timeout=ceiling)
        except asyncio.TimeoutError:
            if fidelity is Fidelity.REDUCED:
                raise ContentLoadTimeout(world_index=world_index) from None
            logger.info(
                "content_load_degraded",
                session_id=session_id, world_index=world_index, reason="full_fetch_timeout",
            )
            remaining = max(ceiling - (loop.time() - started), 0.0)
            try:
                bundle = await asyncio.wait_for(
                    self._content.fetch(descriptor, Fidelity.REDUCED), timeout=max(remaining, ceiling / 2),
                )
            except asyncio.TimeoutError:
                logger.error("content_load_timeout", session_id=session_id, world_index=world_index)
                raise ContentLoadTimeout(world_index=world_index) from None

        self._cache.put(key, bundle, active=True)
        return bundle

    async def _apply_bundle_threshold(self, session_id: str, bundle: ContentBundle, device_id: str) -> None:
        async def override(state: HubState) -> bool:
            # thresholds of completed worlds are frozen
            if state.world(bundle.world_index).is_completed:
                return False
            if state.thresholds.get(bundle.world_index) == bundle.min_score_to_complete:
                return False
            state.thresholds[bundle.world_index] = bundle.min_score_to_complete
            return True

        await self._hub.mutate(session_id, override, device_id=device_id)

    # ------------------------------------------------------------------
    # Play
    # ------------------------------------------------------------------

    async def _holds_lease(self, handle: WorldHandle) -> bool:
        lease = await self._store.get_lease(handle.session_id, handle.world_index)
        return lease is not None and lease.handle_id == handle.handle_id and lease.is_active(self._clock())

    async def _refresh_lease(self, handle: WorldHandle) -> None:
        now = self._clock()
        handle.lease_expires_at = now + self.lease_duration
        await self._store.put_lease(LeaseRecord(
            session_id=handle.session_id,
            world_index=handle.world_index,
            handle_id=handle.handle_id,
            device_id=handle.device_id,
            acquired_at=handle.entered_at,
            expires_at=handle.lease_expires_at,
        ))

    async def _submit_late(self, handle: WorldHandle, *ops: dict) -> HubState:
        """Reconcile a write from a device whose lease lapsed."""
        logger.info(
            "lease_lost_write",
            session_id=handle.session_id, world_index=handle.world_index, device_id=handle.device_id,
            ops=[op["op"] for op in ops],
        )
        if self.synchronizer is None:
            raise WorldAlreadyActive(world_index=handle.world_index)
        handle.clock += 1
        delta = SyncDelta(
            device_id=handle.device_id,
            session_id=handle.session_id,
            clock=handle.clock,
            ops=list(ops),
        )
        result = await self.synchronizer.push(handle.session_id, handle.device_id, [delta])
        return result.state

    async def checkpoint(self, handle_id: str, state_blob: bytes) -> HubState:
        """Persist interim progress without finalizing a score."""
        handle = self.handle(handle_id)
        if not await self._holds_lease(handle):
            op = {
                "op": OP_CHECKPOINT,
                "world": handle.world_index,
                "blob": base64.b64encode(state_blob).decode(),
            }
            return await self._submit_late(handle, op)

        compressed = compress_blob(state_blob)
        elapsed_ms = int((self._clock() - handle.entered_at).total_seconds() * 1000)

        async def save(state: HubState) -> bool:
            world = state.world(handle.world_index)
            if world.is_completed:
                return False
            world.state_blob = compressed
            world.time_spent_ms = max(world.time_spent_ms, elapsed_ms)
            state.stamp(f"world.{handle.world_index}.blob", handle.device_id)
            return True

        state = await self._hub.mutate(handle.session_id, save, device_id=handle.device_id)
        handle.state_blob = state_blob
        handle.clock = state.clock
        await self._refresh_lease(handle)
        logger.debug("world_checkpoint", session_id=handle.session_id, world_index=handle.world_index)
        return state

    async def complete(self, handle_id: str, final_score: int, achievement_flags: list[str] | None = None) -> HubState:
        """Finalize the world and release the lease."""
        finished = self._finished.get(handle_id)
        if finished is not None:
            # Retried request: the result is already recorded
            return await self._hub.get(finished.session_id)
        handle = self.handle(handle_id)
        flags = list(achievement_flags or [])
        elapsed_ms = int((self._clock() - handle.entered_at).total_seconds() * 1000)

        if not await self._holds_lease(handle):
            op = {
                "op": OP_COMPLETE,
                "world": handle.world_index,
                "score": final_score,
                "time_spent_ms": elapsed_ms,
                "completed_at": self._clock().isoformat(),
            }
            achievements = [{"op": OP_ACHIEVEMENT, "id": flag} for flag in flags]
            state = await self._submit_late(handle, op, *achievements)
        else:
            state = await self._hub.apply_world_completion(
                handle.session_id,
                handle.world_index,
                final_score,
                flags,
                device_id=handle.device_id,
                time_spent_ms=elapsed_ms,
            )
            await self._store.release_lease(handle.session_id, handle.world_index, handle.handle_id)

        self._close(handle)
        self._finished[handle_id] = handle
        while len(self._finished) > FINISHED_HANDLES_KEPT:
            self._finished.popitem(last=False)
        return state

    async def exit(self, handle_id: str) -> HubState:
        """Leave without completing: in_progress becomes abandoned."""
        handle = self.handle(handle_id)
        self._close(handle)

        if not await self._holds_lease(handle):
            logger.info("world_exit_after_lease_lost", session_id=handle.session_id, world_index=handle.world_index)
            return await self._hub.get(handle.session_id)

        state = await self._abandon(handle.session_id, handle.world_index, handle.device_id)
        await self._store.release_lease(handle.session_id, handle.world_index, handle.handle_id)
        logger.info("world_exited", session_id=handle.session_id, world_index=handle.world_index)
        return state

    async def _abandon(self, session_id: str, world_index: int, device_id: str) -> HubState:
        async def abandon(state: HubState) -> bool:
            world = state.world(world_index)
            if world.status is not WorldStatus.IN_PROGRESS:
                if state.current_world_index == world_index:
                    state.current_world_index = None
                    return True
                return False
            validate_transition(world.status, WorldStatus.ABANDONED)
            world.status = WorldStatus.ABANDONED
            state.stamp(f"world.{world_index}.status", device_id)
            if state.current_world_index == world_index:
                state.current_world_index = None
            return True

        return await self._hub.mutate(session_id, abandon, device_id=device_id)

    def _close(self, handle: WorldHandle) -> None:
        # Persistence writes are awaited inline and never cancelled here
        for task in list(handle.tasks):
            task.cancel()
        handle.tasks.clear()
        self._cache.set_active((handle.session_id, handle.world_index), False)
        self._handles.pop(handle.handle_id, None)

    def _forget_handle(self, handle_id: str) -> None:
        handle = self._handles.get(handle_id)
        if handle is not None:
            self._close(handle)

    # ------------------------------------------------------------------
    # Prefetch and housekeeping
    # ------------------------------------------------------------------

    def prefetch_adjacent(self, handle_id: str) -> asyncio.Task | None:
        """Warm the cache with the next world. Cancelled on exit."""
        handle = self.handle(handle_id)
        next_index = handle.world_index + 1
        if next_index > WORLD_COUNT or (handle.session_id, next_index) in self._cache:
            return None

        async def prefetch() -> None:
            state = await self._hub.get(handle.session_id)
            descriptor = await self._content.describe(next_index, resolve_variant(state.cultural_context))
            bundle = await self._content.fetch(descriptor, handle.fidelity)
            self._cache.put((handle.session_id, next_index), bundle, active=False)
            logger.debug("world_prefetched", session_id=handle.session_id, world_index=next_index)

        task = asyncio.create_task(prefetch())
        handle.tasks.add(task)
        task.add_done_callback(handle.tasks.discard)
        return task

    async def expire_idle_leases(self, now: datetime | None = None) -> int:
        """Release lapsed leases and mark their in-progress worlds abandoned."""
        now = now or self._clock()
        expired = await self._store.expired_leases(now)
        for lease in expired:
            if not await self._store.release_lease(lease.session_id, lease.world_index, lease.handle_id):
                continue
            await self._abandon(lease.session_id, lease.world_index, lease.device_id)
            logger.info(
                "lease_expired",
                session_id=lease.session_id, world_index=lease.world_index, device_id=lease.device_id,
            )
        return len(expired)

    def drop_session(self, session_id: str) -> None:
        for handle in self.active_handles(session_id):
            self._close(handle)
        for handle_id in [k for k, h in self._finished.items() if h.session_id == session_id]:
            del self._finished[handle_id]
        self._cache.discard_session(session_id)
