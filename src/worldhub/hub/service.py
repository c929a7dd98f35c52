"""Hub state manager: the single writer of hub sessions.

Every mutation runs under a per-session lock, recomputes derived totals,
unlocks and achievements from scratch, commits, and then notifies listeners
(the synchronizer) outside the lock.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta, timezone

import structlog

from worldhub.achievements.aggregator import newly_unlocked
from worldhub.auth.service import SessionHandle
from worldhub.config import Settings
from worldhub.errors import PersistenceUnavailable, SessionNotFound, WorldLocked
from worldhub.hub.state import (
    HubState,
    WorldStatus,
    apply_unlocks,
    check_world_index,
    default_thresholds,
    new_hub_state,
    unlock_eligibility,
    validate_transition,
)
from worldhub.persistence.commits import STALE, CommitQueue
from worldhub.persistence.store import SessionStore
from worldhub.sync.merge import log_conflict

logger = structlog.get_logger()

Listener = Callable[[HubState, str], Awaitable[None]]
Mutation = Callable[[HubState], Awaitable[bool]]

STALE_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HubStateManager:
    """Owns every HubState. Other components mutate through ``mutate``."""

    def __init__(
        self,
        store: SessionStore,
        commits: CommitQueue,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._commits = commits
        self._settings = settings
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[Listener] = []

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self._settings.session_retention_days)

    def now(self) -> datetime:
        return self._clock()

    def lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def find(self, session_id: str) -> HubState | None:
        """The current state, provisional commits first. None if absent."""
        pending = self._commits.pending(session_id)
        if pending is not None:
            return pending
        return await self._store.load(session_id)

    async def get(self, session_id: str) -> HubState:
        state = await self.find(session_id)
        if state is None:
            raise SessionNotFound(session_id=session_id)
        return state

    async def load_or_create(self, handle: SessionHandle) -> HubState:
        """Load the hub for a validated handle, creating it on first use."""
        async with self.lock(handle.session_id):
            state = await self.find(handle.session_id)
            now = self._clock()
            if state is None:
                state = new_hub_state(
                    session_id=handle.session_id,
                    code_hash=handle.code_hash,
                    cultural_context=handle.cultural_context,
                    now=now,
                    retention=self.retention,
                    thresholds=default_thresholds(self._settings.world_thresholds),
                )
                logger.info("hub_created", session_id=handle.session_id)
            state.touch(now, self.retention)
            state.expires_at = max(state.expires_at, handle.expires_at)
            if not await self._commit(state):
                # another process wrote first; its state already carries the session
                return await self.get(handle.session_id)
            return state

    async def mutate(self, session_id: str, fn: Mutation, *, device_id: str) -> HubState:
        """Apply ``fn`` to the session under its lock.

        ``fn`` returns whether it changed anything. An unchanged state is
        returned as loaded and nothing is committed or broadcast. When storage
        already holds a newer revision (another process wrote the session),
        the state is reloaded and ``fn`` runs again on it.
        """
        async with self.lock(session_id):
            for attempt in range(1, STALE_ATTEMPTS + 1):
                original = await self.get(session_id)
                state = original.copy()
                state.clock += 1
                if not await fn(state):
                    return original
                self.finalize(state, device_id)
                state.touch(self._clock(), self.retention)
                if await self._commit(state):
                    break
                logger.info("hub_mutation_retried", session_id=session_id, attempt=attempt)
            else:
                raise PersistenceUnavailable("Session was changed elsewhere", session_id=session_id)

        await self._notify(state, device_id)
        return state

    def finalize(self, state: HubState, device_id: str) -> list[str]:
        """Recompute derived fields. Returns newly unlocked achievement ids."""
        state.recompute_totals()
        unlocked_worlds = apply_unlocks(state, device_id)
        if unlocked_worlds:
            logger.info("worlds_unlocked", session_id=state.session_id, worlds=unlocked_worlds)

        now = self._clock()
        new_achievements = sorted(newly_unlocked(state, scope=None))
        for achievement_id in new_achievements:
            state.achievements[achievement_id] = now
        if new_achievements:
            logger.info("achievements_unlocked", session_id=state.session_id, achievements=new_achievements)
        return new_achievements

    async def apply_world_completion(
        self,
        session_id: str,
        world_index: int,
        score: int,
        achievement_flags: Iterable[str] = (),
        *,
        device_id: str = "server",
        time_spent_ms: int = 0,
    ) -> HubState:
        """Record a world result.

        Idempotent per (session, world): re-applying the same or a lower score
        to a completed world returns the state unchanged. A higher score for an
        already completed world replaces the lower one.
        """
        check_world_index(world_index)
        if score < 0:
            raise ValueError("Score must not be negative")
        flags = list(achievement_flags)

        async def complete(state: HubState) -> bool:
            world = state.world(world_index)
            now = self._clock()
            if world.is_completed:
                current = world.score or 0
                released = state.current_world_index == world_index
                if released:
                    state.current_world_index = None
                if score == current:
                    return released
                field_name = f"world.{world_index}.score"
                winner, loser = max(score, current), min(score, current)
                log_conflict(state.session_id, field_name, kept=winner, discarded=loser, reason="higher_score_wins")
                if score < current:
                    return released
                world.score = score
                world.time_spent_ms = max(world.time_spent_ms, time_spent_ms)
                state.stamp(field_name, device_id)
                return True

            if world.status is WorldStatus.LOCKED:
                raise WorldLocked(world_index=world_index)
            validate_transition(world.status, WorldStatus.COMPLETED)

            world.status = WorldStatus.COMPLETED
            world.score = score
            world.completed_at = now
            world.time_spent_ms += time_spent_ms
            state.stamp(f"world.{world_index}.status", device_id)
            state.stamp(f"world.{world_index}.score", device_id)
            for flag in flags:
                state.achievements.setdefault(flag, now)
            if state.current_world_index == world_index:
                state.current_world_index = None
            logger.info("world_completed", session_id=session_id, world_index=world_index, score=score)
            return True

        return await self.mutate(session_id, complete, device_id=device_id)

    def compute_unlock_eligibility(self, state: HubState) -> frozenset[int]:
        return unlock_eligibility(state)

    async def _commit(self, state: HubState) -> bool:
        """Commit ``state``. False when a newer revision is already stored."""
        state.revision += 1
        status = await self._commits.commit(state)
        if status == STALE:
            return False
        state.save_status = status
        return True

    async def _notify(self, state: HubState, origin_device: str) -> None:
        for listener in self._listeners:
            try:
                await listener(state.copy(), origin_device)
            except Exception:
                logger.warning("hub_listener_failed", session_id=state.session_id, exc_info=True)

    def forget(self, session_id: str) -> None:
        """Drop in-memory bookkeeping for an erased session."""
        self._commits.discard(session_id)
        self._locks.pop(session_id, None)
