"""Hub commits with provisional fallback and background retry.

When storage is unavailable or too slow, the newest state of a session is held
in memory as a provisional commit and retried with exponential backoff. Reads
go through ``pending`` first so the provisional state stays authoritative
until it lands. Writes already handed to the database are shielded from
cancellation so a timeout never leaves a half-written record behind.
"""

from __future__ import annotations

import asyncio

import structlog

from worldhub.errors import PersistenceUnavailable
from worldhub.hub.state import HubState
from worldhub.persistence.store import SessionStore

logger = structlog.get_logger()

COMMITTED = "committed"
PROVISIONAL = "provisional"
UNSAVED = "unsaved"
STALE = "stale"


class CommitQueue:
    """Commits hub states, deferring them when persistence is unavailable."""

    def __init__(
        self,
        store: SessionStore,
        *,
        timeout: float = 2.0,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        max_attempts: int = 12,
    ) -> None:
        self._store = store
        self._timeout = timeout
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._pending: dict[str, HubState] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def pending(self, session_id: str) -> HubState | None:
        state = self._pending.get(session_id)
        return state.copy() if state is not None else None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def commit(self, state: HubState) -> str:
        """Persist ``state``. Returns the resulting save status.

        ``STALE`` means storage already holds a newer revision and nothing was
        written; the caller has to reload and redo its change.
        """
        try:
            saved = await self._save(state)
        except PersistenceUnavailable as exc:
            self._pending[state.session_id] = state.copy()
            self._pending[state.session_id].save_status = PROVISIONAL
            logger.warning("commit_deferred", session_id=state.session_id, revision=state.revision, error=exc.message)
            self._schedule_retry(state.session_id)
            return PROVISIONAL

        held = self._pending.get(state.session_id)
        if held is not None and held.revision <= state.revision:
            del self._pending[state.session_id]
        if not saved:
            logger.warning("commit_stale", session_id=state.session_id, revision=state.revision)
            return STALE
        return COMMITTED

    async def _save(self, state: HubState) -> bool:
        try:
            return await asyncio.wait_for(asyncio.shield(self._store.save(state)), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise PersistenceUnavailable("Commit timed out") from exc

    def _schedule_retry(self, session_id: str) -> None:
        task = self._tasks.get(session_id)
        if task is not None and not task.done():
            return
        task = asyncio.create_task(self._retry(session_id))
        self._tasks[session_id] = task

        def _done(finished: asyncio.Task[None]) -> None:
            if self._tasks.get(session_id) is finished:
                del self._tasks[session_id]

        task.add_done_callback(_done)

    async def _retry(self, session_id: str) -> None:
        delay = self._base_delay
        attempt = 0
        while attempt < self._max_attempts:
            await asyncio.sleep(delay)
            state = self._pending.get(session_id)
            if state is None:
                return
            attempt += 1
            try:
                saved = await self._save(state)
            except PersistenceUnavailable:
                delay = min(delay * 2, self._max_delay)
                logger.info("commit_retry_failed", session_id=session_id, attempt=attempt, next_delay=delay)
                continue
            if self._pending.get(session_id) is state:
                del self._pending[session_id]
                if saved:
                    logger.info("commit_recovered", session_id=session_id, attempts=attempt)
                else:
                    logger.error("commit_stale_dropped", session_id=session_id, revision=state.revision)
                return
            # a newer provisional state arrived while this one was being written
            delay = self._base_delay

        state = self._pending.get(session_id)
        if state is not None:
            state.save_status = UNSAVED
        logger.error("commit_exhausted", session_id=session_id, attempts=self._max_attempts)

    def discard(self, session_id: str) -> None:
        """Forget any provisional state for a session (used by erasure)."""
        self._pending.pop(session_id, None)
        task = self._tasks.pop(session_id, None)
        if task is not None:
            task.cancel()

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
