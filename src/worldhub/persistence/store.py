"""Durable storage of hub sessions, access codes, leases and the delta log.

Each public method runs in its own transaction. Storage-level failures are
surfaced as ``PersistenceUnavailable`` so callers can fall back to a
provisional commit.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from worldhub.db.models import (
    AccessCode,
    HubSessionRow,
    SessionAchievement,
    SyncDeltaRow,
    WorldLease,
    WorldProgressRow,
)
from worldhub.errors import PersistenceUnavailable
from worldhub.hub.state import HubState, WorldProgress, WorldStatus
from worldhub.persistence.codec import decode_payload, encode_payload
from worldhub.sync.delta import SyncDelta

logger = structlog.get_logger()


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class AccessCodeRecord:
    code_hash: str
    session_id: str
    cultural_context: str
    issued_at: datetime
    last_active_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class LeaseRecord:
    session_id: str
    world_index: int
    handle_id: str
    device_id: str
    acquired_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


class SessionStore:
    """Persistence layer backed by async SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._sessions

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as db, db.begin():
                yield db
        except IntegrityError:
            raise
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("persistence_error", error=str(exc))
            raise PersistenceUnavailable(str(exc)) from exc

    # ------------------------------------------------------------------
    # Access codes
    # ------------------------------------------------------------------

    async def create_code(self, record: AccessCodeRecord) -> bool:
        """Insert a new code. Returns False if the hash is already taken."""
        try:
            async with self._transaction() as db:
                db.add(AccessCode(
                    code_hash=record.code_hash,
                    session_id=record.session_id,
                    cultural_context=record.cultural_context,
                    issued_at=record.issued_at,
                    last_active_at=record.last_active_at,
                    expires_at=record.expires_at,
                ))
                await db.flush()
        except IntegrityError:
            return False
        return True

    async def find_code(self, code_hash: str) -> AccessCodeRecord | None:
        async with self._transaction() as db:
            row = await db.get(AccessCode, code_hash)
            if row is None:
                return None
            return _code_record(row)

    async def find_code_by_session(self, session_id: str) -> AccessCodeRecord | None:
        async with self._transaction() as db:
            result = await db.execute(select(AccessCode).where(AccessCode.session_id == session_id))
            row = result.scalar_one_or_none()
            return _code_record(row) if row else None

    async def touch_code(self, code_hash: str, now: datetime, expires_at: datetime) -> None:
        async with self._transaction() as db:
            await db.execute(
                update(AccessCode)
                .where(AccessCode.code_hash == code_hash)
                .values(last_active_at=now, expires_at=expires_at)
            )

    # ------------------------------------------------------------------
    # Hub sessions
    # ------------------------------------------------------------------

    async def load(self, session_id: str) -> HubState | None:
        async with self._transaction() as db:
            row = await db.get(HubSessionRow, session_id)
            if row is None:
                return None
            worlds_result = await db.execute(
                select(WorldProgressRow)
                .where(WorldProgressRow.session_id == session_id)
                .order_by(WorldProgressRow.world_index)
            )
            achievements_result = await db.execute(
                select(SessionAchievement).where(SessionAchievement.session_id == session_id)
            )
            return HubState(
                session_id=row.session_id,
                code_hash=row.code_hash,
                cultural_context=row.cultural_context,
                worlds=[
                    WorldProgress(
                        world_index=w.world_index,
                        status=WorldStatus(w.status),
                        score=w.score,
                        time_spent_ms=w.time_spent_ms,
                        started_at=as_utc(w.started_at),
                        completed_at=as_utc(w.completed_at),
                        state_blob=w.state_blob,
                    )
                    for w in worlds_result.scalars()
                ],
                thresholds={i + 1: t for i, t in enumerate(row.thresholds)},
                created_at=as_utc(row.created_at),
                last_active_at=as_utc(row.last_active_at),
                expires_at=as_utc(row.expires_at),
                achievements={a.achievement_id: as_utc(a.unlocked_at) for a in achievements_result.scalars()},
                total_score=row.total_score,
                worlds_completed=row.worlds_completed,
                current_world_index=row.current_world_index,
                clock=row.clock,
                field_clocks=dict(row.field_clocks or {}),
                revision=row.revision,
            )

    async def save(self, state: HubState) -> bool:
        """Write ``state``. Returns False when a newer revision is already stored."""
        async with self._transaction() as db:
            row = await db.get(HubSessionRow, state.session_id, with_for_update=True)
            if row is not None and row.revision >= state.revision:
                return False
            if row is None:
                row = HubSessionRow(session_id=state.session_id, created_at=state.created_at)
                db.add(row)

            row.code_hash = state.code_hash
            row.cultural_context = state.cultural_context
            row.total_score = state.total_score
            row.worlds_completed = state.worlds_completed
            row.world_status = [s.value for s in state.world_status]
            row.thresholds = [state.thresholds[i] for i in sorted(state.thresholds)]
            row.current_world_index = state.current_world_index
            row.clock = state.clock
            row.field_clocks = dict(state.field_clocks)
            row.revision = state.revision
            row.last_active_at = state.last_active_at
            row.expires_at = state.expires_at
            await db.flush()

            for world in state.worlds:
                wrow = await db.get(WorldProgressRow, (state.session_id, world.world_index))
                if wrow is None:
                    wrow = WorldProgressRow(session_id=state.session_id, world_index=world.world_index)
                    db.add(wrow)
                wrow.status = world.status.value
                wrow.score = world.score
                wrow.time_spent_ms = world.time_spent_ms
                wrow.started_at = world.started_at
                wrow.completed_at = world.completed_at
                wrow.state_blob = world.state_blob

            existing = {
                a.achievement_id: a
                for a in (await db.execute(
                    select(SessionAchievement).where(SessionAchievement.session_id == state.session_id)
                )).scalars()
            }
            for achievement_id, unlocked_at in state.achievements.items():
                stored = existing.get(achievement_id)
                if stored is not None:
                    if unlocked_at < as_utc(stored.unlocked_at):
                        stored.unlocked_at = unlocked_at
                else:
                    db.add(SessionAchievement(
                        session_id=state.session_id,
                        achievement_id=achievement_id,
                        unlocked_at=unlocked_at,
                    ))

            await db.execute(
                update(AccessCode)
                .where(AccessCode.code_hash == state.code_hash)
                .values(last_active_at=state.last_active_at, expires_at=state.expires_at)
            )
        return True

    async def delete_session(self, session_id: str) -> int:
        """Delete every record belonging to a session. Returns the number of rows removed."""
        removed = 0
        async with self._transaction() as db:
            for model, column in (
                (SyncDeltaRow, SyncDeltaRow.session_id),
                (WorldLease, WorldLease.session_id),
                (SessionAchievement, SessionAchievement.session_id),
                (WorldProgressRow, WorldProgressRow.session_id),
                (HubSessionRow, HubSessionRow.session_id),
                (AccessCode, AccessCode.session_id),
            ):
                result = await db.execute(delete(model).where(column == session_id))
                removed += result.rowcount or 0
        return removed

    async def expired_session_ids(self, now: datetime) -> list[str]:
        async with self._transaction() as db:
            codes = await db.execute(select(AccessCode.session_id, AccessCode.expires_at))
            sessions = await db.execute(select(HubSessionRow.session_id, HubSessionRow.expires_at))
            expired = {sid for sid, exp in codes if as_utc(exp) <= now}
            expired |= {sid for sid, exp in sessions if as_utc(exp) <= now}
            return sorted(expired)

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    async def get_lease(self, session_id: str, world_index: int) -> LeaseRecord | None:
        async with self._transaction() as db:
            row = await db.get(WorldLease, (session_id, world_index))
            return _lease_record(row) if row else None

    async def put_lease(self, lease: LeaseRecord) -> None:
        async with self._transaction() as db:
            row = await db.get(WorldLease, (lease.session_id, lease.world_index))
            if row is None:
                row = WorldLease(session_id=lease.session_id, world_index=lease.world_index)
                db.add(row)
            row.handle_id = lease.handle_id
            row.device_id = lease.device_id
            row.acquired_at = lease.acquired_at
            row.expires_at = lease.expires_at

    async def release_lease(self, session_id: str, world_index: int, handle_id: str) -> bool:
        async with self._transaction() as db:
            result = await db.execute(
                delete(WorldLease).where(
                    WorldLease.session_id == session_id,
                    WorldLease.world_index == world_index,
                    WorldLease.handle_id == handle_id,
                )
            )
            return bool(result.rowcount)

    async def expired_leases(self, now: datetime) -> list[LeaseRecord]:
        async with self._transaction() as db:
            result = await db.execute(select(WorldLease))
            leases = [_lease_record(row) for row in result.scalars()]
        return [lease for lease in leases if not lease.is_active(now)]

    # ------------------------------------------------------------------
    # Sync delta log
    # ------------------------------------------------------------------

    async def append_deltas(self, deltas: Iterable[SyncDelta], received_at: datetime) -> int:
        deltas = list(deltas)
        if not deltas:
            return 0
        async with self._transaction() as db:
            seen = set((await db.execute(
                select(SyncDeltaRow.delta_id).where(SyncDeltaRow.delta_id.in_([d.delta_id for d in deltas]))
            )).scalars())
            added = 0
            for delta in deltas:
                if delta.delta_id in seen:
                    continue
                db.add(SyncDeltaRow(
                    delta_id=delta.delta_id,
                    session_id=delta.session_id,
                    device_id=delta.device_id,
                    clock=delta.clock,
                    payload=encode_payload(delta.ops),
                    applied=delta.applied,
                    received_at=received_at,
                ))
                seen.add(delta.delta_id)
                added += 1
            return added

    async def mark_applied(self, delta_ids: Iterable[str]) -> None:
        delta_ids = list(delta_ids)
        if not delta_ids:
            return
        async with self._transaction() as db:
            await db.execute(
                update(SyncDeltaRow).where(SyncDeltaRow.delta_id.in_(delta_ids)).values(applied=True)
            )

    async def list_deltas(self, session_id: str) -> list[SyncDelta]:
        async with self._transaction() as db:
            result = await db.execute(
                select(SyncDeltaRow).where(SyncDeltaRow.session_id == session_id).order_by(SyncDeltaRow.id)
            )
            return [
                SyncDelta(
                    device_id=row.device_id,
                    session_id=row.session_id,
                    clock=row.clock,
                    ops=decode_payload(row.payload),
                    delta_id=row.delta_id,
                    applied=row.applied,
                    created_at=as_utc(row.received_at),
                )
                for row in result.scalars()
            ]

    async def prune_applied_deltas(self, before: datetime) -> int:
        async with self._transaction() as db:
            result = await db.execute(
                select(SyncDeltaRow.id, SyncDeltaRow.received_at).where(SyncDeltaRow.applied.is_(True))
            )
            stale = [row_id for row_id, received in result if as_utc(received) < before]
            if stale:
                await db.execute(delete(SyncDeltaRow).where(SyncDeltaRow.id.in_(stale)))
            return len(stale)


def _code_record(row: AccessCode) -> AccessCodeRecord:
    return AccessCodeRecord(
        code_hash=row.code_hash,
        session_id=row.session_id,
        cultural_context=row.cultural_context,
        issued_at=as_utc(row.issued_at),
        last_active_at=as_utc(row.last_active_at),
        expires_at=as_utc(row.expires_at),
    )


def _lease_record(row: WorldLease) -> LeaseRecord:
    return LeaseRecord(
        session_id=row.session_id,
        world_index=row.world_index,
        handle_id=row.handle_id,
        device_id=row.device_id,
        acquired_at=as_utc(row.acquired_at),
        expires_at=as_utc(row.expires_at),
    )
