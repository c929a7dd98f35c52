"""ORM models for the progression engine.

The persisted record of a hub session is intentionally compact: one
``hub_sessions`` row plus one ``world_progress`` row per world slot. Sync
deltas are kept in a separate append-only log.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from worldhub.db.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Access codes
# ---------------------------------------------------------------------------


class AccessCode(Base):
    """One-way hashed access code. The cleartext code is never stored."""

    __tablename__ = "access_codes"

    code_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    cultural_context: Mapped[str] = mapped_column(String(32), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_active_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


# ---------------------------------------------------------------------------
# Hub sessions
# ---------------------------------------------------------------------------


class HubSessionRow(Base):
    """Compact hub session record."""

    __tablename__ = "hub_sessions"

    session_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    cultural_context: Mapped[str] = mapped_column(String(32), nullable=False)
    total_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    worlds_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    world_status: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    thresholds: Mapped[list[int]] = mapped_column(JSONType, nullable=False)
    current_world_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    clock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    field_clocks: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_active_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class WorldProgressRow(Base):
    """Per-world progress. The state blob is zlib-compressed and opaque."""

    __tablename__ = "world_progress"

    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("hub_sessions.session_id", ondelete="CASCADE"), primary_key=True
    )
    world_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    time_spent_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    state_blob: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)


class SessionAchievement(Base):
    """Unlocked achievement ids, one row per (session, achievement)."""

    __tablename__ = "session_achievements"

    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("hub_sessions.session_id", ondelete="CASCADE"), primary_key=True
    )
    achievement_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Leases
# ---------------------------------------------------------------------------


class WorldLease(Base):
    """Exclusive, idle-expiring claim on a world slot by one device."""

    __tablename__ = "world_leases"

    session_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    world_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    handle_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


# ---------------------------------------------------------------------------
# Sync delta log
# ---------------------------------------------------------------------------


class SyncDeltaRow(Base):
    """Append-only audit log of deltas received from devices."""

    __tablename__ = "sync_deltas"
    __table_args__ = (UniqueConstraint("delta_id", name="uq_sync_deltas_delta_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    delta_id: Mapped[str] = mapped_column(String(36), nullable=False)
    session_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    clock: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    applied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
