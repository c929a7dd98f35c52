"""Deterministic merge of device deltas into a hub state.

Rules:
- world status is a lattice on (rank, clock, device): progress always wins,
  same-rank changes (in_progress <-> abandoned) are last-writer-wins on the
  logical clock with the device id as tie-breaker;
- a first completion is accepted only for a world that is in_progress
  (entered on the server or by an earlier status op); once completed,
  completions keep the higher score, never an average or a sum;
- checkpoint blobs and the cultural context are last-writer-wins;
- achievements are a union: once unlocked anywhere they stay unlocked.

Because every rule is a max over a total order or a set union, applying the
same deltas in any arrival order converges to the same state. Derived fields
(totals, unlocks, cross-world achievements) are recomputed by the hub after
the merge.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from worldhub.errors import InvalidWorldIndex, SyncConflict
from worldhub.hub.state import (
    STATUS_RANK,
    HubState,
    WorldStatus,
    check_world_index,
    unlock_eligibility,
)
from worldhub.persistence.codec import compress_blob
from worldhub.sync.delta import (
    OP_ACHIEVEMENT,
    OP_CHECKPOINT,
    OP_COMPLETE,
    OP_CONTEXT,
    OP_STATUS,
    SyncDelta,
)
from worldhub.worlds.content import resolve_variant

logger = structlog.get_logger()

WriteKey = tuple[int, str]

_MERGEABLE_STATUSES = frozenset({WorldStatus.IN_PROGRESS, WorldStatus.ABANDONED})


def log_conflict(session_id: str, field_name: str, *, kept: Any, discarded: Any, reason: str) -> None:
    """Emit a sync conflict as telemetry. Conflicts are never raised."""
    logger.info(
        SyncConflict.code,
        session_id=session_id,
        field=field_name,
        kept=kept,
        discarded=discarded,
        reason=reason,
    )


@dataclass
class MergeReport:
    applied: int = 0
    rejected: int = 0
    conflicts: int = 0
    rejections: list[dict[str, Any]] = field(default_factory=list)

    def reject(self, op: dict[str, Any], reason: str) -> None:
        self.rejected += 1
        self.rejections.append({"op": op.get("op"), "world": op.get("world"), "reason": reason})


def apply_deltas(state: HubState, deltas: Iterable[SyncDelta], now: datetime) -> MergeReport:
    """Merge ``deltas`` into ``state`` in place."""
    report = MergeReport()
    for delta in sorted(deltas, key=lambda d: d.sort_key):
        state.clock = max(state.clock, delta.clock)
        key: WriteKey = (delta.clock, delta.device_id)
        for op in delta.ops:
            _apply_op(state, op, key, now, report)
        delta.applied = True
    return report


def _newer(state: HubState, field_name: str, key: WriteKey) -> bool:
    current = state.field_clock(field_name)
    return current is None or key > current


def _stamp(state: HubState, field_name: str, key: WriteKey) -> None:
    state.field_clocks[field_name] = [key[0], key[1]]


def _apply_op(state: HubState, op: dict[str, Any], key: WriteKey, now: datetime, report: MergeReport) -> None:
    kind = op.get("op")
    try:
        if kind == OP_STATUS:
            _merge_status(state, op, key, now, report)
        elif kind == OP_COMPLETE:
            _merge_completion(state, op, key, now, report)
        elif kind == OP_CHECKPOINT:
            _merge_checkpoint(state, op, key, report)
        elif kind == OP_ACHIEVEMENT:
            _merge_achievement(state, op, now, report)
        elif kind == OP_CONTEXT:
            _merge_context(state, op, key, report)
        else:
            report.reject(op, "unknown_op")
    except (KeyError, TypeError, ValueError, InvalidWorldIndex, binascii.Error):
        report.reject(op, "malformed")


def _eligible(state: HubState, world_index: int) -> bool:
    world = state.world(world_index)
    return world.status is not WorldStatus.LOCKED or world_index in unlock_eligibility(state)


def _merge_status(state: HubState, op: dict[str, Any], key: WriteKey, now: datetime, report: MergeReport) -> None:
    world_index = check_world_index(int(op["world"]))
    target = WorldStatus(op["status"])
    if target not in _MERGEABLE_STATUSES:
        report.reject(op, "status_not_mergeable")
        return
    if not _eligible(state, world_index):
        report.reject(op, "world_locked")
        return

    world = state.world(world_index)
    field_name = f"world.{world_index}.status"
    current_rank = STATUS_RANK[world.status]
    target_rank = STATUS_RANK[target]

    if target_rank < current_rank:
        report.conflicts += 1
        log_conflict(state.session_id, field_name, kept=world.status.value, discarded=target.value, reason="no_regression")
        report.reject(op, "regression")
        return
    if target_rank == current_rank and not _newer(state, field_name, key):
        if target is not world.status:
            report.conflicts += 1
            log_conflict(state.session_id, field_name, kept=world.status.value, discarded=target.value, reason="older_write")
        return

    if world.started_at is None:
        world.started_at = now
    world.status = target
    _stamp(state, field_name, key)
    report.applied += 1


def _merge_completion(state: HubState, op: dict[str, Any], key: WriteKey, now: datetime, report: MergeReport) -> None:
    world_index = check_world_index(int(op["world"]))
    score = int(op["score"])
    if score < 0:
        raise ValueError("negative score")
    if not _eligible(state, world_index):
        report.reject(op, "world_locked")
        return

    world = state.world(world_index)
    time_spent = int(op.get("time_spent_ms", 0))
    score_field = f"world.{world_index}.score"

    if world.is_completed:
        current = world.score or 0
        if score == current:
            return
        report.conflicts += 1
        log_conflict(
            state.session_id, score_field,
            kept=max(score, current), discarded=min(score, current), reason="higher_score_wins",
        )
        if score > current:
            world.score = score
            world.time_spent_ms = max(world.time_spent_ms, time_spent)
            _stamp(state, score_field, key)
            report.applied += 1
        return

    if world.status is not WorldStatus.IN_PROGRESS:
        # a first completion has to come from a world that was entered
        report.conflicts += 1
        log_conflict(
            state.session_id, f"world.{world_index}.status",
            kept=world.status.value, discarded=WorldStatus.COMPLETED.value, reason="not_in_progress",
        )
        report.reject(op, "not_in_progress")
        return

    world.status = WorldStatus.COMPLETED
    world.score = score
    world.time_spent_ms = max(world.time_spent_ms, time_spent)
    world.completed_at = _parse_time(op.get("completed_at")) or now
    if world.started_at is None:
        world.started_at = world.completed_at
    _stamp(state, f"world.{world_index}.status", key)
    _stamp(state, score_field, key)
    if state.current_world_index == world_index:
        state.current_world_index = None
    report.applied += 1


def _merge_checkpoint(state: HubState, op: dict[str, Any], key: WriteKey, report: MergeReport) -> None:
    world_index = check_world_index(int(op["world"]))
    world = state.world(world_index)
    field_name = f"world.{world_index}.blob"
    if world.is_completed:
        report.reject(op, "world_completed")
        return
    if not _eligible(state, world_index):
        report.reject(op, "world_locked")
        return
    if not _newer(state, field_name, key):
        report.conflicts += 1
        log_conflict(state.session_id, field_name, kept="stored", discarded="incoming", reason="older_write")
        return
    raw = base64.b64decode(op["blob"], validate=True)
    world.state_blob = compress_blob(raw)
    _stamp(state, field_name, key)
    report.applied += 1


def _merge_achievement(state: HubState, op: dict[str, Any], now: datetime, report: MergeReport) -> None:
    achievement_id = str(op["id"]).strip()
    if not achievement_id:
        raise ValueError("empty achievement id")
    unlocked_at = _parse_time(op.get("unlocked_at")) or now
    existing = state.achievements.get(achievement_id)
    if existing is None or unlocked_at < existing:
        state.achievements[achievement_id] = unlocked_at
        report.applied += 1


def _merge_context(state: HubState, op: dict[str, Any], key: WriteKey, report: MergeReport) -> None:
    variant = resolve_variant(str(op["cultural_context"]))
    if not _newer(state, "cultural_context", key):
        return
    state.cultural_context = variant.value
    _stamp(state, "cultural_context", key)
    report.applied += 1


def _parse_time(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
