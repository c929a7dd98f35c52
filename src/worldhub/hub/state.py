"""Hub state model, world state machine and unlock rules.

State progression per world slot:
    locked -> unlocked -> in_progress -> completed
                          in_progress <-> abandoned

Status never regresses. ``abandoned`` resumes into ``in_progress`` and can only
reach ``completed`` by passing through ``in_progress`` again.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from worldhub.errors import InvalidTransition, InvalidWorldIndex

WORLD_COUNT = 5

WORLD_IDS: dict[int, str] = {
    1: "municipal-foundations",
    2: "citizen-service",
    3: "emergency-response",
    4: "leadership-development",
    5: "innovation-implementation",
}


class WorldStatus(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    IN_PROGRESS = "in_progress"
    ABANDONED = "abandoned"
    COMPLETED = "completed"


# in_progress and abandoned share a rank: they may alternate, nothing else may go back
STATUS_RANK: dict[WorldStatus, int] = {
    WorldStatus.LOCKED: 0,
    WorldStatus.UNLOCKED: 1,
    WorldStatus.IN_PROGRESS: 2,
    WorldStatus.ABANDONED: 2,
    WorldStatus.COMPLETED: 3,
}

VALID_TRANSITIONS: dict[WorldStatus, list[WorldStatus]] = {
    WorldStatus.LOCKED: [WorldStatus.UNLOCKED],
    WorldStatus.UNLOCKED: [WorldStatus.IN_PROGRESS],
    WorldStatus.IN_PROGRESS: [WorldStatus.COMPLETED, WorldStatus.ABANDONED],
    WorldStatus.ABANDONED: [WorldStatus.IN_PROGRESS],
    WorldStatus.COMPLETED: [],
}


def validate_transition(current: WorldStatus, target: WorldStatus) -> None:
    """Validate a world status transition. Raises InvalidTransition if invalid."""
    valid = VALID_TRANSITIONS.get(current, [])
    if target not in valid:
        raise InvalidTransition(
            f"Invalid transition: {current.value} -> {target.value}. "
            f"Valid transitions: {[s.value for s in valid]}",
            current=current.value,
            target=target.value,
        )


def check_world_index(world_index: int) -> int:
    if not 1 <= world_index <= WORLD_COUNT:
        raise InvalidWorldIndex(f"World index must be between 1 and {WORLD_COUNT}, got {world_index}")
    return world_index


@dataclass
class WorldProgress:
    """Progress of one world slot. ``score`` is only set once completed."""

    world_index: int
    status: WorldStatus = WorldStatus.LOCKED
    score: int | None = None
    time_spent_ms: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    state_blob: bytes | None = None

    @property
    def world_id(self) -> str:
        return WORLD_IDS[self.world_index]

    @property
    def is_completed(self) -> bool:
        return self.status is WorldStatus.COMPLETED


@dataclass
class HubState:
    """Snapshot of one hub session.

    Invariants kept by ``recompute_totals``: ``total_score`` is the sum of
    completed world scores and ``worlds_completed`` counts completed slots.
    ``field_clocks`` maps a field name (``world.3.status``) to the
    ``[clock, device_id]`` pair of its last accepted write.
    """

    session_id: str
    code_hash: str
    cultural_context: str
    worlds: list[WorldProgress]
    thresholds: dict[int, int]
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime
    achievements: dict[str, datetime] = field(default_factory=dict)
    total_score: int = 0
    worlds_completed: int = 0
    current_world_index: int | None = None
    clock: int = 0
    field_clocks: dict[str, list] = field(default_factory=dict)
    revision: int = 0
    save_status: str = "committed"

    def world(self, world_index: int) -> WorldProgress:
        check_world_index(world_index)
        return self.worlds[world_index - 1]

    @property
    def world_status(self) -> list[WorldStatus]:
        return [w.status for w in self.worlds]

    @property
    def total_time_spent_ms(self) -> int:
        return sum(w.time_spent_ms for w in self.worlds)

    @property
    def overall_completion_percentage(self) -> float:
        return self.worlds_completed / WORLD_COUNT * 100

    def recompute_totals(self) -> None:
        completed = [w for w in self.worlds if w.is_completed]
        self.total_score = sum(w.score or 0 for w in completed)
        self.worlds_completed = len(completed)

    def touch(self, now: datetime, retention: timedelta) -> None:
        """Record activity. ``expires_at`` only ever moves forward."""
        if now > self.last_active_at:
            self.last_active_at = now
        self.expires_at = max(self.expires_at, self.last_active_at + retention)

    def stamp(self, field_name: str, device_id: str) -> None:
        """Record the current clock as the last write of ``field_name``."""
        self.field_clocks[field_name] = [self.clock, device_id]

    def field_clock(self, field_name: str) -> tuple[int, str] | None:
        value = self.field_clocks.get(field_name)
        if value is None:
            return None
        return int(value[0]), str(value[1])

    def copy(self) -> HubState:
        return copy.deepcopy(self)

    def to_record(self) -> dict:
        """Compact record form used for export and broadcast."""
        return {
            "sessionId": self.session_id,
            "codeHash": self.code_hash,
            "totalScore": self.total_score,
            "worldsCompleted": self.worlds_completed,
            "worldStatus": [s.value for s in self.world_status],
            "culturalContext": self.cultural_context,
            "createdAt": self.created_at.isoformat(),
            "lastActiveAt": self.last_active_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }


def default_thresholds(configured: Sequence[int]) -> dict[int, int]:
    if len(configured) != WORLD_COUNT:
        raise ValueError(f"Expected {WORLD_COUNT} world thresholds, got {len(configured)}")
    return {i + 1: int(t) for i, t in enumerate(configured)}


def new_hub_state(
    session_id: str,
    code_hash: str,
    cultural_context: str,
    now: datetime,
    retention: timedelta,
    thresholds: Mapping[int, int],
) -> HubState:
    """Fresh hub state: world 1 unlocked, everything else locked."""
    worlds = [WorldProgress(world_index=i) for i in range(1, WORLD_COUNT + 1)]
    worlds[0].status = WorldStatus.UNLOCKED
    return HubState(
        session_id=session_id,
        code_hash=code_hash,
        cultural_context=cultural_context,
        worlds=worlds,
        thresholds=dict(thresholds),
        created_at=now,
        last_active_at=now,
        expires_at=now + retention,
    )


def unlock_eligibility(state: HubState) -> frozenset[int]:
    """World indices allowed to be out of ``locked``.

    World 1 is always eligible. World n+1 is eligible only when world n is
    completed with a score at or above its threshold.
    """
    eligible = {1}
    for index in range(1, WORLD_COUNT):
        world = state.world(index)
        if world.is_completed and (world.score or 0) >= state.thresholds[index]:
            eligible.add(index + 1)
    return frozenset(eligible)


def apply_unlocks(state: HubState, device_id: str = "server") -> list[int]:
    """Move eligible locked worlds to ``unlocked``. Returns the newly unlocked indices."""
    unlocked = []
    for index in sorted(unlock_eligibility(state)):
        world = state.world(index)
        if world.status is WorldStatus.LOCKED:
            world.status = WorldStatus.UNLOCKED
            state.stamp(f"world.{index}.status", device_id)
            unlocked.append(index)
    return unlocked
