"""Achievement evaluation over a hub snapshot.

Evaluation is stateless: every call recomputes the full unlocked set from the
world slots, so a partially applied update can never leave an achievement
half-granted. Achievements are identified by stable string ids. Storage and
transport use a sorted JSON list of ids; ids are never renamed or reused.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

from worldhub.hub.state import WORLD_COUNT, HubState, WorldProgress


class AchievementScope(str, Enum):
    SINGLE_WORLD = "single-world"
    CROSS_WORLD = "cross-world"


@dataclass(frozen=True)
class Achievement:
    id: str
    scope: AchievementScope
    title: str
    predicate: Callable[[Sequence[WorldProgress]], bool]


def _completed(worlds: Sequence[WorldProgress]) -> list[WorldProgress]:
    return [w for w in worlds if w.is_completed]


ACHIEVEMENTS: tuple[Achievement, ...] = (
    Achievement(
        id="first_world_complete",
        scope=AchievementScope.CROSS_WORLD,
        title="First world complete",
        predicate=lambda worlds: len(_completed(worlds)) >= 1,
    ),
    Achievement(
        id="halfway_champion",
        scope=AchievementScope.CROSS_WORLD,
        title="Halfway champion",
        predicate=lambda worlds: len(_completed(worlds)) >= 3,
    ),
    Achievement(
        id="world_master",
        scope=AchievementScope.CROSS_WORLD,
        title="World master",
        predicate=lambda worlds: len(_completed(worlds)) == WORLD_COUNT,
    ),
    Achievement(
        id="high_achiever",
        scope=AchievementScope.CROSS_WORLD,
        title="High achiever",
        predicate=lambda worlds: (
            len(_completed(worlds)) >= 3 and all((w.score or 0) >= 90 for w in _completed(worlds))
        ),
    ),
    Achievement(
        id="perfect_world",
        scope=AchievementScope.SINGLE_WORLD,
        title="Perfect world",
        predicate=lambda worlds: any(w.score == 100 for w in _completed(worlds)),
    ),
)

ACHIEVEMENTS_BY_ID: dict[str, Achievement] = {a.id: a for a in ACHIEVEMENTS}


def evaluate(state: HubState, scope: AchievementScope | None = None) -> frozenset[str]:
    """All achievement ids whose predicate holds for ``state``."""
    return frozenset(
        a.id
        for a in ACHIEVEMENTS
        if (scope is None or a.scope is scope) and a.predicate(state.worlds)
    )


def newly_unlocked(state: HubState, scope: AchievementScope | None = AchievementScope.CROSS_WORLD) -> frozenset[str]:
    """Achievements that hold for ``state`` but are not yet recorded on it."""
    return evaluate(state, scope) - state.achievements.keys()


def encode_achievements(ids: Iterable[str]) -> str:
    return json.dumps(sorted(set(ids)), separators=(",", ":"))


def decode_achievements(encoded: str) -> frozenset[str]:
    if not encoded:
        return frozenset()
    value = json.loads(encoded)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError("Encoded achievements must be a JSON list of ids")
    return frozenset(value)
