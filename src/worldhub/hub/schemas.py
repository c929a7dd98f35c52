"""Pydantic schemas for hub API responses and live updates."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from worldhub.hub.state import HubState


class WorldProgressResponse(BaseModel):
    world_index: int
    world_id: str
    status: str
    score: int | None
    threshold: int
    time_spent_ms: int
    started_at: datetime | None
    completed_at: datetime | None
    has_checkpoint: bool


class HubResponse(BaseModel):
    session_id: str
    cultural_context: str
    total_score: int
    worlds_completed: int
    world_status: list[str]
    worlds: list[WorldProgressResponse]
    achievements: list[str]
    current_world_index: int | None
    overall_completion_percentage: float
    total_time_spent_ms: int
    clock: int
    save_status: str
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime

    @classmethod
    def from_state(cls, state: HubState) -> HubResponse:
        # The code hash stays server-side
        return cls(
            session_id=state.session_id,
            cultural_context=state.cultural_context,
            total_score=state.total_score,
            worlds_completed=state.worlds_completed,
            world_status=[s.value for s in state.world_status],
            worlds=[
                WorldProgressResponse(
                    world_index=w.world_index,
                    world_id=w.world_id,
                    status=w.status.value,
                    score=w.score,
                    threshold=state.thresholds[w.world_index],
                    time_spent_ms=w.time_spent_ms,
                    started_at=w.started_at,
                    completed_at=w.completed_at,
                    has_checkpoint=w.state_blob is not None,
                )
                for w in state.worlds
            ],
            achievements=sorted(state.achievements),
            current_world_index=state.current_world_index,
            overall_completion_percentage=state.overall_completion_percentage,
            total_time_spent_ms=state.total_time_spent_ms,
            clock=state.clock,
            save_status=state.save_status,
            created_at=state.created_at,
            last_active_at=state.last_active_at,
            expires_at=state.expires_at,
        )


class UnlockResponse(BaseModel):
    session_id: str
    eligible: list[int]
    unlocked: list[int]
