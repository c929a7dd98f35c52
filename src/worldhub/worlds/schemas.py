"""Pydantic schemas for world session endpoints."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from worldhub.hub.schemas import HubResponse
from worldhub.worlds.controller import WorldHandle


class EnterWorldRequest(BaseModel):
    bandwidth_kbps: float | None = Field(None, gt=0)
    latency_ms: float = Field(0.0, ge=0)


class WorldHandleResponse(BaseModel):
    handle_id: str
    world_index: int
    world_id: str
    fidelity: str
    content_version: str
    content_size_bytes: int
    min_score_to_complete: int
    lease_expires_at: datetime
    resumed: bool
    replay: bool
    state_blob: str | None = None
    hub: HubResponse

    @classmethod
    def from_handle(cls, handle: WorldHandle, hub: HubResponse) -> WorldHandleResponse:
        return cls(
            handle_id=handle.handle_id,
            world_index=handle.world_index,
            world_id=hub.worlds[handle.world_index - 1].world_id,
            fidelity=handle.fidelity.value,
            content_version=handle.bundle.version,
            content_size_bytes=handle.bundle.size_bytes,
            min_score_to_complete=handle.bundle.min_score_to_complete,
            lease_expires_at=handle.lease_expires_at,
            resumed=handle.resumed,
            replay=handle.replay,
            state_blob=base64.b64encode(handle.state_blob).decode() if handle.state_blob else None,
            hub=hub,
        )


class CheckpointRequest(BaseModel):
    state_blob: str = Field(..., description="Base64-encoded opaque world state")

    @field_validator("state_blob")
    @classmethod
    def must_be_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("state_blob must be base64") from e
        return v

    def raw(self) -> bytes:
        return base64.b64decode(self.state_blob)


class CompleteWorldRequest(BaseModel):
    score: int = Field(..., ge=0)
    achievement_flags: list[str] = Field(default_factory=list)
