"""Pydantic schemas for sync endpoints."""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, Field, field_validator

from worldhub.hub.schemas import HubResponse
from worldhub.sync.delta import KNOWN_OPS


class DeltaIn(BaseModel):
    delta_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    clock: int = Field(..., ge=0)
    ops: list[dict[str, Any]] = Field(..., min_length=1)

    @field_validator("ops")
    @classmethod
    def ops_are_known(cls, v: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for op in v:
            if op.get("op") not in KNOWN_OPS:
                raise ValueError(f"Unknown op {op.get('op')!r}. Valid: {sorted(KNOWN_OPS)}")
        return v


class SyncPushRequest(BaseModel):
    deltas: list[DeltaIn] = Field(..., max_length=500)


class RejectedOp(BaseModel):
    op: str | None
    world: Any = None
    reason: str


class SyncPushResponse(BaseModel):
    applied: int
    rejected: int
    conflicts: int
    rejections: list[RejectedOp]
    hub: HubResponse
