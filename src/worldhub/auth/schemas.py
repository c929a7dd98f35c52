"""Pydantic schemas for access code endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from worldhub.hub.schemas import HubResponse


class IssueCodeRequest(BaseModel):
    cultural_context: str = Field(..., examples=["swedish_municipal"])


class IssueCodeResponse(BaseModel):
    code: str
    cultural_context: str
    expires_at: datetime


class ValidateCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    device_id: str = Field(..., min_length=1, max_length=128)


class ValidateCodeResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    hub: HubResponse
