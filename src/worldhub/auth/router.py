"""Access code endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from worldhub.auth.jwt import create_session_token
from worldhub.auth.schemas import (
    IssueCodeRequest,
    IssueCodeResponse,
    ValidateCodeRequest,
    ValidateCodeResponse,
)
from worldhub.dependencies import get_services
from worldhub.hub.schemas import HubResponse
from worldhub.services import Services

router = APIRouter(prefix="/api/v1/codes", tags=["Access codes"])


@router.post("", response_model=IssueCodeResponse, status_code=201)
async def issue_code(
    body: IssueCodeRequest,
    services: Services = Depends(get_services),
) -> IssueCodeResponse:
    """Issue a new anonymous access code. The code is only ever shown here."""
    try:
        issued = await services.auth.issue(body.cultural_context)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return IssueCodeResponse(
        code=issued.code,
        cultural_context=issued.cultural_context,
        expires_at=issued.expires_at,
    )


@router.post("/validate", response_model=ValidateCodeResponse)
async def validate_code(
    body: ValidateCodeRequest,
    services: Services = Depends(get_services),
) -> ValidateCodeResponse:
    """Exchange a code for a device session token and the hub state."""
    handle = await services.auth.validate(body.code)
    state = await services.hub.load_or_create(handle)
    token = create_session_token(handle.session_id, body.device_id, services.settings)
    return ValidateCodeResponse(
        access_token=token,
        expires_at=handle.expires_at,
        hub=HubResponse.from_state(state),
    )
