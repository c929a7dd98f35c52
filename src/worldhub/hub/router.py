"""Hub endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from worldhub.auth.dependencies import get_session_context
from worldhub.auth.jwt import SessionContext
from worldhub.dependencies import get_services
from worldhub.hub.schemas import HubResponse, UnlockResponse
from worldhub.hub.state import WorldStatus
from worldhub.services import Services

router = APIRouter(prefix="/api/v1/hub", tags=["Hub"])


@router.get("", response_model=HubResponse)
async def get_hub(
    ctx: SessionContext = Depends(get_session_context),
    services: Services = Depends(get_services),
) -> HubResponse:
    state = await services.hub.get(ctx.session_id)
    return HubResponse.from_state(state)


@router.get("/unlocks", response_model=UnlockResponse)
async def get_unlocks(
    ctx: SessionContext = Depends(get_session_context),
    services: Services = Depends(get_services),
) -> UnlockResponse:
    """Worlds the unlock rule allows, and those already out of ``locked``."""
    state = await services.hub.get(ctx.session_id)
    eligible = services.hub.compute_unlock_eligibility(state)
    return UnlockResponse(
        session_id=state.session_id,
        eligible=sorted(eligible),
        unlocked=[w.world_index for w in state.worlds if w.status is not WorldStatus.LOCKED],
    )
