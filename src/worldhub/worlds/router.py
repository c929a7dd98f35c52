"""World session endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from worldhub.auth.dependencies import get_session_context
from worldhub.auth.jwt import SessionContext
from worldhub.dependencies import get_services
from worldhub.errors import HandleNotFound
from worldhub.hub.schemas import HubResponse
from worldhub.services import Services
from worldhub.worlds.content import NetworkProfile
from worldhub.worlds.controller import WorldHandle
from worldhub.worlds.schemas import (
    CheckpointRequest,
    CompleteWorldRequest,
    EnterWorldRequest,
    WorldHandleResponse,
)

router = APIRouter(prefix="/api/v1/worlds", tags=["Worlds"])


def _own_handle(services: Services, ctx: SessionContext, handle_id: str) -> WorldHandle:
    handle = services.controller.lookup(handle_id)
    if handle.session_id != ctx.session_id or handle.device_id != ctx.device_id:
        raise HandleNotFound(handle_id=handle_id)
    return handle


@router.post("/{world_index}/enter", response_model=WorldHandleResponse)
async def enter_world(
    world_index: int,
    body: EnterWorldRequest | None = None,
    ctx: SessionContext = Depends(get_session_context),
    services: Services = Depends(get_services),
) -> WorldHandleResponse:
    """Check a world out for this device and load its content."""
    network = None
    if body is not None and body.bandwidth_kbps is not None:
        network = NetworkProfile(bandwidth_kbps=body.bandwidth_kbps, latency_ms=body.latency_ms)
    handle = await services.controller.enter(ctx.session_id, world_index, ctx.device_id, network)
    services.controller.prefetch_adjacent(handle.handle_id)
    state = await services.hub.get(ctx.session_id)
    return WorldHandleResponse.from_handle(handle, HubResponse.from_state(state))


@router.post("/handles/{handle_id}/checkpoint", response_model=HubResponse)
async def checkpoint_world(
    handle_id: str,
    body: CheckpointRequest,
    ctx: SessionContext = Depends(get_session_context),
    services: Services = Depends(get_services),
) -> HubResponse:
    handle = _own_handle(services, ctx, handle_id)
    state = await services.controller.checkpoint(handle.handle_id, body.raw())
    return HubResponse.from_state(state)


@router.post("/handles/{handle_id}/complete", response_model=HubResponse)
async def complete_world(
    handle_id: str,
    body: CompleteWorldRequest,
    ctx: SessionContext = Depends(get_session_context),
    services: Services = Depends(get_services),
) -> HubResponse:
    """Finalize the world score. Retrying with the same score is harmless."""
    handle = _own_handle(services, ctx, handle_id)
    state = await services.controller.complete(handle.handle_id, body.score, body.achievement_flags)
    return HubResponse.from_state(state)


@router.post("/handles/{handle_id}/exit", response_model=HubResponse)
async def exit_world(
    handle_id: str,
    ctx: SessionContext = Depends(get_session_context),
    services: Services = Depends(get_services),
) -> HubResponse:
    handle = _own_handle(services, ctx, handle_id)
    state = await services.controller.exit(handle.handle_id)
    return HubResponse.from_state(state)
