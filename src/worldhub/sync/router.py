"""Cross-device sync endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from worldhub.auth.dependencies import get_session_context
from worldhub.auth.jwt import SessionContext
from worldhub.dependencies import get_services
from worldhub.hub.schemas import HubResponse
from worldhub.services import Services
from worldhub.sync.delta import SyncDelta
from worldhub.sync.schemas import RejectedOp, SyncPushRequest, SyncPushResponse

router = APIRouter(prefix="/api/v1/sync", tags=["Sync"])


@router.post("/push", response_model=SyncPushResponse)
async def push_deltas(
    body: SyncPushRequest,
    ctx: SessionContext = Depends(get_session_context),
    services: Services = Depends(get_services),
) -> SyncPushResponse:
    """Merge the deltas this device buffered while offline."""
    deltas = [
        SyncDelta(
            device_id=ctx.device_id,
            session_id=ctx.session_id,
            clock=d.clock,
            ops=d.ops,
            delta_id=d.delta_id,
        )
        for d in body.deltas
    ]
    result = await services.synchronizer.push(ctx.session_id, ctx.device_id, deltas)
    return SyncPushResponse(
        applied=result.report.applied,
        rejected=result.report.rejected,
        conflicts=result.report.conflicts,
        rejections=[RejectedOp(**r) for r in result.report.rejections],
        hub=HubResponse.from_state(result.state),
    )


@router.get("/pull", response_model=HubResponse)
async def pull_state(
    ctx: SessionContext = Depends(get_session_context),
    services: Services = Depends(get_services),
) -> HubResponse:
    state = await services.synchronizer.pull(ctx.session_id)
    return HubResponse.from_state(state)
