"""Data-subject rights endpoints. Both are keyed by the access code itself."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from worldhub.dependencies import get_services
from worldhub.services import Services
from worldhub.ws.manager import manager

router = APIRouter(prefix="/api/v1/privacy", tags=["Privacy"])


@router.get("/export")
async def export_session(
    code: str = Query(..., min_length=1, max_length=32),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return await services.privacy.export_session(code)


@router.delete("/session")
async def erase_session(
    code: str = Query(..., min_length=1, max_length=32),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Delete every record of the session. This cannot be undone."""
    result = await services.privacy.erase_session(code)
    await manager.close_session(result["sessionId"])
    return result
