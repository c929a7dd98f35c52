"""WebSocket endpoint for live hub updates."""

import json
import uuid

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from worldhub.auth.jwt import verify_session_token
from worldhub.hub.schemas import HubResponse
from worldhub.ws.manager import manager

logger = structlog.get_logger()

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
) -> None:
    """Live hub updates for one device.

    Protocol:
        Client -> Server:
            {"action": "ping"}
            {"action": "snapshot"}

        Server -> Client:
            {"type": "hub_updated", "payload": {...}}
            {"type": "snapshot", "payload": {...}}
            {"type": "pong"}
            {"type": "error", "message": "..."}
    """
    try:
        ctx = verify_session_token(token, websocket.app.state.services.settings)
    except Exception as e:
        await websocket.close(code=4001, reason=f"Authentication failed: {e}")
        return

    conn_id = str(uuid.uuid4())
    await manager.connect(websocket, conn_id, ctx.session_id, ctx.device_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue

            action = msg.get("action")
            if action == "ping":
                await websocket.send_json({"type": "pong"})
            elif action == "snapshot":
                services = websocket.app.state.services
                state = await services.synchronizer.pull(ctx.session_id)
                await websocket.send_json({
                    "type": "snapshot",
                    "payload": HubResponse.from_state(state).model_dump(mode="json"),
                })
            else:
                await websocket.send_json({"type": "error", "message": f"Unknown action: {action}"})

    except WebSocketDisconnect:
        await manager.disconnect(conn_id)
    except Exception:
        logger.exception("ws_error", conn_id=conn_id)
        await manager.disconnect(conn_id)
