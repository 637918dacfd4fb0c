"""WebSocket endpoint — real-time asset events for the web client.

Learn: A client connects to /ws and authenticates with its access token,
either as ?token=JWT or as the first frame {"token": "..."}. The handler:
1. Accepts the socket, reads the credential
2. Asks the ConnectionManager to authenticate and join owner:<id>
   - rejected → {"event": "connect_error", "message": <reason>}, close 4001
   - accepted → {"event": "connected", "room": "owner:<id>"}
3. Answers pings until the client goes away, then leaves the room

Events reach the socket through ConnectionManager.emit_to_owner(), fed by
the Redis relay.
"""

import asyncio
import json
from typing import Any, Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from vaultsync.errors import AuthError
from vaultsync.realtime.events import CONNECT_ERROR, CONNECTED
from vaultsync.realtime.rooms import ConnectionManager

logger = structlog.get_logger()
router = APIRouter()

HANDSHAKE_TIMEOUT_SECONDS = 10.0
AUTH_FAILED_CLOSE_CODE = 4001


async def _read_handshake(websocket: WebSocket) -> Optional[dict[str, Any]]:
    """Wait for the {"token": ...} frame. None if the client left."""
    try:
        raw = await asyncio.wait_for(
            websocket.receive_text(), timeout=HANDSHAKE_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        return {}
    except WebSocketDisconnect:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


@router.websocket("/ws")
async def owner_websocket(websocket: WebSocket):
    """WebSocket endpoint for owner-scoped asset events."""
    manager: ConnectionManager = websocket.app.state.connections
    await websocket.accept()

    token = websocket.query_params.get("token")
    handshake = {"token": token} if token else await _read_handshake(websocket)
    if handshake is None:
        return

    try:
        conn = await manager.connect(websocket, handshake)
    except AuthError as e:
        await websocket.send_json({"event": CONNECT_ERROR, "message": e.reason})
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason=e.reason)
        return

    try:
        await websocket.send_json(
            {"event": CONNECTED, "room": conn.room, "socketId": conn.socket_id}
        )
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(msg, dict) and msg.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(conn.socket_id)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
