import logging

from fastapi import WebSocket, WebSocketDisconnect

from parley.database import async_session
from parley.models.user import User
from parley.services.auth import decode_user_id
from parley.websocket.manager import manager

logger = logging.getLogger(__name__)


async def authenticate_ws(websocket: WebSocket) -> User | None:
    token = websocket.query_params.get("token")
    if not token:
        return None
    user_id = decode_user_id(token)
    if user_id is None:
        return None
    async with async_session() as db:
        return await db.get(User, user_id)


async def websocket_endpoint(websocket: WebSocket):
    """Event stream of the authenticated user.

    The client only sends ``{"type": "heartbeat"}`` frames; every domain
    event addressed to the user arrives on this socket.
    """
    user = await authenticate_ws(websocket)
    if not user:
        await websocket.close(code=4001, reason="Unauthorized")
        return

    user_id = str(user.id)
    presence = websocket.app.state.presence
    await manager.connect(websocket, user_id)
    await presence.heartbeat(user.id)

    try:
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type")

            if msg_type == "heartbeat":
                await presence.heartbeat(user.id)
                await websocket.send_json({"type": "heartbeat_ack"})
            else:
                logger.debug("Ignoring websocket frame %r from %s", msg_type, user_id)
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket, user_id)
