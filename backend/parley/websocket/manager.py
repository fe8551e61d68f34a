import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


@dataclass
class ConnectionManager:
    """In-process event publisher: fans domain events out to user sockets.

    A user may hold several sockets (tabs, devices); each event is delivered
    to every socket of every recipient listed in the payload.
    """

    active_connections: dict[str, set[WebSocket]] = field(default_factory=dict)

    async def connect(self, websocket: WebSocket, user_id: str):
        await websocket.accept()
        self.active_connections.setdefault(user_id, set()).add(websocket)

    def disconnect(self, websocket: WebSocket, user_id: str):
        sockets = self.active_connections.get(user_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.active_connections[user_id]

    def connection_count(self, user_id: str) -> int:
        return len(self.active_connections.get(user_id, ()))

    async def send_to_user(self, user_id: str, message: dict):
        for ws in list(self.active_connections.get(user_id, ())):
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.debug("Dropping dead socket of user %s: %s", user_id, exc)
                self.disconnect(ws, user_id)

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        message = jsonable_encoder({"type": event_type, "data": payload})
        for user_id in payload.get("recipient_ids", ()):
            await self.send_to_user(str(user_id), message)


manager = ConnectionManager()
