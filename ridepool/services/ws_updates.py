"""Connection manager for live WebSocket views. One RideSession per connection."""
import json
import logging
from typing import Any

from fastapi import WebSocket

from ridepool.services.ride_session import RideSession

logger = logging.getLogger(__name__)


class LiveConnectionManager:
    """Maps user_id -> {websocket: RideSession}. Disconnect tears the session's listeners down."""

    def __init__(self) -> None:
        self._connections: dict[str, dict[WebSocket, RideSession]] = {}

    def connect(self, user_id: str, websocket: WebSocket, session: RideSession) -> None:
        self._connections.setdefault(user_id, {})[websocket] = session

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sessions = self._connections.get(user_id)
        if not sessions:
            return
        session = sessions.pop(websocket, None)
        if session is not None:
            session.clear_all_listeners()
        if not sessions:
            del self._connections[user_id]

    def connection_count(self, user_id: str) -> int:
        return len(self._connections.get(user_id, {}))

    async def send(self, user_id: str, websocket: WebSocket, message: dict[str, Any]) -> bool:
        """Send one frame. A dead socket is dropped (and its listeners cleared); returns False."""
        try:
            await websocket.send_text(json.dumps(message))
            return True
        except Exception as e:
            logger.info("Dropping live connection for %s: %s", user_id, type(e).__name__)
            self.disconnect(user_id, websocket)
            return False


live_manager = LiveConnectionManager()
