"""WebSocket: live trip / matches / messages views for the signed-in user."""
import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from ridepool.api.matches import match_to_response
from ridepool.api.messages import message_to_response
from ridepool.api.trips import trip_to_response
from ridepool.auth.tokens import user_id_from_token
from ridepool.errors import RidePoolError
from ridepool.logging_config import safe_error
from ridepool.services.registry import Services
from ridepool.services.ride_session import RideSession
from ridepool.services.ws_updates import live_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ws"])


def _frame(kind: str, value: Any) -> dict:
    if kind == "trip":
        data = trip_to_response(value) if value is not None else None
    elif kind == "matches":
        data = [match_to_response(m) for m in value]
    elif kind == "messages":
        data = [message_to_response(m) for m in value]
    else:
        data = value
    return {"type": kind, "data": jsonable_encoder(data)}


async def _handle(session: RideSession, services: Services, obj: dict) -> dict | None:
    """Run one client action. Returns an error frame, or None on success."""
    action = obj.get("action")
    if action == "generate_matches":
        trip = await services.trips.get_trip(str(obj.get("trip_id") or ""))
        if trip is None:
            return {"type": "error", "data": {"detail": "Trip not found"}}
        scan = await session.generate_matches(trip, obj.get("radius_km"))
        if scan is None:
            return {"type": "error", "data": {"detail": "Cannot generate matches for this trip"}}
        return None
    if action == "listen_messages":
        thread = await session.listen_to_messages(str(obj.get("match_id") or ""))
        if not thread.active:
            return {"type": "error", "data": {"detail": "Invalid match ID"}}
        return None
    return {"type": "error", "data": {"detail": f"Unknown action: {action}"}}


@router.websocket("/ws/live")
async def live_ws(websocket: WebSocket):
    """Connect with ?token=JWT. Server pushes { type: 'trip'|'matches'|'messages', data } on change."""
    await websocket.accept()
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4000)
        return
    user_id = user_id_from_token(token)
    if not user_id:
        await websocket.close(code=4001)
        return
    services: Services = websocket.app.state.services

    async def push(kind: str, value: Any) -> None:
        await live_manager.send(user_id, websocket, _frame(kind, value))

    session = services.ride_session(user_id, push)
    live_manager.connect(user_id, websocket, session)
    try:
        await session.listen_to_user_active_trip()
        while True:
            data = await websocket.receive_text()
            try:
                obj = json.loads(data)
            except ValueError:
                await live_manager.send(user_id, websocket, {"type": "error", "data": {"detail": "Invalid JSON"}})
                continue
            if not isinstance(obj, dict):
                continue
            try:
                error = await _handle(session, services, obj)
            except RidePoolError as e:
                error = {"type": "error", "data": {"detail": str(e)}}
            if error is not None:
                logger.info("Live action %s rejected for %s: %s", obj.get("action"), user_id, error["data"]["detail"])
                await live_manager.send(user_id, websocket, error)
    except WebSocketDisconnect:
        pass
    except RidePoolError as e:
        logger.warning("Live session for %s ended: %s", user_id, safe_error(e))
    finally:
        live_manager.disconnect(user_id, websocket)
