"""Tests for the live WebSocket plumbing: frames, client actions, connection manager."""
import json

import pytest

from ridepool.api.ws import _frame, _handle
from ridepool.services.ws_updates import LiveConnectionManager


class FakeWebSocket:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


class TestFrames:
    @pytest.mark.asyncio
    async def test_trip_frame(self, services, draft):
        trip = await services.trips.create_trip(draft("alice", trip_id="a"))
        frame = _frame("trip", trip)
        assert frame["type"] == "trip"
        assert frame["data"]["id"] == "a"
        assert frame["data"]["status"] == "pending"
        assert _frame("trip", None) == {"type": "trip", "data": None}

    @pytest.mark.asyncio
    async def test_matches_frame_is_json_ready(self, services, draft):
        await services.trips.create_trip(draft("alice", trip_id="a"))
        await services.trips.create_trip(draft("bob", trip_id="b"))
        matches = await services.engine.find_matches("a")
        frame = _frame("matches", matches)
        json.dumps(frame)
        assert frame["data"][0]["trip_id"] == "b"


class TestClientActions:
    @pytest.mark.asyncio
    async def test_generate_matches_action(self, services, draft):
        pushed = []
        session = services.ride_session("alice", lambda kind, value: pushed.append(kind))
        await services.trips.create_trip(draft("alice", trip_id="a"))
        error = await _handle(session, services, {"action": "generate_matches", "trip_id": "a", "radius_km": 5})
        assert error is None
        assert "matches" in pushed
        session.clear_all_listeners()

    @pytest.mark.asyncio
    async def test_errors_are_reported_as_frames(self, services, draft):
        session = services.ride_session("alice")
        await services.trips.create_trip(draft("bob", trip_id="b"))
        error = await _handle(session, services, {"action": "generate_matches", "trip_id": "missing"})
        assert error["data"]["detail"] == "Trip not found"
        error = await _handle(session, services, {"action": "generate_matches", "trip_id": "b"})
        assert error["type"] == "error"
        error = await _handle(session, services, {"action": "listen_messages", "match_id": ""})
        assert error["data"]["detail"] == "Invalid match ID"
        error = await _handle(session, services, {"action": "fly"})
        assert error["data"]["detail"] == "Unknown action: fly"

    @pytest.mark.asyncio
    async def test_listen_messages_action(self, services):
        pushed = []
        session = services.ride_session("alice", lambda kind, value: pushed.append((kind, len(value))))
        assert await _handle(session, services, {"action": "listen_messages", "match_id": "a_b"}) is None
        await services.messages.add_message("a_b", "bob", "Hi")
        assert pushed[-1] == ("messages", 1)
        session.clear_all_listeners()


class TestLiveConnectionManager:
    @pytest.mark.asyncio
    async def test_disconnect_clears_session_listeners(self, services):
        manager = LiveConnectionManager()
        ws = FakeWebSocket()
        session = services.ride_session("alice")
        manager.connect("alice", ws, session)
        await session.listen_to_user_active_trip()
        assert manager.connection_count("alice") == 1
        assert services.feed.subscriber_count("trips") == 1

        manager.disconnect("alice", ws)
        manager.disconnect("alice", ws)

        assert manager.connection_count("alice") == 0
        assert services.feed.subscriber_count("trips") == 0

    @pytest.mark.asyncio
    async def test_send(self, services):
        manager = LiveConnectionManager()
        ws = FakeWebSocket()
        manager.connect("alice", ws, services.ride_session("alice"))
        assert await manager.send("alice", ws, {"type": "trip", "data": None}) is True
        assert ws.sent == [{"type": "trip", "data": None}]

    @pytest.mark.asyncio
    async def test_dead_socket_is_dropped(self, services):
        manager = LiveConnectionManager()
        ws = FakeWebSocket(fail=True)
        manager.connect("alice", ws, services.ride_session("alice"))
        assert await manager.send("alice", ws, {"type": "trip", "data": None}) is False
        assert manager.connection_count("alice") == 0
