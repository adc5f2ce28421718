"""Tests for TripStore: booking rules, status lifecycle, live current-trip view."""
import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from ridepool.errors import (
    InvalidDistance,
    InvalidInput,
    InvalidStatus,
    InvalidTransition,
    RateLimited,
    StorageError,
    TripExists,
    TripNotFound,
    WriteTimeout,
)
from ridepool.models.match import Match
from ridepool.models.trip import Trip, TripStatus
from ridepool.services.live import ChangeFeed
from ridepool.services.trip_store import TripStore


def _match_row(trip_a: str, trip_b: str) -> Match:
    return Match(
        id="_".join(sorted((trip_a, trip_b))),
        trip_a=trip_a,
        trip_b=trip_b,
        distance_km=0.1,
        eta_minutes=3,
        riders=1,
        pickup_address="Pickup",
        dropoff_address="Drop-off",
    )


async def _all_trips(session_factory) -> list[Trip]:
    async with session_factory() as db:
        result = await db.execute(select(Trip))
        return list(result.scalars().all())


async def _all_matches(session_factory) -> list[Match]:
    async with session_factory() as db:
        result = await db.execute(select(Match))
        return list(result.scalars().all())


class TestCreateTrip:
    @pytest.mark.asyncio
    async def test_creates_pending_trip(self, services, session_factory, draft):
        trip = await services.trips.create_trip(draft("alice"))
        assert trip is not None
        assert trip.status == TripStatus.PENDING
        assert trip.user_id == "alice"
        stored = await services.trips.get_trip(trip.id)
        assert stored is not None
        assert stored.pickup_address == "Liberty Market"
        assert stored.estimated_price == 200

    @pytest.mark.asyncio
    async def test_owner_id_is_sanitized(self, services, draft):
        trip = await services.trips.create_trip(draft("al ice!"))
        assert trip.user_id == "alice"

    @pytest.mark.asyncio
    async def test_rejects_unusable_owner(self, services, draft):
        with pytest.raises(InvalidInput):
            await services.trips.create_trip(draft("!!!"))

    @pytest.mark.asyncio
    async def test_too_far_is_rejected_and_nothing_written(self, services, session_factory, draft):
        with pytest.raises(InvalidDistance) as exc_info:
            await services.trips.create_trip(draft("alice", dropoff=(33.8, 74.35)))
        assert exc_info.value.distance_km > 200
        assert await _all_trips(session_factory) == []

    @pytest.mark.asyncio
    async def test_too_close_is_rejected(self, services, draft):
        with pytest.raises(InvalidDistance):
            await services.trips.create_trip(draft("alice", dropoff=(31.5201, 74.3501)))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"vehicle_type": "truck"},
            {"price": 5},
            {"price": 60000},
            {"pickup": (95.0, 74.35)},
            {"dropoff": (31.54, 190.0)},
            {"trip_id": "x" * 129},
        ],
    )
    async def test_invalid_fields(self, services, draft, overrides):
        with pytest.raises(InvalidInput):
            await services.trips.create_trip(draft("alice", **overrides))

    @pytest.mark.asyncio
    async def test_rejected_input_does_not_use_up_the_cooldown(self, services, draft):
        with pytest.raises(InvalidInput):
            await services.trips.create_trip(draft("alice", vehicle_type="truck"))
        assert await services.trips.create_trip(draft("alice")) is not None

    @pytest.mark.asyncio
    async def test_rate_limited_within_five_seconds(self, services, session_factory, clock, draft):
        await services.trips.create_trip(draft("alice"))
        clock.advance(4)
        with pytest.raises(RateLimited) as exc_info:
            await services.trips.create_trip(draft("alice"))
        assert exc_info.value.retry_after_ms == 1000
        assert len(await _all_trips(session_factory)) == 1
        clock.advance(1)
        assert await services.trips.create_trip(draft("alice")) is not None

    @pytest.mark.asyncio
    async def test_rate_limit_is_per_user(self, services, draft):
        await services.trips.create_trip(draft("alice"))
        assert await services.trips.create_trip(draft("bob")) is not None

    @pytest.mark.asyncio
    async def test_duplicate_submission_is_ignored(self, services, session_factory, clock, draft):
        first = await services.trips.create_trip(draft("alice", trip_id="trip-1"))
        assert first is not None
        clock.advance(5)
        assert await services.trips.create_trip(draft("alice", trip_id="trip-1")) is None
        assert len(await _all_trips(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_taken_trip_id_is_a_conflict(self, services, session_factory, clock, draft):
        await services.trips.create_trip(draft("alice", trip_id="t1"))
        clock.advance(61)
        with pytest.raises(TripExists):
            await services.trips.create_trip(draft("bob", trip_id="t1"))
        # Cooldown was not used up
        assert await services.trips.create_trip(draft("bob", trip_id="t2")) is not None

        with pytest.raises(TripExists):
            await services.trips.create_trip(draft("alice", trip_id="t1"))
        assert (await services.trips.get_trip("t1")).user_id == "alice"
        assert len(await _all_trips(session_factory)) == 2

    @pytest.mark.asyncio
    async def test_new_trip_cancels_open_trips_and_their_matches(self, services, session_factory, clock, draft):
        old = await services.trips.create_trip(draft("alice", trip_id="old"))
        other = await services.trips.create_trip(draft("bob", trip_id="other"))
        async with session_factory() as db:
            async with db.begin():
                db.add(_match_row(old.id, other.id))
        clock.advance(5)

        new = await services.trips.create_trip(draft("alice", trip_id="new"))

        assert (await services.trips.get_trip("old")).status == TripStatus.CANCELLED
        assert (await services.trips.get_trip("new")).status == TripStatus.PENDING
        assert (await services.trips.get_trip("other")).status == TripStatus.PENDING
        assert await _all_matches(session_factory) == []
        assert (await services.trips.current_trip_for_user("alice")).id == new.id

    @pytest.mark.asyncio
    async def test_write_timeout_allows_retry(self, session_factory, guard, clock, draft):
        store = TripStore(session_factory, ChangeFeed(), guard, write_timeout=0.01)

        async def slow_book(db, new_trip):
            await asyncio.sleep(1)
            return []

        store._book = slow_book
        with pytest.raises(WriteTimeout):
            await store.create_trip(draft("alice", trip_id="t1"))

        del store._book
        clock.advance(5)
        # the duplicate-submission key was released, so the retry goes through
        assert await store.create_trip(draft("alice", trip_id="t1")) is not None

    @pytest.mark.asyncio
    async def test_storage_failure_is_reported(self, session_factory, guard, draft):
        store = TripStore(session_factory, ChangeFeed(), guard)

        async def broken_book(db, new_trip):
            raise OperationalError("INSERT", {}, Exception("disk full"))

        store._book = broken_book
        with pytest.raises(StorageError):
            await store.create_trip(draft("alice"))
        assert await _all_trips(session_factory) == []


class TestTripStatus:
    @pytest.mark.asyncio
    async def test_lifecycle_to_completed_removes_initiated_matches(self, services, session_factory, draft):
        a = await services.trips.create_trip(draft("alice", trip_id="a"))
        b = await services.trips.create_trip(draft("bob", trip_id="b"))
        async with session_factory() as db:
            async with db.begin():
                db.add(_match_row(a.id, b.id))

        active = await services.trips.update_trip_status("a", "active")
        assert active.status == TripStatus.ACTIVE
        assert len(await _all_matches(session_factory)) == 1

        done = await services.trips.update_trip_status("a", TripStatus.COMPLETED)
        assert done.status == TripStatus.COMPLETED
        assert await _all_matches(session_factory) == []

    @pytest.mark.asyncio
    async def test_matches_initiated_by_the_other_trip_are_kept(self, services, session_factory, draft):
        await services.trips.create_trip(draft("alice", trip_id="a"))
        await services.trips.create_trip(draft("bob", trip_id="b"))
        async with session_factory() as db:
            async with db.begin():
                db.add(_match_row("b", "a"))
        await services.trips.cancel_trip("a")
        assert len(await _all_matches(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_unknown_status(self, services, draft):
        await services.trips.create_trip(draft("alice", trip_id="a"))
        with pytest.raises(InvalidStatus):
            await services.trips.update_trip_status("a", "flying")

    @pytest.mark.asyncio
    async def test_missing_trip(self, services):
        with pytest.raises(TripNotFound):
            await services.trips.update_trip_status("nope", "active")

    @pytest.mark.asyncio
    async def test_invalid_trip_id(self, services):
        with pytest.raises(InvalidInput):
            await services.trips.update_trip_status("", "active")

    @pytest.mark.asyncio
    async def test_terminal_trips_cannot_move(self, services, draft):
        await services.trips.create_trip(draft("alice", trip_id="a"))
        await services.trips.cancel_trip("a")
        with pytest.raises(InvalidTransition):
            await services.trips.update_trip_status("a", "active")

    @pytest.mark.asyncio
    async def test_pending_cannot_complete(self, services, draft):
        await services.trips.create_trip(draft("alice", trip_id="a"))
        with pytest.raises(InvalidTransition):
            await services.trips.update_trip_status("a", "completed")
        assert (await services.trips.get_trip("a")).status == TripStatus.PENDING


class TestTripReads:
    @pytest.mark.asyncio
    async def test_list_open_trips_newest_first(self, services, draft):
        await services.trips.create_trip(draft("alice", trip_id="a"))
        await services.trips.create_trip(draft("bob", trip_id="b"))
        await services.trips.create_trip(draft("carol", trip_id="c"))
        await services.trips.cancel_trip("b")
        open_trips = await services.trips.list_open_trips(50)
        assert [t.id for t in open_trips] == ["c", "a"]

    @pytest.mark.asyncio
    async def test_current_trip_includes_matched(self, services, draft):
        await services.trips.create_trip(draft("alice", trip_id="a"))
        await services.trips.update_trip_status("a", "matched")
        current = await services.trips.current_trip_for_user("alice")
        assert current.id == "a"
        assert current.status == TripStatus.MATCHED

    @pytest.mark.asyncio
    async def test_get_trip_invalid_id(self, services):
        assert await services.trips.get_trip("") is None


class TestActiveTripListener:
    @pytest.mark.asyncio
    async def test_follows_current_trip(self, services, clock, draft):
        seen = []
        sub = await services.trips.listen_to_user_active_trip("alice", seen.append)
        assert seen == [None]
        assert sub.loading is False

        trip = await services.trips.create_trip(draft("alice", trip_id="a"))
        assert seen[-1].id == trip.id

        await services.trips.update_trip_status("a", "active")
        assert seen[-1].status == TripStatus.ACTIVE

        await services.trips.update_trip_status("a", "completed")
        assert seen[-1] is None

    @pytest.mark.asyncio
    async def test_dispose_stops_updates(self, services, draft):
        seen = []
        sub = await services.trips.listen_to_user_active_trip("alice", seen.append)
        sub.dispose()
        sub.dispose()
        await services.trips.create_trip(draft("alice"))
        assert seen == [None]
        assert services.feed.subscriber_count("trips") == 0

    @pytest.mark.asyncio
    async def test_invalid_user_gives_closed_empty_view(self, services):
        seen = []
        sub = await services.trips.listen_to_user_active_trip("$$$", seen.append)
        assert sub.active is False
        assert sub.latest is None
        assert seen == []
