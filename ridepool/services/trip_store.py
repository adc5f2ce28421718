"""Trip store: booking, status lifecycle and the live "my current trip" query.

Invariant: a user has at most one pending/active trip. Booking a new trip cancels the
old ones (and drops the matches they initiated) in the same transaction as the insert.
"""
import asyncio
import logging
import uuid

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridepool.config import settings
from ridepool.database import async_session
from ridepool.errors import (
    InvalidDistance,
    InvalidInput,
    RateLimited,
    StorageError,
    TripExists,
    TripNotFound,
    WriteTimeout,
)
from ridepool.logging_config import safe_error
from ridepool.models.base import utcnow
from ridepool.models.match import Match
from ridepool.models.trip import CURRENT_STATUSES, OPEN_STATUSES, TERMINAL_STATUSES, Trip, TripStatus
from ridepool.schemas.trip import TripDraft
from ridepool.services import live
from ridepool.services.live import ChangeFeed, Subscription
from ridepool.services.state_machine import check_transition, parse_status
from ridepool.services.validation import (
    MAX_ADDRESS_LENGTH,
    Guard,
    is_valid_coordinate,
    is_valid_price,
    is_valid_ride_distance,
    is_valid_trip,
    is_valid_trip_id,
    is_valid_vehicle_type,
    sanitize_text,
    sanitize_user_id,
)

logger = logging.getLogger(__name__)

TRIPS = "trips"
MATCHES = "matches"


class TripStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        feed: ChangeFeed | None = None,
        guard: Guard | None = None,
        write_timeout: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed or live.feed
        self._guard = guard or Guard()
        self._write_timeout = write_timeout if write_timeout is not None else settings.WRITE_TIMEOUT_SECONDS

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    @property
    def guard(self) -> Guard:
        return self._guard

    # ------------------------------------------------------------------ writes

    async def create_trip(self, trip: TripDraft) -> Trip | None:
        """Validate and book trip for its owner.

        Raises InvalidInput/InvalidDistance on bad input, RateLimited within 5 s of the
        owner's previous booking, TripExists when the id is already stored, and
        WriteTimeout/StorageError when the write fails.
        Returns None (nothing written) for a duplicate submission.
        """
        user_id = sanitize_user_id(trip.user_id)
        if not user_id:
            raise InvalidInput("Invalid user ID")
        self._validate(trip)
        trip_id = trip.id if trip.id is not None else uuid.uuid4().hex
        if not is_valid_trip_id(trip_id):
            raise InvalidInput("Invalid trip ID")

        rate_key = f"trip_create_{user_id}"
        cooldown = settings.TRIP_CREATE_COOLDOWN_MS
        if self._guard.is_rate_limited(rate_key, cooldown):
            raise RateLimited(
                "Please wait before creating another trip",
                retry_after_ms=self._guard.retry_after_ms(rate_key, cooldown),
            )

        idem_key = self._guard.idempotency_key("create_trip", user_id, trip_id)
        if self._guard.is_operation_processed(idem_key):
            logger.warning("Duplicate trip creation attempt blocked")
            return None

        now = utcnow()
        new_trip = Trip(
            id=trip_id,
            user_id=user_id,
            pickup_lat=trip.pickup.latitude,
            pickup_lng=trip.pickup.longitude,
            pickup_address=sanitize_text(trip.pickup.address, MAX_ADDRESS_LENGTH),
            dropoff_lat=trip.dropoff.latitude,
            dropoff_lng=trip.dropoff.longitude,
            dropoff_address=sanitize_text(trip.dropoff.address, MAX_ADDRESS_LENGTH),
            vehicle_type=trip.vehicle_type,
            estimated_price=trip.estimated_price,
            riders=trip.riders,
            status=TripStatus.PENDING,  # always starts pending
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session_factory() as db:
                cancelled = await asyncio.wait_for(self._book(db, new_trip), self._write_timeout)
        except asyncio.TimeoutError:
            self._guard.forget_operation(idem_key)
            logger.error("Trip creation timed out after %ss", self._write_timeout)
            raise WriteTimeout("Trip creation timed out, please retry") from None
        except TripExists:
            # A new id can be booked right away
            self._guard.forget_operation(idem_key)
            self._guard.reset_rate_limit(rate_key)
            logger.info("Trip id %s already taken", new_trip.id)
            raise
        except SQLAlchemyError as exc:
            self._guard.forget_operation(idem_key)
            logger.error("Failed to create trip: %s", safe_error(exc))
            raise StorageError("Failed to create trip") from exc

        if cancelled:
            logger.info("Cancelled %d open trip(s) superseded by %s", len(cancelled), new_trip.id)
            await self._feed.publish(TRIPS, MATCHES)
        else:
            await self._feed.publish(TRIPS)
        return new_trip

    async def _book(self, db: AsyncSession, new_trip: Trip) -> list[str]:
        """Cancel the owner's open trips and insert new_trip, all in one transaction."""
        async with db.begin():
            if await db.get(Trip, new_trip.id) is not None:
                raise TripExists("A trip with this ID already exists")
            result = await db.execute(
                select(Trip).where(Trip.user_id == new_trip.user_id).where(Trip.status.in_(OPEN_STATUSES))
            )
            old_trips = result.scalars().all()
            cancelled = [t.id for t in old_trips]
            for old in old_trips:
                old.status = TripStatus.CANCELLED
                old.updated_at = new_trip.created_at
            if cancelled:
                await db.execute(delete(Match).where(Match.trip_a.in_(cancelled)))
            db.add(new_trip)
        return cancelled

    def _validate(self, trip: TripDraft) -> None:
        if not is_valid_coordinate(trip.pickup.latitude, trip.pickup.longitude):
            raise InvalidInput("Invalid pickup coordinates")
        if not is_valid_coordinate(trip.dropoff.latitude, trip.dropoff.longitude):
            raise InvalidInput("Invalid drop-off coordinates")
        check = is_valid_ride_distance(
            trip.pickup.latitude, trip.pickup.longitude, trip.dropoff.latitude, trip.dropoff.longitude
        )
        if not check.valid:
            raise InvalidDistance(check.error or "Invalid ride distance", check.distance)
        if not is_valid_vehicle_type(trip.vehicle_type):
            raise InvalidInput("Invalid vehicle type")
        if not is_valid_price(trip.estimated_price):
            raise InvalidInput("Invalid price")

    async def update_trip_status(self, trip_id: str, new_status: str | TripStatus) -> Trip:
        """Move trip to new_status. Entering completed/cancelled removes the matches the
        trip initiated, in the same transaction."""
        if not is_valid_trip_id(trip_id):
            raise InvalidInput("Invalid trip ID")
        status = parse_status(new_status)
        removed = 0
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    trip = await db.get(Trip, trip_id)
                    if trip is None:
                        raise TripNotFound("Trip not found")
                    check_transition(trip.status, status)
                    trip.status = status
                    trip.updated_at = utcnow()
                    if status in TERMINAL_STATUSES:
                        result = await db.execute(delete(Match).where(Match.trip_a == trip_id))
                        removed = result.rowcount or 0
        except SQLAlchemyError as exc:
            logger.error("Failed to update trip status: %s", safe_error(exc))
            raise StorageError("Failed to update trip status") from exc

        if removed:
            logger.info("Removed %d match(es) of %s trip %s", removed, status.value, trip_id)
            await self._feed.publish(TRIPS, MATCHES)
        else:
            await self._feed.publish(TRIPS)
        return trip

    async def cancel_trip(self, trip_id: str) -> Trip:
        return await self.update_trip_status(trip_id, TripStatus.CANCELLED)

    # ------------------------------------------------------------------- reads

    async def get_trip(self, trip_id: str) -> Trip | None:
        if not is_valid_trip_id(trip_id):
            return None
        async with self._session_factory() as db:
            return await db.get(Trip, trip_id)

    async def list_open_trips(self, limit: int) -> list[Trip]:
        """Pending/active trips of every user, newest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Trip)
                .where(Trip.status.in_(OPEN_STATUSES))
                .order_by(Trip.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def current_trip_for_user(self, user_id: str) -> Trip | None:
        """Newest pending/active/matched trip of user_id, or None."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Trip)
                .where(Trip.user_id == user_id)
                .where(Trip.status.in_(CURRENT_STATUSES))
                .order_by(Trip.created_at.desc())
                .limit(1)
            )
            trip = result.scalar_one_or_none()
        if trip is not None and not is_valid_trip(trip):
            logger.warning("Invalid trip data received")
            return None
        return trip

    async def listen_to_user_active_trip(
        self, user_id: str, on_change=None, on_error=None
    ) -> Subscription[Trip | None]:
        """Live view of the user's current trip. An unusable user id gives an empty,
        already-stopped view."""
        sanitized = sanitize_user_id(user_id)
        if not sanitized:
            logger.warning("Invalid userId for trip listener")
            return Subscription.closed(None, name="active_trip")

        async def fetch() -> Trip | None:
            return await self.current_trip_for_user(sanitized)

        return await self._feed.subscribe(
            [TRIPS], fetch, on_change, on_error, name=f"active_trip:{sanitized}"
        )
