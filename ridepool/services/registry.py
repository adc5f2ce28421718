"""Wires the stores together around one change feed and one Guard."""
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridepool.config import settings
from ridepool.database import async_session
from ridepool.services.live import ChangeFeed
from ridepool.services.matcher import MatchingEngine
from ridepool.services.messaging import MessageStore
from ridepool.services.ride_session import Listener, RideSession
from ridepool.services.trip_store import TripStore
from ridepool.services.validation import Guard


@dataclass
class Services:
    feed: ChangeFeed
    guard: Guard
    trips: TripStore
    engine: MatchingEngine
    messages: MessageStore

    def ride_session(self, user_id: str, on_update: Listener | None = None) -> RideSession:
        return RideSession(user_id, self.trips, self.engine, self.messages, on_update)


def build_services(
    session_factory: async_sessionmaker[AsyncSession] = async_session,
    feed: ChangeFeed | None = None,
    guard: Guard | None = None,
    **store_options: Any,
) -> Services:
    """store_options (e.g. write_timeout) are passed to the trip and message stores."""
    feed = feed or ChangeFeed()
    guard = guard or Guard(idempotency_ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS)
    trips = TripStore(session_factory, feed, guard, **store_options)
    engine = MatchingEngine(trips, session_factory, feed)
    messages = MessageStore(session_factory, feed, guard, **store_options)
    return Services(feed=feed, guard=guard, trips=trips, engine=engine, messages=messages)
