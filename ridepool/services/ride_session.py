"""Per-user ride context: current trip, match list and chat thread, with their live queries.

One RideSession exists per signed-in user connection. It owns at most one subscription of
each kind. `clear_all_listeners()` (logout, user switch) stops all of them and resets the
state in one synchronous step, so nothing from the previous user can be delivered after it.
"""
import logging
from typing import Any, Callable

from ridepool.errors import InvalidInput
from ridepool.models.trip import Trip, TripStatus
from ridepool.schemas.trip import TripDraft
from ridepool.services.live import Subscription, deliver
from ridepool.services.matcher import MatchingEngine, MatchResult, MatchScan
from ridepool.services.messaging import ChatMessage, MessageStore, MessageThread
from ridepool.services.trip_store import TripStore
from ridepool.services.validation import sanitize_user_id

logger = logging.getLogger(__name__)

Listener = Callable[[str, Any], Any]


class RideSession:
    def __init__(
        self,
        user_id: str,
        trips: TripStore,
        engine: MatchingEngine,
        messages: MessageStore,
        on_update: Listener | None = None,
    ) -> None:
        self.user_id = sanitize_user_id(user_id)
        if not self.user_id:
            raise InvalidInput("Invalid user ID")
        self._trips = trips
        self._engine = engine
        self._messages = messages
        self._on_update = on_update

        self.current_trip: Trip | None = None
        self.matches: list[MatchResult] = []
        self.messages: list[ChatMessage] = []
        self.is_trip_loading = False
        self.matches_loading = False
        self.messages_loading = False

        self._trip_sub: Subscription | None = None
        self._trip_sub_user: str | None = None
        self._match_scan: MatchScan | None = None
        self._thread: MessageThread | None = None
        # Bumped by clear_all_listeners; callbacks from an older generation are ignored
        self._generation = 0

    # ------------------------------------------------------------- listeners

    def clear_all_listeners(self) -> None:
        """Dispose every subscription and reset all derived state."""
        self._generation += 1
        if self._match_scan is not None:
            self._match_scan.dispose()
            self._match_scan = None
        if self._thread is not None:
            self._thread.dispose()
            self._thread = None
        if self._trip_sub is not None:
            self._trip_sub.dispose()
            self._trip_sub = None
        self._trip_sub_user = None
        self.current_trip = None
        self.matches = []
        self.messages = []
        self.is_trip_loading = False
        self.matches_loading = False
        self.messages_loading = False

    async def listen_to_user_active_trip(self, user_id: str | None = None) -> Subscription:
        """Follow the user's current trip. Same user again returns the running subscription."""
        sanitized = sanitize_user_id(user_id if user_id is not None else self.user_id)
        if not sanitized:
            logger.warning("Invalid userId for trip listener")
            return Subscription.closed(None, name="active_trip")
        if self._trip_sub is not None and self._trip_sub.active and self._trip_sub_user == sanitized:
            return self._trip_sub
        if self._trip_sub is not None:
            self._trip_sub.dispose()
        self._trip_sub_user = sanitized
        self.is_trip_loading = True
        generation = self._generation

        async def on_trip(trip: Trip | None) -> None:
            if generation != self._generation:
                return
            self.current_trip = trip
            self.is_trip_loading = False
            await self._emit("trip", trip)

        def on_error(exc: BaseException) -> None:
            if generation == self._generation:
                self.is_trip_loading = False

        self._trip_sub = await self._trips.listen_to_user_active_trip(sanitized, on_trip, on_error)
        if generation != self._generation:
            self._trip_sub.dispose()
        return self._trip_sub

    async def listen_to_messages(self, match_id: str) -> MessageThread:
        """Follow one chat thread at a time; the same match again returns the open thread."""
        if self._thread is not None and self._thread.active and self._thread.match_id == match_id:
            return self._thread
        if self._thread is not None:
            self._thread.dispose()
            self._thread = None
        self.messages_loading = True
        generation = self._generation

        async def on_messages(messages: list[ChatMessage]) -> None:
            if generation != self._generation:
                return
            self.messages = messages
            self.messages_loading = False
            await self._emit("messages", messages)

        thread = await self._messages.listen_to_messages(match_id, on_messages)
        if not thread.active:
            self.messages = []
            self.messages_loading = False
            return thread
        if generation != self._generation:
            thread.dispose()
            return thread
        self._thread = thread
        return thread

    # ------------------------------------------------------------------ trips

    async def add_trip(self, trip: TripDraft) -> Trip | None:
        created = await self._trips.create_trip(trip)
        if created is not None:
            self.current_trip = created
        return created

    async def update_trip_status(self, trip_id: str, status: str | TripStatus) -> Trip:
        updated = await self._trips.update_trip_status(trip_id, status)
        if self.current_trip is not None and self.current_trip.id == trip_id:
            self.current_trip = updated
        return updated

    async def cancel_trip(self, trip_id: str) -> Trip:
        """Cancel trip_id; if it is the trip being matched, stop the match scan too."""
        cancelled = await self._trips.cancel_trip(trip_id)
        if self.current_trip is not None and self.current_trip.id == trip_id:
            if self._match_scan is not None:
                self._match_scan.dispose()
                self._match_scan = None
            self.matches = []
            self.matches_loading = False
            self.current_trip = None
        return cancelled

    # --------------------------------------------------------------- matching

    async def generate_matches(self, trip: Trip, radius_km: float | None = None) -> MatchScan | None:
        """Replace the running match scan with one for trip."""
        if trip is None or getattr(trip, "user_id", None) != self.user_id:
            logger.warning("Cannot generate matches: trip does not belong to this session")
            return None
        if self._match_scan is not None:
            self._match_scan.dispose()
            self._match_scan = None
        self.matches_loading = True
        generation = self._generation

        async def on_matches(matches: list[MatchResult]) -> None:
            if generation != self._generation:
                return
            self.matches = matches
            self.matches_loading = False
            await self._emit("matches", matches)

        scan = await self._engine.generate_matches(trip, radius_km, on_matches)
        if scan is None:
            self.matches_loading = False
            return None
        if generation != self._generation:
            scan.dispose()
            return None
        self.current_trip = trip
        self._match_scan = scan
        return scan

    # -------------------------------------------------------------- messaging

    async def add_message(self, match_id: str, text: str) -> ChatMessage:
        thread = self._thread if self._thread is not None and self._thread.match_id == match_id else None
        trip_id = self.current_trip.id if self.current_trip is not None else None
        return await self._messages.add_message(match_id, self.user_id, text, trip_id=trip_id, thread=thread)

    # ---------------------------------------------------------------- helpers

    async def _emit(self, kind: str, payload: Any) -> None:
        if self._on_update is None:
            return
        await deliver(lambda value: self._on_update(kind, value), payload, kind)
