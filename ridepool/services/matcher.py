"""Find trips that start and end near a reference trip. Returns ranked match cards and
persists them as Match rows.

A candidate qualifies when both its pickup and its drop-off are within the search
radius of the reference trip's. Ranking is by the larger of the two distances,
closest first.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridepool.config import settings
from ridepool.database import async_session
from ridepool.errors import TripNotFound
from ridepool.logging_config import safe_error
from ridepool.models.base import utcnow
from ridepool.models.match import Match, MatchStatus
from ridepool.models.trip import TERMINAL_STATUSES
from ridepool.services.geo import haversine_km
from ridepool.services.live import ChangeFeed, Subscription, deliver
from ridepool.services.trip_store import MATCHES, TRIPS, TripStore
from ridepool.services.validation import (
    MAX_ADDRESS_LENGTH,
    is_valid_coordinate,
    is_valid_trip,
    is_valid_trip_id,
    sanitize_text,
)

logger = logging.getLogger(__name__)

MIN_MATCH_RADIUS_KM = 1.0
MIN_ETA_MINUTES = 3
# Rough city speed: 2 minutes per km
MINUTES_PER_KM = 2


def match_id(trip_a: str, trip_b: str) -> str:
    """Same id for (a, b) and (b, a)."""
    return "_".join(sorted((trip_a, trip_b)))


def clamp_radius(radius_km: Any = None) -> float:
    """Missing, zero or NaN -> default radius; anything else clamped to [1, max]."""
    default = settings.DEFAULT_MATCH_RADIUS_KM
    if not isinstance(radius_km, (int, float)) or isinstance(radius_km, bool):
        return default
    if math.isnan(radius_km) or radius_km == 0:
        return default
    return min(max(float(radius_km), MIN_MATCH_RADIUS_KM), settings.MAX_MATCH_RADIUS_KM)


@dataclass
class MatchResult:
    id: str
    trip_a: str
    trip_b: str
    distance_km: float
    eta_minutes: int
    riders: int = 1
    pickup_address: str = "Pickup"
    dropoff_address: str = "Drop-off"
    status: MatchStatus = MatchStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)

    @property
    def trip_id(self) -> str:
        return self.trip_b

    @classmethod
    def from_row(cls, row: Match) -> "MatchResult":
        return cls(
            id=row.id,
            trip_a=row.trip_a,
            trip_b=row.trip_b,
            distance_km=row.distance_km,
            eta_minutes=row.eta_minutes,
            riders=row.riders,
            pickup_address=row.pickup_address,
            dropoff_address=row.dropoff_address,
            status=row.status,
            created_at=row.created_at or utcnow(),
        )


def rank_candidates(
    reference: Any,
    candidates: Iterable[Any],
    radius_km: Any = None,
    limit: int | None = None,
) -> list[MatchResult]:
    """Filter candidates against reference and return the closest first (at most limit).

    Skipped: the reference itself, trips of the same user, pairs already seen in this
    pass, trips with unusable coordinates, and anything outside the radius at either end.
    """
    radius = clamp_radius(radius_km)
    if limit is None:
        limit = settings.MATCH_RESULT_LIMIT
    seen: set[str] = set()
    results: list[MatchResult] = []
    for cand in candidates:
        if cand.id == reference.id:
            continue
        # Never match a rider with themselves
        if cand.user_id == reference.user_id:
            continue
        key = match_id(reference.id, cand.id)
        if key in seen:
            continue
        seen.add(key)
        pickup, dropoff = getattr(cand, "pickup", None), getattr(cand, "dropoff", None)
        if not is_valid_coordinate(getattr(pickup, "latitude", None), getattr(pickup, "longitude", None)):
            continue
        if not is_valid_coordinate(getattr(dropoff, "latitude", None), getattr(dropoff, "longitude", None)):
            continue

        pickup_distance = haversine_km(
            reference.pickup.latitude, reference.pickup.longitude, pickup.latitude, pickup.longitude
        )
        drop_distance = haversine_km(
            reference.dropoff.latitude, reference.dropoff.longitude, dropoff.latitude, dropoff.longitude
        )
        if pickup_distance > radius or drop_distance > radius:
            continue

        distance_km = max(pickup_distance, drop_distance)
        results.append(
            MatchResult(
                id=key,
                trip_a=reference.id,
                trip_b=cand.id,
                distance_km=round(distance_km, 1),
                eta_minutes=max(MIN_ETA_MINUTES, round(distance_km * MINUTES_PER_KM)),
                riders=getattr(cand, "riders", None) or 1,
                pickup_address=sanitize_text(pickup.address or "Pickup", MAX_ADDRESS_LENGTH),
                dropoff_address=sanitize_text(dropoff.address or "Drop-off", MAX_ADDRESS_LENGTH),
                status=MatchStatus.PENDING,
                created_at=getattr(cand, "created_at", None) or utcnow(),
            )
        )
    # sort() is stable: equal distances keep scan order (newest candidate first)
    results.sort(key=lambda m: m.distance_km)
    return results[:limit]


class MatchScan:
    """Live match view for one reference trip. Re-ranks on every trip change."""

    def __init__(
        self, reference: Any, radius_km: float, release: Callable[["MatchScan"], None] | None = None
    ) -> None:
        self.reference = reference
        self.radius_km = radius_km
        # sequence number of the evaluation in flight or last delivered
        self.seq = 0
        self._release = release
        self.matches: list[MatchResult] = []
        self.loading = True
        self.subscription: Subscription | None = None
        self._disposed = False

    @property
    def active(self) -> bool:
        return not self._disposed

    def dispose(self) -> None:
        self._disposed = True
        if self.subscription is not None:
            self.subscription.dispose()
        self.loading = False
        if self._release is not None:
            self._release(self)

    def __call__(self) -> None:
        self.dispose()


class MatchingEngine:
    def __init__(
        self,
        trips: TripStore,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        feed: ChangeFeed | None = None,
    ) -> None:
        self._trips = trips
        self._session_factory = session_factory
        self._feed = feed or trips.feed
        # reference trip id -> sequence number of its latest evaluation
        self._latest_seq: dict[str, int] = {}
        self._seq = 0

    async def generate_matches(
        self,
        trip: Any,
        radius_km: Any = None,
        on_change: Callable[[list[MatchResult]], Any] | None = None,
    ) -> MatchScan | None:
        """Start a live match scan for trip. Invalid trips are logged and ignored (None)."""
        if trip is None or not getattr(trip, "id", None) or not getattr(trip, "user_id", None):
            logger.warning("Cannot generate matches: invalid trip")
            return None
        if not is_valid_trip(trip):
            logger.warning("Cannot generate matches: invalid trip")
            return None
        return await self.attach_match_listener(trip, radius_km, on_change)

    async def attach_match_listener(
        self,
        trip: Any,
        radius_km: Any = None,
        on_change: Callable[[list[MatchResult]], Any] | None = None,
    ) -> MatchScan:
        scan = MatchScan(trip, clamp_radius(radius_km), release=lambda s: self._release_seq(trip.id, s.seq))

        async def fetch():
            stored = await self._trips.get_trip(trip.id)
            if stored is not None and stored.status in TERMINAL_STATUSES:
                self._release_seq(trip.id, scan.seq)
                return None
            scan.seq = self._next_seq(trip.id)
            return await self._trips.list_open_trips(settings.MATCH_CANDIDATE_LIMIT)

        async def on_snapshot(candidates):
            if candidates is None:
                # Reference trip completed or cancelled: nothing to offer, nothing to persist
                scan.matches = []
                scan.loading = False
                if on_change is not None:
                    await deliver(on_change, [], "matches")
                return
            seq = scan.seq
            if self._is_stale(scan, seq):
                return
            ranked = rank_candidates(trip, candidates, scan.radius_km)
            scan.matches = ranked
            scan.loading = False
            if on_change is not None:
                await deliver(on_change, ranked, "matches")
            if self._is_stale(scan, seq):
                return
            await self.persist_matches(trip.id, ranked)

        async def on_error(exc):
            scan.matches = []
            scan.loading = False
            if on_change is not None:
                await deliver(on_change, [], "matches")

        scan.subscription = await self._feed.subscribe(
            [TRIPS], fetch, on_snapshot, on_error, name=f"matches:{trip.id}"
        )
        if not scan.active:
            scan.subscription.dispose()
        return scan

    def _next_seq(self, trip_id: str) -> int:
        self._seq += 1
        self._latest_seq[trip_id] = self._seq
        return self._seq

    def _release_seq(self, trip_id: str, seq: int) -> None:
        # A newer evaluation keeps its entry
        if self._latest_seq.get(trip_id) == seq:
            del self._latest_seq[trip_id]

    def _is_stale(self, scan: MatchScan, seq: int) -> bool:
        trip_id = scan.reference.id
        if scan.active and self._latest_seq.get(trip_id) == seq:
            return False
        logger.info("Dropping stale match scan for trip %s", trip_id)
        return True

    async def persist_matches(self, trip_id: str, matches: list[MatchResult]) -> int:
        """Upsert matches by pair id in one transaction. Failures are logged, not raised."""
        if not matches:
            return 0
        written = 0
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    for m in matches:
                        if m.trip_a == m.trip_b:
                            logger.warning("Skipping invalid match: trip_a == trip_b")
                            continue
                        await db.merge(
                            Match(
                                id=match_id(m.trip_a, m.trip_b),
                                trip_a=m.trip_a,
                                trip_b=m.trip_b,
                                distance_km=m.distance_km,
                                eta_minutes=m.eta_minutes,
                                riders=m.riders,
                                pickup_address=m.pickup_address,
                                dropoff_address=m.dropoff_address,
                                status=m.status,
                                created_at=utcnow(),
                            )
                        )
                        written += 1
        except SQLAlchemyError as exc:
            logger.warning("Failed to persist matches for trip %s: %s", trip_id, safe_error(exc))
            return 0
        if written:
            await self._feed.publish(MATCHES)
        return written

    async def find_matches(self, trip_id: str, radius_km: Any = None) -> list[MatchResult]:
        """One-shot ranking for trip_id against the current open trips, persisted."""
        trip = await self._trips.get_trip(trip_id)
        if trip is None:
            raise TripNotFound("Trip not found")
        if not is_valid_trip(trip):
            logger.warning("Cannot generate matches: invalid trip")
            return []
        candidates = await self._trips.list_open_trips(settings.MATCH_CANDIDATE_LIMIT)
        ranked = rank_candidates(trip, candidates, radius_km)
        seq = self._next_seq(trip.id)
        await self.persist_matches(trip.id, ranked)
        self._release_seq(trip.id, seq)
        return ranked

    async def matches_for_trip(self, trip_id: str) -> list[MatchResult]:
        """Persisted matches where trip_id is either side, closest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Match)
                .where(or_(Match.trip_a == trip_id, Match.trip_b == trip_id))
                .order_by(Match.distance_km.asc())
            )
            return [MatchResult.from_row(row) for row in result.scalars().all()]

    async def listen_to_trip_matches(
        self,
        trip_id: str,
        on_change: Callable[[list[MatchResult]], Any] | None = None,
    ) -> Subscription[list[MatchResult]]:
        """Live view of persisted matches involving trip_id (either side)."""
        if not is_valid_trip_id(trip_id):
            logger.warning("Invalid tripId for match listener")
            return Subscription.closed([], name="trip_matches")

        async def fetch() -> list[MatchResult]:
            return await self.matches_for_trip(trip_id)

        return await self._feed.subscribe([MATCHES], fetch, on_snapshot=on_change, name=f"trip_matches:{trip_id}")
