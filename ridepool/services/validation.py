"""Input validation, sanitization, rate limiting and duplicate-submission tracking.

The predicates are pure. Rate-limit and idempotency state lives in a `Guard`
instance owned by whoever builds the stores (one per app, one per test), never in
module globals. The clock is injectable so callers can control time.
"""
import math
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

from ridepool.services.geo import haversine_km

VALID_VEHICLE_TYPES = ("bike", "rickshaw", "car", "suv")

MIN_PRICE = 10
MAX_PRICE = 50000
MIN_RIDE_DISTANCE_KM = 0.1  # 100 meters
MAX_RIDE_DISTANCE_KM = 200.0
MAX_MESSAGE_LENGTH = 5000
MAX_ADDRESS_LENGTH = 500
MAX_USER_ID_LENGTH = 128
MAX_TRIP_ID_LENGTH = 128
MAX_MATCH_ID_LENGTH = 256
MAX_CLIENT_ID_LENGTH = 64
IDEMPOTENCY_WINDOW_MS = 60_000

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_USER_ID_DISALLOWED = re.compile(r"[^a-zA-Z0-9_-]")


@dataclass(frozen=True)
class DistanceCheck:
    valid: bool
    distance: float
    error: str | None = None


@dataclass(frozen=True)
class MessageCheck:
    valid: bool
    error: str | None = None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)


def is_valid_coordinate(lat: Any, lng: Any) -> bool:
    return _is_number(lat) and _is_number(lng) and -90 <= lat <= 90 and -180 <= lng <= 180


def is_valid_ride_distance(pickup_lat: Any, pickup_lng: Any, drop_lat: Any, drop_lng: Any) -> DistanceCheck:
    """Pickup and drop-off must be between 100 m and 200 km apart (both bounds inclusive)."""
    if not is_valid_coordinate(pickup_lat, pickup_lng) or not is_valid_coordinate(drop_lat, drop_lng):
        return DistanceCheck(valid=False, distance=0.0, error="Invalid coordinates")
    distance = haversine_km(pickup_lat, pickup_lng, drop_lat, drop_lng)
    return check_ride_distance(distance)


def check_ride_distance(distance: float) -> DistanceCheck:
    if distance < MIN_RIDE_DISTANCE_KM:
        return DistanceCheck(valid=False, distance=distance, error="Pickup and drop-off are too close")
    if distance > MAX_RIDE_DISTANCE_KM:
        return DistanceCheck(valid=False, distance=distance, error="Distance exceeds maximum limit")
    return DistanceCheck(valid=True, distance=distance)


def is_valid_price(price: Any) -> bool:
    return _is_number(price) and MIN_PRICE <= price <= MAX_PRICE


def is_valid_vehicle_type(vehicle_type: Any) -> bool:
    return vehicle_type in VALID_VEHICLE_TYPES


def is_valid_message(text: Any) -> MessageCheck:
    if not text or not isinstance(text, str) or not text.strip():
        return MessageCheck(valid=False, error="Message cannot be empty")
    if len(text.strip()) > MAX_MESSAGE_LENGTH:
        return MessageCheck(valid=False, error=f"Message too long (max {MAX_MESSAGE_LENGTH} characters)")
    return MessageCheck(valid=True)


def sanitize_text(value: Any, max_length: int = 1000) -> str:
    """Trim, truncate to max_length, drop control characters (tab and newlines are kept)."""
    if not value or not isinstance(value, str):
        return ""
    return _CONTROL_CHARS.sub("", value.strip()[:max_length])


def sanitize_user_id(user_id: Any) -> str:
    """Keep [A-Za-z0-9_-] only, at most 128 chars. Returns "" for anything unusable."""
    if not user_id or not isinstance(user_id, str):
        return ""
    return _USER_ID_DISALLOWED.sub("", user_id)[:MAX_USER_ID_LENGTH]


def is_valid_trip_id(trip_id: Any) -> bool:
    return isinstance(trip_id, str) and 0 < len(trip_id) <= MAX_TRIP_ID_LENGTH


def is_valid_match_id(match_id: Any) -> bool:
    return isinstance(match_id, str) and 0 < len(match_id) <= MAX_MATCH_ID_LENGTH


def is_valid_client_id(client_id: Any) -> bool:
    return isinstance(client_id, str) and 0 < len(client_id) <= MAX_CLIENT_ID_LENGTH


def is_valid_trip(trip: Any) -> bool:
    """Shape check used on trips read back from storage and on match references.

    Needs a non-empty user id, valid pickup/drop-off coordinates and, when set,
    a whitelisted vehicle type.
    """
    if trip is None:
        return False
    user_id = getattr(trip, "user_id", None)
    if not isinstance(user_id, str) or not user_id:
        return False
    pickup = getattr(trip, "pickup", None)
    dropoff = getattr(trip, "dropoff", None)
    if not is_valid_coordinate(getattr(pickup, "latitude", None), getattr(pickup, "longitude", None)):
        return False
    if not is_valid_coordinate(getattr(dropoff, "latitude", None), getattr(dropoff, "longitude", None)):
        return False
    vehicle_type = getattr(trip, "vehicle_type", None)
    if vehicle_type and not is_valid_vehicle_type(vehicle_type):
        return False
    return True


def generate_idempotency_key(operation: str, *args: str, now_ms: float | None = None) -> str:
    """Key for duplicate detection. Includes the current 60 s window, so the same
    operation in a later minute is a distinct key."""
    if now_ms is None:
        now_ms = time.time() * 1000
    bucket = int(now_ms // IDEMPOTENCY_WINDOW_MS)
    return ":".join([operation, *[str(a) for a in args], str(bucket)])


class Guard:
    """Rate-limit timestamps and processed idempotency keys, kept in memory.

    Not persisted: a restart forgets everything. `clock` returns seconds.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        idempotency_ttl_seconds: float = 60.0,
        max_idempotency_keys: int = 1000,
    ) -> None:
        self._clock = clock
        self._last_action: dict[str, float] = {}
        # key -> expiry; insertion order == expiry order since the TTL is fixed
        self._processed: OrderedDict[str, float] = OrderedDict()
        self._ttl = idempotency_ttl_seconds
        self._max_keys = max_idempotency_keys

    @property
    def idempotency_ttl_seconds(self) -> float:
        return self._ttl

    def now_ms(self) -> float:
        return self._clock() * 1000

    def is_rate_limited(self, key: str, cooldown_ms: int = 1000) -> bool:
        """True (block) if less than cooldown_ms passed since the last allowed action
        under key; otherwise records now and allows."""
        now = self.now_ms()
        last = self._last_action.get(key)
        if last is not None and now - last < cooldown_ms:
            return True
        self._last_action[key] = now
        return False

    def retry_after_ms(self, key: str, cooldown_ms: int) -> int:
        last = self._last_action.get(key)
        if last is None:
            return 0
        return max(0, int(cooldown_ms - (self.now_ms() - last)))

    def reset_rate_limit(self, key: str) -> None:
        self._last_action.pop(key, None)

    def idempotency_key(self, operation: str, *args: str) -> str:
        return generate_idempotency_key(operation, *args, now_ms=self.now_ms())

    def is_operation_processed(self, key: str) -> bool:
        """True if key was seen within the TTL (duplicate). Otherwise records it."""
        now = self._clock()
        self._expire(now)
        if key in self._processed:
            return True
        self._processed[key] = now + self._ttl
        while len(self._processed) > self._max_keys:
            self._processed.popitem(last=False)
        return False

    def forget_operation(self, key: str) -> None:
        """Drop a key so the operation can be retried (used when the write failed)."""
        self._processed.pop(key, None)

    def _expire(self, now: float) -> None:
        while self._processed:
            key, expires = next(iter(self._processed.items()))
            if expires > now:
                break
            self._processed.popitem(last=False)
