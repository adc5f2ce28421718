"""Tests for validation predicates, sanitizers, rate limiting and idempotency."""
import math
from types import SimpleNamespace

import pytest

from ridepool.config import settings
from ridepool.models.trip import Place
from ridepool.services.registry import build_services
from ridepool.services.validation import (
    MAX_MESSAGE_LENGTH,
    Guard,
    check_ride_distance,
    generate_idempotency_key,
    is_valid_client_id,
    is_valid_coordinate,
    is_valid_match_id,
    is_valid_message,
    is_valid_price,
    is_valid_ride_distance,
    is_valid_trip,
    is_valid_trip_id,
    is_valid_vehicle_type,
    sanitize_text,
    sanitize_user_id,
)


class TestPredicates:
    @pytest.mark.parametrize(
        "lat,lng,ok",
        [
            (0, 0, True),
            (90, 180, True),
            (-90, -180, True),
            (90.0001, 0, False),
            (0, -180.5, False),
            (math.nan, 0, False),
            ("31.5", 74.3, False),
            (None, 74.3, False),
            (True, 74.3, False),
        ],
    )
    def test_coordinates(self, lat, lng, ok):
        assert is_valid_coordinate(lat, lng) is ok

    def test_ride_distance_bounds_inclusive(self):
        assert check_ride_distance(0.1).valid
        assert check_ride_distance(200).valid
        assert not check_ride_distance(0.0999).valid
        assert not check_ride_distance(200.01).valid

    def test_ride_distance_reports_reason(self):
        too_close = is_valid_ride_distance(31.52, 74.35, 31.52, 74.35)
        assert not too_close.valid
        assert too_close.error == "Pickup and drop-off are too close"
        too_far = is_valid_ride_distance(31.52, 74.35, 33.8, 74.35)
        assert not too_far.valid
        assert too_far.error == "Distance exceeds maximum limit"
        assert too_far.distance > 200

    def test_ride_distance_invalid_coordinates(self):
        check = is_valid_ride_distance(91, 0, 0, 0)
        assert not check.valid
        assert check.error == "Invalid coordinates"

    def test_price(self):
        assert is_valid_price(10)
        assert is_valid_price(50000)
        assert not is_valid_price(9.99)
        assert not is_valid_price(50001)
        assert not is_valid_price("200")

    def test_vehicle_type_whitelist(self):
        for vt in ("bike", "rickshaw", "car", "suv"):
            assert is_valid_vehicle_type(vt)
        assert not is_valid_vehicle_type("Car")
        assert not is_valid_vehicle_type("truck")

    def test_message(self):
        assert is_valid_message("Hello").valid
        assert is_valid_message("x" * MAX_MESSAGE_LENGTH).valid
        assert not is_valid_message("x" * (MAX_MESSAGE_LENGTH + 1)).valid
        assert is_valid_message("   ").error == "Message cannot be empty"
        assert not is_valid_message(None).valid

    def test_ids(self):
        assert is_valid_trip_id("t1")
        assert not is_valid_trip_id("")
        assert not is_valid_trip_id("x" * 129)
        assert is_valid_match_id("a" * 256)
        assert not is_valid_match_id("a" * 257)
        assert not is_valid_match_id(42)
        assert is_valid_client_id("c" * 64)
        assert not is_valid_client_id("c" * 65)
        assert not is_valid_client_id("")

    def test_is_valid_trip(self):
        trip = SimpleNamespace(user_id="u1", pickup=Place(31.52, 74.35), dropoff=Place(31.54, 74.38), vehicle_type="car")
        assert is_valid_trip(trip)
        assert not is_valid_trip(None)
        assert not is_valid_trip(SimpleNamespace(**{**vars(trip), "user_id": ""}))
        assert not is_valid_trip(SimpleNamespace(**{**vars(trip), "pickup": Place(100, 0)}))
        assert not is_valid_trip(SimpleNamespace(**{**vars(trip), "vehicle_type": "jet"}))


class TestSanitizers:
    def test_sanitize_text_trims_and_strips_control_chars(self):
        assert sanitize_text("  hi\x00 there\x07  ") == "hi there"
        assert sanitize_text("line1\nline2\tx") == "line1\nline2\tx"

    def test_sanitize_text_truncates(self):
        assert sanitize_text("abcdef", 3) == "abc"

    def test_sanitize_text_non_string(self):
        assert sanitize_text(None) == ""
        assert sanitize_text(123) == ""

    def test_sanitize_user_id(self):
        assert sanitize_user_id("user_1-ok") == "user_1-ok"
        assert sanitize_user_id("bad id!$") == "badid"
        assert sanitize_user_id("a" * 300) == "a" * 128
        assert sanitize_user_id(None) == ""


class TestGuard:
    def test_rate_limit_cooldown(self, clock):
        guard = Guard(clock=clock)
        assert guard.is_rate_limited("msg_u1", 1000) is False
        clock.advance(0.5)
        assert guard.is_rate_limited("msg_u1", 1000) is True
        assert guard.retry_after_ms("msg_u1", 1000) == 500
        clock.advance(0.5)
        assert guard.is_rate_limited("msg_u1", 1000) is False

    def test_blocked_attempt_does_not_extend_cooldown(self, clock):
        guard = Guard(clock=clock)
        guard.is_rate_limited("k", 1000)
        clock.advance(0.75)
        assert guard.is_rate_limited("k", 1000)
        clock.advance(0.25)
        assert not guard.is_rate_limited("k", 1000)

    def test_rate_limit_keys_are_independent(self, clock):
        guard = Guard(clock=clock)
        assert not guard.is_rate_limited("a", 1000)
        assert not guard.is_rate_limited("b", 1000)

    def test_reset_rate_limit(self, clock):
        guard = Guard(clock=clock)
        guard.is_rate_limited("k", 5000)
        guard.reset_rate_limit("k")
        assert not guard.is_rate_limited("k", 5000)

    def test_idempotency_duplicate_within_ttl(self, clock):
        guard = Guard(clock=clock)
        key = guard.idempotency_key("create_trip", "u1", "t1")
        assert guard.is_operation_processed(key) is False
        assert guard.is_operation_processed(key) is True

    def test_idempotency_expires_after_ttl(self, clock):
        guard = Guard(clock=clock, idempotency_ttl_seconds=60)
        guard.is_operation_processed("k")
        clock.advance(60)
        assert guard.is_operation_processed("k") is False

    def test_idempotency_evicts_oldest(self, clock):
        guard = Guard(clock=clock, max_idempotency_keys=2)
        guard.is_operation_processed("a")
        guard.is_operation_processed("b")
        guard.is_operation_processed("c")
        # "a" was evicted, "c" is still remembered
        assert guard.is_operation_processed("c") is True
        assert guard.is_operation_processed("a") is False

    def test_forget_operation(self, clock):
        guard = Guard(clock=clock)
        guard.is_operation_processed("k")
        guard.forget_operation("k")
        assert guard.is_operation_processed("k") is False

    def test_services_take_the_ttl_from_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "IDEMPOTENCY_TTL_SECONDS", 15)
        services = build_services()
        assert services.guard.idempotency_ttl_seconds == 15

    def test_key_includes_minute_bucket(self):
        assert generate_idempotency_key("op", "u", now_ms=0) == "op:u:0"
        assert generate_idempotency_key("op", "u", now_ms=59_999) == "op:u:0"
        assert generate_idempotency_key("op", "u", now_ms=60_000) == "op:u:1"
