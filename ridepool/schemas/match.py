"""Pydantic schemas for matches."""
from datetime import datetime

from pydantic import BaseModel

from ridepool.models.match import MatchStatus


class MatchResponse(BaseModel):
    """A ranked or persisted match. `trip_id` repeats `trip_b` for older clients."""
    id: str
    trip_a: str
    trip_b: str
    trip_id: str
    riders: int
    eta_minutes: int
    distance_km: float
    pickup_address: str
    dropoff_address: str
    status: MatchStatus
    created_at: datetime
