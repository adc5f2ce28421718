"""Pydantic schemas for trips: create, status update, response.

Bounds are checked by the services (typed errors), so only types are declared here.
"""
from datetime import datetime

from pydantic import BaseModel, Field

from ridepool.models.trip import TripStatus


class Location(BaseModel):
    latitude: float
    longitude: float
    address: str = ""


class TripCreate(BaseModel):
    """Request body for POST /trips. `id` is optional; the server generates one when missing."""
    id: str | None = None
    pickup: Location
    dropoff: Location
    vehicle_type: str
    estimated_price: float
    riders: int = Field(default=1, ge=1, le=8)


class TripDraft(TripCreate):
    """A trip about to be booked, with its owner (taken from the auth boundary)."""
    user_id: str


class TripStatusUpdate(BaseModel):
    """Request body for POST /trips/{id}/status. Validated against TripStatus by the store."""
    status: str


class TripResponse(BaseModel):
    """Trip in API responses and live snapshots."""
    id: str
    user_id: str
    pickup: Location
    dropoff: Location
    vehicle_type: str
    estimated_price: float
    riders: int
    status: TripStatus
    created_at: datetime
    updated_at: datetime | None = None
