"""Persisted matches for one of your trips."""
from fastapi import APIRouter, Depends, HTTPException, status

from ridepool.deps import get_current_user, get_services
from ridepool.models.user import User
from ridepool.schemas.match import MatchResponse
from ridepool.services.matcher import MatchResult
from ridepool.services.registry import Services

router = APIRouter(prefix="/matches", tags=["matches"])


def match_to_response(m: MatchResult) -> MatchResponse:
    return MatchResponse(
        id=m.id,
        trip_a=m.trip_a,
        trip_b=m.trip_b,
        trip_id=m.trip_id,
        riders=m.riders,
        eta_minutes=m.eta_minutes,
        distance_km=m.distance_km,
        pickup_address=m.pickup_address,
        dropoff_address=m.dropoff_address,
        status=m.status,
        created_at=m.created_at,
    )


@router.get("", response_model=list[MatchResponse])
async def list_matches(
    trip_id: str,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
):
    """Stored matches where trip_id is on either side (so the matched rider sees them too)."""
    trip = await services.trips.get_trip(trip_id)
    if trip is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")
    if trip.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your trip")
    return [match_to_response(m) for m in await services.engine.matches_for_trip(trip_id)]
