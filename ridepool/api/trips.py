"""Trip routes: book, current trip, status changes, match ranking (auth required)."""
from fastapi import APIRouter, Depends, HTTPException, Response, status

from ridepool.api.errors import http_error
from ridepool.api.matches import match_to_response
from ridepool.deps import get_current_user, get_services
from ridepool.errors import RidePoolError
from ridepool.models.trip import Trip
from ridepool.models.user import User
from ridepool.schemas.match import MatchResponse
from ridepool.schemas.trip import Location, TripCreate, TripDraft, TripResponse, TripStatusUpdate
from ridepool.services.registry import Services

router = APIRouter(prefix="/trips", tags=["trips"])


def trip_to_response(trip: Trip) -> TripResponse:
    return TripResponse(
        id=trip.id,
        user_id=trip.user_id,
        pickup=Location(latitude=trip.pickup_lat, longitude=trip.pickup_lng, address=trip.pickup_address or ""),
        dropoff=Location(latitude=trip.dropoff_lat, longitude=trip.dropoff_lng, address=trip.dropoff_address or ""),
        vehicle_type=trip.vehicle_type,
        estimated_price=trip.estimated_price,
        riders=trip.riders,
        status=trip.status,
        created_at=trip.created_at,
        updated_at=trip.updated_at,
    )


async def _get_own_trip(services: Services, trip_id: str, user: User) -> Trip:
    trip = await services.trips.get_trip(trip_id)
    if trip is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")
    if trip.user_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your trip")
    return trip


@router.post("", response_model=TripResponse, status_code=status.HTTP_201_CREATED)
async def create_trip(
    body: TripCreate,
    response: Response,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
):
    """Book a trip. Any pending/active trip of yours is cancelled. A repeated submission of
    the same trip id within a minute is ignored and answered with the stored trip (200)."""
    draft = TripDraft(**body.model_dump(), user_id=current_user.id)
    try:
        trip = await services.trips.create_trip(draft)
    except RidePoolError as e:
        raise http_error(e)
    if trip is None:
        existing = await services.trips.get_trip(body.id) if body.id else None
        if existing is None or existing.user_id != current_user.id:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Duplicate submission")
        response.status_code = status.HTTP_200_OK
        return trip_to_response(existing)
    return trip_to_response(trip)


@router.get("/active", response_model=TripResponse | None)
async def get_active_trip(
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
):
    """Your newest pending/active/matched trip, or null."""
    trip = await services.trips.current_trip_for_user(current_user.id)
    return trip_to_response(trip) if trip is not None else None


@router.get("/{trip_id}", response_model=TripResponse)
async def get_trip(
    trip_id: str,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
):
    trip = await services.trips.get_trip(trip_id)
    if trip is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")
    return trip_to_response(trip)


@router.post("/{trip_id}/status", response_model=TripResponse)
async def update_trip_status(
    trip_id: str,
    body: TripStatusUpdate,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
):
    """Move your trip to a new status (pending -> active -> completed, or cancelled)."""
    await _get_own_trip(services, trip_id, current_user)
    try:
        trip = await services.trips.update_trip_status(trip_id, body.status)
    except RidePoolError as e:
        raise http_error(e)
    return trip_to_response(trip)


@router.post("/{trip_id}/cancel", response_model=TripResponse)
async def cancel_trip(
    trip_id: str,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
):
    await _get_own_trip(services, trip_id, current_user)
    try:
        trip = await services.trips.cancel_trip(trip_id)
    except RidePoolError as e:
        raise http_error(e)
    return trip_to_response(trip)


@router.get("/{trip_id}/matches", response_model=list[MatchResponse])
async def rank_matches(
    trip_id: str,
    radius_km: float | None = None,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
):
    """Rank open trips near yours (closest first, at most 10) and store the matches."""
    await _get_own_trip(services, trip_id, current_user)
    try:
        matches = await services.engine.find_matches(trip_id, radius_km)
    except RidePoolError as e:
        raise http_error(e)
    return [match_to_response(m) for m in matches]
