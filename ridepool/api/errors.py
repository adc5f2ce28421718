"""Map service errors to HTTP errors."""
from fastapi import HTTPException, status

from ridepool.errors import (
    InvalidInput,
    RateLimited,
    RidePoolError,
    StorageError,
    TripExists,
    TripNotFound,
    WriteTimeout,
)


def http_error(exc: RidePoolError) -> HTTPException:
    if isinstance(exc, TripNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, TripExists):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(max(1, -(-exc.retry_after_ms // 1000)))}
        return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc), headers=headers)
    if isinstance(exc, InvalidInput):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, WriteTimeout):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc))
    if isinstance(exc, StorageError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unexpected error")
