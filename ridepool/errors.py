"""Typed failures raised by the services. Routers translate them to HTTP errors."""


class RidePoolError(Exception):
    """Base class for all service errors."""


class InvalidInput(RidePoolError, ValueError):
    """Bad ids, coordinates, vehicle type, price or oversized text. Nothing was written."""


class InvalidDistance(InvalidInput):
    """Pickup and drop-off too close or too far apart."""

    def __init__(self, message: str, distance_km: float):
        super().__init__(message)
        self.distance_km = distance_km


class InvalidStatus(InvalidInput):
    """Status is not one of the allowed trip statuses."""


class InvalidTransition(InvalidInput):
    """Status change not allowed from the trip's current status."""


class InvalidMessage(InvalidInput):
    """Empty or too long chat message."""


class TripNotFound(RidePoolError, LookupError):
    pass


class RateLimited(RidePoolError):
    """Action repeated before its cooldown elapsed. Retry later."""

    def __init__(self, message: str, retry_after_ms: int = 0):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class StorageError(RidePoolError):
    """The database write failed; any optimistic local state was rolled back."""


class WriteTimeout(StorageError):
    """The write did not finish in time. Safe to retry."""


class TripExists(RidePoolError):
    """A trip with the requested id is already stored. Retrying with the same id cannot succeed."""
