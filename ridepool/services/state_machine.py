"""Trip state machine: allowed status transitions."""
from ridepool.errors import InvalidStatus, InvalidTransition
from ridepool.models.trip import TripStatus

# Allowed transitions: from_status -> {to_status, ...}
ALLOWED: dict[TripStatus, set[TripStatus]] = {
    TripStatus.PENDING: {TripStatus.ACTIVE, TripStatus.MATCHED, TripStatus.CANCELLED},
    TripStatus.ACTIVE: {TripStatus.MATCHED, TripStatus.COMPLETED, TripStatus.CANCELLED},
    TripStatus.MATCHED: {TripStatus.ACTIVE, TripStatus.COMPLETED, TripStatus.CANCELLED},
    TripStatus.COMPLETED: set(),
    TripStatus.CANCELLED: set(),
}


def parse_status(value: str | TripStatus) -> TripStatus:
    """Return the TripStatus for value; raises InvalidStatus for anything else."""
    if isinstance(value, TripStatus):
        return value
    try:
        return TripStatus(value)
    except ValueError:
        raise InvalidStatus("Invalid status") from None


def check_transition(current: TripStatus, to_status: TripStatus) -> None:
    """Raise InvalidTransition unless current -> to_status is allowed."""
    if current in (TripStatus.COMPLETED, TripStatus.CANCELLED):
        raise InvalidTransition(f"Trip already {current.value}")
    if to_status not in ALLOWED.get(current, set()):
        raise InvalidTransition(f"Transition {current.value} -> {to_status.value} not allowed")
