from ridepool.models.base import Base
from ridepool.models.match import Match, MatchStatus
from ridepool.models.message import Message
from ridepool.models.trip import Trip, TripStatus
from ridepool.models.user import User

__all__ = ["Base", "User", "Trip", "TripStatus", "Match", "MatchStatus", "Message"]
