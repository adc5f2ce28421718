"""Trip model: a rider's requested journey (pickup -> drop-off) and its status."""
import enum
from datetime import datetime
from typing import NamedTuple

from sqlalchemy import DateTime, Enum, Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from ridepool.models.base import Base, utcnow


class TripStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    MATCHED = "matched"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Place(NamedTuple):
    latitude: float
    longitude: float
    address: str = ""


# A user holds at most one trip in these states
OPEN_STATUSES = (TripStatus.PENDING, TripStatus.ACTIVE)
# Statuses shown as the user's current trip
CURRENT_STATUSES = (TripStatus.PENDING, TripStatus.ACTIVE, TripStatus.MATCHED)
TERMINAL_STATUSES = (TripStatus.COMPLETED, TripStatus.CANCELLED)


class Trip(Base):
    __tablename__ = "trips"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_address: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    dropoff_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_lng: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_address: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    vehicle_type: Mapped[str] = mapped_column(String(16), nullable=False)
    estimated_price: Mapped[float] = mapped_column(Float, nullable=False)
    riders: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[TripStatus] = mapped_column(
        Enum(TripStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=TripStatus.PENDING,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    @property
    def pickup(self) -> Place:
        return Place(self.pickup_lat, self.pickup_lng, self.pickup_address or "")

    @property
    def dropoff(self) -> Place:
        return Place(self.dropoff_lat, self.dropoff_lng, self.dropoff_address or "")
