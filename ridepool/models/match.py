"""Match model: a persisted pairing of two trips. One row per unordered pair."""
import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from ridepool.models.base import Base, utcnow


class MatchStatus(str, enum.Enum):
    PENDING = "pending"
    MATCHED = "matched"
    CHATTING = "chatting"


class Match(Base):
    __tablename__ = "matches"
    # id is "_".join(sorted((trip_a, trip_b))), see services.matcher.match_id
    id: Mapped[str] = mapped_column(String(257), primary_key=True)
    trip_a: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    trip_b: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    eta_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    riders: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    pickup_address: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    dropoff_address: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    status: Mapped[MatchStatus] = mapped_column(
        Enum(MatchStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=MatchStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
