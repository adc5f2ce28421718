"""Message model: one chat line in a match thread. Immutable once written."""
import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from ridepool.models.base import Base, utcnow


def _new_message_id() -> str:
    return uuid.uuid4().hex


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_message_id)
    # Correlation id generated by the sender; lets the optimistic copy be reconciled
    client_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    match_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    trip_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sender_id: Mapped[str] = mapped_column(String(128), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
