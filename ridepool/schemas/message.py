"""Pydantic schemas for chat messages."""
from datetime import datetime

from pydantic import BaseModel


class MessageCreate(BaseModel):
    """Request body for POST /messages. Text limits are enforced by the messaging store."""
    match_id: str
    text: str
    trip_id: str | None = None
    client_id: str | None = None


class MessageResponse(BaseModel):
    id: str
    client_id: str | None = None
    match_id: str
    trip_id: str | None = None
    sender_id: str
    text: str
    created_at: datetime
    pending: bool = False

    class Config:
        from_attributes = True
