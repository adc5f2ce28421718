"""Chat threads, one per match.

Sending is optimistic: the message shows up in the open thread right away as a
provisional entry, then is written. The provisional entry carries a client id that is
stored with the row; when the thread's live query returns that row the provisional copy
is dropped. If the write fails the provisional entry is removed and the error raised.
"""
import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridepool.config import settings
from ridepool.database import async_session
from ridepool.errors import InvalidInput, InvalidMessage, RateLimited, StorageError, WriteTimeout
from ridepool.logging_config import safe_error
from ridepool.models.base import utcnow
from ridepool.models.message import Message
from ridepool.services import live
from ridepool.services.live import ChangeFeed, Subscription, deliver
from ridepool.services.validation import (
    MAX_MESSAGE_LENGTH,
    MAX_USER_ID_LENGTH,
    Guard,
    is_valid_client_id,
    is_valid_match_id,
    is_valid_message,
    is_valid_trip_id,
    sanitize_text,
    sanitize_user_id,
)

logger = logging.getLogger(__name__)

MESSAGES = "messages"


@dataclass
class ChatMessage:
    id: str
    match_id: str
    sender_id: str
    text: str
    created_at: datetime = field(default_factory=utcnow)
    trip_id: str | None = None
    client_id: str | None = None
    pending: bool = False

    @classmethod
    def from_row(cls, row: Message) -> "ChatMessage":
        return cls(
            id=row.id,
            match_id=row.match_id,
            sender_id=row.sender_id,
            text=sanitize_text(row.text or "", MAX_MESSAGE_LENGTH),
            created_at=row.created_at or utcnow(),
            trip_id=row.trip_id,
            client_id=row.client_id,
        )


class MessageThread:
    """Live view of one match's messages: confirmed rows plus unconfirmed local sends."""

    def __init__(self, match_id: str, on_change: Callable[[list[ChatMessage]], Any] | None = None) -> None:
        self.match_id = match_id
        self.confirmed: list[ChatMessage] = []
        self.provisional: list[ChatMessage] = []
        self.loading = True
        self.subscription: Subscription | None = None
        self._on_change = on_change
        self._disposed = False

    @property
    def messages(self) -> list[ChatMessage]:
        return self.confirmed + self.provisional

    @property
    def active(self) -> bool:
        return not self._disposed

    def dispose(self) -> None:
        self._disposed = True
        if self.subscription is not None:
            self.subscription.dispose()
        self.loading = False

    def __call__(self) -> None:
        self.dispose()

    async def apply_snapshot(self, rows: list[ChatMessage]) -> None:
        self.confirmed = rows
        seen = {m.client_id for m in rows if m.client_id}
        self.provisional = [m for m in self.provisional if m.client_id not in seen]
        self.loading = False
        await self._notify()

    async def clear(self) -> None:
        self.confirmed = []
        self.loading = False
        await self._notify()

    async def add_provisional(self, message: ChatMessage) -> None:
        if self._disposed:
            return
        self.provisional.append(message)
        await self._notify()

    async def remove_provisional(self, local_id: str) -> None:
        before = len(self.provisional)
        self.provisional = [m for m in self.provisional if m.id != local_id]
        if len(self.provisional) != before:
            await self._notify()

    async def _notify(self) -> None:
        if self._on_change is not None and not self._disposed:
            await deliver(self._on_change, self.messages, f"messages:{self.match_id}")


class MessageStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        feed: ChangeFeed | None = None,
        guard: Guard | None = None,
        write_timeout: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed or live.feed
        self._guard = guard or Guard()
        self._write_timeout = write_timeout if write_timeout is not None else settings.WRITE_TIMEOUT_SECONDS

    async def add_message(
        self,
        match_id: str,
        sender_id: str,
        text: str,
        trip_id: str | None = None,
        thread: MessageThread | None = None,
        client_id: str | None = None,
    ) -> ChatMessage:
        """Validate, rate limit (1 per second per sender) and write a message.

        When thread is the open view of match_id the message appears there immediately and
        is removed again if the write fails.
        """
        if not is_valid_match_id(match_id):
            raise InvalidInput("Invalid matchId")
        if not isinstance(sender_id, str) or len(sender_id) > MAX_USER_ID_LENGTH:
            raise InvalidInput("Invalid senderId")
        sender = sanitize_user_id(sender_id)
        if not sender:
            raise InvalidInput("Invalid senderId")
        check = is_valid_message(text)
        if not check.valid:
            raise InvalidMessage(check.error or "Invalid message")
        if trip_id is not None and not is_valid_trip_id(trip_id):
            raise InvalidInput("Invalid tripId")
        if client_id is not None and not is_valid_client_id(client_id):
            raise InvalidInput("Invalid clientId")

        rate_key = f"msg_{sender}"
        cooldown = settings.MESSAGE_COOLDOWN_MS
        if self._guard.is_rate_limited(rate_key, cooldown):
            raise RateLimited(
                "Too many messages. Please wait a moment.",
                retry_after_ms=self._guard.retry_after_ms(rate_key, cooldown),
            )

        clean_text = sanitize_text(text, MAX_MESSAGE_LENGTH)
        client_id = client_id or uuid.uuid4().hex
        local = ChatMessage(
            id=f"local_{int(self._guard.now_ms())}_{secrets.token_hex(3)}",
            match_id=match_id,
            sender_id=sender,
            text=clean_text,
            trip_id=trip_id,
            client_id=client_id,
            pending=True,
        )
        if thread is not None and thread.match_id == match_id:
            await thread.add_provisional(local)

        row = Message(
            client_id=client_id,
            match_id=match_id,
            trip_id=trip_id,
            sender_id=sender,
            text=clean_text,
            created_at=utcnow(),
        )
        try:
            await asyncio.wait_for(self._write(row), self._write_timeout)
        except (asyncio.TimeoutError, SQLAlchemyError) as exc:
            if thread is not None:
                await thread.remove_provisional(local.id)
            logger.error("Failed to send message: %s", safe_error(exc))
            if isinstance(exc, asyncio.TimeoutError):
                raise WriteTimeout("Sending timed out, please retry") from None
            raise StorageError("Failed to send message") from exc

        await self._feed.publish(MESSAGES)
        return ChatMessage.from_row(row)

    async def _write(self, row: Message) -> None:
        async with self._session_factory() as db:
            async with db.begin():
                db.add(row)

    async def list_messages(self, match_id: str, limit: int | None = None) -> list[ChatMessage]:
        """Oldest first, at most limit (default 200)."""
        if limit is None:
            limit = settings.MESSAGE_HISTORY_LIMIT
        async with self._session_factory() as db:
            result = await db.execute(
                select(Message)
                .where(Message.match_id == match_id)
                .order_by(Message.created_at.asc())
                .limit(limit)
            )
            return [ChatMessage.from_row(row) for row in result.scalars().all()]

    async def listen_to_messages(
        self,
        match_id: str,
        on_change: Callable[[list[ChatMessage]], Any] | None = None,
    ) -> MessageThread:
        """Live thread for match_id. An invalid id gives an empty, already-stopped thread."""
        thread = MessageThread(match_id if isinstance(match_id, str) else "", on_change)
        if not is_valid_match_id(match_id):
            logger.warning("Invalid matchId for message listener")
            thread.dispose()
            return thread

        async def fetch() -> list[ChatMessage]:
            return await self.list_messages(match_id)

        thread.subscription = await self._feed.subscribe(
            [MESSAGES], fetch, thread.apply_snapshot, lambda exc: thread.clear(), name=f"messages:{match_id}"
        )
        if not thread.active:
            thread.subscription.dispose()
        return thread
