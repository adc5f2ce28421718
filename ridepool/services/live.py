"""Live queries: stores publish a change per collection, subscriptions re-run their query.

A `Subscription` wraps one query. Every `publish("trips")` re-runs the queries of the
subscriptions registered on "trips" and pushes the fresh snapshot to the callback and to a
bounded queue (`async for snapshot in sub`). Refreshes of one subscription never overlap;
a change that arrives while a refresh is running is folded into a single follow-up run,
so a slow consumer only ever sees the latest snapshot.
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar

from ridepool.logging_config import safe_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """Handle for one live query. Call `dispose()` to stop updates."""

    def __init__(
        self,
        feed: "ChangeFeed | None",
        topics: Iterable[str],
        fetch: Callable[[], Awaitable[T]] | None,
        on_snapshot: Callable[[T], Any] | None = None,
        on_error: Callable[[BaseException], Any] | None = None,
        *,
        name: str = "",
        queue_size: int = 1,
    ) -> None:
        self.name = name
        self.topics = tuple(topics)
        self.latest: T | None = None
        self.loading = True
        self.error: BaseException | None = None
        self.deliveries = 0
        self._feed = feed
        self._fetch = fetch
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._lock = asyncio.Lock()
        self._pending = False
        self._disposed = False
        # Bounded by _offer, not by maxsize, so the end marker always fits
        self._queue_size = max(1, queue_size)
        self._queue: asyncio.Queue = asyncio.Queue()

    @classmethod
    def closed(cls, snapshot: T, name: str = "") -> "Subscription[T]":
        """Already-disposed subscription holding a fixed (usually empty) snapshot."""
        sub: Subscription[T] = cls(None, (), None, name=name)
        sub.latest = snapshot
        sub.loading = False
        sub._disposed = True
        sub._queue.put_nowait(snapshot)
        sub._queue.put_nowait(_CLOSED)
        return sub

    @property
    def active(self) -> bool:
        return not self._disposed

    def __call__(self) -> None:
        self.dispose()

    def dispose(self) -> None:
        """Stop receiving updates. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        self.loading = False
        if self._feed is not None:
            self._feed._remove(self)
        self._queue.put_nowait(_CLOSED)

    async def refresh(self) -> None:
        if self._disposed or self._fetch is None:
            return
        if self._lock.locked():
            self._pending = True
            return
        async with self._lock:
            while True:
                self._pending = False
                await self._run_once()
                if not self._pending or self._disposed:
                    break

    async def _run_once(self) -> None:
        try:
            snapshot = await self._fetch()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Live query %s failed: %s", self.name or "?", safe_error(exc))
            if self._disposed:
                return
            self.loading = False
            self.error = exc
            if self._on_error is not None:
                await deliver(self._on_error, exc, self.name)
            return
        if self._disposed:
            return
        self.latest = snapshot
        self.loading = False
        self.error = None
        self.deliveries += 1
        self._offer(snapshot)
        if self._on_snapshot is not None:
            await deliver(self._on_snapshot, snapshot, self.name)

    def _offer(self, snapshot: T) -> None:
        while self._queue.qsize() >= self._queue_size:
            self._queue.get_nowait()
        self._queue.put_nowait(snapshot)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item


class ChangeFeed:
    """Topic (collection name) -> live subscriptions to re-run on change."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, set[Subscription]] = {}

    async def subscribe(
        self,
        topics: Iterable[str],
        fetch: Callable[[], Awaitable[T]],
        on_snapshot: Callable[[T], Any] | None = None,
        on_error: Callable[[BaseException], Any] | None = None,
        *,
        name: str = "",
        queue_size: int = 1,
    ) -> Subscription[T]:
        """Register a live query and deliver its first snapshot before returning."""
        sub = Subscription(self, topics, fetch, on_snapshot, on_error, name=name, queue_size=queue_size)
        for topic in sub.topics:
            self._subscriptions.setdefault(topic, set()).add(sub)
        await sub.refresh()
        return sub

    async def publish(self, *topics: str) -> None:
        """Re-run every live query registered on any of topics."""
        targets: set[Subscription] = set()
        for topic in topics:
            targets.update(self._subscriptions.get(topic, ()))
        if not targets:
            return
        await asyncio.gather(*[sub.refresh() for sub in targets])

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, ()))

    def _remove(self, sub: Subscription) -> None:
        for topic in sub.topics:
            subs = self._subscriptions.get(topic)
            if subs is None:
                continue
            subs.discard(sub)
            if not subs:
                del self._subscriptions[topic]


async def deliver(callback: Callable[[Any], Any], value: Any, name: str) -> None:
    """Run a sync or async callback; its failures are logged, never raised to the publisher."""
    try:
        result = callback(value)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.error("Live query %s callback failed: %s", name or "?", safe_error(exc))


feed = ChangeFeed()
