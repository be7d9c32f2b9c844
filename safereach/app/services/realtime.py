"""
Real-time propagation of row changes.

Writers publish a ``ChangeEvent`` after they commit. Subscribers register
for a topic plus a row predicate (``id=eq.<journey>``) and receive every
matching event on their own queue. Delivery is at-most-once: a viewer that
was disconnected must re-read the current state, the stream only carries
what happens while it is attached.

Two brokers move events between publishers and subscribers:
``InMemoryBroker`` for a single worker and ``RedisBroker`` (pub/sub) when
several workers serve the API.
"""

import asyncio
import enum
import inspect
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set, Tuple, Union

from pydantic import BaseModel, Field
from sqlalchemy import inspect as sa_inspect

from safereach.app.core.clock import utcnow
from safereach.app.core.config import settings

logger = logging.getLogger(__name__)


class ChangeTopic(str, enum.Enum):
    JOURNEY_ROW_CHANGED = "journey-row-changed"
    LOCATION_ROW_INSERTED = "location-row-inserted"
    CHECKIN_REQUESTED = "checkin-requested"


class ChangeEvent(BaseModel):
    topic: ChangeTopic
    table: str
    event_type: str  # INSERT, UPDATE or PROMPT
    record: Dict[str, Any]
    commit_timestamp: datetime = Field(default_factory=utcnow)


@dataclass(frozen=True)
class RowFilter:
    """
    Equality predicate on one column, written ``column=eq.value``.
    """
    column: str
    value: str

    @classmethod
    def parse(cls, expression: str) -> "RowFilter":
        column, sep, rest = expression.partition("=")
        if not sep or not rest.startswith("eq.") or not column:
            raise ValueError(f"Unsupported row filter: {expression!r}")
        return cls(column=column.strip(), value=rest[3:])

    @classmethod
    def eq(cls, column: str, value: Any) -> "RowFilter":
        return cls(column=column, value=str(value))

    def matches(self, record: Dict[str, Any]) -> bool:
        if self.column not in record:
            return False
        return str(record[self.column]) == self.value

    def __str__(self) -> str:
        return f"{self.column}=eq.{self.value}"


EventCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


class Subscription:
    """
    One subscriber's view of a topic.

    Matching events land on this subscription's own queue. With a callback,
    a dispatcher task drains the queue into it; without one, the owner
    reads the queue with ``get``.
    """

    def __init__(
        self,
        channel: "RealtimeChannel",
        topic: ChangeTopic,
        row_filter: RowFilter,
        on_event: Optional[EventCallback] = None,
        max_pending: int = 256,
    ):
        self.channel = channel
        self.topic = topic
        self.row_filter = row_filter
        self.on_event = on_event
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.dropped = 0
        self._closed = False
        self._task: Optional[asyncio.Task] = None
        if on_event is not None:
            self._task = asyncio.create_task(self._dispatch(), name=f"realtime-{topic.value}-{row_filter}")

    @property
    def active(self) -> bool:
        return not self._closed

    def offer(self, event: ChangeEvent) -> bool:
        """Queue ``event`` if it matches. Returns whether it was accepted."""
        if self._closed or event.topic != self.topic or not self.row_filter.matches(event.record):
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Subscriber on %s (%s) is behind, dropping event", self.topic.value, self.row_filter)
            return False
        return True

    async def get(self) -> ChangeEvent:
        return await self.queue.get()

    async def _dispatch(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                result = self.on_event(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Subscriber callback failed for %s", self.topic.value)

    async def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.channel._remove(self)
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task


class InMemoryBroker:
    """Hands events straight to the local channel."""

    def __init__(self):
        self._deliver: Optional[Callable[[ChangeEvent], None]] = None

    async def start(self, deliver: Callable[[ChangeEvent], None]) -> None:
        self._deliver = deliver

    async def publish(self, event: ChangeEvent) -> None:
        if self._deliver is not None:
            self._deliver(event)

    async def close(self) -> None:
        self._deliver = None


class RedisBroker:
    """
    Redis pub/sub transport.

    Events are published on ``<prefix>:<topic>``. Every worker runs one
    listener that feeds its local channel.
    """

    def __init__(self, redis, prefix: str = "safereach"):
        self.redis = redis
        self.prefix = prefix
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    def channel_name(self, topic: ChangeTopic) -> str:
        return f"{self.prefix}:{topic.value}"

    async def start(self, deliver: Callable[[ChangeEvent], None]) -> None:
        self._pubsub = self.redis.pubsub()
        await self._pubsub.psubscribe(f"{self.prefix}:*")
        self._listener = asyncio.create_task(self._listen(deliver), name="realtime-redis-listener")

    async def _listen(self, deliver: Callable[[ChangeEvent], None]) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "pmessage":
                continue
            try:
                deliver(ChangeEvent.model_validate_json(message["data"]))
            except Exception:
                logger.exception("Discarding malformed change event from redis")

    async def publish(self, event: ChangeEvent) -> None:
        await self.redis.publish(self.channel_name(event.topic), event.model_dump_json())

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            with suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None


class RealtimeChannel:
    """
    Publish/subscribe bridge between writers and viewers.
    """

    def __init__(self, broker=None):
        self.broker = broker or InMemoryBroker()
        self._subscriptions: Dict[ChangeTopic, Set[Subscription]] = {}
        self._started = False
        self._start_lock: Optional[asyncio.Lock] = None

    async def _ensure_started(self) -> None:
        if self._started:
            return
        if self._start_lock is None:
            self._start_lock = asyncio.Lock()
        async with self._start_lock:
            if not self._started:
                await self.broker.start(self._fan_out)
                self._started = True

    def _fan_out(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(event.topic, ())):
            subscription.offer(event)

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions.get(subscription.topic, set()).discard(subscription)

    def subscriber_count(self, topic: ChangeTopic) -> int:
        return len(self._subscriptions.get(topic, ()))

    async def subscribe(
        self,
        topic: ChangeTopic,
        row_filter: Union[RowFilter, str],
        on_event: Optional[EventCallback] = None,
    ) -> Subscription:
        """
        Register for changes to rows matching ``row_filter`` on ``topic``.

        Each call creates an independent subscription with its own queue.
        """
        await self._ensure_started()
        if isinstance(row_filter, str):
            row_filter = RowFilter.parse(row_filter)
        subscription = Subscription(self, topic, row_filter, on_event)
        self._subscriptions.setdefault(topic, set()).add(subscription)
        return subscription

    async def publish(self, event: ChangeEvent) -> None:
        """Push ``event`` to every matching subscriber. Failures are logged, not raised."""
        try:
            await self._ensure_started()
            await self.broker.publish(event)
        except Exception:
            logger.exception("Failed to publish %s event", event.topic.value)

    @asynccontextmanager
    async def stream(self, *bindings: Tuple[ChangeTopic, Union[RowFilter, str]]) -> AsyncIterator[asyncio.Queue]:
        """
        Subscribe to several topics at once for the duration of the block.

        Yields a queue receiving every matching event. All subscriptions are
        removed on exit, whatever the exit path.
        """
        inbox: asyncio.Queue = asyncio.Queue()
        subscriptions = []
        try:
            for topic, row_filter in bindings:
                subscriptions.append(await self.subscribe(topic, row_filter, inbox.put_nowait))
            yield inbox
        finally:
            for subscription in subscriptions:
                await subscription.unsubscribe()

    async def close(self) -> None:
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                await subscription.unsubscribe()
        if self._started:
            await self.broker.close()
            self._started = False


# Event builders

def row_to_dict(row) -> Dict[str, Any]:
    """Column values of an ORM row in JSON-friendly form."""
    record = {}
    for attr in sa_inspect(row).mapper.column_attrs:
        value = getattr(row, attr.key)
        if isinstance(value, enum.Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        record[attr.key] = value
    return record


def journey_changed(journey) -> ChangeEvent:
    return ChangeEvent(
        topic=ChangeTopic.JOURNEY_ROW_CHANGED,
        table="journeys",
        event_type="UPDATE",
        record=row_to_dict(journey),
    )


def location_inserted(location) -> ChangeEvent:
    return ChangeEvent(
        topic=ChangeTopic.LOCATION_ROW_INSERTED,
        table="journey_locations",
        event_type="INSERT",
        record=row_to_dict(location),
    )


def checkin_requested(journey_id: str, prompt_number: int, respond_by: Optional[datetime] = None) -> ChangeEvent:
    return ChangeEvent(
        topic=ChangeTopic.CHECKIN_REQUESTED,
        table="journey_checkins",
        event_type="PROMPT",
        record={
            "journey_id": journey_id,
            "prompt_number": prompt_number,
            "respond_by": respond_by.isoformat() if respond_by else None,
        },
    )


_MESSAGE_TYPES = {
    ChangeTopic.JOURNEY_ROW_CHANGED: ("journey", "journey"),
    ChangeTopic.LOCATION_ROW_INSERTED: ("location", "location"),
    ChangeTopic.CHECKIN_REQUESTED: ("checkin_requested", "checkin"),
}


def event_message(event: ChangeEvent) -> Dict[str, Any]:
    """JSON message sent to socket viewers for ``event``."""
    kind, key = _MESSAGE_TYPES[event.topic]
    return {"type": kind, key: event.record, "at": event.commit_timestamp.isoformat()}


def build_broker():
    if settings.realtime_backend == "redis":
        from safereach.app.core.redis_client import get_redis
        return RedisBroker(get_redis(), prefix=settings.realtime_channel_prefix)
    return InMemoryBroker()


realtime_channel = RealtimeChannel(build_broker())


def get_realtime_channel() -> RealtimeChannel:
    """FastAPI dependency for the process-wide channel."""
    return realtime_channel
