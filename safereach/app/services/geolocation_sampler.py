"""
Geolocation sampling.

Wraps a device's continuous position watch as an async stream. The device
pushes readings over its live connection; the sampler applies the watch
options (cached-fix age, per-read timeout), turns readings into samples and
guarantees the watch is released when the consumer stops.
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, Union

from safereach.app.core.clock import as_utc, utcnow
from safereach.app.core.config import settings
from safereach.app.core.exceptions import (
    GeolocationError, LocationPermissionDeniedError, PositionTimeoutError
)
from safereach.app.services.location_publisher import LocationPublisher, LocationSample

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchOptions:
    enable_high_accuracy: bool = True
    maximum_age_seconds: float = 10.0
    timeout_seconds: float = 5.0

    @classmethod
    def from_settings(cls) -> "WatchOptions":
        return cls(
            enable_high_accuracy=settings.geolocation_high_accuracy,
            maximum_age_seconds=settings.geolocation_maximum_age_seconds,
            timeout_seconds=settings.geolocation_timeout_seconds,
        )


@dataclass(frozen=True)
class PositionReading:
    latitude: float
    longitude: float
    captured_at: datetime
    accuracy: Optional[float] = None


class PositionSource(Protocol):
    async def read(self) -> PositionReading:
        """Wait for the next reading. Raises ``GeolocationError`` subclasses."""
        ...

    async def close(self) -> None:
        ...


class PushedPositionSource:
    """
    Position source fed by the device.

    The connection handler calls ``push_reading`` / ``push_error`` as
    messages arrive; the sampler awaits ``read``.
    """

    def __init__(self, max_pending: int = 100):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.closed = False

    def push_reading(self, reading: PositionReading) -> None:
        self._put(reading)

    def push_error(self, error: GeolocationError) -> None:
        self._put(error)

    def _put(self, item) -> None:
        if self.closed:
            return
        if self._queue.full():
            # Keep the freshest fixes
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    def push_message(self, message: dict) -> None:
        """
        Feed one device message.

        ``{"type": "position", "latitude", "longitude", "accuracy", "timestamp"}``
        or ``{"type": "error", "code": "PERMISSION_DENIED" | "TIMEOUT" | ...}``.
        ``timestamp`` is epoch milliseconds or ISO 8601; missing means now.

        Raises:
            ValueError: the message is malformed
        """
        kind = message.get("type")
        if kind == "position":
            try:
                reading = PositionReading(
                    latitude=float(message["latitude"]),
                    longitude=float(message["longitude"]),
                    captured_at=_parse_timestamp(message.get("timestamp")),
                    accuracy=float(message["accuracy"]) if message.get("accuracy") is not None else None,
                )
            except (KeyError, TypeError) as e:
                raise ValueError(f"Malformed position message: {e}") from e
            if not -90 <= reading.latitude <= 90 or not -180 <= reading.longitude <= 180:
                raise ValueError("Position out of range")
            self.push_reading(reading)
        elif kind == "error":
            self.push_error(geolocation_error(message.get("code"), message.get("message")))
        else:
            raise ValueError(f"Unknown message type: {kind!r}")

    async def read(self) -> PositionReading:
        item = await self._queue.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


def geolocation_error(code: Optional[str], message: Optional[str] = None) -> GeolocationError:
    """Error for a device-reported code. Unknown codes mean the position is unavailable."""
    for error_class in (LocationPermissionDeniedError, PositionTimeoutError):
        if code == error_class.code:
            return error_class(message or code)
    return GeolocationError(message or code or "Position unavailable")


def _parse_timestamp(value) -> datetime:
    if value is None:
        return utcnow()
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return as_utc(datetime.fromisoformat(str(value)))


ErrorCallback = Callable[[GeolocationError], Union[None, Awaitable[None]]]
SampleCallback = Callable[[LocationSample], Awaitable[Optional[bool]]]


class WatchHandle:
    """Handle for a running watch. ``stop`` is idempotent."""

    def __init__(self, task: asyncio.Task):
        self._task = task

    @property
    def running(self) -> bool:
        return not self._task.done()

    async def stop(self) -> None:
        if self._task.done():
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task

    async def wait(self) -> None:
        with suppress(asyncio.CancelledError):
            await self._task


class GeolocationSampler:
    """
    Continuous position watch.

    ``samples()`` is lazy and never ends on its own: read timeouts are
    reported and skipped, stale fixes are dropped, a permission error ends
    the stream.
    """

    def __init__(self, source: PositionSource, options: Optional[WatchOptions] = None, clock=utcnow):
        self.source = source
        self.options = options or WatchOptions.from_settings()
        self.clock = clock

    def _is_stale(self, reading: PositionReading) -> bool:
        age = (self.clock() - as_utc(reading.captured_at)).total_seconds()
        return age > self.options.maximum_age_seconds

    async def samples(self, on_error: Optional[ErrorCallback] = None) -> AsyncIterator[LocationSample]:
        while True:
            try:
                reading = await asyncio.wait_for(self.source.read(), timeout=self.options.timeout_seconds)
            except asyncio.TimeoutError:
                await _report(on_error, PositionTimeoutError("No position within timeout"))
                continue
            except LocationPermissionDeniedError:
                raise
            except GeolocationError as e:
                await _report(on_error, e)
                continue

            if self._is_stale(reading):
                logger.debug("Dropping stale position captured at %s", reading.captured_at)
                continue

            yield LocationSample(
                latitude=reading.latitude,
                longitude=reading.longitude,
                captured_at=reading.captured_at,
                accuracy=reading.accuracy,
            )

    @asynccontextmanager
    async def watch(self, on_error: Optional[ErrorCallback] = None):
        """Scoped watch: the source is closed however the block exits."""
        stream = self.samples(on_error)
        try:
            yield stream
        finally:
            await stream.aclose()
            await self.source.close()

    def start(self, on_sample: SampleCallback, on_error: Optional[ErrorCallback] = None) -> WatchHandle:
        """
        Run the watch in the background, calling ``on_sample`` per sample.
        Returning ``False`` from ``on_sample`` ends the watch.

        A denied permission is passed to ``on_error`` and ends the watch.
        """
        async def run():
            try:
                async with self.watch(on_error) as stream:
                    async for sample in stream:
                        if await on_sample(sample) is False:
                            break
            except LocationPermissionDeniedError as e:
                logger.info("Location permission denied, watch not running")
                await _report(on_error, e)

        return WatchHandle(asyncio.create_task(run(), name="geolocation-watch"))


async def _report(callback: Optional[ErrorCallback], error: GeolocationError) -> None:
    if callback is None:
        return
    try:
        result = callback(error)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        logger.exception("Geolocation error callback failed")


class JourneyTracker:
    """
    Feeds a journey's samples to the publisher while the journey is trackable.

    ``is_trackable`` is consulted before each publish; once it says no the
    watch stops.
    """

    def __init__(
        self,
        journey_id: str,
        sampler: GeolocationSampler,
        publisher: LocationPublisher,
        is_trackable: Callable[[str], Awaitable[bool]],
    ):
        self.journey_id = journey_id
        self.sampler = sampler
        self.publisher = publisher
        self.is_trackable = is_trackable
        self.accepted = 0
        self._handle: Optional[WatchHandle] = None

    def start(self, on_error: Optional[ErrorCallback] = None) -> WatchHandle:
        async def on_sample(sample: LocationSample):
            if not await self.is_trackable(self.journey_id):
                logger.info("Journey %s no longer trackable, stopping watch", self.journey_id)
                return False
            await self.publisher.publish(self.journey_id, sample)
            self.accepted += 1
            return True

        self._handle = self.sampler.start(on_sample, on_error)
        return self._handle

    async def stop(self) -> None:
        if self._handle is not None:
            await self._handle.stop()
