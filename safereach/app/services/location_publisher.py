"""
Location publishing.

Every accepted sample makes two independent writes: the journey's current
position and a new breadcrumb row. Either may fail without affecting the
other; the next sample simply tries again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from safereach.app.core.clock import utcnow
from safereach.app.models.journey import Journey
from safereach.app.models.journey_location import JourneyLocation
from safereach.app.services.realtime import RealtimeChannel, journey_changed, location_inserted

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocationSample:
    """One accepted position fix."""
    latitude: float
    longitude: float
    captured_at: datetime
    accuracy: Optional[float] = None


@dataclass(frozen=True)
class PublishResult:
    position_updated: bool
    history_appended: bool
    location_id: Optional[str] = None


class LocationPublisher:
    """
    Writes samples to the store and announces them on the channel.

    Each write runs in its own short session so a failure in one cannot roll
    back the other. No deduplication: identical consecutive fixes are all
    appended.
    """

    def __init__(self, session_factory: async_sessionmaker, channel: RealtimeChannel):
        self.session_factory = session_factory
        self.channel = channel

    async def publish(self, journey_id: str, sample: LocationSample) -> PublishResult:
        position_updated = await self._update_position(journey_id, sample)
        location_id = await self._append_history(journey_id, sample)
        return PublishResult(
            position_updated=position_updated,
            history_appended=location_id is not None,
            location_id=location_id,
        )

    async def _update_position(self, journey_id: str, sample: LocationSample) -> bool:
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    update(Journey)
                    .where(Journey.id == journey_id)
                    .values(
                        current_latitude=sample.latitude,
                        current_longitude=sample.longitude,
                        location_updated_at=utcnow(),
                    )
                )
                await db.commit()
                if result.rowcount == 0:
                    logger.warning("Position update for unknown journey %s", journey_id)
                    return False
                journey = await db.get(Journey, journey_id)
                event = journey_changed(journey)
        except Exception:
            logger.exception("Failed to update current position for journey %s", journey_id)
            return False

        await self.channel.publish(event)
        return True

    async def _append_history(self, journey_id: str, sample: LocationSample) -> Optional[str]:
        try:
            async with self.session_factory() as db:
                location = JourneyLocation(
                    journey_id=journey_id,
                    latitude=sample.latitude,
                    longitude=sample.longitude,
                    accuracy=sample.accuracy,
                    timestamp=sample.captured_at,
                )
                db.add(location)
                await db.commit()
                await db.refresh(location)
                event = location_inserted(location)
        except Exception:
            logger.exception("Failed to append breadcrumb for journey %s", journey_id)
            return None

        await self.channel.publish(event)
        return location.id
