"""
Read models for journey views.

Both the traveler's detail view and the public tracking page are built
from the same full fetch. Live viewers run it on connect so they never
depend on the event stream alone.
"""

from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from safereach.app.core.config import settings
from safereach.app.core.exceptions import ResourceNotFoundError
from safereach.app.models.journey import Journey
from safereach.app.models.journey_checkin import JourneyCheckIn
from safereach.app.models.journey_location import JourneyLocation
from safereach.app.models.journey_step import JourneyStep
from safereach.app.models.traveler import Traveler
from safereach.app.schemas.journey import (
    BreadcrumbStatsResponse, ContactSummary, JourneyCheckInResponse, JourneyDetailResponse,
    JourneyLocationResponse, JourneyResponse, NotificationLogResponse, RouteStepResponse
)
from safereach.app.schemas.tracking import PublicJourney, PublicTrackingResponse, TravelerSummary
from safereach.app.services.geo import Coordinates
from safereach.app.services.journey_stats import (
    format_distance, format_speed, remaining_distance_meters, summarize_breadcrumbs
)
from safereach.app.services.notification_service import NotificationService


def tracking_url(journey_id: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/track/{journey_id}"


async def load_breadcrumbs(db: AsyncSession, journey_id: str) -> List[JourneyLocation]:
    result = await db.execute(
        select(JourneyLocation)
        .where(JourneyLocation.journey_id == journey_id)
        .order_by(JourneyLocation.timestamp)
    )
    return list(result.scalars().all())


async def load_checkins(db: AsyncSession, journey_id: str) -> List[JourneyCheckIn]:
    """Newest first."""
    result = await db.execute(
        select(JourneyCheckIn)
        .where(JourneyCheckIn.journey_id == journey_id)
        .order_by(JourneyCheckIn.timestamp.desc())
    )
    return list(result.scalars().all())


async def load_steps(db: AsyncSession, journey_id: str) -> List[JourneyStep]:
    result = await db.execute(
        select(JourneyStep)
        .where(JourneyStep.journey_id == journey_id)
        .order_by(JourneyStep.step_number)
    )
    return list(result.scalars().all())


def stats_response(breadcrumbs: List[JourneyLocation]) -> BreadcrumbStatsResponse:
    stats = summarize_breadcrumbs(breadcrumbs)
    return BreadcrumbStatsResponse(
        total_distance_meters=stats.total_distance_meters,
        average_speed_mps=stats.average_speed_mps,
        elapsed_seconds=stats.elapsed_seconds,
        point_count=stats.point_count,
        total_distance_display=format_distance(stats.total_distance_meters),
        average_speed_display=format_speed(stats.average_speed_mps),
    )


def _coordinates(lat, lng):
    if lat is None or lng is None:
        return None
    return Coordinates(lat, lng)


async def build_detail(db: AsyncSession, journey: Journey) -> JourneyDetailResponse:
    contacts = await NotificationService.journey_contacts(db, journey.id)
    checkins = await load_checkins(db, journey.id)
    steps = await load_steps(db, journey.id)
    breadcrumbs = await load_breadcrumbs(db, journey.id)
    notifications = await NotificationService.list_for_journey(db, journey.id)

    remaining = remaining_distance_meters(
        _coordinates(journey.current_latitude, journey.current_longitude),
        _coordinates(journey.dest_latitude, journey.dest_longitude),
    )

    checkin_models = [JourneyCheckInResponse.model_validate(c) for c in checkins]
    return JourneyDetailResponse(
        journey=JourneyResponse.model_validate(journey),
        contacts=[ContactSummary.model_validate(c) for c in contacts],
        checkins=checkin_models,
        last_checkin=checkin_models[0] if checkin_models else None,
        steps=[RouteStepResponse.model_validate(s) for s in steps],
        notifications=[NotificationLogResponse.model_validate(n) for n in notifications],
        stats=stats_response(breadcrumbs),
        remaining_distance_meters=remaining,
        tracking_url=tracking_url(journey.id),
    )


async def build_public_snapshot(db: AsyncSession, journey_id: str) -> PublicTrackingResponse:
    """
    Everything a tracking-link holder may see.

    Raises:
        ResourceNotFoundError: the link is invalid or the journey was deleted
    """
    journey = await db.get(Journey, journey_id)
    if not journey:
        raise ResourceNotFoundError("Journey", journey_id)

    traveler = await db.get(Traveler, journey.traveler_id)
    contacts = await NotificationService.journey_contacts(db, journey.id)
    checkins = await load_checkins(db, journey.id)
    breadcrumbs = await load_breadcrumbs(db, journey.id)
    steps = await load_steps(db, journey.id)

    return PublicTrackingResponse(
        journey=PublicJourney.model_validate(journey),
        traveler=TravelerSummary.model_validate(traveler) if traveler else None,
        contacts=[ContactSummary.model_validate(c) for c in contacts],
        checkins=[JourneyCheckInResponse.model_validate(c) for c in checkins],
        locations=[JourneyLocationResponse.model_validate(b) for b in breadcrumbs],
        steps=[RouteStepResponse.model_validate(s) for s in steps],
        stats=stats_response(breadcrumbs),
    )
