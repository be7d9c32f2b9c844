"""
Journey API Endpoints.

Travelers start a journey, stream their position, answer check-ins and
finish it by arriving safely or raising an alert.
"""

import asyncio
import json
import logging
from contextlib import suppress
from functools import partial
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, WebSocket, WebSocketDisconnect, status
from starlette.websockets import WebSocketState
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from safereach.app.core.clock import utcnow
from safereach.app.core.dependencies import get_current_traveler, traveler_id_from_token
from safereach.app.core.exceptions import AppException, GeocodingError, InvalidTransitionError
from safereach.app.db.session import get_db, get_session_factory
from safereach.app.models.enums import CheckInResponse, JourneyStatus
from safereach.app.models.journey import Journey
from safereach.app.models.traveler import Traveler
from safereach.app.schemas.journey import (
    CheckInCreate, CheckInResultResponse, ConfirmRequest, JourneyCheckInResponse, JourneyCreate,
    JourneyCreateResponse, JourneyDetailResponse, JourneyResponse, LocationRecord,
    LocationRecordResponse, RouteStepResponse, TransitionResponse
)
from safereach.app.services.checkin_scheduler import CheckInScheduler, get_checkin_scheduler
from safereach.app.services.geo import Coordinates
from safereach.app.services.geolocation_sampler import (
    GeolocationSampler, JourneyTracker, PushedPositionSource
)
from safereach.app.services.journey_queries import build_detail, tracking_url
from safereach.app.services.journey_state import (
    CURRENT_LOCATION, JourneyStateMachine, TransitionResult, is_journey_monitored
)
from safereach.app.services.location_publisher import LocationPublisher, LocationSample
from safereach.app.services.realtime import (
    ChangeTopic, RealtimeChannel, RowFilter, event_message, get_realtime_channel, row_to_dict
)
from safereach.app.services.route_estimator import RouteEstimate, RouteEstimator, get_route_estimator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/journeys", tags=["Journeys"])


async def resolve_start(request: JourneyCreate, estimator: RouteEstimator) -> JourneyCreate:
    """
    Copy of ``request`` with the start filled in for a journey begun at the
    current position. The address comes from a reverse lookup; the request
    passed in is left as it was.
    """
    if not request.start_location or request.start_address:
        return request
    try:
        address = await estimator.geocoder.reverse(request.start_location.lat, request.start_location.lng)
    except GeocodingError as e:
        logger.warning("Reverse geocoding of start position failed: %s", e)
        address = None
    changes = {"start_name": request.start_name or CURRENT_LOCATION}
    if address:
        changes["start_address"] = address
    return request.model_copy(update=changes)


async def estimate_for(request: JourneyCreate, estimator: RouteEstimator) -> Optional[RouteEstimate]:
    """Route estimate for a start-journey request, or None. Coordinates win over text."""
    if not request.compute_route:
        return None

    if request.start_location:
        origin = Coordinates(request.start_location.lat, request.start_location.lng)
    else:
        origin = request.start_address or request.start_name

    if request.dest_location:
        destination = Coordinates(request.dest_location.lat, request.dest_location.lng)
    else:
        destination = request.dest_address or request.dest_name

    return await estimator.estimate(origin, destination)


def transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        journey=JourneyResponse.model_validate(result.journey),
        changed=result.changed,
        notifications_created=result.notifications_created,
    )


async def stop_if_finished(
    machine: JourneyStateMachine,
    scheduler: CheckInScheduler,
    journey: Journey
) -> None:
    if not machine.is_monitored(journey):
        await scheduler.stop(journey.id)


@router.post("", response_model=JourneyCreateResponse, status_code=status.HTTP_201_CREATED)
async def start_journey(
    request: JourneyCreate,
    current_traveler: Traveler = Depends(get_current_traveler),
    db: AsyncSession = Depends(get_db),
    channel: RealtimeChannel = Depends(get_realtime_channel),
    estimator: RouteEstimator = Depends(get_route_estimator),
    scheduler: CheckInScheduler = Depends(get_checkin_scheduler)
):
    """
    Start a journey.

    Validates:
    - At least one contact is selected
    - Start and destination are given

    Actions:
    - Estimate the route (straight line if the router is down)
    - Store the journey, its contacts and steps
    - Log a ``start`` notification for every contact
    - Start the periodic check-in timer
    """
    machine = JourneyStateMachine(db, channel=channel)

    # Reject before calling any external service
    await machine.validate_create(current_traveler.id, request)

    resolved = await resolve_start(request, estimator)
    estimate = await estimate_for(resolved, estimator)
    created = await machine.create_journey(current_traveler.id, resolved, estimate)

    scheduler.start(created.journey.id, created.journey.checkin_interval_minutes)

    return JourneyCreateResponse(
        journey=JourneyResponse.model_validate(created.journey),
        steps=[RouteStepResponse.model_validate(step) for step in created.steps],
        notifications_created=created.notifications_created,
        tracking_url=tracking_url(created.journey.id),
        estimate_degraded=created.journey.estimate_degraded,
    )


@router.get("", response_model=List[JourneyResponse])
async def list_journeys(
    status_filter: Optional[JourneyStatus] = Query(None, alias="status"),
    current_traveler: Traveler = Depends(get_current_traveler),
    db: AsyncSession = Depends(get_db)
):
    """List the traveler's journeys, newest first."""
    query = select(Journey).where(Journey.traveler_id == current_traveler.id)
    if status_filter is not None:
        query = query.where(Journey.status == status_filter)
    result = await db.execute(query.order_by(Journey.start_time.desc()))
    return [JourneyResponse.model_validate(journey) for journey in result.scalars().all()]


@router.get("/{journey_id}", response_model=JourneyDetailResponse)
async def get_journey(
    journey_id: str = Path(..., description="Journey ID"),
    current_traveler: Traveler = Depends(get_current_traveler),
    db: AsyncSession = Depends(get_db)
):
    """Journey with contacts, check-ins, steps, notifications and walking stats."""
    journey = await JourneyStateMachine(db).get_owned_journey(journey_id, current_traveler.id)
    return await build_detail(db, journey)


@router.post("/{journey_id}/locations", response_model=LocationRecordResponse, status_code=status.HTTP_201_CREATED)
async def record_location(
    location: LocationRecord,
    journey_id: str = Path(..., description="Journey ID"),
    current_traveler: Traveler = Depends(get_current_traveler),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    channel: RealtimeChannel = Depends(get_realtime_channel)
):
    """
    Record one GPS fix.

    Updates the journey's current position and appends a breadcrumb. The
    two writes are independent; the response says which succeeded.
    """
    machine = JourneyStateMachine(db)
    journey = await machine.get_owned_journey(journey_id, current_traveler.id)
    if not machine.is_monitored(journey):
        raise InvalidTransitionError(journey.status.value, "record a location for")

    publisher = LocationPublisher(session_factory, channel)
    result = await publisher.publish(journey.id, LocationSample(
        latitude=location.latitude,
        longitude=location.longitude,
        captured_at=location.recorded_at or utcnow(),
        accuracy=location.accuracy,
    ))

    return LocationRecordResponse(
        journey_id=journey.id,
        location_id=result.location_id,
        position_updated=result.position_updated,
        history_appended=result.history_appended,
    )


@router.post("/{journey_id}/checkins", response_model=CheckInResultResponse, status_code=status.HTTP_201_CREATED)
async def check_in(
    request: CheckInCreate,
    journey_id: str = Path(..., description="Journey ID"),
    current_traveler: Traveler = Depends(get_current_traveler),
    db: AsyncSession = Depends(get_db),
    channel: RealtimeChannel = Depends(get_realtime_channel),
    scheduler: CheckInScheduler = Depends(get_checkin_scheduler)
):
    """
    Answer "Are you safe?".

    ``no`` raises the alert and flags every contact.
    """
    machine = JourneyStateMachine(db, channel=channel)
    response = CheckInResponse(request.response)
    result = await machine.record_checkin(journey_id, current_traveler.id, response)
    if result.checkin is None:
        # Another request moved the journey first
        raise InvalidTransitionError(result.journey.status.value, "check in on")

    scheduler.acknowledge(journey_id)
    await stop_if_finished(machine, scheduler, result.journey)

    return CheckInResultResponse(
        checkin=JourneyCheckInResponse.model_validate(result.checkin),
        journey=JourneyResponse.model_validate(result.journey),
        alert_triggered=response == CheckInResponse.NO,
        notifications_created=result.notifications_created,
    )


@router.post("/{journey_id}/arrive", response_model=TransitionResponse)
async def arrive(
    request: ConfirmRequest,
    journey_id: str = Path(..., description="Journey ID"),
    current_traveler: Traveler = Depends(get_current_traveler),
    db: AsyncSession = Depends(get_db),
    channel: RealtimeChannel = Depends(get_realtime_channel),
    scheduler: CheckInScheduler = Depends(get_checkin_scheduler)
):
    """
    Mark the journey as completed safely.

    Requires ``confirm: true``. Repeating the call is harmless.
    """
    machine = JourneyStateMachine(db, channel=channel)
    result = await machine.mark_arrived(journey_id, current_traveler.id, confirmed=request.confirm)
    await stop_if_finished(machine, scheduler, result.journey)
    return transition_response(result)


@router.post("/{journey_id}/alert", response_model=TransitionResponse)
async def raise_alert(
    request: ConfirmRequest,
    journey_id: str = Path(..., description="Journey ID"),
    current_traveler: Traveler = Depends(get_current_traveler),
    db: AsyncSession = Depends(get_db),
    channel: RealtimeChannel = Depends(get_realtime_channel),
    scheduler: CheckInScheduler = Depends(get_checkin_scheduler)
):
    """
    Emergency button.

    Requires ``confirm: true``. Logs a ``danger_alert`` for every contact.
    """
    machine = JourneyStateMachine(db, channel=channel)
    result = await machine.trigger_alert(journey_id, current_traveler.id, confirmed=request.confirm)
    await stop_if_finished(machine, scheduler, result.journey)
    return transition_response(result)


@router.websocket("/{journey_id}/live")
async def journey_live(
    websocket: WebSocket,
    journey_id: str,
    token: Optional[str] = Query(None),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    channel: RealtimeChannel = Depends(get_realtime_channel)
):
    """
    Traveler's live connection.

    The device pushes position fixes (or geolocation errors); the server
    publishes accepted fixes and sends back journey changes, check-in
    prompts and ``location_error`` messages. Sampling ends and the socket
    closes as soon as the journey is no longer monitored.
    """
    await websocket.accept()

    traveler_id = traveler_id_from_token(token)
    if traveler_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Could not validate credentials")
        return

    async with session_factory() as db:
        machine = JourneyStateMachine(db)
        try:
            journey = await machine.get_owned_journey(journey_id, traveler_id)
        except AppException as e:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
            return
        monitored = machine.is_monitored(journey)
        await websocket.send_json({"type": "journey", "journey": row_to_dict(journey)})

    if not monitored:
        # Nothing to sample for a finished journey
        await websocket.close(code=status.WS_1000_NORMAL_CLOSURE)
        return

    monitored_values = {journey_status.value for journey_status in machine.monitored_statuses()}
    source = PushedPositionSource()
    tracker = JourneyTracker(
        journey_id,
        GeolocationSampler(source),
        LocationPublisher(session_factory, channel),
        is_trackable=partial(is_journey_monitored, session_factory),
    )

    async def report_error(error):
        await websocket.send_json({"type": "location_error", "code": error.code, "message": str(error)})

    async def relay(inbox: asyncio.Queue) -> None:
        # A journey that stops being monitored ends sampling and the socket
        try:
            while True:
                event = await inbox.get()
                await websocket.send_json(event_message(event))
                if event.topic == ChangeTopic.JOURNEY_ROW_CHANGED and event.record.get("status") not in monitored_values:
                    logger.info("Journey %s is %s, closing live socket", journey_id, event.record.get("status"))
                    await tracker.stop()
                    await websocket.close(code=status.WS_1000_NORMAL_CLOSURE)
                    return
        except (WebSocketDisconnect, RuntimeError):
            logger.debug("Traveler socket closed while relaying events")

    async with channel.stream(
        (ChangeTopic.JOURNEY_ROW_CHANGED, RowFilter.eq("id", journey_id)),
        (ChangeTopic.CHECKIN_REQUESTED, RowFilter.eq("journey_id", journey_id)),
    ) as inbox:
        relayer = asyncio.create_task(relay(inbox))
        tracker.start(on_error=report_error)
        try:
            while websocket.application_state == WebSocketState.CONNECTED:
                text = await websocket.receive_text()
                try:
                    source.push_message(json.loads(text))
                except (ValueError, AttributeError) as e:
                    await websocket.send_json({"type": "error", "message": f"Invalid message: {e}"})
        except WebSocketDisconnect:
            logger.info("Traveler disconnected from journey %s", journey_id)
        finally:
            await tracker.stop()
            relayer.cancel()
            with suppress(asyncio.CancelledError):
                await relayer
