"""
Journey lifecycle: creation, check-ins, arrival and alerts.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from safereach.app.core.exceptions import (
    InsufficientPermissionsError, InvalidTransitionError, ResourceNotFoundError, ValidationError
)
from safereach.app.models.contact import Contact
from safereach.app.models.enums import CheckInResponse, JourneyStatus, NotificationType
from safereach.app.models.journey import Journey
from safereach.app.models.journey_checkin import JourneyCheckIn
from safereach.app.models.journey_step import JourneyStep
from safereach.app.models.notification_log import NotificationLogEntry
from safereach.app.models.traveler import Traveler
from safereach.app.schemas.journey import JourneyCreate
from safereach.app.services.geo import Coordinates
from safereach.app.services.journey_state import JourneyStateMachine
from safereach.app.services.realtime import ChangeTopic, RowFilter
from safereach.app.services.route_estimator import RouteEstimate, RouteStepEstimate
from safereach.tests.fakes import insert_journey


def estimate(minutes=13):
    return RouteEstimate(
        duration_minutes=minutes,
        distance_meters=1000.0,
        origin=Coordinates(51.52, -0.13),
        destination=Coordinates(51.529, -0.13),
        steps=[
            RouteStepEstimate(1, "Start walking on Library Way", 200.0, 150.0, "depart"),
            RouteStepEstimate(2, "Turn left onto Main St", 800.0, 600.0, "turn", "left"),
        ],
        source="osrm",
    )


def create_request(contacts, **overrides):
    data = dict(
        start_name="Central Library",
        start_address="Central Library",
        dest_name="Riverside Park",
        dest_address="Riverside Park",
        contact_ids=[contact.id for contact in contacts],
    )
    data.update(overrides)
    return JourneyCreate(**data)


async def count(db, model, *criteria):
    result = await db.execute(select(func.count()).select_from(model).where(*criteria))
    return result.scalar_one()


async def notifications(db, journey_id, type):
    return await count(
        db, NotificationLogEntry,
        NotificationLogEntry.journey_id == journey_id, NotificationLogEntry.type == type
    )


@pytest.mark.asyncio
async def test_zero_contacts_rejected_without_writes(db_session, traveler):
    machine = JourneyStateMachine(db_session)
    
    with pytest.raises(ValidationError) as exc:
        await machine.create_journey(traveler.id, create_request([]), estimate())
    
    assert exc.value.message == "Please select at least one contact"
    assert await count(db_session, Journey) == 0
    assert await count(db_session, NotificationLogEntry) == 0


@pytest.mark.asyncio
async def test_missing_destination_rejected(db_session, traveler, contacts):
    machine = JourneyStateMachine(db_session)
    request = create_request(contacts, dest_name=None, dest_address=None)
    
    with pytest.raises(ValidationError) as exc:
        await machine.validate_create(traveler.id, request)
    
    assert exc.value.message == "Please fill in all required fields"


@pytest.mark.asyncio
async def test_other_travelers_contacts_rejected(db_session, traveler, contacts):
    stranger = Traveler(name="Other Person")
    db_session.add(stranger)
    await db_session.flush()
    foreign = Contact(traveler_id=stranger.id, name="Not Yours", phone="+15550199")
    db_session.add(foreign)
    await db_session.commit()
    
    machine = JourneyStateMachine(db_session)
    with pytest.raises(ValidationError) as exc:
        await machine.validate_create(traveler.id, create_request([contacts[0], foreign]))
    
    assert exc.value.details["contact_ids"] == [foreign.id]


@pytest.mark.asyncio
async def test_create_writes_journey_steps_and_start_notifications(db_session, channel, traveler, contacts):
    machine = JourneyStateMachine(db_session, channel=channel)
    
    async with channel.stream((ChangeTopic.JOURNEY_ROW_CHANGED, RowFilter.eq("traveler_id", traveler.id))) as inbox:
        created = await machine.create_journey(traveler.id, create_request(contacts), estimate())
        event = await asyncio.wait_for(inbox.get(), timeout=1)
    
    journey = created.journey
    assert journey.status == JourneyStatus.ACTIVE
    assert journey.eta_time - journey.start_time == timedelta(minutes=13)
    assert journey.estimated_distance_meters == 1000.0
    assert journey.dest_latitude == 51.529
    assert journey.checkin_interval_minutes == 5
    assert created.notifications_created == 2
    assert len(created.steps) == 2
    assert await count(db_session, JourneyStep, JourneyStep.journey_id == journey.id) == 2
    assert await notifications(db_session, journey.id, NotificationType.START) == len(contacts)
    assert event.record["id"] == journey.id


@pytest.mark.asyncio
async def test_expected_duration_overrides_estimate(db_session, traveler, contacts):
    machine = JourneyStateMachine(db_session)
    
    created = await machine.create_journey(
        traveler.id, create_request(contacts, expected_duration_minutes=30), estimate(13)
    )
    
    assert created.journey.eta_time - created.journey.start_time == timedelta(minutes=30)


@pytest.mark.asyncio
async def test_create_without_any_duration_writes_nothing(db_session, traveler, contacts):
    machine = JourneyStateMachine(db_session)
    
    with pytest.raises(ValidationError):
        await machine.create_journey(traveler.id, create_request(contacts), None)
    
    assert await count(db_session, Journey) == 0


@pytest.mark.asyncio
async def test_start_from_current_location(db_session, traveler, contacts):
    machine = JourneyStateMachine(db_session)
    request = create_request(
        contacts, start_name=None, start_address=None, start_location={"lat": 51.52, "lng": -0.13}
    )
    
    created = await machine.create_journey(traveler.id, request, estimate())
    
    assert created.journey.start_name == "Current Location"
    assert created.journey.start_latitude == 51.52


@pytest.mark.asyncio
async def test_negative_checkin_alerts_every_contact(db_session, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    machine = JourneyStateMachine(db_session)
    
    result = await machine.record_checkin(journey.id, traveler.id, CheckInResponse.NO)
    
    assert result.changed
    assert result.journey.status == JourneyStatus.ALERT_TRIGGERED
    assert result.checkin.response == CheckInResponse.NO
    assert await notifications(db_session, journey.id, NotificationType.DANGER_ALERT) == len(contacts)
    
    result = await db_session.execute(
        select(NotificationLogEntry.message).where(NotificationLogEntry.journey_id == journey.id)
    )
    assert set(result.scalars().all()) == {"ALERT: Maya Chen indicated they are NOT safe!"}


@pytest.mark.asyncio
async def test_positive_checkin_only_records(db_session, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    machine = JourneyStateMachine(db_session)
    
    result = await machine.record_checkin(journey.id, traveler.id, CheckInResponse.YES)
    
    assert not result.changed
    assert result.journey.status == JourneyStatus.ACTIVE
    assert result.checkin.response == CheckInResponse.YES
    assert await count(db_session, NotificationLogEntry) == 0


@pytest.mark.asyncio
async def test_arrival_requires_confirmation(db_session, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    machine = JourneyStateMachine(db_session)
    
    with pytest.raises(ValidationError):
        await machine.mark_arrived(journey.id, traveler.id)
    
    await db_session.refresh(journey)
    assert journey.status == JourneyStatus.ACTIVE


@pytest.mark.asyncio
async def test_arrival_is_idempotent(db_session, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    machine = JourneyStateMachine(db_session)
    
    first = await machine.mark_arrived(journey.id, traveler.id, confirmed=True)
    second = await machine.mark_arrived(journey.id, traveler.id, confirmed=True)
    
    assert first.changed and not second.changed
    assert first.notifications_created == len(contacts)
    assert second.journey.status == JourneyStatus.COMPLETED_SAFE
    assert second.journey.end_time is not None
    assert await notifications(db_session, journey.id, NotificationType.ARRIVAL_SAFE) == len(contacts)


@pytest.mark.asyncio
async def test_alert_after_arrival_is_rejected(db_session, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    machine = JourneyStateMachine(db_session)
    await machine.mark_arrived(journey.id, traveler.id, confirmed=True)
    
    with pytest.raises(InvalidTransitionError):
        await machine.trigger_alert(journey.id, traveler.id, confirmed=True)
    with pytest.raises(InvalidTransitionError):
        await machine.record_checkin(journey.id, traveler.id, CheckInResponse.YES)


@pytest.mark.asyncio
async def test_terminal_alert(db_session, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    machine = JourneyStateMachine(db_session, alert_is_terminal=True)
    
    first = await machine.trigger_alert(journey.id, traveler.id, confirmed=True)
    second = await machine.trigger_alert(journey.id, traveler.id, confirmed=True)
    
    assert first.changed and not second.changed
    assert await notifications(db_session, journey.id, NotificationType.DANGER_ALERT) == len(contacts)
    with pytest.raises(InvalidTransitionError):
        await machine.mark_arrived(journey.id, traveler.id, confirmed=True)
    with pytest.raises(InvalidTransitionError):
        await machine.record_checkin(journey.id, traveler.id, CheckInResponse.YES)


@pytest.mark.asyncio
async def test_non_terminal_alert_keeps_monitoring(db_session, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    machine = JourneyStateMachine(db_session, alert_is_terminal=False)
    
    await machine.trigger_alert(journey.id, traveler.id, confirmed=True)
    checkin = await machine.record_checkin(journey.id, traveler.id, CheckInResponse.YES)
    arrived = await machine.mark_arrived(journey.id, traveler.id, confirmed=True)
    
    assert checkin.checkin.response == CheckInResponse.YES
    assert arrived.changed
    assert arrived.journey.status == JourneyStatus.COMPLETED_SAFE


@pytest.mark.asyncio
async def test_alert_requires_confirmation(db_session, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    
    with pytest.raises(ValidationError):
        await JourneyStateMachine(db_session).trigger_alert(journey.id, traveler.id, confirmed=False)
    
    assert await count(db_session, JourneyCheckIn) == 0


@pytest.mark.asyncio
async def test_other_traveler_cannot_act(db_session, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    stranger = Traveler(name="Other Person")
    db_session.add(stranger)
    await db_session.commit()
    
    with pytest.raises(InsufficientPermissionsError):
        await JourneyStateMachine(db_session).mark_arrived(journey.id, stranger.id, confirmed=True)


@pytest.mark.asyncio
async def test_unknown_journey(db_session, traveler):
    with pytest.raises(ResourceNotFoundError):
        await JourneyStateMachine(db_session).get_journey("missing")


@pytest.mark.asyncio
async def test_missed_checkin_on_finished_journey_does_nothing(db_session, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts, status=JourneyStatus.COMPLETED_SAFE)
    
    assert await JourneyStateMachine(db_session).record_missed_checkin(journey.id) is None
    assert await count(db_session, JourneyCheckIn) == 0
