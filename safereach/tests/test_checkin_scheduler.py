"""
Periodic check-ins: prompting, stopping and missed responses.
"""

import asyncio
from functools import partial

import pytest
from sqlalchemy import select, update

from safereach.app.models.enums import CheckInResponse, JourneyStatus, NotificationType
from safereach.app.models.journey import Journey
from safereach.app.models.journey_checkin import JourneyCheckIn
from safereach.app.models.notification_log import NotificationLogEntry
from safereach.app.services.checkin_scheduler import CheckInScheduler, SchedulerState
from safereach.app.services.journey_state import JourneyStateMachine
from safereach.app.services.realtime import ChangeTopic
from safereach.tests.fakes import ManualSleep, eventually, insert_journey


async def set_status(session_factory, journey_id, status):
    async with session_factory() as db:
        await db.execute(update(Journey).where(Journey.id == journey_id).values(status=status))
        await db.commit()


async def journey_status(session_factory, journey_id):
    async with session_factory() as db:
        return (await db.get(Journey, journey_id)).status


async def checkins(session_factory, journey_id):
    async with session_factory() as db:
        result = await db.execute(select(JourneyCheckIn).where(JourneyCheckIn.journey_id == journey_id))
        return result.scalars().all()


@pytest.mark.asyncio
async def test_prompts_every_interval_while_active(db_session, session_factory, channel, traveler):
    journey = await insert_journey(db_session, traveler)
    sleep = ManualSleep()
    scheduler = CheckInScheduler(session_factory, channel, response_timeout_seconds=0, sleep=sleep)
    
    async with channel.stream((ChangeTopic.CHECKIN_REQUESTED, f"journey_id=eq.{journey.id}")) as inbox:
        scheduler.start(journey.id, 5)
        for number in (1, 2, 3):
            sleep.tick()
            event = await asyncio.wait_for(inbox.get(), timeout=1)
            assert event.record["prompt_number"] == number
    
    assert scheduler.prompt_count(journey.id) == 3
    assert sleep.requested[0] == 300
    
    await scheduler.stop(journey.id)
    assert not scheduler.is_running(journey.id)
    assert scheduler.state(journey.id) == SchedulerState.IDLE


@pytest.mark.asyncio
async def test_start_twice_keeps_one_timer(db_session, session_factory, channel, traveler):
    journey = await insert_journey(db_session, traveler)
    scheduler = CheckInScheduler(session_factory, channel, response_timeout_seconds=0, sleep=ManualSleep())
    
    scheduler.start(journey.id, 5)
    first = scheduler._timers[journey.id].task
    scheduler.start(journey.id, 5)
    
    assert scheduler._timers[journey.id].task is first
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_no_prompt_after_journey_leaves_active(db_session, session_factory, channel, traveler):
    journey = await insert_journey(db_session, traveler)
    sleep = ManualSleep()
    scheduler = CheckInScheduler(session_factory, channel, response_timeout_seconds=0, sleep=sleep)
    
    async with channel.stream((ChangeTopic.CHECKIN_REQUESTED, f"journey_id=eq.{journey.id}")) as inbox:
        scheduler.start(journey.id, 5)
        await set_status(session_factory, journey.id, JourneyStatus.COMPLETED_SAFE)
        sleep.tick()
        await eventually(lambda: not scheduler.is_running(journey.id))
        assert inbox.empty()
    
    assert scheduler.prompt_count(journey.id) == 0
    assert scheduler.state(journey.id) == SchedulerState.IDLE


@pytest.mark.asyncio
async def test_stop_is_idempotent(session_factory, channel):
    scheduler = CheckInScheduler(session_factory, channel, sleep=ManualSleep())
    
    await scheduler.stop("never-started")
    scheduler.start("journey-1", 5)
    await scheduler.stop("journey-1")
    await scheduler.stop("journey-1")
    
    assert not scheduler.is_running("journey-1")


@pytest.mark.asyncio
async def test_missed_checkin_escalates(db_session, session_factory, channel, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    sleep = ManualSleep()
    scheduler = CheckInScheduler(session_factory, channel, response_timeout_seconds=0.05, sleep=sleep)
    
    scheduler.start(journey.id, 5)
    sleep.tick()
    
    async def alerted():
        return await journey_status(session_factory, journey.id) == JourneyStatus.ALERT_TRIGGERED
    await eventually(alerted)
    
    rows = await checkins(session_factory, journey.id)
    assert [row.response for row in rows] == [CheckInResponse.NO_RESPONSE]
    
    result = await db_session.execute(
        select(NotificationLogEntry).where(NotificationLogEntry.journey_id == journey.id)
    )
    entries = result.scalars().all()
    assert len(entries) == len(contacts)
    assert {entry.type for entry in entries} == {NotificationType.CHECKIN_ALERT}
    
    # Alerted journeys are no longer prompted
    sleep.tick()
    await eventually(lambda: not scheduler.is_running(journey.id))
    assert scheduler.prompt_count(journey.id) == 0


@pytest.mark.asyncio
async def test_missed_checkin_without_escalation(db_session, session_factory, channel, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    sleep = ManualSleep()
    scheduler = CheckInScheduler(
        session_factory, channel, response_timeout_seconds=0.05, sleep=sleep,
        state_machine_factory=partial(JourneyStateMachine, escalate_missed_checkin=False),
    )
    
    scheduler.start(journey.id, 5)
    sleep.tick()
    
    async def recorded():
        return len(await checkins(session_factory, journey.id)) == 1
    await eventually(recorded)
    
    assert await journey_status(session_factory, journey.id) == JourneyStatus.ACTIVE
    assert scheduler.is_running(journey.id)
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_acknowledged_prompt_is_not_missed(db_session, session_factory, channel, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    sleep = ManualSleep()
    scheduler = CheckInScheduler(session_factory, channel, response_timeout_seconds=0.2, sleep=sleep)
    
    async with channel.stream((ChangeTopic.CHECKIN_REQUESTED, f"journey_id=eq.{journey.id}")) as inbox:
        scheduler.start(journey.id, 5)
        sleep.tick()
        await asyncio.wait_for(inbox.get(), timeout=1)
    
    assert scheduler.state(journey.id) == SchedulerState.PROMPTING
    scheduler.acknowledge(journey.id)
    await eventually(lambda: scheduler.state(journey.id) == SchedulerState.WAITING)
    
    await asyncio.sleep(0.3)
    assert await checkins(session_factory, journey.id) == []
    assert await journey_status(session_factory, journey.id) == JourneyStatus.ACTIVE
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_resume_restarts_monitored_journeys(db_session, session_factory, channel, traveler):
    first = await insert_journey(db_session, traveler)
    second = await insert_journey(db_session, traveler, checkin_interval_minutes=10)
    done = await insert_journey(db_session, traveler, status=JourneyStatus.COMPLETED_SAFE)
    sleep = ManualSleep()
    scheduler = CheckInScheduler(session_factory, channel, sleep=sleep)
    
    assert await scheduler.resume() == 2
    
    assert scheduler.is_running(first.id)
    assert scheduler.is_running(second.id)
    assert not scheduler.is_running(done.id)
    await asyncio.sleep(0)
    assert sorted(sleep.requested) == [300, 600]
    
    await scheduler.shutdown()
    assert not scheduler.is_running(first.id)


@pytest.mark.asyncio
async def test_prompt_cadence_ignores_pending_answer(db_session, session_factory, channel, traveler):
    journey = await insert_journey(db_session, traveler)
    sleep = ManualSleep()
    scheduler = CheckInScheduler(session_factory, channel, response_timeout_seconds=30, sleep=sleep)
    
    async with channel.stream((ChangeTopic.CHECKIN_REQUESTED, f"journey_id=eq.{journey.id}")) as inbox:
        scheduler.start(journey.id, 1)
        for number in (1, 2, 3, 4):
            sleep.tick()
            event = await asyncio.wait_for(inbox.get(), timeout=1)
            assert event.record["prompt_number"] == number
            assert event.record["respond_by"] is not None
    
    # Every prompt is still waiting for its answer, none was recorded as missed
    assert scheduler.state(journey.id) == SchedulerState.PROMPTING
    assert await checkins(session_factory, journey.id) == []
    
    scheduler.acknowledge(journey.id)
    await eventually(lambda: scheduler.state(journey.id) == SchedulerState.WAITING)
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_answer_recorded_elsewhere_is_not_missed(db_session, session_factory, channel, traveler, contacts):
    journey = await insert_journey(db_session, traveler, contacts)
    sleep = ManualSleep()
    prompting = CheckInScheduler(session_factory, channel, response_timeout_seconds=0.2, sleep=sleep)
    answering = CheckInScheduler(session_factory, channel, response_timeout_seconds=0.2, sleep=ManualSleep())
    
    async with channel.stream((ChangeTopic.CHECKIN_REQUESTED, f"journey_id=eq.{journey.id}")) as inbox:
        prompting.start(journey.id, 5)
        sleep.tick()
        await asyncio.wait_for(inbox.get(), timeout=1)
    
    # The answer reaches a worker that holds no open prompt for the journey
    async with session_factory() as db:
        await JourneyStateMachine(db).record_checkin(journey.id, traveler.id, CheckInResponse.YES)
    answering.acknowledge(journey.id)
    
    await eventually(lambda: prompting.state(journey.id) == SchedulerState.WAITING)
    rows = await checkins(session_factory, journey.id)
    assert [row.response for row in rows] == [CheckInResponse.YES]
    assert await journey_status(session_factory, journey.id) == JourneyStatus.ACTIVE
    await prompting.shutdown()


@pytest.mark.asyncio
async def test_one_prompt_per_tick_across_schedulers(db_session, session_factory, channel, traveler):
    journey = await insert_journey(db_session, traveler)
    first_sleep, second_sleep = ManualSleep(), ManualSleep()
    first = CheckInScheduler(session_factory, channel, response_timeout_seconds=0, sleep=first_sleep)
    second = CheckInScheduler(session_factory, channel, response_timeout_seconds=0, sleep=second_sleep)
    
    async with channel.stream((ChangeTopic.CHECKIN_REQUESTED, f"journey_id=eq.{journey.id}")) as inbox:
        assert await first.resume() == 1
        assert await second.resume() == 1
        
        first_sleep.tick()
        await asyncio.wait_for(inbox.get(), timeout=1)
        second_sleep.tick()
        await eventually(lambda: len(second_sleep.requested) == 2)
        await asyncio.sleep(0.05)
        assert inbox.empty()
    
    assert first.prompt_count(journey.id) == 1
    assert second.prompt_count(journey.id) == 0
    await first.shutdown()
    await second.shutdown()
