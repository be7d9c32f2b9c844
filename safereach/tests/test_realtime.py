"""
Real-time channel: filtering, fan-out and unsubscription.
"""

import asyncio
import json

import pytest

from safereach.app.services.realtime import (
    ChangeEvent, ChangeTopic, RealtimeChannel, RedisBroker, RowFilter, checkin_requested, event_message
)


def journey_event(journey_id, status="active"):
    return ChangeEvent(
        topic=ChangeTopic.JOURNEY_ROW_CHANGED,
        table="journeys",
        event_type="UPDATE",
        record={"id": journey_id, "status": status},
    )


def location_event(journey_id, lat=51.52):
    return ChangeEvent(
        topic=ChangeTopic.LOCATION_ROW_INSERTED,
        table="journey_locations",
        event_type="INSERT",
        record={"id": "loc", "journey_id": journey_id, "latitude": lat, "longitude": -0.13},
    )


def test_row_filter_parse():
    row_filter = RowFilter.parse("journey_id=eq.abc-123")
    assert row_filter == RowFilter("journey_id", "abc-123")
    assert str(row_filter) == "journey_id=eq.abc-123"


@pytest.mark.parametrize("expression", ["journey_id", "journey_id=abc", "=eq.abc", "journey_id=gt.3"])
def test_row_filter_rejects_other_operators(expression):
    with pytest.raises(ValueError):
        RowFilter.parse(expression)


def test_row_filter_matches_on_string_value():
    assert RowFilter.eq("id", 7).matches({"id": 7})
    assert not RowFilter.eq("id", "a").matches({"id": "b"})
    assert not RowFilter.eq("id", "a").matches({"journey_id": "a"})


@pytest.mark.asyncio
async def test_subscriber_only_sees_its_journey(channel):
    subscription = await channel.subscribe(ChangeTopic.JOURNEY_ROW_CHANGED, "id=eq.X")
    
    await channel.publish(journey_event("Y"))
    await channel.publish(journey_event("X", status="alert_triggered"))
    await channel.publish(location_event("X"))
    
    event = await asyncio.wait_for(subscription.get(), timeout=1)
    assert event.record["id"] == "X"
    assert event.record["status"] == "alert_triggered"
    assert subscription.queue.empty()


@pytest.mark.asyncio
async def test_every_subscriber_gets_its_own_copy(channel):
    first = await channel.subscribe(ChangeTopic.LOCATION_ROW_INSERTED, RowFilter.eq("journey_id", "X"))
    second = await channel.subscribe(ChangeTopic.LOCATION_ROW_INSERTED, RowFilter.eq("journey_id", "X"))
    
    await channel.publish(location_event("X"))
    
    assert (await asyncio.wait_for(first.get(), timeout=1)).record["journey_id"] == "X"
    assert (await asyncio.wait_for(second.get(), timeout=1)).record["journey_id"] == "X"
    assert channel.subscriber_count(ChangeTopic.LOCATION_ROW_INSERTED) == 2


@pytest.mark.asyncio
async def test_callback_subscription(channel):
    received = []
    delivered = asyncio.Event()
    
    async def on_event(event):
        received.append(event)
        delivered.set()
    
    await channel.subscribe(ChangeTopic.JOURNEY_ROW_CHANGED, "id=eq.X", on_event)
    await channel.publish(journey_event("X"))
    
    await asyncio.wait_for(delivered.wait(), timeout=1)
    assert len(received) == 1


@pytest.mark.asyncio
async def test_failing_callback_keeps_subscription_alive(channel):
    calls = []
    
    def on_event(event):
        calls.append(event)
        if len(calls) == 1:
            raise RuntimeError("viewer bug")
    
    await channel.subscribe(ChangeTopic.JOURNEY_ROW_CHANGED, "id=eq.X", on_event)
    await channel.publish(journey_event("X"))
    await channel.publish(journey_event("X"))
    
    for _ in range(20):
        if len(calls) == 2:
            break
        await asyncio.sleep(0.01)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent(channel):
    subscription = await channel.subscribe(ChangeTopic.JOURNEY_ROW_CHANGED, "id=eq.X", lambda e: None)
    
    await subscription.unsubscribe()
    await subscription.unsubscribe()
    
    assert not subscription.active
    assert channel.subscriber_count(ChangeTopic.JOURNEY_ROW_CHANGED) == 0
    
    await channel.publish(journey_event("X"))
    assert subscription.queue.empty()


@pytest.mark.asyncio
async def test_stream_unsubscribes_on_exit(channel):
    async with channel.stream(
        (ChangeTopic.JOURNEY_ROW_CHANGED, "id=eq.X"),
        (ChangeTopic.LOCATION_ROW_INSERTED, "journey_id=eq.X"),
    ) as inbox:
        await channel.publish(journey_event("X"))
        await channel.publish(location_event("X"))
        first = await asyncio.wait_for(inbox.get(), timeout=1)
        second = await asyncio.wait_for(inbox.get(), timeout=1)
        assert {first.topic, second.topic} == {ChangeTopic.JOURNEY_ROW_CHANGED, ChangeTopic.LOCATION_ROW_INSERTED}
    
    assert channel.subscriber_count(ChangeTopic.JOURNEY_ROW_CHANGED) == 0
    assert channel.subscriber_count(ChangeTopic.LOCATION_ROW_INSERTED) == 0


@pytest.mark.asyncio
async def test_slow_subscriber_drops_instead_of_blocking(channel):
    subscription = await channel.subscribe(ChangeTopic.JOURNEY_ROW_CHANGED, "id=eq.X")
    subscription.queue = asyncio.Queue(maxsize=1)
    
    await channel.publish(journey_event("X"))
    await channel.publish(journey_event("X"))
    
    assert subscription.dropped == 1


def test_event_message_shapes():
    message = event_message(checkin_requested("X", 2))
    assert message["type"] == "checkin_requested"
    assert message["checkin"] == {"journey_id": "X", "prompt_number": 2, "respond_by": None}
    
    assert event_message(location_event("X"))["type"] == "location"
    assert event_message(journey_event("X"))["journey"]["id"] == "X"


@pytest.mark.asyncio
async def test_redis_broker_publishes_json(mocker):
    redis = mocker.Mock()
    redis.publish = mocker.AsyncMock()
    broker = RedisBroker(redis, prefix="safereach")
    
    await broker.publish(journey_event("X"))
    
    channel_name, payload = redis.publish.await_args.args
    assert channel_name == "safereach:journey-row-changed"
    assert json.loads(payload)["record"]["id"] == "X"


@pytest.mark.asyncio
async def test_publish_failure_is_not_raised(mocker):
    broker = mocker.Mock()
    broker.start = mocker.AsyncMock()
    broker.publish = mocker.AsyncMock(side_effect=ConnectionError("redis down"))
    realtime = RealtimeChannel(broker)
    
    await realtime.publish(journey_event("X"))
    
    broker.publish.assert_awaited_once()
