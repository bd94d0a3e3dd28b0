"""Tests for the event bus and timer groups."""

import asyncio

import pytest

from app.core.events import EventBus, EventDispatchError
from app.core.timers import TimerGroup


class Ping:
    def __init__(self, n):
        self.n = n


class Pong:
    pass


@pytest.mark.asyncio
async def test_handlers_run_in_subscription_order():
    bus = EventBus()
    seen = []

    async def first(event):
        seen.append(("first", event.n))

    async def second(event):
        seen.append(("second", event.n))

    bus.subscribe(Ping, first)
    bus.subscribe(Ping, second)
    await bus.publish(Ping(1))
    await bus.publish(Pong())

    assert seen == [("first", 1), ("second", 1)]


@pytest.mark.asyncio
async def test_failing_handler_does_not_starve_the_others():
    bus = EventBus()
    seen = []

    async def broken(event):
        raise ValueError("nope")

    async def healthy(event):
        seen.append(event.n)

    bus.subscribe(Ping, broken)
    bus.subscribe(Ping, healthy)

    with pytest.raises(EventDispatchError) as exc_info:
        await bus.publish(Ping(2))

    assert seen == [2]
    assert isinstance(exc_info.value.errors[0], ValueError)


@pytest.mark.asyncio
async def test_cancelled_subscription_stops_delivery():
    bus = EventBus()
    seen = []

    async def handler(event):
        seen.append(event.n)

    subscription = bus.subscribe(Ping, handler)
    await bus.publish(Ping(1))
    subscription.cancel()
    subscription.cancel()
    await bus.publish(Ping(2))

    assert seen == [1]
    assert bus.subscriber_count(Ping) == 0


@pytest.mark.asyncio
async def test_stream_yields_published_events():
    bus = EventBus()
    received = []

    async def consume():
        async for event in bus.stream(Ping, Pong):
            received.append(event)
            if len(received) == 2:
                break

    task = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await bus.publish(Ping(1))
    await bus.publish(Pong())
    await asyncio.wait_for(task, timeout=1)

    assert isinstance(received[0], Ping)
    assert isinstance(received[1], Pong)


@pytest.mark.asyncio
async def test_timer_fires_once():
    timers = TimerGroup("test")
    fired = []

    async def callback():
        fired.append(True)

    timers.schedule("t", 0.01, callback)
    assert timers.is_pending("t")
    await asyncio.sleep(0.05)

    assert fired == [True]
    assert not timers.is_pending("t")


@pytest.mark.asyncio
async def test_rescheduling_replaces_the_pending_timer():
    timers = TimerGroup("test")
    fired = []

    async def first():
        fired.append("first")

    async def second():
        fired.append("second")

    timers.schedule("t", 0.01, first)
    timers.schedule("t", 0.01, second)
    await asyncio.sleep(0.05)

    assert fired == ["second"]


@pytest.mark.asyncio
async def test_cancel_all():
    timers = TimerGroup("test")
    fired = []

    async def callback():
        fired.append(True)

    timers.schedule("a", 0.01, callback)
    timers.schedule("b", 0.01, callback)

    assert timers.cancel_all() == 2
    await asyncio.sleep(0.05)
    assert fired == []
    assert timers.pending_names == []


@pytest.mark.asyncio
async def test_cancel_all_stops_a_callback_already_running():
    timers = TimerGroup("test")
    release = asyncio.Event()
    finished = []

    async def slow():
        await release.wait()
        finished.append(True)

    timers.schedule("slow", 0, slow)
    await asyncio.sleep(0.01)
    assert timers.running_count == 1

    assert timers.cancel_all() == 1
    release.set()
    await asyncio.sleep(0.01)

    assert finished == []
    assert timers.running_count == 0


@pytest.mark.asyncio
async def test_callback_may_cancel_all_without_cancelling_itself():
    timers = TimerGroup("test")
    finished = []

    async def teardown():
        timers.cancel_all()
        await asyncio.sleep(0)
        finished.append(True)

    timers.schedule("teardown", 0, teardown)
    await asyncio.sleep(0.02)

    assert finished == [True]
