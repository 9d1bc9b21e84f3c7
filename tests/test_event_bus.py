"""Tests for EventBus."""

import asyncio
import pytest

from services.event_bus import EventBus


async def next_event(gen):
    return await asyncio.wait_for(gen.__anext__(), 1)


class TestEventBus:
    """Tests for fan-out, overflow and shutdown."""

    @pytest.mark.asyncio
    async def test_publish_reaches_every_subscriber(self):
        bus = EventBus()
        first = bus.subscribe()
        second = bus.subscribe()
        pending = [asyncio.ensure_future(next_event(first)), asyncio.ensure_future(next_event(second))]
        while bus.subscriber_count < 2:
            await asyncio.sleep(0)

        delivered = await bus.publish({"event": "launched"})

        assert delivered == 2
        assert [e["event"] for e in await asyncio.gather(*pending)] == ["launched", "launched"]
        await bus.close()

    @pytest.mark.asyncio
    async def test_full_queue_drops_events(self):
        bus = EventBus(max_queue_size=1)
        gen = bus.subscribe()
        pending = asyncio.ensure_future(next_event(gen))
        while bus.subscriber_count < 1:
            await asyncio.sleep(0)

        assert await bus.publish({"event": "log", "n": 1}) == 1
        assert await bus.publish({"event": "log", "n": 2}) == 0
        assert (await pending)["n"] == 1
        await bus.close()

    @pytest.mark.asyncio
    async def test_close_ends_subscriptions(self):
        bus = EventBus()
        received = []

        async def consume():
            async for event in bus.subscribe():
                received.append(event)

        task = asyncio.ensure_future(consume())
        while bus.subscriber_count < 1:
            await asyncio.sleep(0)
        await bus.close()
        await asyncio.wait_for(task, 1)

        assert received == [None]
        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_publish_sync(self):
        bus = EventBus()
        gen = bus.subscribe()
        pending = asyncio.ensure_future(next_event(gen))
        while bus.subscriber_count < 1:
            await asyncio.sleep(0)

        bus.set_loop(asyncio.get_running_loop())
        bus.publish_sync({"event": "exit"})

        assert (await pending)["event"] == "exit"
        await bus.close()

    def test_publish_sync_without_loop_is_ignored(self):
        EventBus().publish_sync({"event": "exit"})
