import asyncio
import json

import pytest

from routes.event_routes import format_sse, sse_events
from services.event_bus import EventBus


@pytest.mark.asyncio
async def test_events_reach_only_the_owning_user():
    bus = EventBus()
    alice = bus.subscribe("alice")
    alice_tab = bus.subscribe("alice")
    bob = bus.subscribe("bob")

    assert bus.publish("invoice.created", "alice", {"id": "inv_1"}) == 2

    for sub in (alice, alice_tab):
        event = await asyncio.wait_for(sub.get(), timeout=1)
        assert event.type == "invoice.created"
        assert event.payload == {"id": "inv_1"}
    assert bob.queue.empty()


@pytest.mark.asyncio
async def test_full_queue_drops_oldest():
    bus = EventBus()
    sub = bus.subscribe("alice", maxsize=2)
    for n in range(3):
        bus.publish("invoice.updated", "alice", {"id": f"inv_{n}"})

    assert sub.dropped == 1
    received = [(await sub.get()).payload["id"], (await sub.get()).payload["id"]]
    assert received == ["inv_1", "inv_2"]


@pytest.mark.asyncio
async def test_publish_from_worker_thread():
    bus = EventBus()
    sub = bus.subscribe("alice")
    delivered = await asyncio.to_thread(bus.publish, "recurring.generated", "alice", {"id": "rec_1"})
    assert delivered == 1
    event = await asyncio.wait_for(sub.get(), timeout=1)
    assert event.type == "recurring.generated"


def test_closed_loop_subscription_is_removed():
    bus = EventBus()
    loop = asyncio.new_event_loop()
    loop.close()
    bus.subscribe("alice", loop=loop)

    assert bus.publish("invoice.sent", "alice", {"id": "inv_1"}) == 0
    assert bus.subscriber_count() == 0


def test_publish_without_subscribers():
    assert EventBus().publish("client.updated", "nobody", {"id": "c1"}) == 0


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    sub = bus.subscribe("alice")
    bus.unsubscribe(sub)
    bus.unsubscribe(sub)
    assert bus.subscriber_count("alice") == 0


class TestSSEStream:

    @pytest.mark.asyncio
    async def test_frames_heartbeat_and_cleanup(self):
        bus = EventBus()
        sub = bus.subscribe("alice")
        bus.publish("payment.recorded", "alice", {"invoiceId": "inv_1", "paymentId": "pay_1"})

        checks = []

        async def is_disconnected():
            checks.append(1)
            return len(checks) > 2

        frames = [frame async for frame in sse_events(bus, sub, is_disconnected, heartbeat_seconds=0.01)]

        assert frames[0] == ": connected\n\n"
        assert frames[1].startswith("event: payment.recorded\ndata: ")
        data = json.loads(frames[1].split("data: ", 1)[1])
        assert data["type"] == "payment.recorded"
        assert data["payload"] == {"invoiceId": "inv_1", "paymentId": "pay_1"}
        assert "ts" in data
        assert frames[2] == ": keep-alive\n\n"
        assert bus.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_format_sse_ends_with_blank_line(self):
        bus = EventBus()
        sub = bus.subscribe("alice")
        bus.publish("client.deleted", "alice", {"id": "c1"})
        frame = format_sse(await sub.get())
        assert frame.endswith("\n\n")
        assert frame.count("\n\n") == 1
