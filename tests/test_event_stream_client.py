import asyncio
from contextlib import asynccontextmanager

import pytest

from clients.event_stream_client import ReconnectingEventStream, backoff_delay, parse_sse


class FakeServer:
    """Refuses the first `failures` connections, then serves `events` once, then parks."""

    def __init__(self, failures=0, events=()):
        self.failures = failures
        self.events = list(events)
        self.calls = 0
        self.open = 0
        self.max_open = 0
        self.parked = asyncio.Event()

    async def _serve(self):
        for event in self.events:
            yield event

    async def _park(self):
        self.parked.set()
        await asyncio.Event().wait()
        yield {}

    @asynccontextmanager
    async def opener(self, url, token):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("connection refused")
        self.open += 1
        self.max_open = max(self.max_open, self.open)
        try:
            if self.calls == self.failures + 1:
                yield self._serve()
            else:
                yield self._park()
        finally:
            self.open -= 1


async def no_sleep(delay):
    await asyncio.sleep(0)


class TestBackoff:

    def test_doubles_then_caps(self):
        delays = [backoff_delay(n, rand=lambda: 0) for n in range(1, 8)]
        assert delays == [2, 4, 8, 16, 30, 30, 30]

    def test_jitter_is_bounded(self):
        for n in range(1, 12):
            delay = backoff_delay(n, rand=lambda: 1)
            assert delay <= 30.5
            assert delay == min(30, 2 ** n) + 0.5


@pytest.mark.asyncio
async def test_reconnects_with_backoff_and_resets_after_success():
    server = FakeServer(failures=3, events=[{"type": "invoice.created"}, {"type": "invoice.sent"}])
    received = []
    stream = ReconnectingEventStream("http://test/notifications/stream", "tok", received.append,
                                     opener=server.opener, sleep=no_sleep, rand=lambda: 0)
    stream.start()
    await asyncio.wait_for(server.parked.wait(), timeout=2)

    assert received == [{"type": "invoice.created"}, {"type": "invoice.sent"}]
    # three refusals, then a clean end of stream counts as a fresh first drop
    assert stream.delays == [2, 4, 8, 2]
    assert stream.connected is True
    assert stream.failures == 0
    assert server.max_open == 1

    await stream.close()
    assert not stream.running
    assert server.open == 0


@pytest.mark.asyncio
async def test_start_twice_keeps_one_connection():
    server = FakeServer()
    stream = ReconnectingEventStream("http://test", "tok", lambda e: None,
                                     opener=server.opener, sleep=no_sleep, rand=lambda: 0)
    first = stream.start()
    assert stream.start() is first
    await asyncio.wait_for(server.parked.wait(), timeout=2)
    assert server.max_open == 1
    await stream.close()


@pytest.mark.asyncio
async def test_close_cancels_pending_reconnect():
    server = FakeServer(failures=100)
    stream = ReconnectingEventStream("http://test", "tok", lambda e: None,
                                     opener=server.opener, base=100, cap=100, rand=lambda: 0)
    stream.start()
    while not stream.delays:
        await asyncio.sleep(0)

    await asyncio.wait_for(stream.close(), timeout=1)
    assert not stream.running
    assert server.calls == 1
    with pytest.raises(RuntimeError):
        stream.start()


@pytest.mark.asyncio
async def test_async_handler_is_awaited():
    server = FakeServer(events=[{"type": "client.updated"}])
    seen = []

    async def handler(event):
        await asyncio.sleep(0)
        seen.append(event["type"])

    stream = ReconnectingEventStream("http://test", "tok", handler,
                                     opener=server.opener, sleep=no_sleep, rand=lambda: 0)
    stream.start()
    await asyncio.wait_for(server.parked.wait(), timeout=2)
    assert seen == ["client.updated"]
    await stream.close()


@pytest.mark.asyncio
async def test_parse_sse_skips_comments():
    async def lines():
        for line in [": connected", "", "event: invoice.sent", 'data: {"type": "invoice.sent"}', "",
                     ": keep-alive", ""]:
            yield line

    parsed = [event async for event in parse_sse(lines())]
    assert parsed == [{"type": "invoice.sent"}]
