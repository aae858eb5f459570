"""
Reconnecting consumer for the /notifications/stream endpoint.

At most one connection is pending or open at any time. After a failure the
next attempt waits min(cap, base * 2**failures) plus up to jitter_max of
random jitter; a successful open resets the failure count. close() cancels
the connection and any pending reconnect sleep.
"""

import asyncio
import json
import logging
import random
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

import httpx

logger = logging.getLogger(__name__)

BASE_DELAY = 1.0
MAX_DELAY = 30.0
JITTER_MAX = 0.5


def backoff_delay(attempt: int, base: float = BASE_DELAY, cap: float = MAX_DELAY,
                  jitter_max: float = JITTER_MAX, rand: Callable[[], float] = random.random) -> float:
    """Delay before the next attempt after `attempt` consecutive failures (attempt >= 1)."""
    return min(cap, base * (2 ** attempt)) + rand() * jitter_max


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[dict]:
    """Turn SSE lines into decoded `data:` payloads. Comments are skipped."""
    data = []
    async for line in lines:
        if line == "":
            if data:
                yield json.loads("\n".join(data))
                data = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            data.append(line[5:].lstrip())


@asynccontextmanager
async def httpx_opener(url: str, token: str, timeout: Optional[float] = None):
    """Open the stream; yields an async iterator of decoded events once connected."""
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0)) as client:
        async with client.stream("GET", url, params={"token": token},
                                 headers={"Accept": "text/event-stream"}) as response:
            response.raise_for_status()
            yield parse_sse(response.aiter_lines())


EventHandler = Callable[[dict], Union[None, Awaitable[None]]]


class ReconnectingEventStream:

    def __init__(self, url: str, token: str, on_event: EventHandler, opener=None,
                 sleep=asyncio.sleep, rand: Callable[[], float] = random.random,
                 base: float = BASE_DELAY, cap: float = MAX_DELAY, jitter_max: float = JITTER_MAX):
        self.url = url
        self.token = token
        self.on_event = on_event
        self.opener = opener or httpx_opener
        self.sleep = sleep
        self.rand = rand
        self.base = base
        self.cap = cap
        self.jitter_max = jitter_max

        self.failures = 0
        self.connected = False
        self.delays = []
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the connection loop. Calling it again while running is a no-op."""
        if self._closed:
            raise RuntimeError("Stream already closed")
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def _dispatch(self, event: dict) -> None:
        result = self.on_event(event)
        if asyncio.iscoroutine(result):
            await result

    async def _run(self) -> None:
        while not self._closed:
            try:
                async with self.opener(self.url, self.token) as events:
                    self.connected = True
                    self.failures = 0
                    logger.info("🔌 Event stream connected")
                    async for event in events:
                        await self._dispatch(event)
                # Server ended the stream cleanly; reconnect like any other drop
                raise ConnectionError("stream ended")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.connected = False
                self.failures += 1
                delay = backoff_delay(self.failures, self.base, self.cap, self.jitter_max, self.rand)
                self.delays.append(delay)
                logger.warning("⚠️ Event stream dropped (%s); reconnecting in %.2fs", e, delay)
                await self.sleep(delay)
            finally:
                self.connected = False

    async def close(self) -> None:
        """Close the connection and cancel any pending reconnect timer."""
        self._closed = True
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("🔌 Event stream closed")
