"""Shared fixtures for the telemetry tests.

Timers are driven by FakeScheduler so decay, backoff and frame timing can be
checked without sleeping. Transports are in-memory stand-ins for a socket.
"""

import asyncio
import random

import pytest

from pipeline_telemetry.activity import ActivityTracker, RenderCoalescer
from pipeline_telemetry.engine import TransactionEngine
from pipeline_telemetry.envelopes import parse_device_listing
from pipeline_telemetry.registry import DeviceRegistry, core_devices


class FakeHandle:
    def __init__(self, when, delay, callback, args):
        self.when = when
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Manual clock implementing the ``call_later`` part of an event loop."""

    def __init__(self):
        self.now = 0.0
        self.handles = []

    def call_later(self, delay, callback, *args):
        handle = FakeHandle(self.now + delay, delay, callback, args)
        self.handles.append(handle)
        return handle

    def pending(self):
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [h for h in self.pending() if h.when <= target + 1e-9]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.now = max(self.now, handle.when)
            handle.fired = True
            handle.callback(*handle.args)
        self.now = target


_CLOSE = object()


class FakeTransport:
    """Async-iterable socket stand-in fed by the test."""

    def __init__(self, frames=()):
        self.queue = asyncio.Queue()
        self.closed = False
        self.sent = []
        for frame in frames:
            self.queue.put_nowait(frame)

    def feed(self, frame):
        self.queue.put_nowait(frame)

    def drop(self):
        """Simulate the server closing the connection."""
        self.queue.put_nowait(_CLOSE)

    def fail(self, exc):
        self.queue.put_nowait(exc)

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True
        self.queue.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnector:
    """Plays back a script of transports and connection errors."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def __call__(self, url):
        self.calls.append(url)
        result = self.results.pop(0) if self.results else ConnectionRefusedError("connection refused")
        if isinstance(result, BaseException):
            raise result
        return result


async def settle(rounds=10):
    """Let pending tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def registry():
    return DeviceRegistry(core_devices(now=0.0))


@pytest.fixture
def engine(registry, rng):
    return TransactionEngine(registry, rng=rng)


@pytest.fixture
def renders():
    return []


@pytest.fixture
def coalescer(scheduler, renders):
    return RenderCoalescer(lambda: renders.append(scheduler.now), scheduler=scheduler)


@pytest.fixture
def tracker(coalescer, scheduler):
    tracker = ActivityTracker(coalescer, scheduler=scheduler)
    tracker.load_devices(parse_device_listing([
        {"id": "dev-a", "name": "IoT Node A", "ip": "192.168.1.100"},
        {"id": "dev-b", "name": "IoT Node B", "ip": "192.168.1.101"},
        {"id": "dev-c", "name": "IoT Node C", "ip": "192.168.1.102"},
    ]))
    return tracker
