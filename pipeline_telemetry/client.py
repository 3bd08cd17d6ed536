"""
Resilient consumer of the telemetry socket.

The client keeps one transport open at a time, reconnects with exponential
backoff plus jitter after failures, pauses while its surface is hidden and
stops for good on teardown.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .envelopes import EnvelopeError, parse_envelope

logger = logging.getLogger(__name__)

CONNECTING = "connecting"
CONNECTED = "connected"
DISCONNECTED = "disconnected"

RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0
RECONNECT_JITTER = 0.25
# 2**5 already exceeds the cap; keeps the power from overflowing a float
MAX_BACKOFF_EXPONENT = 16


class ClientClosedError(RuntimeError):
    """Raised when starting a client that has already been torn down."""


def reconnect_delay(attempts: int, rng=random) -> float:
    """Seconds to wait before reconnect attempt number ``attempts`` (0-based)."""
    exponent = min(attempts, MAX_BACKOFF_EXPONENT)
    return min(RECONNECT_BASE_DELAY * 2 ** exponent, RECONNECT_MAX_DELAY) + rng.uniform(0, RECONNECT_JITTER)


@dataclass
class ConnectionState:
    phase: str = DISCONNECTED
    reconnect_attempts: int = 0
    last_update: Optional[float] = None


class ResilientClient:
    def __init__(self, url, on_telemetry=None, on_device_event=None, on_state_change=None,
                 connect=None, scheduler=None, rng=None, clock=time.time):
        self.url = url
        self.on_telemetry = on_telemetry
        self.on_device_event = on_device_event
        self.on_state_change = on_state_change
        self.state = ConnectionState()
        self.rng = rng or random.Random()

        self._connect = connect or websockets.connect
        self._scheduler = scheduler
        self._clock = clock
        self._loop = None
        self._transport = None
        self._task = None
        self._reconnect_handle = None
        self._closing = set()
        # bumped whenever a transport is abandoned; callbacks from older ones are ignored
        self._generation = 0
        self._started = False
        self._suspended = False
        self._torn_down = False

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    @property
    def suspended(self) -> bool:
        return self._suspended

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def start(self) -> None:
        if self._torn_down:
            raise ClientClosedError("client has been stopped")
        if self._started:
            return
        self._loop = asyncio.get_running_loop()
        if self._scheduler is None:
            self._scheduler = self._loop
        self._started = True
        self._open()

    def stop(self) -> None:
        """Tear the client down. No callback runs and no reconnect happens afterwards."""
        if self._torn_down:
            return
        self._torn_down = True
        self._cancel_reconnect()
        self._drop_transport()
        self.state.phase = DISCONNECTED
        logger.info("Client for %s stopped", self.url)

    async def wait_closed(self) -> None:
        """Wait until every transport dropped by stop() or suspension has closed."""
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    def set_visible(self, visible: bool) -> None:
        if self._torn_down or not self._started:
            return
        if not visible:
            if self._suspended:
                return
            self._suspended = True
            self._cancel_reconnect()
            self._drop_transport()
            self._set_phase(DISCONNECTED)
            logger.info("Surface hidden, connection suspended")
            return

        if not self._suspended:
            return
        self._suspended = False
        if self._transport is None and self.state.phase != CONNECTING:
            logger.info("Surface visible again, reconnecting now")
            self._open()

    def _open(self) -> None:
        self._cancel_reconnect()
        self._generation += 1
        self._set_phase(CONNECTING)
        self._task = self._loop.create_task(self._run(self._generation))

    def _is_current(self, generation) -> bool:
        return not self._torn_down and generation == self._generation

    async def _run(self, generation):
        try:
            transport = await self._connect(self.url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            if self._is_current(generation):
                logger.warning("Connection to %s failed: %s", self.url, e)
                self._on_closed(generation)
            return

        if not self._is_current(generation):
            await transport.close()
            return

        self._transport = transport
        self._on_open()
        try:
            async for frame in transport:
                if not self._is_current(generation):
                    break
                self._on_message(frame)
        except ConnectionClosed as e:
            logger.warning("Connection to %s lost: %s", self.url, e)
        finally:
            if self._transport is transport:
                self._transport = None
        self._on_closed(generation)

    def _on_open(self) -> None:
        self.state.reconnect_attempts = 0
        self._set_phase(CONNECTED)
        logger.info("Connected to %s", self.url)

    def _on_closed(self, generation) -> None:
        if not self._is_current(generation):
            return
        self._set_phase(DISCONNECTED)
        if not self._suspended:
            self._schedule_reconnect()

    def _on_message(self, frame) -> None:
        try:
            envelope = parse_envelope(frame)
        except EnvelopeError as e:
            logger.warning("Discarding malformed frame: %s", e)
            return

        self.state.last_update = self._clock()
        if envelope.type == "info":
            logger.info("Server: %s", envelope.message)
        elif envelope.type == "error":
            logger.warning("Server error: %s", envelope.message)
        elif envelope.type == "telemetry":
            self._deliver(self.on_telemetry, envelope)
        else:
            self._deliver(self.on_device_event, envelope)

    def _deliver(self, handler, envelope) -> None:
        if handler is None:
            return
        try:
            handler(envelope)
        except Exception:
            logger.exception("Handler failed for %s frame", envelope.type)

    def _schedule_reconnect(self) -> None:
        delay = reconnect_delay(self.state.reconnect_attempts, self.rng)
        logger.info("Reconnecting in %.2fs (attempt %d)", delay, self.state.reconnect_attempts + 1)
        self._reconnect_handle = self._scheduler.call_later(delay, self._on_reconnect_timer)
        self.state.reconnect_attempts += 1

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        if self._torn_down or self._suspended:
            return
        self._open()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _drop_transport(self) -> None:
        self._generation += 1
        transport, self._transport = self._transport, None
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        if transport is not None:
            closing = self._loop.create_task(transport.close())
            self._closing.add(closing)
            closing.add_done_callback(self._on_transport_closed)

    def _on_transport_closed(self, task) -> None:
        self._closing.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Closing connection to %s failed: %s", self.url, task.exception())

    def _set_phase(self, phase) -> None:
        if self.state.phase == phase:
            return
        self.state.phase = phase
        if self.on_state_change is not None and not self._torn_down:
            self.on_state_change(self.state)
