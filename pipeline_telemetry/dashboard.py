#!/usr/bin/env python3
"""
Pipeline Telemetry Dashboard

Terminal view of the live telemetry feed. Loads the device list over REST,
then follows the socket and redraws at most once per frame.
"""

import asyncio
import logging
import signal
import sys
from datetime import datetime

import aiohttp

from .activity import ActivityTracker, RenderCoalescer
from .client import ResilientClient
from .config import ConfigError, Settings, configure_logging
from .envelopes import EnvelopeError, parse_device_listing
from .stages import STAGES

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5.0
CLEAR_SCREEN = "\x1b[2J\x1b[H"
FLOW_ARROWS = {"forward": "->", "reverse": "<-", "internal": "<>"}


class ApiError(Exception):
    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


async def fetch_json(session, url, timeout=REQUEST_TIMEOUT):
    """GET a JSON document, turning every failure into an ApiError."""
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            if resp.status >= 400:
                raise ApiError(f"Request failed: {resp.status}", resp.status)
            return await resp.json()
    except asyncio.TimeoutError:
        raise ApiError("Request timed out") from None
    except aiohttp.ClientError as e:
        raise ApiError("Network error") from e
    except ValueError as e:
        raise ApiError("Response is not JSON") from e


async def fetch_devices(session, base_url, timeout=REQUEST_TIMEOUT):
    payload = await fetch_json(session, f"{base_url}/api/devices", timeout)
    try:
        return parse_device_listing(payload)
    except EnvelopeError as e:
        raise ApiError(f"Malformed device listing: {e}") from e


def format_time(ts):
    if ts is None:
        return "--:--:--"
    return datetime.fromtimestamp(ts).strftime('%H:%M:%S')


def render_frame(entities, state) -> str:
    """Status line followed by one row per entity."""
    lines = [
        f"[{state.phase.upper()}] reconnect attempts: {state.reconnect_attempts}"
        f"  last update: {format_time(state.last_update)}",
        "",
        f"{'DEVICE':<16} {'ADDRESS':<16} {'STAGE':<14} {'FLOW':<4} {'STATE':<7} "
        f"{'STATUS':<18} {'THROUGHPUT':>10}",
    ]
    if not entities:
        lines.append("No devices")
    for entity in entities:
        info = STAGES.get(entity.last_known_stage)
        stage = info.name if info else "-"
        flow = FLOW_ARROWS[info.direction] if info else ""
        activity = "ACTIVE" if entity.is_active else "idle"
        status = info.status_text if info and entity.is_active else ""
        lines.append(
            f"{entity.name:<16} {entity.id:<16} {stage:<14} {flow:<4} {activity:<7} "
            f"{status:<18} {entity.throughput:>10.0f}"
        )
    return "\n".join(lines) + "\n"


class Dashboard:
    def __init__(self, settings=None, out=None, scheduler=None, connect=None):
        self.settings = settings or Settings()
        self.out = out or sys.stdout
        self.coalescer = RenderCoalescer(self.render, scheduler=scheduler)
        self.tracker = ActivityTracker(self.coalescer, scheduler=scheduler)
        self.client = ResilientClient(
            self.settings.telemetry_ws_url,
            on_telemetry=self.tracker.apply_telemetry,
            on_device_event=self.tracker.apply_device_event,
            on_state_change=lambda state: self.coalescer.request_render(),
            connect=connect,
            scheduler=scheduler,
        )

    async def load_devices(self, session) -> int:
        try:
            devices = await fetch_devices(session, self.settings.api_base_url)
        except ApiError as e:
            logger.warning("Could not load devices from %s: %s", self.settings.api_base_url, e)
            return 0
        return self.tracker.load_devices(devices)

    async def start(self, session=None) -> None:
        if session is None:
            async with aiohttp.ClientSession() as own_session:
                count = await self.load_devices(own_session)
        else:
            count = await self.load_devices(session)
        logger.info("Loaded %d devices", count)
        self.client.start()

    def stop(self) -> None:
        self.client.stop()
        self.tracker.close()
        self.coalescer.close()

    def set_visible(self, visible: bool) -> None:
        self.client.set_visible(visible)

    def render(self) -> None:
        frame = render_frame(list(self.tracker.entities.values()), self.client.state)
        if self.out.isatty():
            frame = CLEAR_SCREEN + frame
        self.out.write(frame)
        self.out.flush()


async def main(settings):
    dashboard = Dashboard(settings)
    stopped = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopped.set)
    # SIGUSR1 hides the surface, SIGUSR2 shows it again
    loop.add_signal_handler(signal.SIGUSR1, dashboard.set_visible, False)
    loop.add_signal_handler(signal.SIGUSR2, dashboard.set_visible, True)

    await dashboard.start()
    try:
        await stopped.wait()
    finally:
        dashboard.stop()
        await dashboard.client.wait_closed()


def run():
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        raise SystemExit(f"Invalid configuration: {e}")
    configure_logging(settings.log_level)
    asyncio.run(main(settings))


if __name__ == "__main__":
    run()
