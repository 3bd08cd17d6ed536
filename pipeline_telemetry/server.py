#!/usr/bin/env python3
"""
Pipeline Telemetry WebSocket Server

Simulates a fleet of IoT devices walking through the security pipeline and
pushes every stage transition to connected clients in real time.
Also simulates devices joining and leaving and tracks device liveness.
"""

import asyncio
import json
import logging
import random
import time

import websockets
from websockets.exceptions import ConnectionClosed
from aiohttp import web

from .api import create_app
from .config import ConfigError, Settings, SimulationPolicy, configure_logging
from .engine import TransactionEngine
from .envelopes import METRIC_KEYS, ReportError, parse_report
from .hub import BroadcastHub
from .population import DevicePopulationManager, LivenessMonitor
from .registry import OFFLINE, ONLINE, DeviceRegistry, core_devices

logger = logging.getLogger(__name__)

DEFAULT_METRICS = {"throughput": 850, "latency": 1.2, "securityScore": 95}
MAX_MESSAGE_SIZE = 1024 * 1024


class TelemetryServer:
    """Owns the simulated fleet and everything that mutates it.

    All mutation happens synchronously inside the tick methods and ``ingest``;
    they run on one event loop and never interleave.
    """

    def __init__(self, settings=None, policy=None, rng=None):
        self.settings = settings or Settings()
        self.policy = policy or SimulationPolicy()
        self.rng = rng or random.Random()

        self.registry = DeviceRegistry(core_devices())
        self.engine = TransactionEngine(
            self.registry,
            rng=self.rng,
            target_active_fraction=self.policy.target_active_fraction,
            start_probability=self.policy.start_probability,
        )
        self.population = DevicePopulationManager(
            self.registry,
            self.engine,
            rng=self.rng,
            max_population=self.policy.max_population,
            churn_probability=self.policy.churn_probability,
        )
        self.liveness = LivenessMonitor(self.registry, timeout=self.policy.offline_timeout)
        self.hub = BroadcastHub()
        self.latest_metrics = dict(DEFAULT_METRICS)

    def run_tick(self, now=None):
        """Advance every transaction and broadcast the resulting events."""
        events = self.engine.tick(now)
        for event in events:
            self.latest_metrics.update(event.metrics)
            self.hub.broadcast(event.to_message())
        if events:
            logger.debug("Tick emitted %d events, %d active", len(events), self.engine.active_count)
        return events

    def run_churn(self, now=None):
        messages = self.population.tick(now)
        for message in messages:
            self.hub.broadcast(message)
        return messages

    def run_liveness(self, now=None):
        return self.liveness.check(now)

    def ingest(self, payload, now=None) -> dict:
        """Merge a gateway telemetry report and re-broadcast it.

        Raises ReportError before touching any state if the report is invalid
        or names an unknown device.
        """
        report = parse_report(payload)
        device = self.registry.find_by_id(report.device_id)
        if device is None:
            raise ReportError("device not found", status=404)

        now = time.time() if now is None else now
        self.registry.touch(device.address, now)
        device.status = report.status if report.status in (ONLINE, OFFLINE) else ONLINE

        if report.metrics:
            self.latest_metrics.update({k: report.metrics[k] for k in METRIC_KEYS if k in report.metrics})

        message = dict(payload)
        message.update({"type": "telemetry", "ts": int(now * 1000), "source": device.address})
        self.hub.broadcast(message)
        return message

    def handle_frame(self, raw) -> None:
        """Handle a frame sent by a client over the socket."""
        try:
            payload = json.loads(raw)
        except ValueError as e:
            logger.warning("Malformed message: %s", e)
            self.hub.broadcast_error("Malformed message")
            return

        try:
            self.ingest(payload)
        except ReportError as e:
            self.hub.broadcast_error(e.message)

    async def handle_client(self, websocket):
        """Handle a WebSocket client connection."""
        self.hub.register(websocket)
        try:
            await self.hub.send_info(websocket, "connected")
            async for message in websocket:
                self.handle_frame(message)
        except ConnectionClosed:
            pass
        finally:
            self.hub.unregister(websocket)

    async def _every(self, interval, step, name):
        while True:
            await asyncio.sleep(interval)
            try:
                step()
            except Exception:
                logger.exception("Error in %s loop", name)

    async def simulate(self):
        """Run the engine, churn and liveness loops until cancelled."""
        await asyncio.gather(
            self._every(self.policy.tick_interval, self.run_tick, "engine"),
            self._every(self.policy.churn_interval, self.run_churn, "churn"),
            self._every(self.policy.liveness_interval, self.run_liveness, "liveness"),
        )

    async def serve(self):
        """Start the REST app and the WebSocket server, then simulate forever."""
        runner = web.AppRunner(create_app(self, self.settings.allowed_origins), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, port=self.settings.http_port)
        await site.start()
        logger.info("REST API running on http://localhost:%d", self.settings.http_port)

        try:
            logger.info("Starting WebSocket server on port %d...", self.settings.ws_port)
            async with websockets.serve(
                self.handle_client,
                self.settings.ws_host,
                self.settings.ws_port,
                compression="deflate",
                max_size=MAX_MESSAGE_SIZE,
            ):
                await self.simulate()
        finally:
            await runner.cleanup()


async def main(settings=None):
    """Main entry point."""
    server = TelemetryServer(settings)
    logger.info("Simulating %d devices", len(server.registry))
    await server.serve()


def run():
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        raise SystemExit(f"Invalid configuration: {e}")
    configure_logging(settings.log_level)
    try:
        asyncio.run(main(settings))
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    run()
