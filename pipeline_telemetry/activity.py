"""
Client-side entity state driven by the telemetry feed.

ActivityTracker highlights an entity while telemetry flows for it and lets the
highlight decay on a timer. RenderCoalescer turns bursts of mutations into a
single redraw per frame.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .stages import Stage

logger = logging.getLogger(__name__)

DECAY_DELAY = 1.1
TERMINAL_DECAY_DELAY = 3.0
FRAME_INTERVAL = 1 / 60

RING_CENTER = 200
RING_RADIUS = 160


@dataclass
class ClientEntityState:
    id: str
    name: str
    position: Tuple[float, float] = (0.0, 0.0)
    last_known_stage: Optional[Stage] = None
    is_active: bool = False
    throughput: float = 0
    decay_handle: Optional[Any] = field(default=None, repr=False)


def ring_position(index: int, count: int) -> Tuple[float, float]:
    """Slot ``index`` of ``count`` evenly spaced on the ring, starting from the top."""
    angle = (index / max(count, 1)) * 2 * math.pi - math.pi / 2
    return (
        round(RING_CENTER + RING_RADIUS * math.cos(angle), 1),
        round(RING_CENTER + RING_RADIUS * math.sin(angle), 1),
    )


class RenderCoalescer:
    """Collapses any number of render requests within a frame into one call."""

    def __init__(self, render, scheduler=None, frame_interval=FRAME_INTERVAL):
        self._render = render
        self._scheduler = scheduler
        self.frame_interval = frame_interval
        self._handle = None
        self._pending = False
        self._closed = False

    @property
    def pending(self) -> bool:
        return self._pending

    def request_render(self) -> None:
        if self._closed or self._pending:
            return
        self._pending = True
        scheduler = self._scheduler or asyncio.get_running_loop()
        self._handle = scheduler.call_later(self.frame_interval, self._on_frame)

    def _on_frame(self) -> None:
        self._handle = None
        if self._closed:
            return
        # requests made while rendering are dropped: the frame being drawn covers them
        try:
            self._render()
        finally:
            self._pending = False

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = False

    def close(self) -> None:
        self._closed = True
        self.cancel()


class ActivityTracker:
    def __init__(self, coalescer: RenderCoalescer, scheduler=None,
                 decay_delay=DECAY_DELAY, terminal_decay_delay=TERMINAL_DECAY_DELAY):
        self.coalescer = coalescer
        self.decay_delay = decay_delay
        self.terminal_decay_delay = terminal_decay_delay
        self.entities: Dict[str, ClientEntityState] = {}
        self._scheduler = scheduler
        self._closed = False

    def __len__(self) -> int:
        return len(self.entities)

    def load_devices(self, devices) -> int:
        """Seed entities from a listing parsed by parse_device_listing."""
        added = 0
        for device in devices:
            if self._add(device.ip, device.name):
                added += 1
        if added:
            self._relayout()
            self.coalescer.request_render()
        return added

    def apply_telemetry(self, envelope) -> bool:
        if self._closed:
            return False
        entity = self.entities.get(envelope.source)
        if entity is None:
            logger.debug("Telemetry for unknown entity %s ignored", envelope.source)
            return False

        entity.is_active = True
        if envelope.stage is not None:
            entity.last_known_stage = envelope.stage
        entity.throughput = envelope.metrics.throughput
        delay = self.terminal_decay_delay if envelope.is_last_stage else self.decay_delay
        self._arm_decay(entity, delay)
        self.coalescer.request_render()
        return True

    def apply_device_event(self, envelope) -> bool:
        if self._closed:
            return False
        if envelope.type == "device_join":
            return self.apply_device_join(envelope)
        if envelope.type == "device_exit":
            return self.apply_device_exit(envelope)
        return False

    def apply_device_join(self, envelope) -> bool:
        device = envelope.device
        if not self._add(device.ip, device.name):
            logger.debug("Device %s (%s) already known", device.name, device.ip)
            return False
        logger.info("Device joined: %s (%s)", device.name, device.ip)
        self._relayout()
        self.coalescer.request_render()
        return True

    def apply_device_exit(self, envelope) -> bool:
        entity = self.entities.pop(envelope.ip, None)
        if entity is None:
            return False
        self._cancel_decay(entity)
        logger.info("Device exited: %s (%s)", entity.name, entity.id)
        self._relayout()
        self.coalescer.request_render()
        return True

    def close(self) -> None:
        self._closed = True
        for entity in self.entities.values():
            self._cancel_decay(entity)

    def _add(self, entity_id, name) -> bool:
        if entity_id in self.entities:
            return False
        if any(e.name == name for e in self.entities.values()):
            return False
        self.entities[entity_id] = ClientEntityState(id=entity_id, name=name)
        return True

    def _relayout(self) -> None:
        count = len(self.entities)
        for i, entity in enumerate(self.entities.values()):
            entity.position = ring_position(i, count)

    def _arm_decay(self, entity, delay) -> None:
        self._cancel_decay(entity)
        scheduler = self._scheduler or asyncio.get_running_loop()
        entity.decay_handle = scheduler.call_later(delay, self._decay, entity.id)

    def _cancel_decay(self, entity) -> None:
        if entity.decay_handle is not None:
            entity.decay_handle.cancel()
            entity.decay_handle = None

    def _decay(self, entity_id) -> None:
        if self._closed:
            return
        entity = self.entities.get(entity_id)
        if entity is None:
            return
        entity.decay_handle = None
        entity.is_active = False
        entity.throughput = 0
        self.coalescer.request_render()
