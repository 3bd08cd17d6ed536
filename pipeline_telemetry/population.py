"""
Population churn and liveness detection for the simulated fleet.
"""

import logging
import random
import time
from typing import List, Optional

from .engine import TransactionEngine
from .registry import CORE_SUBNET, OFFLINE, ONLINE, Device, DeviceRegistry

logger = logging.getLogger(__name__)

MAX_POPULATION = 28
CHURN_PROBABILITY = 0.5
GUEST_FIRST_HOST = 150
OFFLINE_TIMEOUT = 10.0  # seconds without activity before a device is offline


class DevicePopulationManager:
    """Randomly adds guest devices to the registry and removes them again."""

    def __init__(self, registry: DeviceRegistry, engine: TransactionEngine, rng=None,
                 max_population=MAX_POPULATION, churn_probability=CHURN_PROBABILITY):
        self.registry = registry
        self.engine = engine
        self.rng = rng or random.Random()
        self.max_population = max_population
        self.churn_probability = churn_probability
        self._guest_seq = 0

    def tick(self, now: Optional[float] = None) -> List[dict]:
        """Maybe churn one device. Returns the envelopes to broadcast."""
        if self.rng.random() >= self.churn_probability:
            return []

        actions = [self.join, self.exit]
        if self.rng.random() < 0.5:
            actions.reverse()
        for action in actions:
            message = action(now)
            if message is not None:
                return [message]
        return []

    def join(self, now: Optional[float] = None) -> Optional[dict]:
        if len(self.registry) >= self.max_population:
            return None
        address = self._free_address()
        if address is None:
            return None

        self._guest_seq += 1
        device = Device(
            id=f"dev-g{self._guest_seq}",
            name=f"IoT Guest {self._guest_seq}",
            address=address,
            last_seen=time.time() if now is None else now,
        )
        self.registry.add(device)
        logger.info("Device joined: %s (%s)", device.name, device.address)
        return {
            "type": "device_join",
            "device": {"id": device.id, "name": device.name, "ip": device.address},
        }

    def exit(self, now: Optional[float] = None) -> Optional[dict]:
        candidates = self.registry.removable()
        if not candidates:
            return None

        device = self.rng.choice(candidates)
        self.registry.remove(device.address)
        # the engine must not keep advancing a transaction for a device that is gone
        self.engine.discard(device.address)
        logger.info("Device exited: %s (%s)", device.name, device.address)
        return {"type": "device_exit", "ip": device.address, "name": device.name}

    def _free_address(self) -> Optional[str]:
        for host in range(GUEST_FIRST_HOST, 255):
            address = f"{CORE_SUBNET}{host}"
            if address not in self.registry:
                return address
        return None


class LivenessMonitor:
    """Flips devices between online and offline based on their last activity."""

    def __init__(self, registry: DeviceRegistry, timeout=OFFLINE_TIMEOUT):
        self.registry = registry
        self.timeout = timeout

    def check(self, now: Optional[float] = None) -> List[Device]:
        now = time.time() if now is None else now
        flipped = []
        for device in self.registry:
            idle = now - device.last_seen
            if device.status == ONLINE and idle > self.timeout:
                device.status = OFFLINE
                logger.info("Device %s (%s) marked offline", device.name, device.address)
                flipped.append(device)
            elif device.status == OFFLINE and idle <= self.timeout:
                device.status = ONLINE
                logger.info("Device %s (%s) back online", device.name, device.address)
                flipped.append(device)
        return flipped
