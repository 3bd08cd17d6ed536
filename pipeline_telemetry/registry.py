"""
Device population held by the simulation.

Devices are keyed by network address; the address is unique at any instant.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

ONLINE = "online"
OFFLINE = "offline"

CORE_DEVICE_COUNT = 20
CORE_SUBNET = "192.168.1."
CORE_FIRST_HOST = 100


@dataclass
class Device:
    id: str
    name: str
    address: str
    status: str = ONLINE
    last_seen: float = field(default_factory=time.time)
    reserved: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "ip": self.address,
            "status": self.status,
            "lastSeen": int(self.last_seen * 1000),
        }


def core_devices(now: Optional[float] = None) -> List[Device]:
    """The protected initial population: dev-a..dev-t on 192.168.1.100-119."""
    now = time.time() if now is None else now
    devices = []
    for i in range(CORE_DEVICE_COUNT):
        suffix = str(i) if i > 25 else ""
        devices.append(Device(
            id=f"dev-{chr(97 + i % 26)}{suffix}",
            name=f"IoT Node {chr(65 + i % 26)}{suffix}",
            address=f"{CORE_SUBNET}{CORE_FIRST_HOST + i}",
            last_seen=now,
            reserved=True,
        ))
    return devices


class DeviceRegistry:
    def __init__(self, devices=()):
        self._devices: Dict[str, Device] = {}
        for device in devices:
            self.add(device)

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[Device]:
        return iter(list(self._devices.values()))

    def __contains__(self, address) -> bool:
        return address in self._devices

    def get(self, address: str) -> Optional[Device]:
        return self._devices.get(address)

    def find_by_id(self, device_id: str) -> Optional[Device]:
        for device in self._devices.values():
            if device.id == device_id:
                return device
        return None

    def add(self, device: Device) -> bool:
        """Add a device. Returns False if its address is already registered."""
        if device.address in self._devices:
            logger.debug("Ignoring duplicate device %s (%s)", device.name, device.address)
            return False
        self._devices[device.address] = device
        return True

    def remove(self, address: str) -> Optional[Device]:
        return self._devices.pop(address, None)

    def touch(self, address: str, now: Optional[float] = None) -> bool:
        """Record activity for a device. Liveness is re-evaluated by the monitor."""
        device = self._devices.get(address)
        if device is None:
            return False
        device.last_seen = time.time() if now is None else now
        return True

    def addresses(self) -> List[str]:
        return list(self._devices)

    def removable(self) -> List[Device]:
        return [d for d in self._devices.values() if not d.reserved]

    def snapshot(self) -> List[dict]:
        return [d.to_dict() for d in self._devices.values()]
