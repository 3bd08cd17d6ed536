"""Tests for the device registry, population churn and liveness detection."""

import random

from pipeline_telemetry.engine import TransactionEngine
from pipeline_telemetry.population import DevicePopulationManager, LivenessMonitor
from pipeline_telemetry.registry import OFFLINE, ONLINE, Device, DeviceRegistry, core_devices


class TestDeviceRegistry:
    def test_core_devices_are_reserved_and_numbered(self):
        devices = core_devices(now=0.0)
        assert len(devices) == 20
        assert devices[0].id == "dev-a"
        assert devices[0].name == "IoT Node A"
        assert devices[0].address == "192.168.1.100"
        assert devices[-1].address == "192.168.1.119"
        assert all(d.reserved for d in devices)

    def test_duplicate_address_is_rejected(self, registry):
        size = len(registry)
        assert registry.add(Device("dev-z", "Other", "192.168.1.101")) is False
        assert len(registry) == size
        assert registry.get("192.168.1.101").id == "dev-b"

    def test_snapshot_uses_wire_names(self, registry):
        entry = registry.snapshot()[1]
        assert entry == {
            "id": "dev-b",
            "name": "IoT Node B",
            "ip": "192.168.1.101",
            "status": ONLINE,
            "lastSeen": 0,
        }

    def test_find_by_id(self, registry):
        assert registry.find_by_id("dev-c").address == "192.168.1.102"
        assert registry.find_by_id("nope") is None

    def test_touch_unknown_address(self, registry):
        assert registry.touch("10.9.9.9", now=5.0) is False


class TestDevicePopulationManager:
    def make_manager(self, registry, engine, **kwargs):
        return DevicePopulationManager(registry, engine, rng=random.Random(11), **kwargs)

    def test_join_adds_guest_with_unique_address(self, registry, engine):
        manager = self.make_manager(registry, engine)
        first = manager.join(now=1.0)
        second = manager.join(now=2.0)

        assert first["type"] == "device_join"
        assert first["device"] == {"id": "dev-g1", "name": "IoT Guest 1", "ip": "192.168.1.150"}
        assert second["device"]["ip"] == "192.168.1.151"
        assert len(registry) == 22
        assert not registry.get("192.168.1.150").reserved

    def test_join_respects_max_population(self, registry, engine):
        manager = self.make_manager(registry, engine, max_population=20)
        assert manager.join() is None
        assert len(registry) == 20

    def test_exit_never_touches_core_devices(self, registry, engine):
        manager = self.make_manager(registry, engine)
        assert manager.exit() is None
        assert len(registry) == 20

    def test_exit_removes_guest_and_announces_it(self, registry, engine):
        manager = self.make_manager(registry, engine)
        manager.join(now=0.0)
        message = manager.exit()
        assert message == {"type": "device_exit", "ip": "192.168.1.150", "name": "IoT Guest 1"}
        assert "192.168.1.150" not in registry

    def test_exit_discards_in_flight_transaction(self):
        registry = DeviceRegistry()
        engine = TransactionEngine(registry, rng=random.Random(5), start_probability=1.0,
                                   target_active_fraction=1.0)
        manager = DevicePopulationManager(registry, engine, rng=random.Random(5))
        manager.join(now=0.0)
        engine.tick(now=0.0)
        assert "192.168.1.150" in engine

        manager.exit()

        assert engine.get("192.168.1.150") is None
        assert engine.active_count == 0
        for i in range(10):
            assert engine.tick(now=i) == []

    def test_tick_without_churn_does_nothing(self, registry, engine):
        manager = self.make_manager(registry, engine, churn_probability=0.0)
        assert all(manager.tick() == [] for _ in range(50))
        assert len(registry) == 20

    def test_tick_falls_back_to_join_when_nothing_is_removable(self, registry, engine):
        manager = self.make_manager(registry, engine, churn_probability=1.0)
        messages = manager.tick(now=0.0)
        assert [m["type"] for m in messages] == ["device_join"]

    def test_population_stays_within_bounds(self, registry, engine):
        manager = self.make_manager(registry, engine, churn_probability=1.0, max_population=24)
        for i in range(300):
            manager.tick(now=float(i))
            assert 20 <= len(registry) <= 24
        assert all(d.address in registry for d in core_devices())


class TestLivenessMonitor:
    def test_marks_silent_device_offline(self, registry):
        monitor = LivenessMonitor(registry, timeout=10.0)
        assert monitor.check(now=10.0) == []
        flipped = monitor.check(now=10.5)
        assert len(flipped) == 20
        assert all(d.status == OFFLINE for d in registry)

    def test_brings_device_back_online_after_activity(self, registry):
        monitor = LivenessMonitor(registry, timeout=10.0)
        monitor.check(now=11.0)
        registry.touch("192.168.1.101", now=12.0)

        flipped = monitor.check(now=13.0)

        assert [d.address for d in flipped] == ["192.168.1.101"]
        assert registry.get("192.168.1.101").status == ONLINE
        assert registry.get("192.168.1.100").status == OFFLINE

    def test_check_is_idempotent(self, registry):
        monitor = LivenessMonitor(registry, timeout=10.0)
        monitor.check(now=30.0)
        assert monitor.check(now=30.0) == []
        assert monitor.check(now=31.0) == []
