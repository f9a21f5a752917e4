"""Tests for the per-device polling scheduler."""

import asyncio
import tempfile
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from network_monitor._types import (
    Criticality,
    Device,
    DeviceStatus,
    DeviceType,
    EventType,
    InterfaceCounters,
    InterfaceSnapshot,
    MetricsSnapshot,
    ProbeResult,
    SystemInfo,
    placeholder_name,
)
from network_monitor.anomaly import AnomalyDetector
from network_monitor.config import MonitorConfig
from network_monitor.events import CollectingEventSink
from network_monitor.exceptions import ProtocolTimeout
from network_monitor.profiles import DeviceProfileManager
from network_monitor.scanner import DiscoveryScanner
from network_monitor.scheduler import PollingScheduler
from network_monitor.store import InMemoryDeviceStore, SqliteDeviceStore


@pytest.fixture
def temp_db():
    """Create a temporary database."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    store = SqliteDeviceStore(db_path)
    yield store

    db_path.unlink(missing_ok=True)
    Path(str(db_path) + "-wal").unlink(missing_ok=True)
    Path(str(db_path) + "-shm").unlink(missing_ok=True)


class FakeCollector:
    """Collector returning queued snapshots, or failing when told to."""

    def __init__(self, snapshots=None, error=None, gate=None, delay=0.0):
        self.snapshots = list(snapshots or [])
        self.error = error
        self.gate = gate
        self.delay = delay
        self.sessions = MagicMock()
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def collect(self, device, categories=()):
        self.calls.append((device.address, tuple(categories)))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        if self.error is not None:
            raise self.error
        if len(self.snapshots) > 1:
            return self.snapshots.pop(0)
        if self.snapshots:
            return self.snapshots[0]
        return _snapshot()


class CannedDiscovery:
    """Discovery answering with fixed results per address."""

    def __init__(self, results):
        self.results = results

    async def probe(self, address, methods=None):
        await asyncio.sleep(0)
        return self.results.get(address) or ProbeResult(address=address)


def _snapshot(response_time_ms=4.0, description="Linux host", interfaces=None):
    return MetricsSnapshot(
        system=SystemInfo(description=description, name="host"),
        interfaces=interfaces,
        response_time_ms=response_time_ms,
    )


def _interfaces(timestamp, in_octets, out_octets=500, speed=8000):
    return InterfaceSnapshot(timestamp=timestamp, interfaces=[
        InterfaceCounters(index=1, description="eth0", speed=speed, oper_status="up",
                          in_octets=in_octets, out_octets=out_octets),
    ])


async def _settle():
    for _ in range(3):
        await asyncio.sleep(0)


def _scheduler(collector, store=None, events=None, fast=False, detector=None):
    intervals = {"critical": 0.01, "important": 0.015, "standard": 0.02} if fast else None
    return PollingScheduler(
        collector=collector,
        profiles=DeviceProfileManager(intervals),
        store=store if store is not None else InMemoryDeviceStore(),
        events=events if events is not None else CollectingEventSink(),
        detector=detector,
    )


def _register(scheduler, device):
    """Store the device the way discovery does, then start polling it."""
    scheduler.store.upsert(device)
    return scheduler.register(device)


class TestRegistration:
    """Tests for registering and removing devices."""

    @pytest.mark.asyncio
    async def test_first_tick_runs_immediately(self):
        collector = FakeCollector()
        scheduler = _scheduler(collector)

        profile = _register(scheduler, Device(address="10.0.0.20", device_type="server"))
        await _settle()

        assert profile.criticality == Criticality.IMPORTANT
        assert len(collector.calls) == 1
        assert scheduler.monitored == ["10.0.0.20"]
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_categories_from_profile(self):
        collector = FakeCollector()
        scheduler = _scheduler(collector)

        profile = _register(scheduler, Device(address="10.0.0.20", device_type="server"))
        await _settle()

        assert collector.calls[0][1] == profile.metric_categories
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_reregister_replaces_task(self):
        scheduler = _scheduler(FakeCollector())
        device = Device(address="10.0.0.20")

        _register(scheduler, device)
        first_task = scheduler._tasks["10.0.0.20"]
        _register(scheduler, device)
        await _settle()

        assert scheduler.monitored == ["10.0.0.20"]
        assert first_task.cancelled()
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_remove_cancels_and_releases(self):
        collector = FakeCollector()
        scheduler = _scheduler(collector)
        _register(scheduler, Device(address="10.0.0.20"))
        await _settle()
        task = scheduler._tasks["10.0.0.20"]

        assert await scheduler.remove("10.0.0.20") is True

        assert task.cancelled()
        assert scheduler.monitored == []
        assert scheduler.profile_for("10.0.0.20") is None
        assert scheduler.history_for("10.0.0.20") == []
        collector.sessions.release.assert_called_once_with("10.0.0.20")

    @pytest.mark.asyncio
    async def test_remove_unknown(self):
        scheduler = _scheduler(FakeCollector())

        assert await scheduler.remove("10.9.9.9") is False

    @pytest.mark.asyncio
    async def test_start_registers_active_devices(self):
        store = InMemoryDeviceStore([
            Device(address="10.0.0.1"),
            Device(address="10.0.0.2"),
            Device(address="10.0.0.3", active=False),
        ])
        scheduler = _scheduler(FakeCollector(), store=store)

        count = await scheduler.start()

        assert count == 2
        assert sorted(scheduler.monitored) == ["10.0.0.1", "10.0.0.2"]
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_closes_sessions(self):
        collector = FakeCollector()
        scheduler = _scheduler(collector)
        _register(scheduler, Device(address="10.0.0.1"))
        _register(scheduler, Device(address="10.0.0.2"))
        tasks = list(scheduler._tasks.values())

        await scheduler.stop()

        assert all(t.done() for t in tasks)
        assert scheduler.monitored == []
        collector.sessions.close_all.assert_called_once()

    @pytest.mark.asyncio
    async def test_device_missing_from_store_is_dropped(self):
        collector = FakeCollector()
        scheduler = _scheduler(collector)

        scheduler.register(Device(address="10.0.0.20"))
        await _settle()

        assert collector.calls == []
        assert scheduler.monitored == []
        assert len(scheduler.store) == 0
        collector.sessions.release.assert_called_once_with("10.0.0.20")

    @pytest.mark.asyncio
    async def test_deactivated_device_stops_its_own_loop(self):
        store = InMemoryDeviceStore()
        collector = FakeCollector()
        scheduler = _scheduler(collector, store=store, fast=True)
        _register(scheduler, Device(address="10.0.0.20"))
        await _settle()
        task = scheduler._tasks["10.0.0.20"]

        stored = store.find_by_address("10.0.0.20")
        stored.active = False
        store.upsert(stored)
        await asyncio.sleep(0.06)

        assert task.done()
        assert scheduler.monitored == []
        assert len(collector.calls) == 1
        await scheduler.stop()


class TestPolling:
    """Tests for tick results."""

    @pytest.mark.asyncio
    async def test_successful_tick_updates_device(self):
        store = InMemoryDeviceStore()
        events = CollectingEventSink()
        scheduler = _scheduler(FakeCollector([_snapshot(4.0)]), store=store, events=events)

        _register(scheduler, Device(address="10.0.0.20", device_type="server"))
        await _settle()

        stored = store.find_by_address("10.0.0.20")
        assert stored.status == DeviceStatus.ONLINE
        assert stored.response_time_ms == 4.0
        assert stored.metrics["system"]["description"] == "Linux host"
        [payload] = events.of_type(EventType.DEVICE_METRICS)
        assert payload["criticality"] == "important"
        assert payload["device"]["address"] == "10.0.0.20"
        assert scheduler.successful_polls == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_failure_marks_offline_and_keeps_ticking(self):
        store = InMemoryDeviceStore()
        events = CollectingEventSink()
        collector = FakeCollector(error=ProtocolTimeout("10.0.0.20", "no response after 2 attempt(s)"))
        scheduler = _scheduler(collector, store=store, events=events, fast=True)

        _register(scheduler, Device(address="10.0.0.20", status=DeviceStatus.ONLINE))
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert len(collector.calls) >= 2
        assert scheduler.failed_polls == len(collector.calls)
        assert store.find_by_address("10.0.0.20").status == DeviceStatus.OFFLINE
        errors = events.of_type(EventType.DEVICE_ERROR)
        assert errors[0]["error_type"] == "ProtocolTimeout"
        assert errors[0]["address"] == "10.0.0.20"

    @pytest.mark.asyncio
    async def test_recovery_after_failure(self):
        store = InMemoryDeviceStore()
        collector = FakeCollector(error=ProtocolTimeout("10.0.0.20", "timeout"))
        scheduler = _scheduler(collector, store=store)
        _register(scheduler, Device(address="10.0.0.20"))
        await _settle()
        assert store.find_by_address("10.0.0.20").status == DeviceStatus.OFFLINE

        collector.error = None
        assert await scheduler.poll_once("10.0.0.20") is not None

        assert store.find_by_address("10.0.0.20").status == DeviceStatus.ONLINE
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_poll_unregistered_device(self):
        scheduler = _scheduler(FakeCollector())

        assert await scheduler.poll_once("10.0.0.99") is None

    @pytest.mark.asyncio
    async def test_interface_rates_between_ticks(self):
        """in 1000->3000, out 500->500 over 2s gives 1000 B/s and 100% at 8000 bit/s."""
        store = InMemoryDeviceStore()
        collector = FakeCollector([
            _snapshot(interfaces=_interfaces(100.0, 1000)),
            _snapshot(interfaces=_interfaces(102.0, 3000)),
        ])
        scheduler = _scheduler(collector, store=store)
        _register(scheduler, Device(address="10.0.0.20", device_type="switch"))
        await _settle()

        first = store.find_by_address("10.0.0.20").metrics
        assert first["interfaces"][0]["in_rate"] == 0.0

        await scheduler.poll_once("10.0.0.20")

        metrics = store.find_by_address("10.0.0.20").metrics
        eth0 = metrics["interfaces"][0]
        assert eth0["in_rate"] == pytest.approx(1000.0)
        assert eth0["out_rate"] == pytest.approx(0.0)
        assert eth0["utilization"] == pytest.approx(100.0)
        assert metrics["congestion"]["level"] == "critical"
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_anomaly_alerts_emitted(self):
        events = CollectingEventSink()
        scheduler = _scheduler(
            FakeCollector([_snapshot(300.0)]),
            events=events,
            detector=AnomalyDetector(),
        )

        _register(scheduler, Device(address="10.0.0.20", device_type="router"))
        await _settle()

        [alert] = events.of_type(EventType.ANOMALY_ALERT)
        assert alert["address"] == "10.0.0.20"
        assert alert["anomaly"]["metric"] == "response_time"
        assert alert["anomaly"]["severity"] == "critical"
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_history_bounded(self):
        collector = FakeCollector()
        scheduler = PollingScheduler(
            collector=collector,
            profiles=DeviceProfileManager(),
            store=InMemoryDeviceStore(),
            events=CollectingEventSink(),
            history_size=10,
        )
        _register(scheduler, Device(address="10.0.0.20"))
        await _settle()

        for _ in range(15):
            await scheduler.poll_once("10.0.0.20")

        assert len(scheduler.history_for("10.0.0.20")) == 10
        await scheduler.stop()


def _scanner_for(store, results):
    return DiscoveryScanner(
        store=store,
        events=CollectingEventSink(),
        config=MonitorConfig(),
        probe=CannedDiscovery(results),
    )


def _rediscovered(address):
    return ProbeResult(
        address=address,
        alive=True,
        methods=["ping", "arp", "port"],
        response_time_ms=1.2,
        hostname="core-gw",
        mac_address="00:1a:2b:3c:4d:5e",
        open_ports=[22, 443],
        services=["SSH", "HTTPS"],
    )


class TestSharedStore:
    """Tests for polling alongside discovery and admin changes to the same record."""

    @pytest.mark.asyncio
    async def test_scan_refresh_survives_next_poll(self):
        store = InMemoryDeviceStore()
        scheduler = _scheduler(FakeCollector([_snapshot(6.0)]), store=store)
        _register(scheduler, Device(address="10.0.0.21", name=placeholder_name("10.0.0.21")))
        await _settle()

        scanner = _scanner_for(store, {"10.0.0.21": _rediscovered("10.0.0.21")})
        summary = await scanner.run("10.0.0.20/30")
        assert summary.updated == 1

        assert await scheduler.poll_once("10.0.0.21") is not None

        stored = store.find_by_address("10.0.0.21")
        assert stored.name == "core-gw"
        assert stored.hostname == "core-gw"
        assert stored.mac_address == "00:1a:2b:3c:4d:5e"
        assert stored.open_ports == [22, 443]
        assert stored.status == DeviceStatus.ONLINE
        assert stored.response_time_ms == 6.0
        assert stored.metrics["system"]["description"] == "Linux host"
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_scan_during_collection_survives(self):
        store = InMemoryDeviceStore()
        gate = asyncio.Event()
        scheduler = _scheduler(FakeCollector(gate=gate), store=store)
        _register(scheduler, Device(address="10.0.0.21", name=placeholder_name("10.0.0.21")))
        await _settle()

        await _scanner_for(store, {"10.0.0.21": _rediscovered("10.0.0.21")}).run("10.0.0.20/30")
        gate.set()
        await _settle()

        stored = store.find_by_address("10.0.0.21")
        assert scheduler.successful_polls == 1
        assert stored.name == "core-gw"
        assert stored.open_ports == [22, 443]
        assert stored.metrics is not None
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_deactivated_device_not_polled_or_reactivated(self, temp_db):
        collector = FakeCollector()
        scheduler = _scheduler(collector, store=temp_db)
        _register(scheduler, Device(address="10.0.0.21", name="edge-sw", device_type="switch"))
        await _settle()

        assert temp_db.set_active("10.0.0.21", False) is True
        assert await scheduler.poll_once("10.0.0.21") is None

        assert scheduler.monitored == []
        assert len(collector.calls) == 1
        collector.sessions.release.assert_called_once_with("10.0.0.21")
        stored = temp_db.find_by_address("10.0.0.21")
        assert stored.active is False
        assert stored.name == "edge-sw"
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_failure_keeps_scan_refresh(self):
        store = InMemoryDeviceStore()
        collector = FakeCollector(error=ProtocolTimeout("10.0.0.21", "timeout"))
        scheduler = _scheduler(collector, store=store)
        _register(scheduler, Device(address="10.0.0.21", name=placeholder_name("10.0.0.21")))
        await _settle()

        await _scanner_for(store, {"10.0.0.21": _rediscovered("10.0.0.21")}).run("10.0.0.20/30")
        await scheduler.poll_once("10.0.0.21")

        stored = store.find_by_address("10.0.0.21")
        assert stored.status == DeviceStatus.OFFLINE
        assert stored.name == "core-gw"
        assert stored.mac_address == "00:1a:2b:3c:4d:5e"
        await scheduler.stop()


class TestTickOverlap:
    """Tests for one tick at a time per device."""

    @pytest.mark.asyncio
    async def test_slow_collection_never_overlaps(self):
        collector = FakeCollector(delay=0.03)
        scheduler = _scheduler(collector, fast=True)
        profile = _register(scheduler, Device(address="10.0.0.1", device_type="router"))
        assert profile.polling_interval == 0.01

        started = time.monotonic()
        await asyncio.sleep(0.15)
        await scheduler.stop()
        elapsed = time.monotonic() - started

        assert collector.max_in_flight == 1
        assert len(collector.calls) >= 2
        assert len(collector.calls) <= elapsed / 0.03 + 1


class TestReclassification:
    """Tests for adopting a type learned from the system description."""

    @pytest.mark.asyncio
    async def test_unknown_device_reclassified(self):
        store = InMemoryDeviceStore()
        events = CollectingEventSink()
        scheduler = _scheduler(
            FakeCollector([_snapshot(description="Cisco IOS Software, C2900 Software")]),
            store=store,
            events=events,
        )

        before = _register(scheduler, Device(address="10.0.0.20"))
        await _settle()

        assert before.criticality == Criticality.STANDARD
        assert scheduler.profile_for("10.0.0.20").criticality == Criticality.CRITICAL
        assert store.find_by_address("10.0.0.20").device_type == DeviceType.ROUTER
        assert events.of_type(EventType.DEVICE_METRICS)[0]["criticality"] == "critical"
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_declared_type_kept(self):
        scheduler = _scheduler(FakeCollector([_snapshot(description="Cisco IOS Software")]))

        _register(scheduler, Device(address="10.0.0.20", device_type="printer"))
        await _settle()

        assert scheduler.profile_for("10.0.0.20").device_type == DeviceType.PRINTER
        await scheduler.stop()


class TestStatistics:
    """Tests for scheduler statistics."""

    @pytest.mark.asyncio
    async def test_no_polls(self):
        scheduler = _scheduler(FakeCollector())

        stats = scheduler.statistics()

        assert stats["devices_monitored"] == 0
        assert stats["performance_score"] == 0.0
        assert stats["uptime_seconds"] == 0.0

    @pytest.mark.asyncio
    async def test_score_and_tiers(self):
        collector = FakeCollector([_snapshot(4.0)])
        scheduler = _scheduler(collector)
        _register(scheduler, Device(address="10.0.0.1", device_type="router"))
        _register(scheduler, Device(address="10.0.0.20", device_type="server"))
        await _settle()

        collector.error = RuntimeError("agent crashed")
        await scheduler.poll_once("10.0.0.20")
        await scheduler.poll_once("10.0.0.20")

        stats = scheduler.statistics()
        assert stats["devices_monitored"] == 2
        assert stats["devices_by_criticality"] == {"critical": 1, "important": 1}
        assert stats["successful_polls"] == 2
        assert stats["failed_polls"] == 2
        assert stats["average_response_time_ms"] == 4.0
        # 50% success plus the fast-response bonus
        assert stats["performance_score"] == 60.0
        await scheduler.stop()
