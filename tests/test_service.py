"""Tests for service wiring."""

import asyncio
import os
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from network_monitor._types import (
    AddressRange,
    Criticality,
    EventType,
    MetricsSnapshot,
    ProbeResult,
    ScanState,
    SystemInfo,
)
from network_monitor.config import MonitorConfig
from network_monitor.events import CollectingEventSink, CompositeEventSink, LoggingEventSink
from network_monitor.service import NetworkMonitorService
from network_monitor.store import InMemoryDeviceStore, SqliteDeviceStore


@pytest.fixture
def no_bridges():
    with patch("network_monitor.service.detect_bridge_networks", return_value=[]) as detect:
        yield detect


class StaticProbe:
    """Probe reporting a fixed set of live addresses."""

    def __init__(self, alive):
        self.alive = set(alive)

    async def probe(self, address, methods=None):
        await asyncio.sleep(0)
        if address in self.alive:
            return ProbeResult(address=address, alive=True, methods=["ping"], response_time_ms=0.9)
        return ProbeResult(address=address)


def _service(poll=True, **config):
    service = NetworkMonitorService(
        MonitorConfig(**config),
        store=InMemoryDeviceStore(),
        events=CollectingEventSink(),
        poll=poll,
    )
    service.scheduler.collector = MagicMock(
        collect=AsyncMock(return_value=MetricsSnapshot(system=SystemInfo(), response_time_ms=3.0))
    )
    return service


class TestWiring:
    """Tests for building components from config."""

    def test_defaults(self, no_bridges):
        service = NetworkMonitorService(MonitorConfig())

        assert isinstance(service.store, InMemoryDeviceStore)
        assert isinstance(service.events, LoggingEventSink)
        no_bridges.assert_called_once()

    def test_sqlite_store_and_webhook(self, no_bridges):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "devices.db"
            service = NetworkMonitorService(
                MonitorConfig(db_path=db_path, webhook_url="http://127.0.0.1:9/events")
            )

            assert isinstance(service.store, SqliteDeviceStore)
            assert isinstance(service.events, CompositeEventSink)
            assert os.path.exists(db_path)

    def test_bridge_networks_blocked(self):
        with patch("network_monitor.service.detect_bridge_networks", return_value=["10.99.0.0/16"]):
            service = _service()

        assert not service.policy.is_scannable(AddressRange.parse("10.99.4.0/24"))
        assert service.policy.is_scannable(AddressRange.parse("10.98.4.0/24"))

    def test_bridge_detection_disabled(self, no_bridges):
        _service(block_bridge_networks=False)

        no_bridges.assert_not_called()

    def test_tier_intervals_passed_to_profiles(self, no_bridges):
        service = _service(critical_interval=10, important_interval=20, standard_interval=40)

        intervals = service.scheduler.profiles.intervals
        assert intervals[Criticality.CRITICAL] == 10.0
        assert intervals[Criticality.STANDARD] == 40.0

    def test_discovery_only_has_no_callback(self, no_bridges):
        assert _service(poll=False).scanner.on_new_device is None


class TestScanning:
    """Tests for scans driven through the service."""

    @pytest.mark.asyncio
    async def test_scan_once_registers_new_devices(self, no_bridges):
        service = _service()
        service.scanner.probe = StaticProbe({"192.168.50.2"})
        registered = []
        original_register = service.scheduler.register

        def register(device):
            registered.append(device.address)
            return original_register(device)

        service.scanner.on_new_device = register

        summary = await service.scan_once("192.168.50.0/30")

        assert summary.state == ScanState.COMPLETED
        assert summary.found == 1
        assert registered == ["192.168.50.2"]
        assert service.store.find_by_address("192.168.50.2") is not None
        # scan_once stops everything on the way out
        assert service.scheduler.monitored == []
        service.scheduler.collector.sessions.close_all.assert_called_once()

    @pytest.mark.asyncio
    async def test_trigger_scan_refused_returns_none(self, no_bridges):
        service = _service()

        assert service.trigger_scan("10.0.0.0/33") is None
        assert service.trigger_scan("127.0.0.0/24") is None

    @pytest.mark.asyncio
    async def test_trigger_scan_while_running(self, no_bridges):
        service = _service()
        gate = asyncio.Event()

        async def held(address, methods=None):
            await gate.wait()
            return ProbeResult(address=address)

        service.scanner.probe = MagicMock(probe=held)

        job = service.trigger_scan("192.168.60.0/30")
        assert job is not None
        assert service.trigger_scan("192.168.60.0/30") is None

        service.scanner.stop()
        gate.set()
        summary = await service.scanner.wait()
        assert summary.state == ScanState.ABORTED


class TestLifecycle:
    """Tests for start, stop and statistics."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, no_bridges):
        service = _service()
        task = asyncio.create_task(service.start())
        await asyncio.sleep(0.01)

        assert service._running

        await service.stop()
        await asyncio.wait_for(task, timeout=1)

        assert not service._running

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, no_bridges):
        service = _service()

        await service.stop()

        service.scheduler.collector.sessions.close_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_statistics(self, no_bridges):
        service = _service()

        stats = service.statistics()

        assert set(stats) == {"polling", "scanner"}
        assert stats["polling"]["devices_monitored"] == 0
        assert stats["scanner"]["state"] == "idle"

    @pytest.mark.asyncio
    async def test_scan_events_reach_sink(self, no_bridges):
        service = _service(poll=False)
        service.scanner.probe = StaticProbe(set())

        await service.scan_once("192.168.70.0/30")

        assert len(service.events.of_type(EventType.SCAN_STARTED)) == 1
        assert len(service.events.of_type(EventType.SCAN_COMPLETED)) == 1
