"""Tests for device stores."""

import tempfile
from pathlib import Path

import pytest

from network_monitor._types import (
    Device,
    DeviceStatus,
    DeviceType,
    ScanState,
    ScanSummary,
    SnmpCredentials,
    now_utc,
)
from network_monitor.store import InMemoryDeviceStore, SqliteDeviceStore


@pytest.fixture
def temp_db():
    """Create a temporary database."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    store = SqliteDeviceStore(db_path)
    yield store

    # Cleanup
    db_path.unlink(missing_ok=True)
    Path(str(db_path) + "-wal").unlink(missing_ok=True)
    Path(str(db_path) + "-shm").unlink(missing_ok=True)


@pytest.fixture
def sample_device():
    return Device(
        address="192.168.1.10",
        hostname="fileserver",
        device_type=DeviceType.SERVER,
        credentials=SnmpCredentials(community="site-ro", port=1161, version="1"),
        status=DeviceStatus.ONLINE,
        response_time_ms=3.5,
        last_seen_at=now_utc(),
        mac_address="00:11:22:33:44:55",
        description="Linux fileserver 5.15",
        discovered_by="scan",
        open_ports=[22, 445],
        services=["ssh", "microsoft-ds"],
    )


class TestSqliteDeviceStore:
    """Tests for the SQLite store."""

    def test_upsert_new_device(self, temp_db, sample_device):
        """Should report new devices."""
        assert temp_db.upsert(sample_device) is True

        found = temp_db.find_by_address("192.168.1.10")
        assert found is not None
        assert found.id == sample_device.id
        assert found.name == "fileserver"
        assert found.device_type == DeviceType.SERVER
        assert found.credentials.community == "site-ro"
        assert found.credentials.port == 1161
        assert found.open_ports == [22, 445]
        assert found.status == DeviceStatus.ONLINE

    def test_upsert_existing_keeps_identity(self, temp_db, sample_device):
        """A second device at the same address updates the first."""
        temp_db.upsert(sample_device)

        replacement = Device(address="192.168.1.10", status=DeviceStatus.OFFLINE)
        assert temp_db.upsert(replacement) is False

        assert replacement.id == sample_device.id
        found = temp_db.find_by_address("192.168.1.10")
        assert found.status == DeviceStatus.OFFLINE

    def test_find_missing(self, temp_db):
        assert temp_db.find_by_address("10.9.9.9") is None

    def test_metrics_round_trip(self, temp_db, sample_device):
        sample_device.metrics = {"cpu": {"utilization": 12.5}, "collected_at": now_utc()}
        temp_db.upsert(sample_device)

        found = temp_db.find_by_address(sample_device.address)

        assert found.metrics["cpu"]["utilization"] == 12.5
        assert isinstance(found.metrics["collected_at"], str)

    def test_list_active(self, temp_db, sample_device):
        temp_db.upsert(sample_device)
        temp_db.upsert(Device(address="192.168.1.11"))
        temp_db.set_active("192.168.1.11", False)

        active = temp_db.list_active()

        assert [d.address for d in active] == ["192.168.1.10"]

    def test_set_active_unknown_address(self, temp_db):
        assert temp_db.set_active("10.0.0.1", False) is False

    def test_device_counts(self, temp_db, sample_device):
        temp_db.upsert(sample_device)
        temp_db.upsert(Device(address="192.168.1.11", status=DeviceStatus.OFFLINE))
        temp_db.upsert(Device(address="192.168.1.12"))

        counts = temp_db.get_device_counts()

        assert counts["online"] == 1
        assert counts["offline"] == 1
        assert counts["unknown"] == 1
        assert counts["total"] == 3

    def test_scan_history(self, temp_db):
        summary = ScanSummary(
            scan_id="scan-1",
            network_range="192.168.1.0/24",
            state=ScanState.COMPLETED,
            scanned=254,
            total=254,
            found=2,
            updated=1,
            duration=30.5,
            methods=["ping", "arp"],
        )

        temp_db.record_scan(summary)
        history = temp_db.scan_history()

        assert len(history) == 1
        assert history[0]["scan_id"] == "scan-1"
        assert history[0]["state"] == "completed"
        assert history[0]["methods"] == ["ping", "arp"]


class TestInMemoryDeviceStore:
    """Tests for the in-memory store."""

    def test_upsert_and_find(self, sample_device):
        store = InMemoryDeviceStore()

        assert store.upsert(sample_device) is True
        assert store.upsert(sample_device) is False
        assert len(store) == 1

    def test_returns_copies(self, sample_device):
        """Mutating a returned device does not change the store."""
        store = InMemoryDeviceStore([sample_device])

        found = store.find_by_address(sample_device.address)
        found.status = DeviceStatus.OFFLINE

        assert store.find_by_address(sample_device.address).status == DeviceStatus.ONLINE

    def test_existing_id_kept(self, sample_device):
        store = InMemoryDeviceStore([sample_device])
        replacement = Device(address=sample_device.address)

        store.upsert(replacement)

        assert replacement.id == sample_device.id

    def test_list_active_excludes_inactive(self):
        store = InMemoryDeviceStore([
            Device(address="10.0.0.1"),
            Device(address="10.0.0.2", active=False),
        ])

        assert [d.address for d in store.list_active()] == ["10.0.0.1"]
