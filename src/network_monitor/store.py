"""
Device stores.

The core needs three operations from a store: find a device by address,
upsert a device, and list the devices to monitor. SqliteDeviceStore keeps
them in a WAL-mode SQLite file together with the scan history;
InMemoryDeviceStore backs tests and one-shot runs.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol

from ._types import (
    Device,
    DeviceStatus,
    DeviceType,
    ScanSummary,
    SnmpCredentials,
)

logger = logging.getLogger(__name__)


class DeviceStore(Protocol):
    """Persistence boundary used by the scanner and the scheduler."""

    def find_by_address(self, address: str) -> Optional[Device]:
        ...

    def upsert(self, device: Device) -> bool:
        """Insert or update by address. Returns True when the device is new."""
        ...

    def list_active(self) -> list[Device]:
        ...


class InMemoryDeviceStore:
    """Dict-backed store; stored devices are copies, as with a real database."""

    def __init__(self, devices: Optional[list[Device]] = None):
        self._devices: dict[str, Device] = {}
        self.scans: list[ScanSummary] = []
        for device in devices or []:
            self.upsert(device)

    def find_by_address(self, address: str) -> Optional[Device]:
        device = self._devices.get(address)
        return copy.deepcopy(device) if device else None

    def upsert(self, device: Device) -> bool:
        is_new = device.address not in self._devices
        if not is_new:
            # Address is the identity; keep the original id
            device.id = self._devices[device.address].id
        self._devices[device.address] = copy.deepcopy(device)
        return is_new

    def list_active(self) -> list[Device]:
        return [copy.deepcopy(d) for d in self._devices.values() if d.active]

    def record_scan(self, summary: ScanSummary) -> None:
        self.scans.append(summary)

    def __len__(self) -> int:
        return len(self._devices)


SCHEMA = """
CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY,
    address TEXT NOT NULL UNIQUE,
    name TEXT,
    hostname TEXT,
    device_type TEXT NOT NULL DEFAULT 'unknown',
    snmp TEXT,  -- JSON credentials

    status TEXT DEFAULT 'unknown',
    active BOOLEAN DEFAULT TRUE,
    response_time_ms REAL,
    last_seen_at TEXT,
    first_seen_at TEXT NOT NULL,

    mac_address TEXT,
    description TEXT,
    discovered_by TEXT,
    open_ports TEXT,  -- JSON array
    services TEXT,  -- JSON array
    metrics TEXT  -- JSON object, last collected snapshot
);

CREATE TABLE IF NOT EXISTS scan_history (
    id TEXT PRIMARY KEY,
    network_range TEXT NOT NULL,
    state TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    scanned INTEGER DEFAULT 0,
    total INTEGER DEFAULT 0,
    found INTEGER DEFAULT 0,
    updated INTEGER DEFAULT 0,
    duration REAL,
    methods_used TEXT,  -- JSON array
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_devices_status ON devices(status);
CREATE INDEX IF NOT EXISTS idx_devices_active ON devices(active);
CREATE INDEX IF NOT EXISTS idx_scan_history_started ON scan_history(started_at);
"""


def _iso_format(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _parse_datetime(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


class SqliteDeviceStore:
    """
    SQLite device inventory and scan history.

    Uses WAL mode for crash safety and concurrent reads.
    """

    def __init__(self, db_path: Path | str = "/var/lib/network-monitor/devices.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Devices
    # -------------------------------------------------------------------------

    def _device_params(self, device: Device) -> dict[str, Any]:
        return {
            "id": device.id,
            "address": device.address,
            "name": device.name,
            "hostname": device.hostname,
            "device_type": device.device_type.value,
            "snmp": json.dumps({
                "community": device.credentials.community,
                "port": device.credentials.port,
                "version": device.credentials.version,
            }),
            "status": device.status.value,
            "active": device.active,
            "response_time_ms": device.response_time_ms,
            "last_seen_at": _iso_format(device.last_seen_at),
            "first_seen_at": _iso_format(device.first_seen_at),
            "mac_address": device.mac_address,
            "description": device.description,
            "discovered_by": device.discovered_by,
            "open_ports": json.dumps(device.open_ports),
            "services": json.dumps(device.services),
            "metrics": json.dumps(device.metrics, default=str),
        }

    def upsert(self, device: Device) -> bool:
        """
        Insert or update a device keyed by address.

        Returns True when the device was inserted.
        """
        params = self._device_params(device)

        with self._get_connection() as conn:
            existing = conn.execute(
                "SELECT id FROM devices WHERE address = ?", (device.address,)
            ).fetchone()

            if existing:
                device.id = existing["id"]
                params["id"] = existing["id"]
                conn.execute("""
                    UPDATE devices SET
                        name = :name,
                        hostname = :hostname,
                        device_type = :device_type,
                        snmp = :snmp,
                        status = :status,
                        active = :active,
                        response_time_ms = :response_time_ms,
                        last_seen_at = :last_seen_at,
                        mac_address = :mac_address,
                        description = :description,
                        discovered_by = :discovered_by,
                        open_ports = :open_ports,
                        services = :services,
                        metrics = :metrics
                    WHERE address = :address
                """, params)
                conn.commit()
                return False

            conn.execute("""
                INSERT INTO devices (
                    id, address, name, hostname, device_type, snmp,
                    status, active, response_time_ms, last_seen_at, first_seen_at,
                    mac_address, description, discovered_by,
                    open_ports, services, metrics
                ) VALUES (
                    :id, :address, :name, :hostname, :device_type, :snmp,
                    :status, :active, :response_time_ms, :last_seen_at, :first_seen_at,
                    :mac_address, :description, :discovered_by,
                    :open_ports, :services, :metrics
                )
            """, params)
            conn.commit()
            return True

    def find_by_address(self, address: str) -> Optional[Device]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM devices WHERE address = ?", (address,)
            ).fetchone()
            if row:
                return self._row_to_device(row)
            return None

    def list_active(self) -> list[Device]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM devices WHERE active = TRUE ORDER BY address"
            ).fetchall()
            return [self._row_to_device(row) for row in rows]

    def set_active(self, address: str, active: bool) -> bool:
        """Include or exclude a device from polling."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE devices SET active = ? WHERE address = ?", (active, address)
            )
            conn.commit()
            return cursor.rowcount > 0

    def get_device_counts(self) -> dict[str, int]:
        """Device counts by status, plus the total."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM devices GROUP BY status"
            ).fetchall()
        counts = {status.value: 0 for status in DeviceStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        counts["total"] = sum(counts.values())
        return counts

    def _row_to_device(self, row: sqlite3.Row) -> Device:
        snmp = json.loads(row["snmp"]) if row["snmp"] else {}
        return Device(
            id=row["id"],
            address=row["address"],
            name=row["name"],
            hostname=row["hostname"],
            device_type=DeviceType.parse(row["device_type"]),
            credentials=SnmpCredentials(**snmp),
            status=DeviceStatus(row["status"]),
            active=bool(row["active"]),
            response_time_ms=row["response_time_ms"],
            last_seen_at=_parse_datetime(row["last_seen_at"]),
            first_seen_at=_parse_datetime(row["first_seen_at"]),
            mac_address=row["mac_address"],
            description=row["description"] or "",
            discovered_by=row["discovered_by"] or "manual",
            open_ports=json.loads(row["open_ports"] or "[]"),
            services=json.loads(row["services"] or "[]"),
            metrics=json.loads(row["metrics"] or "{}"),
        )

    # -------------------------------------------------------------------------
    # Scan history
    # -------------------------------------------------------------------------

    def record_scan(self, summary: ScanSummary) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO scan_history (
                    id, network_range, state, started_at, completed_at,
                    scanned, total, found, updated, duration,
                    methods_used, error_message
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                summary.scan_id,
                summary.network_range,
                summary.state.value,
                _iso_format(summary.started_at),
                _iso_format(summary.completed_at),
                summary.scanned,
                summary.total,
                summary.found,
                summary.updated,
                summary.duration,
                json.dumps(summary.methods),
                summary.error,
            ))
            conn.commit()

    def scan_history(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent scans first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scan_history ORDER BY started_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            {
                "scan_id": row["id"],
                "network_range": row["network_range"],
                "state": row["state"],
                "started_at": row["started_at"],
                "completed_at": row["completed_at"],
                "scanned": row["scanned"],
                "total": row["total"],
                "found": row["found"],
                "updated": row["updated"],
                "duration": row["duration"],
                "methods": json.loads(row["methods_used"] or "[]"),
                "error": row["error_message"],
            }
            for row in rows
        ]
