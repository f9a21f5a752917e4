"""
Metrics collection.

One collection run queries the SNMP system group and then each requested
metric category. The system query decides whether the device answered at
all, so its failure propagates; a failing category is recorded in the
snapshot and the remaining categories still run.
"""

import logging
import time
from typing import Any, Iterable

from ._types import (
    CpuMetrics,
    Device,
    InterfaceCounters,
    InterfaceSnapshot,
    MemoryMetrics,
    MetricCategory,
    MetricsSnapshot,
    StorageMetrics,
    StorageVolume,
    SystemInfo,
)
from .exceptions import ProtocolError
from .snmp import oids
from .snmp.session import ProtocolSession, SessionRegistry

logger = logging.getLogger(__name__)


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _group_rows(
    rows: list[tuple[str, Any]],
    base: str,
    columns: dict[int, str],
) -> dict[str, dict[str, Any]]:
    """Table walk rows grouped as {row index: {field name: value}}; unmapped columns are dropped."""
    table: dict[str, dict[str, Any]] = {}
    for oid, value in rows:
        parts = oids.split_index(oid, base)
        if parts is None:
            continue
        column, index = parts
        name = columns.get(column)
        if name is not None:
            table.setdefault(index, {})[name] = value
    return table


def parse_interfaces(rows: list[tuple[str, Any]]) -> list[InterfaceCounters]:
    """Build InterfaceCounters from an ifTable walk."""
    interfaces = []
    for index, columns in _group_rows(rows, oids.IF_TABLE, oids.IF_COLUMNS).items():
        if not index.isdigit():
            continue
        oper = _as_int(columns.get("oper_status"), 4)
        interfaces.append(InterfaceCounters(
            index=int(index),
            description=str(columns.get("description") or ""),
            if_type=_as_int(columns.get("if_type")),
            mtu=_as_int(columns.get("mtu")),
            speed=_as_int(columns.get("speed")),
            mac_address=oids.format_mac(columns.get("mac_address")),
            oper_status=oids.IF_OPER_STATUS.get(oper, "unknown"),
            in_octets=_as_int(columns.get("in_octets")),
            in_errors=_as_int(columns.get("in_errors")),
            out_octets=_as_int(columns.get("out_octets")),
            out_errors=_as_int(columns.get("out_errors")),
        ))
    return sorted(interfaces, key=lambda i: i.index)


def parse_storage(rows: list[tuple[str, Any]]) -> list[dict[str, Any]]:
    """hrStorageTable rows with sizes converted to bytes."""
    entries = []
    for index, columns in _group_rows(rows, oids.HR_STORAGE_TABLE, oids.HR_STORAGE_COLUMNS).items():
        units = _as_int(columns.get("allocation_units"), 1) or 1
        entries.append({
            "index": _as_int(index),
            "type": str(columns.get("type") or ""),
            "description": str(columns.get("description") or ""),
            "total_bytes": _as_int(columns.get("size")) * units,
            "used_bytes": _as_int(columns.get("used")) * units,
        })
    return entries


class MetricsCollector:
    """
    Collects structured metrics from a device over its SNMP session.

    Args:
        sessions: Registry owning the per-device sessions
    """

    def __init__(self, sessions: SessionRegistry):
        self.sessions = sessions

    async def collect(
        self,
        device: Device,
        categories: Iterable[MetricCategory] = (),
    ) -> MetricsSnapshot:
        """
        Run one collection against a device.

        Raises:
            ProtocolError: the base system query failed
        """
        session = self.sessions.get(device)
        started = time.monotonic()

        system = await self._collect_system(session)
        snapshot = MetricsSnapshot(system=system)

        for category in categories:
            category = MetricCategory(category)
            try:
                if category == MetricCategory.CPU:
                    snapshot.cpu = await self._collect_cpu(session)
                elif category == MetricCategory.MEMORY:
                    snapshot.memory = await self._collect_memory(session)
                elif category == MetricCategory.STORAGE:
                    snapshot.storage = await self._collect_storage(session)
                elif category == MetricCategory.INTERFACES:
                    snapshot.interfaces = await self._collect_interfaces(session)
            except ProtocolError as e:
                snapshot.errors[category.value] = str(e)
                logger.warning(f"{device.address}: {category.value} collection failed: {e}")

        snapshot.response_time_ms = (time.monotonic() - started) * 1000
        return snapshot

    async def _collect_system(self, session: ProtocolSession) -> SystemInfo:
        values = await session.get_scalar(oids.SYSTEM_OIDS)
        uptime_ticks = _as_int(values.get(oids.SYS_UPTIME))
        return SystemInfo(
            description=values.get(oids.SYS_DESCR) or "Unknown",
            object_id=values.get(oids.SYS_OBJECT_ID),
            uptime_seconds=uptime_ticks / 100,
            name=values.get(oids.SYS_NAME) or "Unknown",
            contact=values.get(oids.SYS_CONTACT) or "",
            location=values.get(oids.SYS_LOCATION) or "",
        )

    async def _collect_cpu(self, session: ProtocolSession) -> CpuMetrics:
        rows = await session.walk_table(oids.HR_PROCESSOR_LOAD)
        loads = [_as_int(value) for _, value in rows if value is not None]
        if not loads:
            return CpuMetrics()
        return CpuMetrics(
            utilization=sum(loads) / len(loads),
            cores=len(loads),
            loads=loads,
        )

    async def _collect_memory(self, session: ProtocolSession) -> MemoryMetrics:
        storage = parse_storage(await session.walk_table(oids.HR_STORAGE_TABLE))
        ram = [s for s in storage if s["type"] == oids.HR_STORAGE_RAM]

        total = sum(s["total_bytes"] for s in ram)
        used = sum(s["used_bytes"] for s in ram)

        if total <= 0:
            values = await session.get_scalar([oids.HR_MEMORY_SIZE])
            total = _as_int(values.get(oids.HR_MEMORY_SIZE)) * 1024

        utilization = 0.0
        if total > 0:
            utilization = min(100.0, max(0.0, used / total * 100))
        return MemoryMetrics(total_bytes=total, used_bytes=used, utilization=utilization)

    async def _collect_storage(self, session: ProtocolSession) -> StorageMetrics:
        storage = parse_storage(await session.walk_table(oids.HR_STORAGE_TABLE))
        return StorageMetrics(volumes=[
            StorageVolume(
                index=s["index"],
                description=s["description"],
                total_bytes=s["total_bytes"],
                used_bytes=s["used_bytes"],
            )
            for s in storage
            if s["type"] == oids.HR_STORAGE_FIXED_DISK
        ])

    async def _collect_interfaces(self, session: ProtocolSession) -> InterfaceSnapshot:
        rows = await session.walk_table(oids.IF_TABLE)
        return InterfaceSnapshot(timestamp=time.time(), interfaces=parse_interfaces(rows))
