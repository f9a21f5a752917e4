"""
Discovery scanner.

Scans one address range at a time. Hosts are probed in fixed-size
batches; every host is wrapped so a single failure cannot stop its batch,
and the abort flag is honoured between batches.

State machine: idle -> running -> (completed | aborted | failed) -> idle.
start() performs the idle check and the transition to running without
yielding to the event loop, so a concurrent second request always sees
the running scan and is refused without touching it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Iterable, Optional

from ._types import (
    AddressRange,
    Device,
    DeviceStatus,
    EventType,
    ProbeMethod,
    ProbeResult,
    ScanJob,
    ScanState,
    ScanSummary,
    now_utc,
    placeholder_name,
)
from .classifier import is_concrete
from .config import MonitorConfig
from .events import EventSink
from .exceptions import ScanAlreadyRunning, ScanRangeRejected, ScanRefused
from .policy import AddressPolicy, ContainerNetworkPolicy
from .probe import HostProbe
from .store import DeviceStore

logger = logging.getLogger(__name__)

NewDeviceCallback = Callable[[Device], Any]


class DiscoveryScanner:
    """
    Finds live hosts in an address range and records them in the store.

    Args:
        store: Device store (find_by_address / upsert)
        events: Event sink
        config: Batch size, progress interval, host cap, default ranges
        probe: HostProbe used per address
        policy: Address policy guarding which ranges may be scanned
        on_new_device: Called with each newly discovered device; may be
            a coroutine function
    """

    def __init__(
        self,
        store: DeviceStore,
        events: EventSink,
        config: Optional[MonitorConfig] = None,
        probe: Optional[HostProbe] = None,
        policy: Optional[AddressPolicy] = None,
        on_new_device: Optional[NewDeviceCallback] = None,
    ):
        self.config = config or MonitorConfig()
        self.store = store
        self.events = events
        self.probe = probe or HostProbe(self.config)
        self.policy = policy or ContainerNetworkPolicy(self.config.blocked_networks)
        self.on_new_device = on_new_device

        self.state = ScanState.IDLE
        self.job: Optional[ScanJob] = None
        self.last_summary: Optional[ScanSummary] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.state == ScanState.RUNNING

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def resolve_range(self, target: Optional[str] = None) -> AddressRange:
        """
        Turn a requested range into an AddressRange the policy accepts.

        None or "auto" selects the first configured range the policy
        accepts.

        Raises:
            ScanRangeRejected: malformed, disallowed, or nothing configured
        """
        if target is None or str(target).strip().lower() == "auto":
            for candidate in self.config.network_ranges:
                address_range = AddressRange.parse(candidate)
                if self.policy.is_scannable(address_range):
                    return address_range
            raise ScanRangeRejected("no scannable network range configured")

        try:
            address_range = AddressRange.parse(str(target))
        except ValueError as e:
            raise ScanRangeRejected("invalid network range", str(e)) from e

        if not self.policy.is_scannable(address_range):
            raise ScanRangeRejected("network range not allowed", str(address_range))
        return address_range

    def start(
        self,
        target: Optional[str] = None,
        methods: Optional[Iterable[str]] = None,
    ) -> ScanJob:
        """
        Start a scan in the background.

        Must be called from a running event loop.

        Raises:
            ScanAlreadyRunning: a scan is in progress (retry later)
            ScanRangeRejected: the range is malformed or not allowed
            ScanRefused: an unknown probe method was requested
        """
        loop = asyncio.get_running_loop()

        if self.state == ScanState.RUNNING:
            raise ScanAlreadyRunning(self.job.id if self.job else None)

        address_range = self.resolve_range(target)
        try:
            probe_methods = tuple(ProbeMethod(m) for m in methods) if methods else self.config.methods
        except ValueError as e:
            raise ScanRefused("invalid probe method", str(e)) from e

        job = ScanJob(
            target=address_range,
            methods=probe_methods,
            total=address_range.host_count(self.config.max_hosts),
        )
        self.job = job
        self.state = ScanState.RUNNING
        self._task = loop.create_task(self._run_job(job))

        logger.info(
            f"Scan {job.id} started: {address_range} ({job.total} hosts, "
            f"methods={','.join(m.value for m in probe_methods)})"
        )
        if address_range.host_count() > job.total:
            logger.warning(f"Scan {job.id}: {address_range} truncated to the first {job.total} hosts")
        return job

    async def wait(self) -> Optional[ScanSummary]:
        """Wait for the current scan; returns its summary (or the last one)."""
        task = self._task
        if task is None:
            return self.last_summary
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled():
                return self.last_summary
            raise

    async def run(
        self,
        target: Optional[str] = None,
        methods: Optional[Iterable[str]] = None,
    ) -> ScanSummary:
        """Start a scan and wait for it to end."""
        self.start(target, methods)
        return await self.wait()

    def stop(self) -> bool:
        """Request abort of the running scan; always succeeds."""
        if self.state == ScanState.RUNNING and self.job is not None:
            self.job.aborted = True
            logger.info(f"Abort requested for scan {self.job.id}")
        return True

    def status(self) -> dict[str, Any]:
        """Snapshot of scanner state."""
        status: dict[str, Any] = {
            "state": self.state.value,
            "running": self.is_running,
            "last_scan": self.last_summary.to_dict() if self.last_summary else None,
        }
        job = self.job
        if job is not None and self.is_running:
            status.update({
                "scan_id": job.id,
                "network_range": str(job.target),
                "methods": [m.value for m in job.methods],
                "total": job.total,
                "scanned": job.scanned,
                "found": job.found,
                "updated": job.updated,
                "progress": job.progress,
                "aborting": job.aborted,
                "started_at": job.started_at.isoformat(),
            })
        return status

    # -------------------------------------------------------------------------
    # Scan
    # -------------------------------------------------------------------------

    async def _run_job(self, job: ScanJob) -> ScanSummary:
        started = time.monotonic()
        self.events.emit(EventType.SCAN_STARTED, {
            "scan_id": job.id,
            "network_range": str(job.target),
            "total": job.total,
            "methods": [m.value for m in job.methods],
        })

        try:
            hosts = list(job.target.hosts(limit=self.config.max_hosts))
            batch_size = self.config.batch_size

            for i in range(0, len(hosts), batch_size):
                if job.aborted:
                    logger.info(f"Scan {job.id} aborted after {job.scanned}/{job.total} hosts")
                    break
                batch = hosts[i:i + batch_size]
                await asyncio.gather(*(self._scan_host(job, address) for address in batch))

        except asyncio.CancelledError:
            job.aborted = True
            self._finish(job, ScanState.ABORTED, started)
            raise
        except Exception as e:
            logger.error(f"Scan {job.id} failed: {e}")
            job.error = str(e)
            return self._finish(job, ScanState.FAILED, started)

        state = ScanState.ABORTED if job.aborted else ScanState.COMPLETED
        return self._finish(job, state, started)

    async def _scan_host(self, job: ScanJob, address: str) -> None:
        try:
            result = await self.probe.probe(address, job.methods)
            if result.alive:
                await self._record(job, result)
        except Exception as e:
            logger.warning(f"Scan of {address} failed: {e}")
        finally:
            job.scanned += 1
            if job.scanned % self.config.progress_every == 0 or job.scanned == job.total:
                self.events.emit(EventType.SCAN_PROGRESS, {
                    "scan_id": job.id,
                    "scanned": job.scanned,
                    "total": job.total,
                    "found": job.found,
                    "progress": job.progress,
                })

    async def _record(self, job: ScanJob, result: ProbeResult) -> None:
        existing = self.store.find_by_address(result.address)
        if existing is None:
            await self._record_new(job, result)
        else:
            self._record_existing(job, existing, result)

    async def _record_new(self, job: ScanJob, result: ProbeResult) -> None:
        device = Device(
            address=result.address,
            name=result.hostname or placeholder_name(result.address),
            hostname=result.hostname,
            device_type=result.device_type,
            credentials=self.config.credentials_for(result.address),
            status=DeviceStatus.ONLINE,
            response_time_ms=result.response_time_ms,
            last_seen_at=now_utc(),
            mac_address=result.mac_address,
            description=result.description,
            discovered_by=",".join(result.methods),
            open_ports=list(result.open_ports),
            services=list(result.services),
        )
        self.store.upsert(device)
        job.found += 1

        logger.info(f"Discovered {device.address} ({device.name}, {device.device_type.value})")
        self.events.emit(EventType.DEVICE_DISCOVERED, {"scan_id": job.id, "device": device.to_dict()})

        if self.on_new_device is not None:
            outcome = self.on_new_device(device)
            if inspect.isawaitable(outcome):
                await outcome

    def _record_existing(self, job: ScanJob, device: Device, result: ProbeResult) -> None:
        changes = []

        if device.status != DeviceStatus.ONLINE:
            device.status = DeviceStatus.ONLINE
            changes.append("status")

        if result.hostname:
            if device.is_placeholder_name:
                device.name = result.hostname
                changes.append("name")
            if device.hostname != result.hostname:
                device.hostname = result.hostname
                changes.append("hostname")

        if result.open_ports and result.open_ports != device.open_ports:
            device.open_ports = list(result.open_ports)
            device.services = list(result.services)
            changes.append("open_ports")

        if result.mac_address and result.mac_address != device.mac_address:
            device.mac_address = result.mac_address
            changes.append("mac_address")

        if result.description and result.description != device.description:
            device.description = result.description
            changes.append("description")

        if not is_concrete(device.device_type) and is_concrete(result.device_type):
            device.device_type = result.device_type
            changes.append("device_type")

        device.last_seen_at = now_utc()
        if result.response_time_ms:
            device.response_time_ms = result.response_time_ms

        self.store.upsert(device)

        if changes:
            job.updated += 1
            logger.info(f"Updated {device.address}: {', '.join(changes)}")
            self.events.emit(EventType.DEVICE_UPDATED, {
                "scan_id": job.id,
                "device": device.to_dict(),
                "changes": changes,
            })

    def _finish(self, job: ScanJob, state: ScanState, started: float) -> ScanSummary:
        job.state = state
        summary = ScanSummary(
            scan_id=job.id,
            network_range=str(job.target),
            state=state,
            scanned=job.scanned,
            total=job.total,
            found=job.found,
            updated=job.updated,
            duration=time.monotonic() - started,
            methods=[m.value for m in job.methods],
            started_at=job.started_at,
            completed_at=now_utc(),
            error=job.error,
        )
        self.last_summary = summary
        self.state = ScanState.IDLE

        logger.info(
            f"Scan {job.id} {state.value}: {job.scanned}/{job.total} scanned, "
            f"{job.found} new, {job.updated} updated in {summary.duration:.1f}s"
        )
        self.events.emit(EventType.SCAN_COMPLETED, summary.to_dict())

        record_scan = getattr(self.store, "record_scan", None)
        if record_scan is not None:
            try:
                record_scan(summary)
            except Exception as e:
                logger.error(f"Failed to record scan {job.id}: {e}")
        return summary
