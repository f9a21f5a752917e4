"""
Per-device polling scheduler.

Each monitored device gets exactly one asyncio task. A task runs a tick,
then sleeps for whatever remains of the device's polling interval, so
ticks for one device never overlap. The profile is re-read every
iteration, so re-classifying a device changes its cadence from the next
tick on.

Every tick is wrapped: a failure marks the device offline, emits a
deviceError event, and the loop carries on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Optional

from ._types import (
    CongestionSummary,
    Device,
    DeviceProfile,
    DeviceStatus,
    EventType,
    InterfaceRates,
    InterfaceSnapshot,
    MetricsSnapshot,
    PerformanceEntry,
    now_utc,
)
from .anomaly import AnomalyDetector, analyze_trend
from .classifier import derive_device_type, is_concrete
from .collector import MetricsCollector
from .events import EventSink
from .profiles import DeviceProfileManager
from .rates import compute_congestion, compute_rates
from .store import DeviceStore

logger = logging.getLogger(__name__)

# Entries averaged for per-device response time statistics
STATS_WINDOW = 10


def snapshot_to_dict(
    snapshot: MetricsSnapshot,
    interfaces: list[InterfaceRates],
    congestion: CongestionSummary,
) -> dict[str, Any]:
    """Plain-dict view of one collection run, as stored on the device."""
    data: dict[str, Any] = {
        "collected_at": snapshot.collected_at.isoformat(),
        "response_time_ms": round(snapshot.response_time_ms, 2),
        "system": {
            "description": snapshot.system.description,
            "object_id": snapshot.system.object_id,
            "uptime_seconds": snapshot.system.uptime_seconds,
            "name": snapshot.system.name,
            "contact": snapshot.system.contact,
            "location": snapshot.system.location,
        },
        "errors": dict(snapshot.errors),
    }
    if snapshot.cpu is not None:
        data["cpu"] = {
            "utilization": round(snapshot.cpu.utilization, 2),
            "cores": snapshot.cpu.cores,
        }
    if snapshot.memory is not None:
        data["memory"] = {
            "total_bytes": snapshot.memory.total_bytes,
            "used_bytes": snapshot.memory.used_bytes,
            "utilization": round(snapshot.memory.utilization, 2),
        }
    if snapshot.storage is not None:
        data["storage"] = {
            "total_bytes": snapshot.storage.total_bytes,
            "used_bytes": snapshot.storage.used_bytes,
            "utilization": round(snapshot.storage.utilization, 2),
            "volumes": [
                {
                    "description": v.description,
                    "total_bytes": v.total_bytes,
                    "used_bytes": v.used_bytes,
                    "utilization": round(v.utilization, 2),
                }
                for v in snapshot.storage.volumes
            ],
        }
    if snapshot.interfaces is not None:
        data["interfaces"] = [i.to_dict() for i in interfaces]
        data["congestion"] = congestion.to_dict()
    return data


class PollingScheduler:
    """
    Runs one polling loop per registered device.

    Args:
        collector: Metrics collector (owns the session registry)
        profiles: Profile manager used on register and re-classification
        store: Device store receiving status and metrics updates
        events: Event sink
        detector: Anomaly detector; None disables anomaly evaluation
        history_size: Performance entries kept per device
    """

    def __init__(
        self,
        collector: MetricsCollector,
        profiles: DeviceProfileManager,
        store: DeviceStore,
        events: EventSink,
        detector: Optional[AnomalyDetector] = None,
        history_size: int = 100,
    ):
        self.collector = collector
        self.profiles = profiles
        self.store = store
        self.events = events
        self.detector = detector
        self.history_size = history_size

        self._tasks: dict[str, asyncio.Task] = {}
        self._devices: dict[str, Device] = {}
        self._device_profiles: dict[str, DeviceProfile] = {}
        self._previous: dict[str, InterfaceSnapshot] = {}
        self._history: dict[str, deque[PerformanceEntry]] = {}

        self.successful_polls = 0
        self.failed_polls = 0
        self.started_at: Optional[float] = None

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, device: Device) -> DeviceProfile:
        """
        Start polling a device; the first tick runs immediately.

        Registering an address again replaces its task.
        """
        loop = asyncio.get_running_loop()
        address = device.address
        profile = self.profiles.classify(device)

        old_task = self._tasks.pop(address, None)
        if old_task is not None:
            old_task.cancel()

        self._devices[address] = device
        self._device_profiles[address] = profile
        self._history.setdefault(address, deque(maxlen=self.history_size))
        self._tasks[address] = loop.create_task(self._device_loop(address), name=f"poll-{address}")

        if self.started_at is None:
            self.started_at = time.monotonic()

        logger.info(
            f"Monitoring {address} ({device.display_name}): {profile.device_type.value}, "
            f"{profile.criticality.value}, every {profile.polling_interval:g}s"
        )
        return profile

    async def remove(self, address: str) -> bool:
        """Stop polling a device and release everything held for it."""
        task = self._tasks.pop(address, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        return self._forget(address)

    def _forget(self, address: str) -> bool:
        """Drop per-device state; the device's own task exits on its next check."""
        task = self._tasks.pop(address, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        self.collector.sessions.release(address)
        self._previous.pop(address, None)
        self._history.pop(address, None)
        self._device_profiles.pop(address, None)
        known = self._devices.pop(address, None) is not None

        if known:
            logger.info(f"Stopped monitoring {address}")
        return known

    async def start(self) -> int:
        """Register every active device from the store."""
        devices = self.store.list_active()
        for device in devices:
            self.register(device)
        logger.info(f"Polling scheduler started with {len(devices)} devices")
        return len(devices)

    async def stop(self) -> None:
        """Cancel every device task and close every session."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self.collector.sessions.close_all()
        logger.info(f"Polling scheduler stopped ({len(tasks)} device tasks cancelled)")

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def _device_loop(self, address: str) -> None:
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            await self.poll_once(address)

            profile = self._device_profiles.get(address)
            if profile is None:
                return
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, profile.polling_interval - elapsed))

    async def poll_once(self, address: str) -> Optional[MetricsSnapshot]:
        """
        Run one tick for a registered device.

        The stored record is re-read first: a device that was deleted or
        deactivated is dropped instead of polled. Only the fields the
        poller owns (status, last seen, response time, metrics and a type
        derived from sysDescr) are written back, onto a fresh copy of the
        record, so discovery and admin changes made meanwhile survive.

        Returns the snapshot, or None when the tick failed or the device is
        not registered. Never raises except for cancellation.
        """
        profile = self._device_profiles.get(address)
        if address not in self._devices or profile is None:
            return None

        try:
            device = self.store.find_by_address(address)
            if device is None or not device.active:
                logger.info(f"{address} is no longer active in the store")
                self._forget(address)
                return None
            self._devices[address] = device

            snapshot = await self.collector.collect(device, profile.metric_categories)

            rates: list[InterfaceRates] = []
            if snapshot.interfaces is not None:
                rates = compute_rates(snapshot.interfaces, self._previous.get(address))
                self._previous[address] = snapshot.interfaces
            congestion = compute_congestion(rates)

            history = self._history.setdefault(address, deque(maxlen=self.history_size))
            history.append(PerformanceEntry(
                timestamp=snapshot.collected_at,
                response_time_ms=snapshot.response_time_ms,
                cpu_utilization=snapshot.cpu.utilization if snapshot.cpu else None,
                memory_utilization=snapshot.memory.utilization if snapshot.memory else None,
                max_interface_utilization=congestion.max_utilization,
                congestion_level=congestion.level,
            ))

            anomalies = []
            if self.detector is not None:
                anomalies = self.detector.evaluate(profile, snapshot, rates, history)
                trend = analyze_trend(history)
                if trend.degrading:
                    logger.warning(
                        f"{address}: performance degrading "
                        f"(rt slope {trend.response_time_slope:.1f}, cpu slope {trend.cpu_slope:.1f})"
                    )

            device = self.store.find_by_address(address) or device
            profile = self._reprofile(device, snapshot) or profile

            device.status = DeviceStatus.ONLINE
            device.last_seen_at = now_utc()
            device.response_time_ms = round(snapshot.response_time_ms, 2)
            device.metrics = snapshot_to_dict(snapshot, rates, congestion)
            self.store.upsert(device)
            self._devices[address] = device
            self.successful_polls += 1

            self.events.emit(EventType.DEVICE_METRICS, {
                "device": device.to_dict(),
                "criticality": profile.criticality.value,
                "metrics": device.metrics,
            })
            for anomaly in anomalies:
                self.events.emit(EventType.ANOMALY_ALERT, {
                    "device_id": device.id,
                    "address": address,
                    "name": device.display_name,
                    "anomaly": anomaly.to_dict(),
                })
            return snapshot

        except Exception as e:
            self.failed_polls += 1
            logger.error(f"Poll of {address} failed: {type(e).__name__}: {e}")
            self._mark_offline(address, e)
            return None

    def _mark_offline(self, address: str, error: Exception) -> None:
        device = self._devices.get(address)
        if device is None:
            return
        try:
            device = self.store.find_by_address(address) or device
            device.status = DeviceStatus.OFFLINE
            self.store.upsert(device)
        except Exception as e:
            logger.error(f"Failed to store offline status for {address}: {e}")
        device.status = DeviceStatus.OFFLINE
        self._devices[address] = device

        self.events.emit(EventType.DEVICE_ERROR, {
            "device_id": device.id,
            "address": address,
            "name": device.display_name,
            "error": str(error),
            "error_type": type(error).__name__,
        })

    def _reprofile(self, device: Device, snapshot: MetricsSnapshot) -> Optional[DeviceProfile]:
        """Adopt a concrete type derived from sysDescr for unidentified devices."""
        if is_concrete(device.device_type):
            return None

        description = snapshot.system.description
        if not description or description == "Unknown":
            return None

        derived = derive_device_type(sys_descr=description)
        if not is_concrete(derived.device_type):
            return None

        old_profile = self._device_profiles.get(device.address)
        device.device_type = derived.device_type
        profile = self.profiles.classify(device)
        self._device_profiles[device.address] = profile

        logger.info(
            f"Re-classified {device.address} as {derived.device_type.value} ({derived.reason}); "
            f"interval {old_profile.polling_interval if old_profile else '-'}s -> {profile.polling_interval:g}s"
        )
        return profile

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def monitored(self) -> list[str]:
        return list(self._tasks)

    def profile_for(self, address: str) -> Optional[DeviceProfile]:
        return self._device_profiles.get(address)

    def history_for(self, address: str) -> list[PerformanceEntry]:
        return list(self._history.get(address, ()))

    def average_response_time(self) -> float:
        """Mean over devices of each device's last STATS_WINDOW response times."""
        averages = []
        for history in self._history.values():
            recent = list(history)[-STATS_WINDOW:]
            if recent:
                averages.append(sum(e.response_time_ms for e in recent) / len(recent))
        return sum(averages) / len(averages) if averages else 0.0

    def performance_score(self) -> float:
        """Poll success rate adjusted by response time, in [0, 100]."""
        total = self.successful_polls + self.failed_polls
        if total == 0:
            return 0.0

        score = self.successful_polls / total * 100
        avg_response = self.average_response_time()
        if avg_response < 100:
            score += 10
        elif avg_response < 200:
            score += 5
        elif avg_response > 500:
            score -= 10
        return min(100.0, max(0.0, score))

    def statistics(self) -> dict[str, Any]:
        by_tier: dict[str, int] = {}
        for profile in self._device_profiles.values():
            by_tier[profile.criticality.value] = by_tier.get(profile.criticality.value, 0) + 1

        return {
            "devices_monitored": len(self._tasks),
            "devices_by_criticality": by_tier,
            "successful_polls": self.successful_polls,
            "failed_polls": self.failed_polls,
            "average_response_time_ms": round(self.average_response_time(), 2),
            "performance_score": round(self.performance_score(), 1),
            "uptime_seconds": round(time.monotonic() - self.started_at, 1) if self.started_at else 0.0,
        }
