"""
Device monitoring profiles.

A profile decides how often a device is polled, which metric categories
are collected and which thresholds raise alerts. classify() is the single
place this mapping lives; it is pure, so equal inputs give equal profiles.
"""

import logging
from typing import Optional

from ._types import (
    AlertThresholds,
    Criticality,
    Device,
    DeviceProfile,
    DeviceType,
    MetricCategory,
    ThresholdPair,
)

logger = logging.getLogger(__name__)


TIER_BY_TYPE = {
    DeviceType.ROUTER: Criticality.CRITICAL,
    DeviceType.CORE_SWITCH: Criticality.CRITICAL,
    DeviceType.FIREWALL: Criticality.CRITICAL,
    DeviceType.SWITCH: Criticality.IMPORTANT,
    DeviceType.SERVER: Criticality.IMPORTANT,
}

DEFAULT_INTERVALS = {
    Criticality.CRITICAL: 30.0,
    Criticality.IMPORTANT: 60.0,
    Criticality.STANDARD: 120.0,
}

_NETWORK_CORE = (MetricCategory.CPU, MetricCategory.MEMORY, MetricCategory.INTERFACES)
_NETWORK_EDGE = (MetricCategory.INTERFACES, MetricCategory.CPU, MetricCategory.MEMORY)

CATEGORIES_BY_TYPE = {
    DeviceType.ROUTER: _NETWORK_CORE,
    DeviceType.CORE_SWITCH: _NETWORK_CORE,
    DeviceType.FIREWALL: _NETWORK_CORE,
    DeviceType.SWITCH: _NETWORK_EDGE,
    DeviceType.ACCESS_POINT: _NETWORK_EDGE,
    DeviceType.SERVER: (
        MetricCategory.CPU,
        MetricCategory.MEMORY,
        MetricCategory.STORAGE,
        MetricCategory.INTERFACES,
    ),
}

THRESHOLDS_BY_TIER = {
    Criticality.CRITICAL: AlertThresholds(
        response_time_ms=ThresholdPair(100, 250),
        cpu_utilization=ThresholdPair(70, 90),
        memory_utilization=ThresholdPair(80, 90),
    ),
    Criticality.IMPORTANT: AlertThresholds(
        response_time_ms=ThresholdPair(150, 400),
        cpu_utilization=ThresholdPair(75, 92),
        memory_utilization=ThresholdPair(82, 92),
    ),
    Criticality.STANDARD: AlertThresholds(
        response_time_ms=ThresholdPair(200, 500),
        cpu_utilization=ThresholdPair(80, 95),
        memory_utilization=ThresholdPair(85, 95),
    ),
}

# Last octets conventionally assigned to the default gateway
GATEWAY_OCTETS = {"1", "254"}


def is_gateway_address(address: str) -> bool:
    return address.rsplit(".", 1)[-1] in GATEWAY_OCTETS


class DeviceProfileManager:
    """Maps devices to monitoring profiles."""

    def __init__(self, intervals: Optional[dict] = None):
        """
        Args:
            intervals: Polling interval per tier in seconds; keys may be
                Criticality members or their string values. Must satisfy
                critical < important < standard.
        """
        self.intervals = dict(DEFAULT_INTERVALS)
        for tier, seconds in (intervals or {}).items():
            self.intervals[Criticality(tier)] = float(seconds)

        critical = self.intervals[Criticality.CRITICAL]
        important = self.intervals[Criticality.IMPORTANT]
        standard = self.intervals[Criticality.STANDARD]
        if min(critical, important, standard) <= 0:
            raise ValueError("polling intervals must be positive")
        if not (critical < important < standard):
            raise ValueError(
                f"polling intervals must satisfy critical < important < standard, "
                f"got {critical}/{important}/{standard}"
            )

    def effective_type(self, device: Device) -> DeviceType:
        """Declared type, with unidentified gateway addresses promoted to routers."""
        device_type = DeviceType.parse(device.device_type)
        if device_type in (DeviceType.UNKNOWN, DeviceType.HOST) and is_gateway_address(device.address):
            return DeviceType.ROUTER
        return device_type

    def classify(self, device: Device) -> DeviceProfile:
        device_type = self.effective_type(device)
        tier = TIER_BY_TYPE.get(device_type, Criticality.STANDARD)

        return DeviceProfile(
            device_type=device_type,
            criticality=tier,
            polling_interval=self.intervals[tier],
            metric_categories=CATEGORIES_BY_TYPE.get(device_type, ()),
            thresholds=THRESHOLDS_BY_TIER[tier],
        )
