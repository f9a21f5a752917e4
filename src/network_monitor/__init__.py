"""
Network Monitor - Device discovery and SNMP polling.

Scans address ranges for live hosts, keeps one SNMP session per monitored
device, derives interface rates and utilization from successive counter
snapshots, and raises anomaly events against per-device profiles.

Architecture:
    DiscoveryScanner  - finds hosts and records them in the device store
    PollingScheduler  - one polling task per device, cadence from its profile
    MetricsCollector  - SNMP system/cpu/memory/storage/interface queries
"""

__version__ = "1.0.0"

from ._types import (
    AddressRange,
    AnomalyEvent,
    Criticality,
    Device,
    DeviceProfile,
    DeviceStatus,
    DeviceType,
    EventType,
    MetricCategory,
    ProbeMethod,
    ScanState,
    ScanSummary,
    SnmpCredentials,
)
from .exceptions import (
    NetworkMonitorError,
    ProtocolError,
    ScanAlreadyRunning,
    ScanRangeRejected,
    ScanRefused,
)

__all__ = [
    "__version__",
    "AddressRange",
    "AnomalyEvent",
    "Criticality",
    "Device",
    "DeviceProfile",
    "DeviceStatus",
    "DeviceType",
    "EventType",
    "MetricCategory",
    "ProbeMethod",
    "ScanState",
    "ScanSummary",
    "SnmpCredentials",
    "NetworkMonitorError",
    "ProtocolError",
    "ScanAlreadyRunning",
    "ScanRangeRejected",
    "ScanRefused",
]
