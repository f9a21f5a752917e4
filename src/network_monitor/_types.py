"""
Type definitions for the network monitor.

These dataclasses define the core domain model for discovery, SNMP polling,
rate computation and anomaly tracking.
"""

from __future__ import annotations

import ipaddress
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Optional


def now_utc() -> datetime:
    """Get current UTC timestamp (replaces deprecated datetime.utcnow())."""
    return datetime.now(timezone.utc)


class DeviceStatus(str, Enum):
    """Reachability status of a device."""
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


class DeviceType(str, Enum):
    """Declared or derived device type."""
    ROUTER = "router"
    CORE_SWITCH = "core-switch"
    FIREWALL = "firewall"
    SWITCH = "switch"
    SERVER = "server"
    ACCESS_POINT = "access-point"
    WORKSTATION = "workstation"
    PRINTER = "printer"
    HOST = "host"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "DeviceType":
        """
        Map a free-form declared type onto a DeviceType.

        Unrecognized values become UNKNOWN.
        """
        if isinstance(value, cls):
            return value
        if not value:
            return cls.UNKNOWN

        key = str(value).strip().lower().replace("_", "-").replace(" ", "-")
        try:
            return cls(key)
        except ValueError:
            return _DEVICE_TYPE_ALIASES.get(key, cls.UNKNOWN)


# Declared types seen in the wild (discovery heuristics, vendor tags)
_DEVICE_TYPE_ALIASES = {
    "core-router": DeviceType.ROUTER,
    "gateway": DeviceType.ROUTER,
    "cisco-device": DeviceType.ROUTER,
    "juniper-device": DeviceType.ROUTER,
    "l3-switch": DeviceType.CORE_SWITCH,
    "distribution-switch": DeviceType.CORE_SWITCH,
    "fw": DeviceType.FIREWALL,
    "access-switch": DeviceType.SWITCH,
    "hp-device": DeviceType.SWITCH,
    "linux-server": DeviceType.SERVER,
    "windows-server": DeviceType.SERVER,
    "web-server": DeviceType.SERVER,
    "dns-server": DeviceType.SERVER,
    "ap": DeviceType.ACCESS_POINT,
    "wap": DeviceType.ACCESS_POINT,
    "wireless-ap": DeviceType.ACCESS_POINT,
    "windows-workstation": DeviceType.WORKSTATION,
    "desktop": DeviceType.WORKSTATION,
    "laptop": DeviceType.WORKSTATION,
    "linux-device": DeviceType.HOST,
    "network-device": DeviceType.HOST,
}


class Criticality(str, Enum):
    """Monitoring tier driving polling frequency and alert strictness."""
    CRITICAL = "critical"
    IMPORTANT = "important"
    STANDARD = "standard"


class MetricCategory(str, Enum):
    """Optional metric groups collected on top of the base system query."""
    CPU = "cpu"
    MEMORY = "memory"
    INTERFACES = "interfaces"
    STORAGE = "storage"


class ProbeMethod(str, Enum):
    """Techniques used to test host liveness."""
    PING = "ping"
    DNS = "dns"
    ARP = "arp"
    PORT = "port"
    SNMP = "snmp"
    NETBIOS = "netbios"


DEFAULT_PROBE_METHODS = (ProbeMethod.PING, ProbeMethod.DNS, ProbeMethod.ARP, ProbeMethod.SNMP)


class ScanState(str, Enum):
    """Discovery scanner lifecycle."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class Severity(str, Enum):
    """Anomaly severity."""
    WARNING = "warning"
    CRITICAL = "critical"


class CongestionLevel(str, Enum):
    """Qualitative congestion label derived from peak utilization."""
    NONE = "none"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class EventType(str, Enum):
    """Events pushed to the observer sink."""
    SCAN_STARTED = "scanStarted"
    SCAN_PROGRESS = "scanProgress"
    SCAN_COMPLETED = "scanCompleted"
    DEVICE_DISCOVERED = "deviceDiscovered"
    DEVICE_UPDATED = "deviceUpdated"
    DEVICE_METRICS = "deviceMetrics"
    ANOMALY_ALERT = "anomalyAlert"
    DEVICE_ERROR = "deviceError"


# =============================================================================
# Devices
# =============================================================================


@dataclass
class SnmpCredentials:
    """Per-device SNMP access parameters."""
    community: str = "public"
    port: int = 161
    version: str = "2c"  # "1" or "2c"


@dataclass
class Device:
    """
    A monitored network device.

    Identity is the address; the core never deletes devices, it only
    updates status and metrics.
    """
    address: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: Optional[str] = None
    hostname: Optional[str] = None
    device_type: DeviceType = DeviceType.UNKNOWN
    credentials: SnmpCredentials = field(default_factory=SnmpCredentials)

    # Status
    status: DeviceStatus = DeviceStatus.UNKNOWN
    active: bool = True
    response_time_ms: Optional[float] = None
    last_seen_at: Optional[datetime] = None
    first_seen_at: datetime = field(default_factory=now_utc)

    # Discovery metadata
    mac_address: Optional[str] = None
    description: str = ""
    discovered_by: str = "manual"
    open_ports: list[int] = field(default_factory=list)
    services: list[str] = field(default_factory=list)

    # Last collected metrics (plain dict, as handed to the store)
    metrics: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.device_type, DeviceType):
            self.device_type = DeviceType.parse(self.device_type)
        if not self.name:
            self.name = self.hostname or placeholder_name(self.address)

    @property
    def is_placeholder_name(self) -> bool:
        """True while the device still carries the generated host-<address> name."""
        return self.name == placeholder_name(self.address)

    @property
    def display_name(self) -> str:
        return self.name or self.address

    def to_dict(self) -> dict[str, Any]:
        """Event payload view; credentials are left out."""
        return {
            "id": self.id,
            "address": self.address,
            "name": self.name,
            "hostname": self.hostname,
            "device_type": self.device_type.value,
            "status": self.status.value,
            "response_time_ms": self.response_time_ms,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
            "mac_address": self.mac_address,
            "description": self.description,
            "discovered_by": self.discovered_by,
            "open_ports": list(self.open_ports),
            "services": list(self.services),
        }


def placeholder_name(address: str) -> str:
    """Name given to devices discovered without a resolvable hostname."""
    return f"host-{address}"


# =============================================================================
# Discovery
# =============================================================================


@dataclass(frozen=True)
class AddressRange:
    """An IPv4 network prefix defining the candidate hosts of a scan."""
    network: ipaddress.IPv4Network

    @classmethod
    def parse(cls, value: str) -> "AddressRange":
        """Parse CIDR notation; a bare address is treated as a /32."""
        return cls(ipaddress.IPv4Network(value.strip(), strict=False))

    @property
    def base_address(self) -> str:
        return str(self.network.network_address)

    @property
    def prefix_length(self) -> int:
        return self.network.prefixlen

    def hosts(self, limit: Optional[int] = None) -> Iterator[str]:
        """Yield usable host addresses, at most `limit` of them."""
        if self.network.prefixlen >= 31:
            candidates = (str(a) for a in self.network)
        else:
            candidates = (str(a) for a in self.network.hosts())

        for count, address in enumerate(candidates):
            if limit is not None and count >= limit:
                return
            yield address

    def host_count(self, limit: Optional[int] = None) -> int:
        if self.network.prefixlen >= 31:
            total = self.network.num_addresses
        else:
            total = self.network.num_addresses - 2
        return total if limit is None else min(total, limit)

    def __str__(self) -> str:
        return str(self.network)


@dataclass
class ProbeResult:
    """Outcome of probing a single address."""
    address: str
    alive: bool = False
    methods: list[str] = field(default_factory=list)
    response_time_ms: float = 0.0
    hostname: Optional[str] = None
    open_ports: list[int] = field(default_factory=list)
    services: list[str] = field(default_factory=list)
    mac_address: Optional[str] = None
    description: str = ""
    device_type: DeviceType = DeviceType.UNKNOWN


@dataclass
class ScanJob:
    """Ephemeral state of the one scan that may run at a time."""
    target: AddressRange
    methods: tuple[ProbeMethod, ...]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: ScanState = ScanState.RUNNING
    total: int = 0
    scanned: int = 0
    found: int = 0
    updated: int = 0
    aborted: bool = False
    started_at: datetime = field(default_factory=now_utc)
    error: Optional[str] = None

    @property
    def progress(self) -> int:
        """Completion percentage."""
        if not self.total:
            return 0
        return round(self.scanned / self.total * 100)


@dataclass
class ScanSummary:
    """Summary emitted when a scan ends, however it ends."""
    scan_id: str
    network_range: str
    state: ScanState
    scanned: int
    total: int
    found: int
    updated: int
    duration: float  # seconds
    methods: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=now_utc)
    completed_at: datetime = field(default_factory=now_utc)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "network_range": self.network_range,
            "state": self.state.value,
            "scanned": self.scanned,
            "total": self.total,
            "found": self.found,
            "updated": self.updated,
            "duration": round(self.duration, 3),
            "methods": list(self.methods),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "error": self.error,
        }


# =============================================================================
# Metrics
# =============================================================================


@dataclass
class InterfaceCounters:
    """Raw per-interface counters from the interface table."""
    index: int
    description: str = ""
    if_type: int = 0
    mtu: int = 0
    speed: int = 0  # bits per second
    mac_address: Optional[str] = None
    oper_status: str = "unknown"
    in_octets: int = 0
    out_octets: int = 0
    in_errors: int = 0
    out_errors: int = 0


@dataclass
class InterfaceSnapshot:
    """One point-in-time capture of a device's interface table."""
    timestamp: float  # seconds since the epoch
    interfaces: list[InterfaceCounters] = field(default_factory=list)


@dataclass
class InterfaceRates:
    """Interface counters augmented with derived rates."""
    counters: InterfaceCounters
    in_rate: float = 0.0     # bytes/s
    out_rate: float = 0.0    # bytes/s
    total_rate: float = 0.0  # bytes/s
    utilization: float = 0.0  # percent of declared speed
    error_rate: float = 0.0  # errors/s

    @property
    def index(self) -> int:
        return self.counters.index

    def to_dict(self) -> dict[str, Any]:
        c = self.counters
        return {
            "index": c.index,
            "description": c.description,
            "speed": c.speed,
            "mtu": c.mtu,
            "oper_status": c.oper_status,
            "in_octets": c.in_octets,
            "out_octets": c.out_octets,
            "in_errors": c.in_errors,
            "out_errors": c.out_errors,
            "in_rate": self.in_rate,
            "out_rate": self.out_rate,
            "total_rate": self.total_rate,
            "utilization": self.utilization,
            "error_rate": self.error_rate,
        }


@dataclass
class CongestionSummary:
    """Per-device aggregate of interface utilization."""
    avg_utilization: float = 0.0
    max_utilization: float = 0.0
    total_traffic_rate: float = 0.0
    level: CongestionLevel = CongestionLevel.NONE
    error_rate: float = 0.0
    active_interfaces: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "avg_utilization": self.avg_utilization,
            "max_utilization": self.max_utilization,
            "total_traffic_rate": self.total_traffic_rate,
            "level": self.level.value,
            "error_rate": self.error_rate,
            "active_interfaces": self.active_interfaces,
        }


@dataclass
class SystemInfo:
    description: str = "Unknown"
    object_id: Optional[str] = None
    uptime_seconds: float = 0.0
    name: str = "Unknown"
    contact: str = ""
    location: str = ""


@dataclass
class CpuMetrics:
    utilization: float = 0.0
    cores: int = 0
    loads: list[int] = field(default_factory=list)


@dataclass
class MemoryMetrics:
    total_bytes: int = 0
    used_bytes: int = 0
    utilization: float = 0.0


@dataclass
class StorageVolume:
    index: int
    description: str
    total_bytes: int
    used_bytes: int

    @property
    def utilization(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return min(100.0, self.used_bytes / self.total_bytes * 100)


@dataclass
class StorageMetrics:
    volumes: list[StorageVolume] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(v.total_bytes for v in self.volumes)

    @property
    def used_bytes(self) -> int:
        return sum(v.used_bytes for v in self.volumes)

    @property
    def utilization(self) -> float:
        total = self.total_bytes
        if total <= 0:
            return 0.0
        return min(100.0, self.used_bytes / total * 100)


@dataclass
class MetricsSnapshot:
    """Structured result of one collection run against a device."""
    system: SystemInfo
    cpu: Optional[CpuMetrics] = None
    memory: Optional[MemoryMetrics] = None
    storage: Optional[StorageMetrics] = None
    interfaces: Optional[InterfaceSnapshot] = None
    errors: dict[str, str] = field(default_factory=dict)
    response_time_ms: float = 0.0
    collected_at: datetime = field(default_factory=now_utc)


# =============================================================================
# Profiles and anomalies
# =============================================================================


@dataclass(frozen=True)
class ThresholdPair:
    warning: float
    critical: float


@dataclass(frozen=True)
class AlertThresholds:
    response_time_ms: ThresholdPair
    cpu_utilization: ThresholdPair
    memory_utilization: ThresholdPair
    interface_utilization: ThresholdPair = ThresholdPair(80, 95)
    error_rate: ThresholdPair = ThresholdPair(1, 5)


@dataclass(frozen=True)
class DeviceProfile:
    """
    Derived monitoring configuration for a device.

    Owned by the profile manager and the scheduler; never persisted.
    """
    device_type: DeviceType
    criticality: Criticality
    polling_interval: float  # seconds
    metric_categories: tuple[MetricCategory, ...]
    thresholds: AlertThresholds

    @property
    def polling_interval_ms(self) -> int:
        return int(self.polling_interval * 1000)


@dataclass
class PerformanceEntry:
    """One bounded-history record used for trend and anomaly analysis."""
    timestamp: datetime
    response_time_ms: float
    cpu_utilization: Optional[float] = None
    memory_utilization: Optional[float] = None
    max_interface_utilization: float = 0.0
    congestion_level: CongestionLevel = CongestionLevel.NONE


@dataclass
class AnomalyEvent:
    """A threshold crossing or statistical outlier handed to the alert sink."""
    metric: str
    value: float
    threshold: float
    severity: Severity
    message: str
    kind: str = "threshold"  # threshold, statistical, trend

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "value": self.value,
            "threshold": self.threshold,
            "severity": self.severity.value,
            "message": self.message,
            "kind": self.kind,
        }
