"""
Network monitor configuration.

Configuration is built once at the edge (environment or YAML file) and
handed to the core as a plain validated object; nothing below the service
layer reads the environment.

SNMP community overrides live in a separate credentials file
(/var/lib/network-monitor/credentials.yaml) so the main config can be
shared without secrets.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Optional

import netifaces
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ._types import DEFAULT_PROBE_METHODS, ProbeMethod, SnmpCredentials

logger = logging.getLogger(__name__)


DEFAULT_COMMON_PORTS = [
    22, 23, 53, 80, 135, 139, 443, 445, 993, 995, 1723, 3389, 5900, 8080, 8443,
]

DEFAULT_BLOCKED_NETWORKS = [
    "172.17.0.0/16",
    "172.18.0.0/16",
    "172.19.0.0/16",
    "127.0.0.0/8",
    "169.254.0.0/16",
    "0.0.0.0/32",
]

BRIDGE_INTERFACE_PREFIXES = ("docker", "br-", "veth")


def _netifaces_networks() -> list[tuple[str, ipaddress.IPv4Network]]:
    """List (interface, network) pairs from netifaces."""
    pairs = []
    for iface in netifaces.interfaces():
        try:
            addrs = netifaces.ifaddresses(iface).get(netifaces.AF_INET, [])
        except ValueError:
            # Interface went away between listing and lookup
            continue
        for addr in addrs:
            ip = addr.get("addr", "")
            netmask = addr.get("netmask", "")
            if not ip or not netmask:
                continue
            try:
                pairs.append((iface, ipaddress.IPv4Network(f"{ip}/{netmask}", strict=False)))
            except ValueError:
                continue
    return pairs


def _ip_command_networks() -> list[tuple[str, ipaddress.IPv4Network]]:
    """List (interface, network) pairs from `ip -4 -o addr show`."""
    try:
        result = subprocess.run(
            ["ip", "-4", "-o", "addr", "show"],
            capture_output=True, text=True, timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.debug(f"ip command unavailable: {e}")
        return []

    if result.returncode != 0:
        return []

    pairs = []
    for line in result.stdout.splitlines():
        parts = line.split()
        # Format: "2: eth0    inet 192.168.88.241/24 brd ..."
        iface = parts[1].rstrip(":") if len(parts) > 1 else ""
        for part in parts:
            if "/" in part:
                try:
                    pairs.append((iface, ipaddress.IPv4Network(part, strict=False)))
                    break
                except ValueError:
                    continue
    return pairs


def _interface_networks() -> list[tuple[str, ipaddress.IPv4Network]]:
    """IPv4 (interface, network) pairs, via netifaces or the ip command."""
    pairs = _netifaces_networks()
    if pairs:
        return pairs
    logger.debug("netifaces reported no IPv4 addresses, trying ip command")
    return _ip_command_networks()


def detect_local_subnets() -> list[str]:
    """Auto-detect scannable subnets from local network interfaces.

    Returns CIDR ranges for all non-loopback IPv4 interfaces that are not
    container bridges.
    """
    subnets = []
    for iface, network in _interface_networks():
        if iface == "lo" or network.is_loopback:
            continue
        if iface.startswith(BRIDGE_INTERFACE_PREFIXES):
            continue
        if str(network) not in subnets:
            subnets.append(str(network))

    if subnets:
        logger.info(f"Auto-detected network ranges: {subnets}")
    else:
        logger.warning("Could not auto-detect network ranges")
    return subnets


def detect_bridge_networks() -> list[str]:
    """Networks bound to container bridge interfaces (docker*, br-*, veth*)."""
    return [
        str(network)
        for iface, network in _interface_networks()
        if iface.startswith(BRIDGE_INTERFACE_PREFIXES)
    ]


class MonitorConfig(BaseModel):
    """Network monitor configuration."""

    # ========================================================================
    # Discovery
    # ========================================================================

    network_ranges: list[str] = Field(
        default_factory=list,
        description="CIDR ranges scanned when no explicit range is given"
    )
    probe_methods: list[str] = Field(
        default_factory=lambda: [m.value for m in DEFAULT_PROBE_METHODS],
        description="Probe methods used by default"
    )
    common_ports: list[int] = Field(
        default_factory=lambda: list(DEFAULT_COMMON_PORTS),
        description="TCP ports tried by the port probe"
    )
    batch_size: int = Field(
        default=10,
        ge=1,
        le=256,
        description="Hosts probed concurrently per batch"
    )
    progress_every: int = Field(
        default=5,
        ge=1,
        description="Emit scan progress every N hosts"
    )
    max_hosts: int = Field(
        default=4096,
        ge=1,
        description="Upper bound on hosts probed by one scan"
    )

    # ========================================================================
    # Probe timeouts (seconds)
    # ========================================================================

    ping_timeout: float = Field(default=2.0, gt=0, description="ICMP echo timeout")
    dns_timeout: float = Field(default=2.0, gt=0, description="Reverse lookup timeout")
    arp_timeout: float = Field(default=2.0, gt=0, description="ARP table lookup timeout")
    port_timeout: float = Field(default=1.0, gt=0, description="Per-port TCP connect timeout")
    snmp_probe_timeout: float = Field(default=3.0, gt=0, description="SNMP discovery query timeout")
    netbios_timeout: float = Field(default=3.0, gt=0, description="NetBIOS lookup timeout")

    # ========================================================================
    # SNMP
    # ========================================================================

    snmp_community: str = Field(default="public", description="Default community string")
    snmp_port: int = Field(default=161, ge=1, le=65535, description="Default SNMP port")
    snmp_version: str = Field(default="2c", description="SNMP version: 1 or 2c")
    snmp_timeout: float = Field(default=5.0, gt=0, description="Per-attempt SNMP timeout")
    snmp_retries: int = Field(default=1, ge=0, le=5, description="Retries after a timeout")
    snmp_walk_timeout: float = Field(default=60.0, gt=0, description="Deadline for one table walk")
    device_credentials: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Per-address SNMP overrides (community, port, version)"
    )

    # ========================================================================
    # Polling
    # ========================================================================

    critical_interval: float = Field(default=30.0, gt=0, description="Critical tier interval (s)")
    important_interval: float = Field(default=60.0, gt=0, description="Important tier interval (s)")
    standard_interval: float = Field(default=120.0, gt=0, description="Standard tier interval (s)")
    history_size: int = Field(default=100, ge=10, description="Performance entries kept per device")
    stats_interval: float = Field(default=60.0, gt=0, description="Statistics log interval (s)")

    # ========================================================================
    # Anomaly detection
    # ========================================================================

    anomaly_window: int = Field(default=20, ge=3, description="Entries in the statistical window")
    anomaly_deviation: float = Field(default=2.0, gt=0, description="Standard deviations for an outlier")

    # ========================================================================
    # Address policy
    # ========================================================================

    blocked_networks: list[str] = Field(
        default_factory=lambda: list(DEFAULT_BLOCKED_NETWORKS),
        description="Networks never scanned"
    )
    block_bridge_networks: bool = Field(
        default=True,
        description="Also block networks bound to container bridge interfaces"
    )

    # ========================================================================
    # Paths and sinks
    # ========================================================================

    db_path: Optional[Path] = Field(
        default=None,
        description="SQLite device database (in-memory store when unset)"
    )
    credentials_path: Path = Field(
        default=Path("/var/lib/network-monitor/credentials.yaml"),
        description="Separate SNMP credentials file"
    )
    webhook_url: Optional[str] = Field(
        default=None,
        description="POST events to this URL"
    )

    log_level: str = Field(default="INFO", description="Log level")

    # ========================================================================
    # Validators
    # ========================================================================

    @field_validator('probe_methods')
    @classmethod
    def validate_probe_methods(cls, v):
        valid = {m.value for m in ProbeMethod}
        unknown = [m for m in v if m not in valid]
        if unknown:
            raise ValueError(f"unknown probe methods: {unknown}")
        if not v:
            raise ValueError("at least one probe method is required")
        return v

    @field_validator('network_ranges', 'blocked_networks')
    @classmethod
    def validate_networks(cls, v):
        for value in v:
            try:
                ipaddress.IPv4Network(value, strict=False)
            except ValueError as e:
                raise ValueError(f"invalid network {value!r}: {e}") from e
        return v

    @field_validator('snmp_version', mode='before')
    @classmethod
    def validate_snmp_version(cls, v):
        v = str(v)
        if v not in ('1', '2c'):
            raise ValueError('snmp_version must be 1 or 2c')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in ['DEBUG', 'INFO', 'WARNING', 'ERROR']:
            raise ValueError('log_level must be DEBUG, INFO, WARNING, or ERROR')
        return v

    @model_validator(mode='after')
    def validate_interval_order(self):
        """More critical tiers must poll strictly more often."""
        if not (self.critical_interval < self.important_interval < self.standard_interval):
            raise ValueError(
                'intervals must satisfy critical < important < standard'
            )
        return self

    model_config = ConfigDict(
        validate_assignment=True,
        extra='forbid'
    )

    # ========================================================================
    # Derived values
    # ========================================================================

    @property
    def methods(self) -> tuple[ProbeMethod, ...]:
        return tuple(ProbeMethod(m) for m in self.probe_methods)

    @property
    def tier_intervals(self) -> dict[str, float]:
        return {
            "critical": self.critical_interval,
            "important": self.important_interval,
            "standard": self.standard_interval,
        }

    @property
    def default_credentials(self) -> SnmpCredentials:
        return SnmpCredentials(
            community=self.snmp_community,
            port=self.snmp_port,
            version=self.snmp_version,
        )

    def credentials_for(self, address: str) -> SnmpCredentials:
        """Default SNMP credentials with any per-address override applied."""
        override = self.device_credentials.get(address, {})
        return SnmpCredentials(
            community=override.get("community", self.snmp_community),
            port=int(override.get("port", self.snmp_port)),
            version=str(override.get("version", self.snmp_version)),
        )

    def validation_errors(self) -> list[str]:
        """Runtime problems that do not make the config invalid outright."""
        errors = []

        if not self.network_ranges:
            errors.append("No network ranges configured")

        if self.snmp_community == "public":
            errors.append("SNMP community is the default 'public'")

        return errors

    # ========================================================================
    # Loaders
    # ========================================================================

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Load configuration from environment variables."""
        data: dict[str, Any] = {}

        # Network ranges (comma-separated, or "auto" for auto-detection)
        ranges = os.getenv("NETWORK_RANGES", "")
        if ranges.strip().lower() == "auto":
            data["network_ranges"] = detect_local_subnets()
        elif ranges:
            data["network_ranges"] = [r.strip() for r in ranges.split(",") if r.strip()]

        if methods := os.getenv("PROBE_METHODS"):
            data["probe_methods"] = [m.strip() for m in methods.split(",") if m.strip()]
        if batch := os.getenv("SCAN_BATCH_SIZE"):
            data["batch_size"] = int(batch)
        if max_hosts := os.getenv("SCAN_MAX_HOSTS"):
            data["max_hosts"] = int(max_hosts)

        # SNMP
        data["snmp_community"] = os.getenv("SNMP_COMMUNITY", "public")
        data["snmp_port"] = int(os.getenv("SNMP_PORT", "161"))
        data["snmp_version"] = os.getenv("SNMP_VERSION", "2c")
        data["snmp_timeout"] = float(os.getenv("SNMP_TIMEOUT", "5"))
        data["snmp_retries"] = int(os.getenv("SNMP_RETRIES", "1"))
        data["snmp_walk_timeout"] = float(os.getenv("SNMP_WALK_TIMEOUT", "60"))

        # Polling
        data["critical_interval"] = float(os.getenv("CRITICAL_INTERVAL", "30"))
        data["important_interval"] = float(os.getenv("IMPORTANT_INTERVAL", "60"))
        data["standard_interval"] = float(os.getenv("STANDARD_INTERVAL", "120"))

        # Paths
        if db_path := os.getenv("DB_PATH"):
            data["db_path"] = Path(db_path)
        if creds_path := os.getenv("CREDENTIALS_PATH"):
            data["credentials_path"] = Path(creds_path)

        data["webhook_url"] = os.getenv("WEBHOOK_URL") or None
        data["log_level"] = os.getenv("LOG_LEVEL", "INFO")

        return cls(**data)

    @classmethod
    def from_yaml(cls, path: Path) -> "MonitorConfig":
        """Load configuration from a sectioned YAML file."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path) as f:
            raw = yaml.safe_load(f) or {}

        data: dict[str, Any] = {}

        ranges = raw.get("network_ranges")
        if ranges == "auto":
            data["network_ranges"] = detect_local_subnets()
        elif ranges:
            data["network_ranges"] = list(ranges)

        if "discovery" in raw:
            d = raw["discovery"] or {}
            for key in ("batch_size", "progress_every", "max_hosts", "common_ports"):
                if key in d:
                    data[key] = d[key]
            if "methods" in d:
                data["probe_methods"] = d["methods"]
            for method, timeout in (d.get("timeouts") or {}).items():
                field_name = "snmp_probe_timeout" if method == "snmp" else f"{method}_timeout"
                data[field_name] = timeout

        if "snmp" in raw:
            s = raw["snmp"] or {}
            for key in ("community", "port", "version", "timeout", "retries", "walk_timeout"):
                if key in s:
                    data[f"snmp_{key}"] = s[key]

        if "polling" in raw:
            p = raw["polling"] or {}
            for tier in ("critical", "important", "standard"):
                if tier in p:
                    data[f"{tier}_interval"] = p[tier]
            for key in ("history_size", "stats_interval"):
                if key in p:
                    data[key] = p[key]

        if "anomaly" in raw:
            a = raw["anomaly"] or {}
            if "window" in a:
                data["anomaly_window"] = a["window"]
            if "deviation" in a:
                data["anomaly_deviation"] = a["deviation"]

        if "policy" in raw:
            p = raw["policy"] or {}
            if "blocked_networks" in p:
                data["blocked_networks"] = p["blocked_networks"]
            if "block_bridge_networks" in p:
                data["block_bridge_networks"] = p["block_bridge_networks"]

        if "paths" in raw:
            p = raw["paths"] or {}
            if "db" in p:
                data["db_path"] = Path(p["db"])
            if "credentials" in p:
                data["credentials_path"] = Path(p["credentials"])

        if "events" in raw:
            data["webhook_url"] = (raw["events"] or {}).get("webhook_url")

        data["log_level"] = raw.get("log_level", "INFO")

        return cls(**data)

    def load_credentials(self) -> bool:
        """
        Load SNMP credentials from the separate credentials file.

        Returns False when the file is missing or unreadable; the defaults
        stay in place.
        """
        if not self.credentials_path.exists():
            logger.warning(f"Credentials file not found: {self.credentials_path}")
            return False

        try:
            with open(self.credentials_path) as f:
                creds = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load credentials: {e}")
            return False

        if "snmp" in creds:
            self.snmp_community = creds["snmp"].get("community", self.snmp_community)

        if "devices" in creds:
            self.device_credentials = {
                str(address): dict(values or {})
                for address, values in creds["devices"].items()
            }

        logger.info("SNMP credentials loaded successfully")
        return True


# Example credentials.yaml:
"""
# /var/lib/network-monitor/credentials.yaml

snmp:
  community: "n0t-public"

devices:
  "192.168.1.1":
    community: "core-ro"
  "192.168.1.20":
    community: "legacy"
    version: "1"
"""

# Example monitor.yaml:
"""
network_ranges:
  - "192.168.1.0/24"

discovery:
  methods: [ping, dns, arp, snmp]
  batch_size: 10
  progress_every: 5
  max_hosts: 4096
  timeouts:
    ping: 2
    port: 1
    snmp: 3

snmp:
  port: 161
  version: "2c"
  timeout: 5
  retries: 1

polling:
  critical: 30
  important: 60
  standard: 120
  history_size: 100

anomaly:
  window: 20
  deviation: 2.0

policy:
  blocked_networks:
    - "172.17.0.0/16"
    - "127.0.0.0/8"

paths:
  db: "/var/lib/network-monitor/devices.db"
  credentials: "/var/lib/network-monitor/credentials.yaml"

events:
  webhook_url: "http://127.0.0.1:8080/events"

log_level: "INFO"
"""
