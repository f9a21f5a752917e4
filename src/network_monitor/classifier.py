"""
Device type derivation from discovery signals.

The SNMP system description is the strongest signal, then open ports,
then hostname patterns. The result feeds DeviceProfileManager, which owns
the mapping from type to monitoring tier.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ._types import DeviceType

logger = logging.getLogger(__name__)


@dataclass
class ClassificationResult:
    """Result of device classification."""
    device_type: DeviceType
    confidence: float  # 0.0 to 1.0
    reason: str


# Vendor / product keywords in sysDescr, checked in order
SYS_DESCR_PATTERNS: list[tuple[tuple[str, ...], DeviceType]] = [
    (("fortigate", "pan-os", "palo alto", "adaptive security appliance", "sonicwall", "pfsense", "firewall"),
     DeviceType.FIREWALL),
    (("nexus", "catalyst 6", "catalyst 9", "core switch", "layer 3 switch"), DeviceType.CORE_SWITCH),
    (("access point", "airos", "unifi ap", "aironet", "wireless"), DeviceType.ACCESS_POINT),
    (("jetdirect", "laserjet", "printer", "print server"), DeviceType.PRINTER),
    (("catalyst", "procurve", "aruba", "switch"), DeviceType.SWITCH),
    (("cisco ios", "junos", "juniper", "routeros", "mikrotik", "edgeos", "router"), DeviceType.ROUTER),
    (("windows server", "windows 2008", "windows 2012", "windows 2016", "windows 2019", "windows 2022"),
     DeviceType.SERVER),
    (("windows",), DeviceType.WORKSTATION),
    (("linux", "freebsd", "sunos"), DeviceType.SERVER),
    (("cisco",), DeviceType.ROUTER),
    (("hp ", "hewlett"), DeviceType.SWITCH),
]

PRINTER_PORTS = {9100, 515, 631}

NETWORK_HOSTNAME_HINTS = {
    DeviceType.FIREWALL: ["fw", "firewall", "asa", "fortigate"],
    DeviceType.ROUTER: ["router", "rtr", "gw", "gateway"],
    DeviceType.CORE_SWITCH: ["core"],
    DeviceType.SWITCH: ["switch", "sw-"],
    DeviceType.ACCESS_POINT: ["ap-", "wap", "unifi", "meraki"],
}

PRINTER_HOSTNAME_HINTS = ["print", "prn", "mfp", "copier", "xerox", "canon", "epson", "brother", "ricoh"]
SERVER_HOSTNAME_HINTS = ["srv", "server", "db", "web", "mail", "sql", "nas", "file"]
WORKSTATION_HOSTNAME_HINTS = ["pc", "desktop", "laptop", "ws-", "client"]


def is_concrete(device_type: DeviceType) -> bool:
    """True for types that identify what a device is, not just that it exists."""
    return device_type not in (DeviceType.UNKNOWN, DeviceType.HOST)


def derive_device_type(
    sys_descr: Optional[str] = None,
    open_ports: Optional[list[int]] = None,
    hostname: Optional[str] = None,
) -> ClassificationResult:
    """
    Derive a device type from discovery signals.

    Args:
        sys_descr: SNMP sysDescr, if the device answered SNMP
        open_ports: Open TCP ports from the port probe
        hostname: Resolved hostname

    Returns:
        ClassificationResult; UNKNOWN when nothing matched
    """
    result = _detect_from_sys_descr((sys_descr or "").lower())
    if result:
        return result

    result = _detect_from_ports(set(open_ports or []))
    if result:
        return result

    result = _detect_from_hostname((hostname or "").lower())
    if result:
        return result

    return ClassificationResult(
        device_type=DeviceType.UNKNOWN,
        confidence=0.3,
        reason="No clear classification signals",
    )


def _detect_from_sys_descr(descr_lower: str) -> Optional[ClassificationResult]:
    if not descr_lower:
        return None

    for keywords, device_type in SYS_DESCR_PATTERNS:
        for keyword in keywords:
            if keyword in descr_lower:
                return ClassificationResult(
                    device_type=device_type,
                    confidence=0.90,
                    reason=f"sysDescr contains '{keyword.strip()}'",
                )
    return None


def _detect_from_ports(port_set: set[int]) -> Optional[ClassificationResult]:
    if not port_set:
        return None

    if port_set & PRINTER_PORTS:
        return ClassificationResult(DeviceType.PRINTER, 0.85, "Printer port open")

    if 3389 in port_set:
        return ClassificationResult(DeviceType.SERVER, 0.70, "RDP open")

    if {22, 80} <= port_set:
        return ClassificationResult(DeviceType.SERVER, 0.70, "SSH and HTTP open")

    if port_set & {139, 445}:
        return ClassificationResult(DeviceType.WORKSTATION, 0.60, "SMB/NetBIOS open")

    if port_set & {80, 443, 8080, 8443} or 53 in port_set:
        return ClassificationResult(DeviceType.SERVER, 0.60, "Web or DNS service open")

    if 22 in port_set:
        return ClassificationResult(DeviceType.HOST, 0.50, "SSH only")

    return None


def _detect_from_hostname(hostname_lower: str) -> Optional[ClassificationResult]:
    if not hostname_lower:
        return None

    for device_type, hints in NETWORK_HOSTNAME_HINTS.items():
        if any(hint in hostname_lower for hint in hints):
            return ClassificationResult(device_type, 0.75, "Network device hostname pattern")

    if any(hint in hostname_lower for hint in PRINTER_HOSTNAME_HINTS):
        return ClassificationResult(DeviceType.PRINTER, 0.70, "Printer hostname pattern")

    if any(hint in hostname_lower for hint in SERVER_HOSTNAME_HINTS):
        return ClassificationResult(DeviceType.SERVER, 0.65, "Server hostname pattern")

    if any(hint in hostname_lower for hint in WORKSTATION_HOSTNAME_HINTS):
        return ClassificationResult(DeviceType.WORKSTATION, 0.65, "Workstation hostname pattern")

    return None
