"""
OID constants and value decoding.

Numeric OIDs only (no MIB compilation); values returned by pysnmp are
reduced to plain Python ints and strings before they leave the session.
"""

import binascii
import string
from typing import Any, Optional

from pysnmp.proto import rfc1902, rfc1905


# =============================================================================
# SNMPv2-MIB system group
# =============================================================================

SYS_DESCR = "1.3.6.1.2.1.1.1.0"
SYS_OBJECT_ID = "1.3.6.1.2.1.1.2.0"
SYS_UPTIME = "1.3.6.1.2.1.1.3.0"  # hundredths of a second
SYS_CONTACT = "1.3.6.1.2.1.1.4.0"
SYS_NAME = "1.3.6.1.2.1.1.5.0"
SYS_LOCATION = "1.3.6.1.2.1.1.6.0"

SYSTEM_OIDS = [SYS_DESCR, SYS_OBJECT_ID, SYS_UPTIME, SYS_NAME, SYS_CONTACT, SYS_LOCATION]

# Subset queried during discovery
DISCOVERY_OIDS = [SYS_DESCR, SYS_NAME, SYS_CONTACT, SYS_LOCATION]


# =============================================================================
# IF-MIB ifTable
# =============================================================================

IF_TABLE = "1.3.6.1.2.1.2.2.1"

# Column number -> InterfaceCounters attribute
IF_COLUMNS = {
    2: "description",
    3: "if_type",
    4: "mtu",
    5: "speed",
    6: "mac_address",
    8: "oper_status",
    10: "in_octets",
    14: "in_errors",
    16: "out_octets",
    20: "out_errors",
}

IF_OPER_STATUS = {
    1: "up",
    2: "down",
    3: "testing",
    4: "unknown",
    5: "dormant",
    6: "notPresent",
    7: "lowerLayerDown",
}


# =============================================================================
# HOST-RESOURCES-MIB
# =============================================================================

HR_MEMORY_SIZE = "1.3.6.1.2.1.25.2.2.0"  # KBytes
HR_STORAGE_TABLE = "1.3.6.1.2.1.25.2.3.1"
HR_PROCESSOR_LOAD = "1.3.6.1.2.1.25.3.3.1.2"

HR_STORAGE_COLUMNS = {
    2: "type",
    3: "description",
    4: "allocation_units",
    5: "size",
    6: "used",
}

HR_STORAGE_RAM = "1.3.6.1.2.1.25.2.1.2"
HR_STORAGE_FIXED_DISK = "1.3.6.1.2.1.25.2.1.4"


_PRINTABLE = set(string.printable)
_MISSING = (rfc1905.NoSuchObject, rfc1905.NoSuchInstance, rfc1905.EndOfMibView)


def split_index(oid: str, base: str) -> Optional[tuple[int, str]]:
    """
    Split a table OID into (column, row index) relative to the table entry.

    Returns None for OIDs outside the table.
    """
    prefix = base.rstrip(".") + "."
    if not oid.startswith(prefix):
        return None
    rest = oid[len(prefix):]
    column, _, index = rest.partition(".")
    if not column.isdigit() or not index:
        return None
    return int(column), index


def decode_value(value: Any) -> Any:
    """
    Reduce a pysnmp value to int, str or None.

    noSuchObject, noSuchInstance and endOfMibView become None. Octet
    strings are text when printable, a MAC when six opaque bytes, and hex
    otherwise.
    """
    if value is None or isinstance(value, _MISSING):
        return None
    if isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, bytes):
        return _decode_octets(value)
    if isinstance(value, rfc1902.IpAddress):
        return ".".join(str(b) for b in value.asOctets())
    if isinstance(value, rfc1902.OctetString):
        return _decode_octets(value.asOctets())
    if isinstance(value, rfc1902.ObjectName) or hasattr(value, "asTuple"):
        return ".".join(str(part) for part in value.asTuple())
    try:
        return int(value)
    except (TypeError, ValueError):
        return value.prettyPrint() if hasattr(value, "prettyPrint") else str(value)


def _decode_octets(raw: bytes) -> str:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = None

    if text is not None and all(c in _PRINTABLE for c in text):
        return text.strip("\x00").strip()
    if len(raw) == 6:
        return format_mac(raw)
    return "0x" + binascii.hexlify(raw).decode()


def format_mac(value: Any) -> Optional[str]:
    """Colon-separated lowercase MAC from raw bytes or a decoded string."""
    if value in (None, "", b""):
        return None
    if isinstance(value, str):
        clean = value.replace(":", "").replace("-", "").replace(".", "").lower()
        if len(clean) == 12 and all(c in "0123456789abcdef" for c in clean):
            return ":".join(clean[i:i + 2] for i in range(0, 12, 2))
        if len(value) == 6:
            value = value.encode("latin-1")
        else:
            return value
    hex_str = binascii.hexlify(bytes(value)).decode()
    return ":".join(hex_str[i:i + 2] for i in range(0, len(hex_str), 2))
