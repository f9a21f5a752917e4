"""
Error taxonomy for the network monitor.

Probe and per-category failures are absorbed close to where they happen;
only the base SNMP system query fails a polling tick, and scan refusals
are structured so callers can tell "try later" from "invalid input".
"""

from typing import Any, Optional


class NetworkMonitorError(Exception):
    """Base exception for network monitor errors."""
    pass


class ProbeTimeout(NetworkMonitorError):
    """A single probe method exceeded its timeout."""

    def __init__(self, address: str, method: str, timeout: float):
        self.address = address
        self.method = method
        self.timeout = timeout
        super().__init__(f"{method} probe of {address} timed out after {timeout}s")


class ProtocolError(NetworkMonitorError):
    """SNMP request against a device failed."""

    def __init__(self, address: str, message: str):
        self.address = address
        super().__init__(f"{address}: {message}")


class ProtocolTimeout(ProtocolError):
    """No SNMP response within the timeout (after retries)."""
    pass


class ProtocolAuthRejected(ProtocolError):
    """The agent rejected the community string."""
    pass


class ProtocolUnreachable(ProtocolError):
    """Transport failed, the agent returned an error status, or the session is closed."""
    pass


class ScanRefused(NetworkMonitorError):
    """A scan request was refused."""

    retryable = False

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        message = reason if not detail else f"{reason}: {detail}"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "reason": self.reason,
            "detail": self.detail,
            "retryable": self.retryable,
        }


class ScanAlreadyRunning(ScanRefused):
    """Another scan is in progress; try later."""

    retryable = True

    def __init__(self, scan_id: Optional[str] = None):
        self.scan_id = scan_id
        super().__init__("scan already in progress", scan_id)


class ScanRangeRejected(ScanRefused):
    """The requested range is malformed or not allowed by the address policy."""

    retryable = False
