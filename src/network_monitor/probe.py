"""
Host liveness probing.

Each probe method has its own timeout and is tried independently: a
failed or timed-out method is logged at debug level and never stops the
others. A host that does not answer is a normal result, not an error.

Method order:
1. ping    ICMP echo via the system ping binary
2. dns     reverse lookup (does not by itself make a host alive)
3. arp     ARP cache entry with a MAC address
4. port    TCP connect to common service ports
5. snmp    system group query, alive hosts only
6. netbios name fallback for alive hosts without one
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import socket
import time
from typing import Callable, Iterable, Optional

from ._types import ProbeMethod, ProbeResult, SnmpCredentials
from .classifier import derive_device_type
from .config import MonitorConfig
from .exceptions import ProbeTimeout, ProtocolError
from .snmp import oids
from .snmp.session import ProtocolSession

logger = logging.getLogger(__name__)


PORT_SERVICES = {
    22: "SSH",
    23: "Telnet",
    53: "DNS",
    80: "HTTP",
    135: "RPC",
    139: "NetBIOS",
    443: "HTTPS",
    445: "SMB",
    993: "IMAPS",
    995: "POP3S",
    1723: "PPTP",
    3389: "RDP",
    5900: "VNC",
    8080: "HTTP-Alt",
    8443: "HTTPS-Alt",
}

_PING_TIME = re.compile(r"time[=<]\s*(\d+(?:\.\d+)?)\s*ms")
_MAC = re.compile(r"(?:[0-9a-fA-F]{2}[:-]){5}[0-9a-fA-F]{2}")
_NETBIOS_NAME = re.compile(r"^\s*([A-Za-z0-9\-_]+)\s+<00>", re.MULTILINE)

ProbeSessionFactory = Callable[[str, SnmpCredentials], ProtocolSession]


async def run_command(cmd: list[str], timeout: float) -> tuple[int, str]:
    """
    Run a command and return (returncode, stdout).

    Raises ProbeTimeout when the command outlives the timeout (the
    process is killed) and OSError when it cannot be started.
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise ProbeTimeout(cmd[-1], cmd[0], timeout)
    return process.returncode, stdout.decode(errors="replace")


def parse_arp_output(output: str) -> Optional[str]:
    """MAC address from `arp -n <host>` output, None when there is no entry."""
    if not output or "no entry" in output.lower() or "incomplete" in output.lower():
        return None
    match = _MAC.search(output)
    if not match:
        return None
    mac = match.group(0).lower().replace("-", ":")
    if mac in ("ff:ff:ff:ff:ff:ff", "00:00:00:00:00:00"):
        return None
    return mac


def parse_ping_time(output: str) -> Optional[float]:
    match = _PING_TIME.search(output)
    return float(match.group(1)) if match else None


def parse_netbios_name(output: str) -> Optional[str]:
    match = _NETBIOS_NAME.search(output)
    return match.group(1) if match else None


def strip_domain(hostname: Optional[str]) -> Optional[str]:
    """Short hostname without domain suffix."""
    if not hostname:
        return None
    short = hostname.strip().split(".", 1)[0].strip()
    return short or None


class HostProbe:
    """
    Probes a single address with a set of methods.

    Args:
        config: Timeouts, common ports and SNMP defaults
        session_factory: Builds the short-lived SNMP session used by the
            snmp method; receives (address, credentials)
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        session_factory: Optional[ProbeSessionFactory] = None,
    ):
        self.config = config or MonitorConfig()
        self._session_factory = session_factory or self._default_session

    def _default_session(self, address: str, credentials: SnmpCredentials) -> ProtocolSession:
        return ProtocolSession(
            address,
            credentials,
            timeout=self.config.snmp_probe_timeout,
            retries=1,
        )

    async def probe(
        self,
        address: str,
        methods: Optional[Iterable[ProbeMethod]] = None,
    ) -> ProbeResult:
        """Probe one address; never raises for an unreachable host."""
        requested = set(ProbeMethod(m) for m in (methods or self.config.methods))
        result = ProbeResult(address=address)
        sys_descr: Optional[str] = None

        if ProbeMethod.PING in requested:
            rtt = await self._guard(address, "ping", self.ping(address))
            if rtt is not None:
                result.alive = True
                result.methods.append(ProbeMethod.PING.value)
                result.response_time_ms = rtt

        if result.alive or ProbeMethod.DNS in requested:
            hostname = await self._guard(address, "dns", self.reverse_dns(address))
            if hostname:
                result.hostname = hostname
                result.methods.append(ProbeMethod.DNS.value)

        if ProbeMethod.ARP in requested:
            mac = await self._guard(address, "arp", self.arp_lookup(address))
            if mac:
                result.alive = True
                result.mac_address = mac
                result.methods.append(ProbeMethod.ARP.value)

        if ProbeMethod.PORT in requested and (result.alive or len(requested) == 1):
            open_ports = await self._guard(address, "port", self.scan_ports(address))
            if open_ports:
                result.alive = True
                result.open_ports = open_ports
                result.services = [PORT_SERVICES.get(p, str(p)) for p in open_ports]
                result.methods.append(ProbeMethod.PORT.value)

        if ProbeMethod.SNMP in requested and result.alive:
            info = await self._guard(address, "snmp", self.snmp_identify(address))
            if info:
                result.methods.append(ProbeMethod.SNMP.value)
                sys_descr = info.get(oids.SYS_DESCR) or None
                if sys_descr:
                    result.description = sys_descr
                if not result.hostname:
                    result.hostname = strip_domain(info.get(oids.SYS_NAME))

        if result.alive and not result.hostname:
            name = await self._guard(address, "netbios", self.netbios_name(address))
            if name:
                result.hostname = name
                result.methods.append(ProbeMethod.NETBIOS.value)

        if result.alive:
            result.device_type = derive_device_type(
                sys_descr=sys_descr,
                open_ports=result.open_ports,
                hostname=result.hostname,
            ).device_type
            logger.debug(f"{address} alive via {','.join(result.methods)}")

        return result

    async def _guard(self, address: str, method: str, coro):
        """Await one method; failures become None."""
        try:
            return await coro
        except ProbeTimeout as e:
            logger.debug(f"{e}")
        except ProtocolError as e:
            logger.debug(f"{method} probe of {address} failed: {e}")
        except OSError as e:
            logger.debug(f"{method} probe of {address} unavailable: {e}")
        except Exception as e:
            logger.debug(f"{method} probe of {address} raised {type(e).__name__}: {e}")
        return None

    # -------------------------------------------------------------------------
    # Methods
    # -------------------------------------------------------------------------

    async def ping(self, address: str) -> Optional[float]:
        """RTT in ms, or None when the host did not answer."""
        timeout = self.config.ping_timeout
        started = time.monotonic()
        returncode, output = await run_command(
            ["ping", "-c", "1", "-W", str(max(1, math.ceil(timeout))), address],
            timeout=timeout + 1,
        )
        if returncode != 0:
            return None
        rtt = parse_ping_time(output)
        if rtt is None:
            rtt = (time.monotonic() - started) * 1000
        return rtt

    async def reverse_dns(self, address: str) -> Optional[str]:
        loop = asyncio.get_running_loop()
        try:
            host, _ = await asyncio.wait_for(
                loop.getnameinfo((address, 0), socket.NI_NAMEREQD),
                timeout=self.config.dns_timeout,
            )
        except asyncio.TimeoutError:
            raise ProbeTimeout(address, "dns", self.config.dns_timeout)
        except socket.gaierror:
            return None

        hostname = host.rstrip(".")
        if not hostname or hostname == address:
            return None
        return hostname

    async def arp_lookup(self, address: str) -> Optional[str]:
        returncode, output = await run_command(["arp", "-n", address], self.config.arp_timeout)
        if returncode != 0:
            return None
        return parse_arp_output(output)

    async def _port_open(self, address: str, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(address, port),
                timeout=self.config.port_timeout,
            )
        except (asyncio.TimeoutError, OSError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def scan_ports(self, address: str, ports: Optional[list[int]] = None) -> list[int]:
        """Open ports among the configured common ports, ascending."""
        ports = ports or self.config.common_ports
        states = await asyncio.gather(*(self._port_open(address, p) for p in ports))
        return sorted(p for p, is_open in zip(ports, states) if is_open)

    async def snmp_identify(self, address: str) -> Optional[dict]:
        """System group values, or None when the agent did not answer."""
        session = self._session_factory(address, self.config.credentials_for(address))
        try:
            values = await session.get_scalar(oids.DISCOVERY_OIDS)
        finally:
            session.close()
        if not any(values.values()):
            return None
        return values

    async def netbios_name(self, address: str) -> Optional[str]:
        returncode, output = await run_command(["nmblookup", "-A", address], self.config.netbios_timeout)
        if returncode != 0:
            return None
        return parse_netbios_name(output)
