"""
SNMP sessions.

One ProtocolSession per monitored device, opened lazily and reused across
polling ticks. Each request attempt is bounded by the session timeout;
timeouts are retried, authentication and transport failures are not.
A table walk also has an overall deadline.

Built on pysnmp's asyncio high-level API (GET, GETNEXT for v1 walks,
GETBULK for v2c walks).
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from pysnmp.error import PySnmpError
from pysnmp.hlapi.v3arch.asyncio import (
    bulk_cmd, get_cmd, next_cmd,
    SnmpEngine, CommunityData,
    UdpTransportTarget, ContextData,
    ObjectType, ObjectIdentity,
)
from pysnmp.proto import rfc1905

from .._types import Device, SnmpCredentials
from ..exceptions import (
    ProtocolAuthRejected,
    ProtocolError,
    ProtocolTimeout,
    ProtocolUnreachable,
)
from .oids import decode_value

logger = logging.getLogger(__name__)

WalkResult = list[tuple[str, Any]]

_AUTH_STATUSES = {"authorizationError", "noAccess"}

# Whole-walk deadline, independent of the per-PDU timeout
DEFAULT_WALK_TIMEOUT = 60.0


def _status_name(error_status: Any) -> str:
    if hasattr(error_status, "prettyPrint"):
        return error_status.prettyPrint()
    return str(error_status)


def _indication_error(address: str, indication: Any) -> ProtocolError:
    """Map a pysnmp error indication onto the protocol error taxonomy."""
    text = str(indication)
    kind = type(indication).__name__.lower()
    lowered = text.lower()

    if "timeout" in lowered or "timedout" in kind:
        return ProtocolTimeout(address, text)
    if "community" in lowered or "auth" in lowered or "community" in kind or "auth" in kind:
        return ProtocolAuthRejected(address, text)
    return ProtocolUnreachable(address, text)


class ProtocolSession:
    """
    SNMP v1/v2c session against a single device.

    Attributes:
        address: Device IPv4 address
        credentials: Community, port and version
        timeout: Per-attempt timeout in seconds
        retries: Extra attempts after a timeout
        walk_timeout: Deadline for one complete table walk in seconds
        bulk_size: Max-repetitions for GETBULK walks
        max_rows: Safety cap on rows returned by one walk
    """

    def __init__(
        self,
        address: str,
        credentials: Optional[SnmpCredentials] = None,
        timeout: float = 5.0,
        retries: int = 1,
        engine: Optional[SnmpEngine] = None,
        walk_timeout: float = DEFAULT_WALK_TIMEOUT,
        bulk_size: int = 25,
        max_rows: int = 10000,
    ):
        self.address = address
        self.credentials = credentials or SnmpCredentials()
        self.timeout = timeout
        self.retries = retries
        self.walk_timeout = walk_timeout
        self.bulk_size = bulk_size
        self.max_rows = max_rows

        self._engine = engine
        self._owns_engine = engine is None
        self._transport = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _get_engine(self) -> SnmpEngine:
        if self._engine is None:
            self._engine = SnmpEngine()
        return self._engine

    def _auth(self) -> CommunityData:
        mp_model = 0 if self.credentials.version == "1" else 1
        return CommunityData(self.credentials.community, mpModel=mp_model)

    async def _get_transport(self):
        if self._transport is None:
            try:
                self._transport = await UdpTransportTarget.create(
                    (self.address, self.credentials.port),
                    timeout=self.timeout,
                    retries=0,
                )
            except (PySnmpError, OSError) as e:
                raise ProtocolUnreachable(self.address, f"cannot open transport: {e}") from e
        return self._transport

    async def _request(self, command: Callable, *var_binds: Any) -> tuple[Any, Any, list]:
        """
        Send one PDU with timeout and retries.

        Returns (error_status, error_index, var_binds); error indications
        are raised as typed protocol errors.
        """
        if self._closed:
            raise ProtocolUnreachable(self.address, "session closed")

        transport = await self._get_transport()
        attempts = self.retries + 1

        for attempt in range(1, attempts + 1):
            try:
                error_indication, error_status, error_index, result = await asyncio.wait_for(
                    command(
                        self._get_engine(),
                        self._auth(),
                        transport,
                        ContextData(),
                        *var_binds,
                        lookupMib=False,  # keep numeric OIDs and raw values
                    ),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                logger.debug(f"{self.address}: attempt {attempt}/{attempts} timed out")
                continue
            except PySnmpError as e:
                raise ProtocolUnreachable(self.address, f"request failed: {e}") from e

            if error_indication:
                error = _indication_error(self.address, error_indication)
                if isinstance(error, ProtocolTimeout):
                    logger.debug(f"{self.address}: attempt {attempt}/{attempts}: {error_indication}")
                    continue
                raise error

            return error_status, error_index, list(result or [])

        raise ProtocolTimeout(self.address, f"no response after {attempts} attempt(s)")

    async def get_scalar(self, oids: list[str]) -> dict[str, Any]:
        """
        GET a list of scalar OIDs.

        Returns a dict keyed by the requested OID; missing objects map to
        None.
        """
        object_types = [ObjectType(ObjectIdentity(oid)) for oid in oids]
        error_status, error_index, var_binds = await self._request(get_cmd, *object_types)

        if error_status:
            name = _status_name(error_status)
            if name == "noSuchName":
                # SNMPv1 fails the whole PDU when one object is missing
                return {oid: None for oid in oids}
            raise self._status_error(name, f"at index {error_index}")

        values: dict[str, Any] = {oid: None for oid in oids}
        for requested, var_bind in zip(oids, var_binds):
            values[requested] = decode_value(var_bind[1])
        return values

    def _status_error(self, name: str, context: str) -> ProtocolError:
        """Typed error for a non-zero error status."""
        if name in _AUTH_STATUSES:
            return ProtocolAuthRejected(self.address, name)
        return ProtocolUnreachable(self.address, f"agent returned {name} {context}")

    async def walk_table(self, base_oid: str) -> WalkResult:
        """
        Walk the subtree under base_oid.

        Stops at the subtree boundary, at endOfMibView and at max_rows.
        The whole walk is bounded by walk_timeout.

        Raises:
            ProtocolTimeout: a PDU or the whole walk timed out
        """
        try:
            return await asyncio.wait_for(self._walk(base_oid), timeout=self.walk_timeout)
        except asyncio.TimeoutError:
            raise ProtocolTimeout(
                self.address, f"walk of {base_oid} exceeded {self.walk_timeout:g}s"
            ) from None

    async def _walk(self, base_oid: str) -> WalkResult:
        prefix = base_oid.rstrip(".") + "."
        rows: WalkResult = []
        current = base_oid

        while len(rows) < self.max_rows:
            if self.credentials.version == "1":
                error_status, _, var_binds = await self._request(
                    next_cmd, ObjectType(ObjectIdentity(current))
                )
            else:
                error_status, _, var_binds = await self._request(
                    bulk_cmd, 0, self.bulk_size, ObjectType(ObjectIdentity(current))
                )

            if error_status:
                name = _status_name(error_status)
                if name == "noSuchName":
                    break
                raise self._status_error(name, f"walking {base_oid}")

            advanced = False
            finished = not var_binds
            for var_bind in var_binds:
                oid = str(var_bind[0])
                value = var_bind[1]
                if not oid.startswith(prefix) or isinstance(value, rfc1905.EndOfMibView):
                    finished = True
                    break
                if oid == current:
                    continue
                rows.append((oid, decode_value(value)))
                current = oid
                advanced = True

            if finished or not advanced:
                break

        if len(rows) > self.max_rows:
            logger.warning(f"{self.address}: walk of {base_oid} capped at {self.max_rows} rows")
            rows = rows[:self.max_rows]
        return rows

    def close(self) -> None:
        """Release the transport and any engine owned by this session."""
        if self._closed:
            return
        self._closed = True
        self._transport = None
        if self._owns_engine and self._engine is not None:
            self._engine.close_dispatcher()
        self._engine = None
        logger.debug(f"Closed SNMP session for {self.address}")


SessionFactory = Callable[[Device], ProtocolSession]


class SessionRegistry:
    """
    Owns at most one open ProtocolSession per device address.

    Sessions share one SnmpEngine unless a custom factory is supplied.
    """

    def __init__(
        self,
        factory: Optional[SessionFactory] = None,
        timeout: float = 5.0,
        retries: int = 1,
        walk_timeout: float = DEFAULT_WALK_TIMEOUT,
    ):
        self.timeout = timeout
        self.retries = retries
        self.walk_timeout = walk_timeout
        self._engine: Optional[SnmpEngine] = None
        self._factory = factory or self._default_factory
        self._sessions: dict[str, ProtocolSession] = {}

    def _default_factory(self, device: Device) -> ProtocolSession:
        if self._engine is None:
            self._engine = SnmpEngine()
        return ProtocolSession(
            device.address,
            device.credentials,
            timeout=self.timeout,
            retries=self.retries,
            walk_timeout=self.walk_timeout,
            engine=self._engine,
        )

    def get(self, device: Device) -> ProtocolSession:
        """Open or reuse the session for a device."""
        session = self._sessions.get(device.address)
        if session is not None and not session.closed:
            if session.credentials == device.credentials:
                return session
            logger.info(f"Credentials changed for {device.address}, reopening session")
            session.close()

        session = self._factory(device)
        self._sessions[device.address] = session
        return session

    def release(self, address: str) -> None:
        session = self._sessions.pop(address, None)
        if session is not None:
            session.close()

    def close_all(self) -> None:
        for address in list(self._sessions):
            self.release(address)
        if self._engine is not None:
            self._engine.close_dispatcher()
            self._engine = None

    def __contains__(self, address: str) -> bool:
        return address in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
