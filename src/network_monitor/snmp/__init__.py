"""
SNMP access for the network monitor.

Sessions wrap pysnmp's asyncio API; oids holds the numeric OIDs polled
and the helpers that turn pysnmp values into plain Python values.
"""

from .session import ProtocolSession, SessionRegistry

__all__ = ["ProtocolSession", "SessionRegistry"]
