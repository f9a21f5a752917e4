"""
Address policy for discovery scans.

Scanning container bridge networks, loopback or link-local space is never
useful and can be slow or disruptive, so the scanner asks a policy object
before touching a range.
"""

import ipaddress
import logging
from typing import Iterable, Optional, Protocol

from ._types import AddressRange
from .config import DEFAULT_BLOCKED_NETWORKS

logger = logging.getLogger(__name__)


class AddressPolicy(Protocol):
    """Decides whether a range may be scanned."""

    def is_scannable(self, target: AddressRange) -> bool:
        ...


class ContainerNetworkPolicy:
    """
    Rejects ranges overlapping blocked networks.

    Blocked networks are the configured list (container defaults, loopback,
    link-local, the unspecified address) plus any network found on a
    container bridge interface.
    """

    def __init__(
        self,
        blocked_networks: Optional[Iterable[str]] = None,
        bridge_networks: Optional[Iterable[str]] = None,
    ):
        if blocked_networks is None:
            blocked_networks = DEFAULT_BLOCKED_NETWORKS

        self.blocked: list[ipaddress.IPv4Network] = [
            ipaddress.IPv4Network(n, strict=False) for n in blocked_networks
        ]
        for network in bridge_networks or []:
            parsed = ipaddress.IPv4Network(network, strict=False)
            if parsed not in self.blocked:
                self.blocked.append(parsed)

    def blocking_network(self, target: AddressRange) -> Optional[ipaddress.IPv4Network]:
        """The first blocked network overlapping target, if any."""
        for network in self.blocked:
            if target.network.overlaps(network):
                return network
        return None

    def is_scannable(self, target: AddressRange) -> bool:
        blocked = self.blocking_network(target)
        if blocked is not None:
            logger.info(f"Range {target} overlaps blocked network {blocked}")
            return False
        return True
