"""
Threat-intelligence denylist capability.
"""

from __future__ import annotations

import ipaddress
from abc import ABC, abstractmethod
from typing import Iterable, Optional

import structlog

from warden.exceptions import CapabilityUnavailable

logger = structlog.get_logger()


class Denylist(ABC):
    """Abstract address reputation lookup."""

    available: bool = True

    @abstractmethod
    async def contains(self, address: str) -> bool:
        """
        Raises:
            CapabilityUnavailable: if the reputation feed cannot answer
        """
        pass


class NullDenylist(Denylist):
    """Used when no threat feed is configured. The check is skipped."""

    available = False

    async def contains(self, address: str) -> bool:
        raise CapabilityUnavailable("denylist")


class StaticDenylist(Denylist):
    """Denylist built from addresses and CIDR blocks."""

    def __init__(self, entries: Optional[Iterable[str]] = None) -> None:
        self._networks: list[ipaddress._BaseNetwork] = []
        for entry in entries or ():
            self.add(entry)

    def add(self, entry: str) -> None:
        self._networks.append(ipaddress.ip_network(entry, strict=False))

    async def contains(self, address: str) -> bool:
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            return False
        return any(ip.version == net.version and ip in net for net in self._networks)


async def is_denylisted(denylist: Denylist, address: str) -> bool:
    """Query the denylist, treating a failed lookup as a miss."""
    if not denylist.available:
        return False
    try:
        return await denylist.contains(address)
    except CapabilityUnavailable as e:
        logger.warning("Denylist unavailable, skipping check", error=e.message)
        return False
    except Exception as e:
        logger.warning("Denylist lookup failed, skipping check", address=address, error=str(e))
        return False
