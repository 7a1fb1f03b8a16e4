"""
Geolocation capability.

Address-to-location lookup is pluggable. Deployments without a geo database
use NullGeoLocator, and every consumer treats an unresolved location as an
explicit "unknown" signal rather than an error.
"""

from __future__ import annotations

import ipaddress
import math
from abc import ABC, abstractmethod
from typing import Optional

import structlog

from warden.exceptions import CapabilityUnavailable
from warden.types import Location

logger = structlog.get_logger()

EARTH_RADIUS_KM = 6371.0


class GeoLocator(ABC):
    """Abstract address-to-location lookup."""

    available: bool = True

    @abstractmethod
    async def lookup(self, address: str) -> Optional[Location]:
        """
        Resolve an address. Returns None when the address is unknown.

        Raises:
            CapabilityUnavailable: if the backing database cannot answer
        """
        pass


class NullGeoLocator(GeoLocator):
    """Used when no geolocation database is configured."""

    available = False

    async def lookup(self, address: str) -> Optional[Location]:
        raise CapabilityUnavailable("geolocation")


class StaticGeoLocator(GeoLocator):
    """
    Table-driven locator keyed by address or CIDR block.

    Suitable for tests and small deployments that map office and VPN ranges
    by hand. The most specific matching network wins.
    """

    def __init__(self, table: Optional[dict[str, Location]] = None) -> None:
        self._networks: list[tuple[ipaddress._BaseNetwork, Location]] = []
        for cidr, location in (table or {}).items():
            self.add(cidr, location)

    def add(self, cidr: str, location: Location) -> None:
        network = ipaddress.ip_network(cidr, strict=False)
        self._networks.append((network, location))
        self._networks.sort(key=lambda item: item[0].prefixlen, reverse=True)

    async def lookup(self, address: str) -> Optional[Location]:
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            return None

        for network, location in self._networks:
            if ip.version == network.version and ip in network:
                return location
        return None


async def resolve_location(locator: GeoLocator, address: str) -> Optional[Location]:
    """
    Look up an address, degrading to None if the capability fails.
    """
    if not locator.available:
        return None
    try:
        return await locator.lookup(address)
    except CapabilityUnavailable as e:
        logger.warning("Geolocation unavailable, continuing without location", error=e.message)
        return None
    except Exception as e:
        logger.warning(
            "Geolocation lookup failed, continuing without location",
            address=address,
            error=str(e),
        )
        return None


def haversine_distance(a: Location, b: Location) -> float:
    """
    Great-circle distance between two located points in kilometres.
    """
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = math.radians(b.latitude - a.latitude)
    dlon = math.radians(b.longitude - a.longitude)

    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return EARTH_RADIUS_KM * c


def travel_speed(
    origin: Location,
    origin_time: float,
    destination: Location,
    destination_time: float,
) -> Optional[float]:
    """
    Implied travel speed in km/h, or None when it cannot be computed.

    A zero elapsed time between two distinct points counts as infinitely fast.
    """
    if not (origin.has_coordinates and destination.has_coordinates):
        return None

    distance = haversine_distance(origin, destination)
    elapsed_hours = (destination_time - origin_time) / 3600.0
    if elapsed_hours <= 0:
        return math.inf if distance > 0 else None
    return distance / elapsed_hours
