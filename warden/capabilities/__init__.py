"""
Optional capabilities.

Each capability is an interface with a null implementation so that an
absent capability degrades the score instead of failing the request.
"""

from warden.capabilities.denylist import Denylist, NullDenylist, StaticDenylist
from warden.capabilities.geolocation import (
    GeoLocator,
    NullGeoLocator,
    StaticGeoLocator,
    haversine_distance,
    travel_speed,
)

__all__ = [
    "Denylist",
    "NullDenylist",
    "StaticDenylist",
    "GeoLocator",
    "NullGeoLocator",
    "StaticGeoLocator",
    "haversine_distance",
    "travel_speed",
]
