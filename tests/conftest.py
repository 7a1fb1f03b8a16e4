"""
Shared fixtures for the Warden test suite.
"""

from typing import Iterable, Optional

import pytest

from warden.audit.aggregates import ActivityProfile
from warden.capabilities.geolocation import StaticGeoLocator
from warden.context.extractor import ContextExtractor
from warden.core.config import WardenConfig
from warden.devices.models import Device
from warden.exceptions import HistoryUnavailable
from warden.signals import SignalSource
from warden.types import Location, Principal, RawRequest, SecurityEventKind
from warden.zero_trust.pipeline import ZeroTrustPipeline


# Wednesday 2024-03-13 14:00:00 UTC
NOW = 1710338400.0

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_HEADERS = {
    "User-Agent": BROWSER_UA,
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate, br",
    "Connection": "keep-alive",
    "Host": "app.example.com",
}

OFFICE_ADDRESS = "203.0.113.10"
BOSTON = Location(country_code="US", city="Boston", latitude=42.36, longitude=-71.06)
# Roughly 1500 km apart along the equator
EQUATOR_WEST = Location(country_code="GA", city="Libreville", latitude=0.0, longitude=0.0)
EQUATOR_EAST = Location(country_code="CM", city="Eastpoint", latitude=0.0, longitude=13.5)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSignalSource(SignalSource):
    """Canned historical signals for scoring tests."""

    def __init__(
        self,
        failed_logins: int = 0,
        requests: int = 0,
        escalations: int = 0,
        locations: Optional[list] = None,
        profile: Optional[ActivityProfile] = None,
        devices: Optional[list[Device]] = None,
        fail: bool = False,
    ):
        self.counts = {
            SecurityEventKind.LOGIN_FAILED: failed_logins,
            SecurityEventKind.API_REQUEST: requests,
            SecurityEventKind.PRIVILEGE_ESCALATION: escalations,
        }
        self.locations = locations or []
        self.profile = profile or ActivityProfile()
        self.devices = devices or []
        self.fail = fail

    def _check(self) -> None:
        if self.fail:
            raise HistoryUnavailable("history offline")

    async def event_count(
        self,
        kinds: Iterable[SecurityEventKind],
        since: float,
        principal_id: Optional[str] = None,
        address: Optional[str] = None,
    ) -> int:
        self._check()
        return sum(self.counts.get(kind, 0) for kind in kinds)

    async def recent_locations(self, principal_id: str, since: float):
        self._check()
        return [(loc, ts) for loc, ts in self.locations if ts >= since]

    async def activity_profile(self, principal_id: str, now: float, lookback_days: int = 30):
        self._check()
        return self.profile

    async def devices_for_principal(self, principal_id: str):
        self._check()
        return self.devices


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return WardenConfig()


@pytest.fixture
def geolocator():
    return StaticGeoLocator({
        "203.0.113.0/24": BOSTON,
        "198.51.100.0/24": EQUATOR_WEST,
        "192.0.2.0/24": EQUATOR_EAST,
    })


@pytest.fixture
def extractor(geolocator, clock):
    return ContextExtractor(geolocator=geolocator, clock=clock)


@pytest.fixture
def make_request():
    """Factory for browser-like raw requests."""

    def _make(
        address: str = OFFICE_ADDRESS,
        headers: Optional[dict] = None,
        path: str = "/api/orders",
        timestamp: Optional[float] = NOW,
        **kwargs,
    ) -> RawRequest:
        return RawRequest(
            method=kwargs.pop("method", "GET"),
            path=path,
            headers=dict(BROWSER_HEADERS if headers is None else headers),
            peer_address=address,
            timestamp=timestamp,
            **kwargs,
        )

    return _make


@pytest.fixture
def principal():
    return Principal(principal_id="alice", known_locations=[BOSTON])


@pytest.fixture
def pipeline(config, geolocator, clock):
    return ZeroTrustPipeline(
        config,
        geolocator=geolocator,
        clock=clock,
        token_factory=lambda: "challenge-token",
    )
