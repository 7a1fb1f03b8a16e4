"""
Request Context Extraction Tests
"""

import pytest

from warden.capabilities.denylist import Denylist, NullDenylist, is_denylisted
from warden.capabilities.geolocation import (
    GeoLocator,
    NullGeoLocator,
    resolve_location,
    travel_speed,
)
from warden.context.extractor import ContextExtractor, normalize_address
from warden.context.user_agent import UserAgentParser
from warden.exceptions import CapabilityUnavailable
from warden.types import BrowserFamily, DeviceClass, Location, OSFamily

from conftest import BOSTON, BROWSER_UA, EQUATOR_EAST, EQUATOR_WEST


class TestNormalizeAddress:
    """Tests for client address normalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("203.0.113.10", "203.0.113.10"),
        ("203.0.113.10:8080", "203.0.113.10"),
        ("::ffff:192.0.2.1", "192.0.2.1"),
        ("[2001:db8::1]:443", "2001:db8::1"),
        ("fe80::1%eth0", "fe80::1"),
        ("::1", "127.0.0.1"),
        ("", "127.0.0.1"),
        (None, "127.0.0.1"),
        ("not-an-address", "127.0.0.1"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_address(raw) == expected


class TestUserAgentParser:
    """Tests for user agent parsing."""

    def setup_method(self):
        self.parser = UserAgentParser()

    def test_desktop_chrome(self):
        traits = self.parser.parse(BROWSER_UA)
        assert traits.browser == BrowserFamily.CHROME
        assert traits.os == OSFamily.WINDOWS
        assert traits.device_class == DeviceClass.DESKTOP
        assert not traits.is_bot

    def test_edge_is_not_chrome(self):
        ua = BROWSER_UA + " Edg/120.0.2210.91"
        assert self.parser.parse(ua).browser == BrowserFamily.EDGE

    def test_iphone_safari(self):
        ua = (
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
        )
        traits = self.parser.parse(ua)
        assert traits.browser == BrowserFamily.SAFARI
        assert traits.browser_version == "17"
        assert traits.os == OSFamily.IOS
        assert traits.device_class == DeviceClass.MOBILE
        assert traits.is_mobile

    def test_command_line_client_is_bot(self):
        traits = self.parser.parse("curl/8.4.0")
        assert traits.is_bot
        assert traits.bot_name == "curl"
        assert traits.device_class == DeviceClass.BOT

    def test_empty_user_agent(self):
        traits = self.parser.parse("")
        assert traits.browser == BrowserFamily.UNKNOWN
        assert traits.device_class == DeviceClass.UNKNOWN


class TestContextExtractor:
    """Tests for context extraction."""

    @pytest.mark.asyncio
    async def test_extract_browser_request(self, extractor, make_request):
        context = await extractor.extract(make_request(request_id="req-1"))

        assert context.request_id == "req-1"
        assert context.address == "203.0.113.10"
        assert context.location == BOSTON
        assert context.traits.browser == BrowserFamily.CHROME
        assert context.headers.accept_language
        assert context.headers.host
        assert "location" not in context.signal_defaults

    @pytest.mark.asyncio
    async def test_forwarded_for_takes_left_most(self, extractor, make_request):
        headers = {"User-Agent": BROWSER_UA, "X-Forwarded-For": "198.51.100.7, 10.0.0.1"}
        context = await extractor.extract(make_request(address="10.0.0.1", headers=headers))
        assert context.address == "198.51.100.7"

    @pytest.mark.asyncio
    async def test_real_ip_fallback(self, extractor, make_request):
        headers = {"User-Agent": BROWSER_UA, "X-Real-IP": "192.0.2.44"}
        context = await extractor.extract(make_request(address="10.0.0.1", headers=headers))
        assert context.address == "192.0.2.44"

    @pytest.mark.asyncio
    async def test_forwarded_headers_ignored_when_untrusted(self, geolocator, clock, make_request):
        extractor = ContextExtractor(geolocator, trust_forwarded_headers=False, clock=clock)
        headers = {"User-Agent": BROWSER_UA, "X-Forwarded-For": "198.51.100.7"}
        context = await extractor.extract(make_request(address="10.0.0.1", headers=headers))
        assert context.address == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_missing_signals_become_defaults(self, extractor, make_request):
        context = await extractor.extract(make_request(address=None, headers={}))

        assert context.address == "127.0.0.1"
        assert context.user_agent == ""
        assert context.location is None
        assert "address" in context.signal_defaults
        assert "user_agent" in context.signal_defaults
        assert "header:accept_language" in context.signal_defaults
        assert "location" in context.signal_defaults

    @pytest.mark.asyncio
    async def test_clock_used_without_timestamp(self, extractor, make_request, clock):
        context = await extractor.extract(make_request(timestamp=None))
        assert context.timestamp == clock.now

    @pytest.mark.asyncio
    async def test_failing_geolocator_degrades_to_unknown(self, clock, make_request):
        class BrokenLocator(GeoLocator):
            async def lookup(self, address):
                raise ConnectionError("geo database offline")

        extractor = ContextExtractor(BrokenLocator(), clock=clock)
        context = await extractor.extract(make_request())

        assert context.location is None
        assert "location" in context.signal_defaults


class TestTravelSpeed:
    """Tests for implied travel speed."""

    def test_impossible_speed(self):
        speed = travel_speed(EQUATOR_WEST, 0.0, EQUATOR_EAST, 600.0)
        # ~1500 km in 10 minutes
        assert speed > 8000

    def test_without_coordinates(self):
        assert travel_speed(Location(country_code="US"), 0.0, BOSTON, 600.0) is None

    def test_zero_elapsed_time(self):
        assert travel_speed(EQUATOR_WEST, 10.0, EQUATOR_EAST, 10.0) == float("inf")
        assert travel_speed(BOSTON, 10.0, BOSTON, 10.0) is None


class TestCapabilities:
    """Tests for optional capability degradation."""

    @pytest.mark.asyncio
    async def test_null_capabilities_raise_unavailable(self):
        with pytest.raises(CapabilityUnavailable) as exc_info:
            await NullGeoLocator().lookup("203.0.113.10")
        assert exc_info.value.capability == "geolocation"

        with pytest.raises(CapabilityUnavailable):
            await NullDenylist().contains("203.0.113.10")

    @pytest.mark.asyncio
    async def test_unavailable_geolocation_resolves_to_unknown(self):
        class OfflineGeoLocator(GeoLocator):
            async def lookup(self, address):
                raise CapabilityUnavailable("geolocation", "database not loaded")

        assert await resolve_location(OfflineGeoLocator(), "203.0.113.10") is None
        assert await resolve_location(NullGeoLocator(), "203.0.113.10") is None

    @pytest.mark.asyncio
    async def test_unavailable_denylist_is_a_miss(self):
        class OfflineFeed(Denylist):
            async def contains(self, address):
                raise CapabilityUnavailable("denylist", "feed unreachable")

        assert await is_denylisted(OfflineFeed(), "198.51.100.7") is False
        assert await is_denylisted(NullDenylist(), "198.51.100.7") is False
