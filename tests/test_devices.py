"""
Device Registry Tests
"""

import pytest

from warden.devices.models import (
    MAX_ADDRESSES,
    MAX_LOCATIONS,
    MAX_SECURITY_EVENTS,
    Device,
    DeviceEvent,
    DeviceState,
    RiskTag,
    VerificationMethod,
    compute_fingerprint,
)
from warden.devices.registry import DeviceRegistry, InMemoryDeviceStore
from warden.exceptions import RegistryFailure
from warden.types import DeviceTraits, Location, SecurityEventKind

from conftest import BROWSER_UA, NOW

DAY = 86400.0


@pytest.fixture
def registry(clock):
    return DeviceRegistry(clock=clock)


class FailingStore(InMemoryDeviceStore):
    async def get(self, fingerprint):
        raise ConnectionError("device store offline")


class TestFingerprint:
    """Tests for device fingerprinting."""

    @pytest.mark.asyncio
    async def test_deterministic(self, extractor, make_request):
        first = await extractor.extract(make_request(request_id="a"))
        second = await extractor.extract(make_request(request_id="b", address="192.0.2.9"))
        # Address and request id are not part of the fingerprint
        assert compute_fingerprint(first) == compute_fingerprint(second)
        assert len(compute_fingerprint(first)) == 64

    @pytest.mark.asyncio
    async def test_traits_change_fingerprint(self, extractor, make_request):
        first = await extractor.extract(make_request())
        headers = {"User-Agent": BROWSER_UA, "Accept-Language": "de-DE"}
        second = await extractor.extract(make_request(headers=headers))
        assert compute_fingerprint(first) != compute_fingerprint(second)


class TestDeviceModel:
    """Tests for the device record and its trust score."""

    def test_ring_buffers_are_capped(self):
        device = Device(fingerprint="f", traits=DeviceTraits())

        for i in range(MAX_ADDRESSES + 5):
            device.add_address(f"198.51.100.{i}")
        for i in range(MAX_LOCATIONS + 3):
            device.add_location(Location(country_code="US", city=f"City{i}"))
        for i in range(MAX_SECURITY_EVENTS + 10):
            device.security_events.append(
                DeviceEvent(kind=SecurityEventKind.ACCESS_DENIED, timestamp=float(i))
            )

        assert len(device.addresses) == MAX_ADDRESSES
        assert device.addresses[0] == "198.51.100.5"
        assert len(device.locations) == MAX_LOCATIONS
        assert len(device.security_events) == MAX_SECURITY_EVENTS
        assert device.security_events[0].timestamp == 10.0

    def test_addresses_and_locations_deduplicated(self):
        device = Device(fingerprint="f", traits=DeviceTraits())
        device.add_address("198.51.100.1")
        device.add_address("198.51.100.1")
        device.add_location(Location(country_code="US", city="Boston"))
        device.add_location(Location(country_code="US", city="Boston", latitude=42.0))

        assert list(device.addresses) == ["198.51.100.1"]
        assert len(device.locations) == 1

    def test_fully_trusted_device(self):
        device = Device(
            fingerprint="f",
            traits=DeviceTraits(),
            state=DeviceState.VERIFIED,
            first_seen=NOW - 100 * DAY,
            access_count=150,
        )
        assert device.recompute_trust(NOW) == 100

    def test_recomputed_trust_of_young_device(self):
        device = Device(fingerprint="f", traits=DeviceTraits(), first_seen=NOW)
        device.add_tag(RiskTag.NEW_DEVICE)
        # locations +15, no incidents +15, one tag -5
        assert device.recompute_trust(NOW) == 25

    def test_incidents_and_tags_reduce_trust(self):
        device = Device(
            fingerprint="f",
            traits=DeviceTraits(),
            state=DeviceState.VERIFIED,
            first_seen=NOW - 100 * DAY,
            access_count=150,
        )
        device.security_events.append(
            DeviceEvent(kind=SecurityEventKind.ACCESS_DENIED, timestamp=NOW - DAY)
        )
        device.add_tag(RiskTag.VPN_PROXY)
        device.add_tag(RiskTag.RAPID_REQUESTS)

        assert device.recompute_trust(NOW) == 100 - 15 - 10


class TestDeviceRegistry:
    """Tests for device registration and management."""

    @pytest.mark.asyncio
    async def test_first_sighting_creates_device(self, registry, extractor, make_request):
        context = await extractor.extract(make_request())
        observation = await registry.observe(context, "alice")

        device = observation.device
        assert observation.created
        assert not observation.known_to_principal
        assert device.state == DeviceState.UNVERIFIED
        assert RiskTag.NEW_DEVICE in device.risk_tags
        assert list(device.addresses) == ["203.0.113.10"]
        assert "alice" in device.principals
        assert device.trust_score == 0

    @pytest.mark.asyncio
    async def test_repeat_sighting(self, registry, extractor, make_request):
        await registry.observe(await extractor.extract(make_request(request_id="r1")), "alice")
        context = await extractor.extract(
            make_request(request_id="r2", address="192.0.2.9", timestamp=NOW + 60)
        )
        observation = await registry.observe(context, "alice")

        assert not observation.created
        assert observation.known_to_principal
        assert observation.device.access_count == 2
        assert observation.device.last_seen == NOW + 60
        assert observation.device.trust_score == 25
        assert list(observation.device.addresses) == ["203.0.113.10", "192.0.2.9"]

    @pytest.mark.asyncio
    async def test_new_principal_on_known_device(self, registry, extractor, make_request):
        await registry.observe(await extractor.extract(make_request(request_id="r1")), "alice")
        observation = await registry.observe(
            await extractor.extract(make_request(request_id="r2")), "mallory"
        )
        assert not observation.known_to_principal
        assert observation.device.principals == {"alice", "mallory"}

    @pytest.mark.asyncio
    async def test_replayed_request_applied_once(self, registry, extractor, make_request):
        context = await extractor.extract(make_request(request_id="same"))
        await registry.observe(context, "alice")
        observation = await registry.observe(context, "alice")

        assert observation.replayed
        assert observation.device.access_count == 1

    @pytest.mark.asyncio
    async def test_verify_block_unblock(self, registry, extractor, make_request):
        observation = await registry.observe(await extractor.extract(make_request()))
        fingerprint = observation.device.fingerprint

        device = await registry.verify(fingerprint, VerificationMethod.EMAIL)
        assert device.is_verified
        assert device.verification_method == VerificationMethod.EMAIL

        device = await registry.block(fingerprint, "stolen laptop")
        assert device.is_blocked
        assert device.blocked_reason == "stolen laptop"

        with pytest.raises(ValueError):
            await registry.verify(fingerprint)

        device = await registry.unblock(fingerprint)
        assert device.state == DeviceState.UNVERIFIED
        assert device.blocked_reason is None

    @pytest.mark.asyncio
    async def test_unknown_device(self, registry):
        with pytest.raises(KeyError):
            await registry.block("missing", "no reason")

    @pytest.mark.asyncio
    async def test_security_event_lowers_trust(self, registry, extractor, make_request):
        await registry.observe(await extractor.extract(make_request(request_id="r1")))
        observation = await registry.observe(await extractor.extract(make_request(request_id="r2")))
        fingerprint = observation.device.fingerprint
        before = observation.device.trust_score

        device = await registry.record_security_event(
            fingerprint,
            SecurityEventKind.ACCESS_DENIED,
            address="203.0.113.10",
            tags=[RiskTag.BOT_DETECTED],
        )

        assert len(device.security_events) == 1
        assert device.trust_score == before - 15 - 5

    @pytest.mark.asyncio
    async def test_high_risk_and_unverified_listings(self, registry, extractor, make_request, clock):
        observation = await registry.observe(await extractor.extract(make_request()))
        fingerprint = observation.device.fingerprint
        await registry.record_assessment(fingerprint, 82)

        assert [d.fingerprint for d in await registry.high_risk_devices(70)] == [fingerprint]
        assert await registry.unverified_devices(older_than_days=7) == []

        clock.advance(8 * DAY)
        assert len(await registry.unverified_devices(older_than_days=7)) == 1

    @pytest.mark.asyncio
    async def test_sweep_removes_only_stale_unverified(self, registry, extractor, make_request):
        stale = await registry.observe(await extractor.extract(make_request()))
        headers = {"User-Agent": BROWSER_UA, "Accept-Language": "fr-FR"}
        kept = await registry.observe(await extractor.extract(make_request(headers=headers)))
        await registry.verify(kept.device.fingerprint)

        removed = await registry.sweep(NOW + 731 * DAY)

        assert removed == 1
        assert await registry.get(stale.device.fingerprint) is None
        assert await registry.get(kept.device.fingerprint) is not None

    @pytest.mark.asyncio
    async def test_store_failure_raises_registry_failure(self, extractor, make_request):
        registry = DeviceRegistry(store=FailingStore())
        context = await extractor.extract(make_request())

        with pytest.raises(RegistryFailure):
            await registry.observe(context)
