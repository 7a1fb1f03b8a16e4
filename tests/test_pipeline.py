"""
Zero Trust Pipeline Tests

End-to-end verification passes against in-memory stores.
"""

import pytest

from warden.adaptive.threats import ThreatCategory
from warden.audit.store import EventQuery, InMemoryHistoryStore
from warden.devices.models import RiskTag
from warden.devices.registry import InMemoryDeviceStore
from warden.types import Principal, SecurityEventKind
from warden.zero_trust.decision import DecisionOutcome, TrustLevel
from warden.zero_trust.pipeline import ZeroTrustPipeline

from conftest import BOSTON, EQUATOR_WEST, NOW

DAY = 86400.0


class OfflineDeviceStore(InMemoryDeviceStore):
    async def get(self, fingerprint):
        raise ConnectionError("device store offline")


class ReadOnlyHistoryStore(InMemoryHistoryStore):
    async def append(self, event):
        raise OSError("audit volume is read-only")



class FlakyDeviceStore(InMemoryDeviceStore):
    """Accepts the first write, then fails."""

    def __init__(self):
        super().__init__()
        self.writes = 0

    async def put(self, device):
        self.writes += 1
        if self.writes > 1:
            raise ConnectionError("device store lost its connection")
        await super().put(device)


class TestEvaluate:
    """Tests for complete verification passes."""

    @pytest.mark.asyncio
    async def test_known_user_on_new_device_allowed(self, pipeline, make_request, principal):
        decision = await pipeline.evaluate(make_request(request_id="r1"), principal)

        assert decision.outcome == DecisionOutcome.ALLOW
        assert decision.trust_level == TrustLevel.HIGH
        assert decision.request_id == "r1"
        assert decision.device_fingerprint
        assert decision.verified_at == NOW
        assert not decision.fail_closed

    @pytest.mark.asyncio
    async def test_pass_is_audited(self, pipeline, make_request, principal):
        decision = await pipeline.evaluate(make_request(request_id="r1"), principal)

        events = await pipeline.history.query(EventQuery(principal_id="alice"))
        assert len(events) == 1
        event = events[0]
        assert event.event_id == "r1"
        assert event.kind == SecurityEventKind.ZERO_TRUST_VERIFICATION
        assert event.decision == "ALLOW"
        assert event.risk_score == decision.risk_score
        assert event.location == BOSTON
        assert event.metadata["path"] == "/api/orders"
        assert event.metadata["new_device"]

    @pytest.mark.asyncio
    async def test_device_updated_after_pass(self, pipeline, make_request, principal):
        decision = await pipeline.evaluate(make_request(), principal)

        device = await pipeline.registry.get(decision.device_fingerprint)
        assert device.last_risk_score == decision.risk_score
        assert device.last_risk_assessment == NOW
        assert "alice" in device.principals

    @pytest.mark.asyncio
    async def test_brute_force_denied(self, pipeline, make_request, principal):
        for i in range(5):
            await pipeline.record_event(
                SecurityEventKind.LOGIN_FAILED,
                "203.0.113.10",
                principal_id="alice",
                created_at=NOW - i * 30,
            )

        decision = await pipeline.evaluate(make_request(), principal)

        assert decision.outcome == DecisionOutcome.DENY
        assert decision.reason == "critical_threat:brute_force"
        assert decision.http_status == 403

        device = await pipeline.registry.get(decision.device_fingerprint)
        assert [e.kind for e in device.security_events] == [SecurityEventKind.ACCESS_DENIED]
        assert RiskTag.FAILED_ATTEMPTS in device.risk_tags

    @pytest.mark.asyncio
    async def test_impossible_travel_denied(self, pipeline, make_request, clock):
        principal = Principal(principal_id="alice", known_locations=[EQUATOR_WEST])
        first = await pipeline.evaluate(
            make_request(address="198.51.100.5", timestamp=NOW - 10 * 60), principal
        )
        assert first.allowed

        second = await pipeline.evaluate(make_request(address="192.0.2.1"), principal)

        assert second.outcome == DecisionOutcome.DENY
        assert "geographic_anomaly" in second.reason

    @pytest.mark.asyncio
    async def test_blocked_device_denied(self, pipeline, make_request, principal):
        first = await pipeline.evaluate(make_request(request_id="r1"), principal)
        await pipeline.registry.block(first.device_fingerprint, "reported stolen")

        decision = await pipeline.evaluate(make_request(request_id="r2"), principal)

        assert decision.outcome == DecisionOutcome.DENY
        assert decision.reason == "critical_threat:device_anomaly"

    @pytest.mark.asyncio
    async def test_malicious_payload_recorded_on_device(self, pipeline, make_request, principal):
        decision = await pipeline.evaluate(
            make_request(method="POST"), principal, payload="<script>alert(1)</script>"
        )

        assert decision.allowed
        assert decision.threats.checks[ThreatCategory.MALICIOUS_PAYLOAD].detected
        device = await pipeline.registry.get(decision.device_fingerprint)
        assert SecurityEventKind.SUSPICIOUS_ACTIVITY in [e.kind for e in device.security_events]


class TestInjectedStores:
    """Supplied stores are used even when empty."""

    @pytest.mark.asyncio
    async def test_empty_stores_are_kept(self, config, geolocator, clock, make_request, principal):
        history = InMemoryHistoryStore(clock=clock)
        devices = InMemoryDeviceStore()
        pipeline = ZeroTrustPipeline(
            config, geolocator=geolocator, device_store=devices, history=history, clock=clock
        )

        assert pipeline.history is history
        assert pipeline.registry.store is devices

        await pipeline.evaluate(make_request(), principal)

        assert len(history) == 1
        assert len(devices) == 1


class TestIdempotency:
    """Replaying a request id must not double-count."""

    @pytest.mark.asyncio
    async def test_replayed_request(self, pipeline, make_request, principal):
        request = make_request(request_id="same")

        first = await pipeline.evaluate(request, principal)
        second = await pipeline.evaluate(request, principal)

        device = await pipeline.registry.get(first.device_fingerprint)
        assert device.access_count == 1
        assert len(pipeline.history) == 1
        assert second.device_fingerprint == first.device_fingerprint


class TestFailClosed:
    """Infrastructure failures must deny."""

    @pytest.mark.asyncio
    async def test_registry_failure_denies(self, config, geolocator, clock, make_request):
        pipeline = ZeroTrustPipeline(
            config, geolocator=geolocator, device_store=OfflineDeviceStore(), clock=clock
        )

        decision = await pipeline.evaluate(make_request(request_id="r1"))

        assert decision.outcome == DecisionOutcome.DENY
        assert decision.fail_closed
        assert decision.risk_score == 100
        assert decision.reason == "security_verification_failed"
        assert decision.http_status == 500
        assert decision.request_id == "r1"

    @pytest.mark.asyncio
    async def test_audit_failure_denies_and_degrades(self, config, geolocator, clock, make_request):
        pipeline = ZeroTrustPipeline(
            config, geolocator=geolocator, history=ReadOnlyHistoryStore(clock=clock), clock=clock
        )

        decision = await pipeline.evaluate(make_request())

        assert decision.outcome == DecisionOutcome.DENY
        assert decision.degraded_audit
        assert pipeline.degraded_audit

    @pytest.mark.asyncio
    async def test_device_update_failure_is_audited_as_deny(self, config, geolocator, clock,
                                                            make_request, principal):
        pipeline = ZeroTrustPipeline(
            config, geolocator=geolocator, device_store=FlakyDeviceStore(), clock=clock
        )

        decision = await pipeline.evaluate(make_request(request_id="r1"), principal)

        assert decision.outcome == DecisionOutcome.DENY
        assert decision.fail_closed
        events = await pipeline.history.query(EventQuery(principal_id="alice"))
        assert [e.decision for e in events] == ["DENY"]
        assert events[0].event_id == "r1"
        assert events[0].risk_score == 100
        assert events[0].metadata["reason"] == "security_verification_failed"

    @pytest.mark.asyncio
    async def test_signal_failure_denies(self, config, geolocator, clock, make_request, principal):
        from conftest import FakeSignalSource

        pipeline = ZeroTrustPipeline(
            config, geolocator=geolocator, signals=FakeSignalSource(fail=True), clock=clock
        )

        decision = await pipeline.evaluate(make_request(), principal)

        assert decision.fail_closed
        assert not pipeline.degraded_audit


class TestRetention:
    """Tests for retention runs."""

    @pytest.mark.asyncio
    async def test_run_retention(self, pipeline, make_request, principal):
        await pipeline.evaluate(make_request(), principal)
        await pipeline.record_event(SecurityEventKind.API_REQUEST, "203.0.113.10")

        early = await pipeline.run_retention(NOW + 31 * DAY)
        assert early == {"events_purged": 1, "devices_removed": 0}

        late = await pipeline.run_retention(NOW + 731 * DAY)
        assert late == {"events_purged": 1, "devices_removed": 1}
