"""
Security History and Audit Tests
"""

import math

import pytest

from warden.audit.aggregates import ActivityProfile, RollingAggregates, deviation
from warden.audit.store import (
    EventQuery,
    InMemoryHistoryStore,
    SecurityEventRecorder,
    derive_severity,
)
from warden.core.config import RetentionConfig
from warden.exceptions import HistoryUnavailable
from warden.types import Location, SecurityEventKind, Severity

from conftest import NOW

DAY = 86400.0
HOUR = 3600.0


@pytest.fixture
def store(clock):
    return InMemoryHistoryStore(clock=clock)


@pytest.fixture
def recorder(store, clock):
    return SecurityEventRecorder(store, RetentionConfig(), clock)


class BrokenStore(InMemoryHistoryStore):
    async def append(self, event):
        raise OSError("disk full")


class TestSeverity:
    """Tests for severity derivation."""

    def test_inherently_severe_kinds(self):
        assert derive_severity(SecurityEventKind.BRUTE_FORCE_ATTEMPT) == Severity.CRITICAL
        assert derive_severity(SecurityEventKind.LOGIN_FAILED) == Severity.HIGH

    @pytest.mark.parametrize("score,expected", [
        (0, Severity.LOW),
        (39, Severity.LOW),
        (40, Severity.MEDIUM),
        (70, Severity.HIGH),
        (90, Severity.CRITICAL),
    ])
    def test_score_bands(self, score, expected):
        assert derive_severity(SecurityEventKind.API_REQUEST, score) == expected


class TestSecurityEventRecorder:
    """Tests for building and recording events."""

    @pytest.mark.asyncio
    async def test_record_sets_severity_and_expiry(self, recorder, store):
        event = await recorder.record(
            SecurityEventKind.API_REQUEST,
            "203.0.113.10",
            principal_id="alice",
            risk_score=72,
        )

        assert event.severity == Severity.HIGH
        assert event.created_at == NOW
        assert event.expires_at == NOW + 30 * DAY
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_duplicate_event_id_stored_once(self, recorder, store):
        await recorder.record(SecurityEventKind.LOGIN_FAILED, "203.0.113.10", event_id="e1")
        await recorder.record(SecurityEventKind.LOGIN_FAILED, "203.0.113.10", event_id="e1")
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_write_failure_raises(self, clock):
        recorder = SecurityEventRecorder(BrokenStore(clock=clock), clock=clock)
        with pytest.raises(HistoryUnavailable):
            await recorder.record(SecurityEventKind.LOGIN_FAILED, "203.0.113.10")


class TestHistoryQueries:
    """Tests for predicate queries and counts."""

    @pytest.mark.asyncio
    async def test_query_filters_and_orders(self, recorder, store):
        await recorder.record(SecurityEventKind.LOGIN_FAILED, "203.0.113.10",
                              principal_id="alice", created_at=NOW - 2 * HOUR)
        await recorder.record(SecurityEventKind.LOGIN_FAILED, "203.0.113.10",
                              principal_id="alice", created_at=NOW - 60)
        await recorder.record(SecurityEventKind.LOGIN_SUCCESS, "203.0.113.10",
                              principal_id="alice", created_at=NOW - 30)
        await recorder.record(SecurityEventKind.LOGIN_FAILED, "198.51.100.1",
                              principal_id="bob", created_at=NOW - 10)

        recent_failures = await store.query(EventQuery(
            kinds=[SecurityEventKind.LOGIN_FAILED],
            principal_id="alice",
            since=NOW - HOUR,
        ))
        assert [e.created_at for e in recent_failures] == [NOW - 60]

        all_failures = await store.query(EventQuery(kinds=[SecurityEventKind.LOGIN_FAILED]))
        assert [e.principal_id for e in all_failures] == ["bob", "alice", "alice"]

        by_address = await store.count(EventQuery(address="203.0.113.10"))
        assert by_address == 3

    @pytest.mark.asyncio
    async def test_severity_score_and_location_filters(self, recorder, store):
        await recorder.record(SecurityEventKind.API_REQUEST, "203.0.113.10", risk_score=10)
        await recorder.record(SecurityEventKind.API_REQUEST, "203.0.113.10", risk_score=95,
                              location=Location(country_code="US"))

        assert await store.count(EventQuery(min_severity=Severity.HIGH)) == 1
        assert await store.count(EventQuery(min_risk_score=50)) == 1
        assert await store.count(EventQuery(requires_location=True)) == 1

    @pytest.mark.asyncio
    async def test_limit(self, recorder, store):
        for i in range(5):
            await recorder.record(SecurityEventKind.API_REQUEST, "203.0.113.10",
                                  created_at=NOW - i)
        events = await store.query(EventQuery(limit=2))
        assert [e.created_at for e in events] == [NOW, NOW - 1]

    @pytest.mark.asyncio
    async def test_purge_expired(self, recorder, store):
        await recorder.record(SecurityEventKind.API_REQUEST, "203.0.113.10", principal_id="alice")
        await recorder.record(SecurityEventKind.LOGIN_FAILED, "203.0.113.10", principal_id="alice")

        purged = await store.purge_expired(NOW + 31 * DAY)

        assert purged == 1
        remaining = await store.query(EventQuery(principal_id="alice"))
        assert [e.kind for e in remaining] == [SecurityEventKind.LOGIN_FAILED]

    @pytest.mark.asyncio
    async def test_summary(self, recorder, store):
        await recorder.record(SecurityEventKind.LOGIN_FAILED, "203.0.113.10")
        await recorder.record(SecurityEventKind.API_REQUEST, "198.51.100.1", risk_score=80)

        summary = await store.summary()

        assert summary["total"] == 2
        assert summary["by_kind"] == {"LOGIN_FAILED": 1, "API_REQUEST": 1}
        assert summary["high_risk"] == 1
        assert summary["unique_addresses"] == 2


class TestRollingAggregates:
    """Tests for incrementally maintained activity baselines."""

    def test_empty_profile(self):
        assert RollingAggregates().profile("alice", NOW) == ActivityProfile()

    def test_hour_and_daily_baseline(self):
        aggregates = RollingAggregates()
        # One event at 09:00 and one at 11:00 on each of the previous 10 days
        for day in range(1, 11):
            base = NOW - day * DAY
            aggregates.add("alice", base - 5 * HOUR)
            aggregates.add("alice", base - 3 * HOUR)
        aggregates.add("alice", NOW)

        profile = aggregates.profile("alice", NOW)

        assert profile.data_points == 21
        assert profile.daily_counts == [2] * 10
        assert profile.today_count == 1
        assert profile.daily_mean == 2
        assert profile.daily_std == 0
        assert profile.hour_mean == pytest.approx((9 * 10 + 11 * 10 + 14) / 21)

    def test_lookback_window(self):
        aggregates = RollingAggregates()
        aggregates.add("alice", NOW - 40 * DAY)
        aggregates.add("alice", NOW - 2 * DAY)

        assert aggregates.profile("alice", NOW, lookback_days=30).data_points == 1

    def test_remove_reverses_add(self):
        aggregates = RollingAggregates()
        aggregates.add("alice", NOW - DAY)
        aggregates.remove("alice", NOW - DAY)
        assert aggregates.profile("alice", NOW).data_points == 0

    def test_deviation(self):
        assert deviation(14, 10, 2) == 2
        assert deviation(10, 10, 0) == 0
        assert math.isinf(deviation(11, 10, 0))

    @pytest.mark.asyncio
    async def test_store_maintains_aggregates(self, recorder, store):
        for i in range(3):
            await recorder.record(SecurityEventKind.API_REQUEST, "203.0.113.10",
                                  principal_id="alice", created_at=NOW - i * DAY)

        profile = await store.activity_profile("alice", NOW)
        assert profile.data_points == 3
        assert profile.today_count == 1
