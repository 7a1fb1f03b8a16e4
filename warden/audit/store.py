"""
Security History Store.

Append-only record of security events. It is both the audit sink for every
verification pass and the only read source for historical signals:
- Predicate queries and counts (kind, principal, address, window, severity, score)
- Per-kind retention with explicit purge
- Severity derivation from kind and risk score
- Rolling per-principal activity aggregates
- Summaries for reporting

Write failures surface as HistoryUnavailable; nothing is silently dropped.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional
from zoneinfo import ZoneInfo

import structlog

from warden.audit.aggregates import ActivityProfile, RollingAggregates
from warden.core.config import RetentionConfig
from warden.exceptions import HistoryUnavailable
from warden.types import Location, SecurityEvent, SecurityEventKind, Severity

logger = structlog.get_logger()


CRITICAL_KINDS = frozenset({
    SecurityEventKind.BRUTE_FORCE_ATTEMPT,
    SecurityEventKind.PRIVILEGE_ESCALATION,
    SecurityEventKind.THREAT_DETECTED,
})

HIGH_KINDS = frozenset({
    SecurityEventKind.LOGIN_FAILED,
    SecurityEventKind.ACCESS_DENIED,
    SecurityEventKind.SUSPICIOUS_ACTIVITY,
})


def derive_severity(kind: SecurityEventKind, risk_score: int = 0) -> Severity:
    """Severity from the risk score, overridden by inherently severe kinds."""
    if kind in CRITICAL_KINDS:
        return Severity.CRITICAL
    if kind in HIGH_KINDS:
        return Severity.HIGH
    if risk_score >= 90:
        return Severity.CRITICAL
    if risk_score >= 70:
        return Severity.HIGH
    if risk_score >= 40:
        return Severity.MEDIUM
    return Severity.LOW


@dataclass
class EventQuery:
    """Predicate over security events. Unset fields match everything."""
    kinds: Optional[Iterable[SecurityEventKind]] = None
    principal_id: Optional[str] = None
    address: Optional[str] = None
    since: Optional[float] = None
    until: Optional[float] = None
    min_severity: Optional[Severity] = None
    min_risk_score: Optional[int] = None
    requires_location: bool = False
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kinds is not None:
            self.kinds = frozenset(self.kinds)

    def matches(self, event: SecurityEvent) -> bool:
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.principal_id is not None and event.principal_id != self.principal_id:
            return False
        if self.address is not None and event.address != self.address:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at > self.until:
            return False
        if self.min_severity is not None and event.severity.rank < self.min_severity.rank:
            return False
        if self.min_risk_score is not None and event.risk_score < self.min_risk_score:
            return False
        if self.requires_location and event.location is None:
            return False
        return True


class HistoryStore(ABC):
    """Append-only, predicate-queryable security event store."""

    @abstractmethod
    async def append(self, event: SecurityEvent) -> bool:
        """Store an event. Returns False if the event id was already stored."""
        pass

    @abstractmethod
    async def query(self, query: EventQuery) -> list[SecurityEvent]:
        """Matching events, newest first."""
        pass

    @abstractmethod
    async def count(self, query: EventQuery) -> int:
        pass

    @abstractmethod
    async def activity_profile(
        self,
        principal_id: str,
        now: float,
        lookback_days: int = 30,
    ) -> ActivityProfile:
        pass

    @abstractmethod
    async def purge_expired(self, now: Optional[float] = None) -> int:
        pass


class InMemoryHistoryStore(HistoryStore):
    """
    In-process history store.

    Keeps per-principal and per-address indexes so that the sliding-window
    counts used for scoring only touch the relevant events.
    """

    def __init__(
        self,
        zone: Optional[ZoneInfo] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._events: dict[str, SecurityEvent] = {}
        self._by_principal: dict[str, list[str]] = {}
        self._by_address: dict[str, list[str]] = {}
        self._aggregates = RollingAggregates(zone=zone)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._logger = logger.bind(component="history_store")

    def __len__(self) -> int:
        return len(self._events)

    async def append(self, event: SecurityEvent) -> bool:
        async with self._lock:
            if event.event_id in self._events:
                return False

            self._events[event.event_id] = event
            if event.principal_id:
                self._by_principal.setdefault(event.principal_id, []).append(event.event_id)
                self._aggregates.add(event.principal_id, event.created_at)
            self._by_address.setdefault(event.address, []).append(event.event_id)
            return True

    def _candidates(self, query: EventQuery) -> Iterable[SecurityEvent]:
        if query.principal_id is not None:
            ids = self._by_principal.get(query.principal_id, [])
        elif query.address is not None:
            ids = self._by_address.get(query.address, [])
        else:
            return list(self._events.values())
        return [self._events[i] for i in ids if i in self._events]

    async def query(self, query: EventQuery) -> list[SecurityEvent]:
        events = [e for e in self._candidates(query) if query.matches(e)]
        events.sort(key=lambda e: e.created_at, reverse=True)
        if query.limit is not None:
            events = events[:query.limit]
        return events

    async def count(self, query: EventQuery) -> int:
        return sum(1 for e in self._candidates(query) if query.matches(e))

    async def activity_profile(
        self,
        principal_id: str,
        now: float,
        lookback_days: int = 30,
    ) -> ActivityProfile:
        return self._aggregates.profile(principal_id, now, lookback_days)

    async def purge_expired(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        async with self._lock:
            expired = [e for e in self._events.values() if e.is_expired(now)]
            for event in expired:
                del self._events[event.event_id]
                if event.principal_id:
                    self._aggregates.remove(event.principal_id, event.created_at)

            if expired:
                live = set(self._events)
                for index in (self._by_principal, self._by_address):
                    for key in list(index):
                        index[key] = [i for i in index[key] if i in live]
                        if not index[key]:
                            del index[key]

        if expired:
            self._logger.info("Expired security events purged", count=len(expired))
        return len(expired)

    async def summary(self, since: Optional[float] = None) -> dict[str, Any]:
        """Aggregate counts by kind and severity."""
        events = await self.query(EventQuery(since=since))
        return {
            "total": len(events),
            "by_kind": dict(Counter(e.kind.value for e in events)),
            "by_severity": dict(Counter(e.severity.value for e in events)),
            "high_risk": sum(1 for e in events if e.risk_score >= 70),
            "unique_addresses": len({e.address for e in events}),
        }


class SecurityEventRecorder:
    """
    Builds SecurityEvents with derived severity and expiry and appends them.

    Raises:
        HistoryUnavailable: if the underlying store fails
    """

    def __init__(
        self,
        store: HistoryStore,
        retention: Optional[RetentionConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.retention = retention if retention is not None else RetentionConfig()
        self._clock = clock
        self._logger = logger.bind(component="security_event_recorder")

    def build(
        self,
        kind: SecurityEventKind,
        address: str,
        principal_id: Optional[str] = None,
        event_id: Optional[str] = None,
        created_at: Optional[float] = None,
        location: Optional[Location] = None,
        device: Optional[dict[str, Any]] = None,
        risk_score: int = 0,
        risk: Optional[dict[str, Any]] = None,
        threat_score: int = 0,
        decision: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        severity: Optional[Severity] = None,
    ) -> SecurityEvent:
        created_at = self._clock() if created_at is None else created_at
        return SecurityEvent(
            event_id=event_id or uuid.uuid4().hex,
            kind=kind,
            severity=severity or derive_severity(kind, risk_score),
            address=address,
            principal_id=principal_id,
            location=location,
            device=device or {},
            risk_score=risk_score,
            risk=risk or {},
            threat_score=threat_score,
            decision=decision,
            metadata=metadata or {},
            created_at=created_at,
            expires_at=created_at + self.retention.horizon_for(kind.value),
        )

    async def record(self, kind: SecurityEventKind, address: str, **kwargs: Any) -> SecurityEvent:
        event = self.build(kind, address, **kwargs)
        try:
            stored = await self.store.append(event)
        except HistoryUnavailable:
            raise
        except Exception as e:
            raise HistoryUnavailable(f"Security event write failed: {e}") from e

        if stored:
            self._logger.debug(
                "Security event recorded",
                event_id=event.event_id,
                kind=kind.value,
                severity=event.severity.value,
            )
        return event
