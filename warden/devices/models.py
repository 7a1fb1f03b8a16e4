"""
Device identity records.

A Device is keyed by a deterministic fingerprint over normalized request
traits. Its histories are fixed-size ring buffers, so a device seen millions
of times still has a bounded footprint.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from warden.types import DeviceTraits, Location, RequestContext, SecurityEventKind

DAY = 86400.0

MAX_ADDRESSES = 10
MAX_LOCATIONS = 5
MAX_SECURITY_EVENTS = 50
MAX_ENDPOINTS = 20
MAX_APPLIED_REQUESTS = 256


class DeviceState(str, Enum):
    """Verification state of a device."""
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    BLOCKED = "blocked"


class VerificationMethod(str, Enum):
    """How a device was verified."""
    EMAIL = "EMAIL"
    SMS = "SMS"
    ADMIN_APPROVAL = "ADMIN_APPROVAL"
    BEHAVIORAL_ANALYSIS = "BEHAVIORAL_ANALYSIS"


class RiskTag(str, Enum):
    """Persistent risk markers attached to a device."""
    NEW_DEVICE = "NEW_DEVICE"
    SUSPICIOUS_LOCATION = "SUSPICIOUS_LOCATION"
    BOT_DETECTED = "BOT_DETECTED"
    VPN_PROXY = "VPN_PROXY"
    RAPID_REQUESTS = "RAPID_REQUESTS"
    FAILED_ATTEMPTS = "FAILED_ATTEMPTS"
    UNUSUAL_HOURS = "UNUSUAL_HOURS"
    SUSPICIOUS_USER_AGENT = "SUSPICIOUS_USER_AGENT"
    MISSING_HEADERS = "MISSING_HEADERS"
    HIGH_RISK_COUNTRY = "HIGH_RISK_COUNTRY"


@dataclass(frozen=True)
class DeviceEvent:
    """Security event recorded against a device."""
    kind: SecurityEventKind
    timestamp: float
    address: Optional[str] = None
    risk_score: Optional[int] = None


@dataclass
class BehaviorProfile:
    """Hours, weekdays and endpoints a device has been seen using."""
    hours: set[int] = field(default_factory=set)
    days: set[int] = field(default_factory=set)
    endpoints: deque[str] = field(default_factory=lambda: deque(maxlen=MAX_ENDPOINTS))
    last_updated: Optional[float] = None

    def record(self, hour: int, weekday: int, endpoint: Optional[str], now: float) -> None:
        self.hours.add(hour)
        self.days.add(weekday)
        if endpoint and endpoint not in self.endpoints:
            self.endpoints.append(endpoint)
        self.last_updated = now


def compute_fingerprint(context: RequestContext) -> str:
    """
    Deterministic SHA-256 fingerprint over normalized request traits.
    """
    components = {
        "user_agent": context.user_agent.strip(),
        "accept_language": context.accept_language.strip().lower(),
        "accept_encoding": context.accept_encoding.strip().lower(),
        "browser": context.traits.browser.value,
        "os": context.traits.os.value,
        "device_class": context.traits.device_class.value,
    }
    canonical = json.dumps(components, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class Device:
    """
    Persistent device identity with an evolving trust score.
    """
    fingerprint: str
    traits: DeviceTraits
    user_agent: str = ""
    trust_score: int = 0
    state: DeviceState = DeviceState.UNVERIFIED
    verification_method: Optional[VerificationMethod] = None
    verified_at: Optional[float] = None
    blocked_reason: Optional[str] = None
    blocked_at: Optional[float] = None
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    access_count: int = 1
    addresses: deque[str] = field(default_factory=lambda: deque(maxlen=MAX_ADDRESSES))
    locations: deque[Location] = field(default_factory=lambda: deque(maxlen=MAX_LOCATIONS))
    risk_tags: list[RiskTag] = field(default_factory=list)
    security_events: deque[DeviceEvent] = field(
        default_factory=lambda: deque(maxlen=MAX_SECURITY_EVENTS)
    )
    behavior: BehaviorProfile = field(default_factory=BehaviorProfile)
    principals: set[str] = field(default_factory=set)
    last_risk_score: Optional[int] = None
    last_risk_assessment: Optional[float] = None
    applied_requests: deque[str] = field(
        default_factory=lambda: deque(maxlen=MAX_APPLIED_REQUESTS)
    )

    @property
    def is_verified(self) -> bool:
        return self.state == DeviceState.VERIFIED

    @property
    def is_blocked(self) -> bool:
        return self.state == DeviceState.BLOCKED

    def age_days(self, now: float) -> float:
        return max(0.0, (now - self.first_seen) / DAY)

    def add_address(self, address: str) -> None:
        if address and address not in self.addresses:
            self.addresses.append(address)

    def add_location(self, location: Optional[Location]) -> None:
        if location is None:
            return
        if not any(known.same_place(location) for known in self.locations):
            self.locations.append(location)

    def add_tag(self, tag: RiskTag) -> bool:
        if tag in self.risk_tags:
            return False
        self.risk_tags.append(tag)
        return True

    def events_since(self, since: float, kinds: Optional[frozenset] = None) -> list[DeviceEvent]:
        return [
            e for e in self.security_events
            if e.timestamp >= since and (kinds is None or e.kind in kinds)
        ]

    def recompute_trust(self, now: float) -> int:
        """
        Recompute the trust score from verification, age, usage, location
        consistency, recent security events and risk tags.
        """
        score = 0.0

        if self.is_verified:
            score += 30

        score += min(20.0, self.age_days(now) * 2)

        if self.access_count > 100:
            score += 20
        elif self.access_count > 50:
            score += 15
        elif self.access_count > 10:
            score += 10

        if len(self.locations) <= 3:
            score += 15

        if not self.events_since(now - 7 * DAY):
            score += 15

        score -= len(self.risk_tags) * 5

        self.trust_score = int(max(0, min(100, round(score))))
        return self.trust_score

    def summary(self) -> dict[str, Any]:
        """Compact form embedded in audit events."""
        return {
            "fingerprint": self.fingerprint,
            "state": self.state.value,
            "trust_score": self.trust_score,
            "access_count": self.access_count,
            "device_class": self.traits.device_class.value,
            "browser": self.traits.browser.value,
            "os": self.traits.os.value,
            "is_bot": self.traits.is_bot,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.summary(),
            "user_agent": self.user_agent,
            "verification_method": (
                self.verification_method.value if self.verification_method else None
            ),
            "verified_at": self.verified_at,
            "blocked_reason": self.blocked_reason,
            "blocked_at": self.blocked_at,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "addresses": list(self.addresses),
            "locations": [loc.to_dict() for loc in self.locations],
            "risk_tags": [tag.value for tag in self.risk_tags],
            "recent_events": [
                {"kind": e.kind.value, "timestamp": e.timestamp} for e in self.security_events
            ],
            "behavior": {
                "hours": sorted(self.behavior.hours),
                "days": sorted(self.behavior.days),
                "endpoints": list(self.behavior.endpoints),
            },
            "principals": sorted(self.principals),
            "last_risk_score": self.last_risk_score,
        }
