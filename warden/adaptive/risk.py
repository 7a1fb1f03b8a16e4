"""
Risk Scoring Engine.

Scores every request on five independent factors and blends them with the
configured weights into a 0-100 total.

Risk factors:
- Device (verification, trust, automation signatures, age, recent incidents)
- Location (known locations, high-risk countries, VPN/proxy, impossible travel)
- Behavior (failed logins, request bursts, sessions, privilege escalation)
- Temporal (business hours, weekends, holidays, re-login cadence)
- Network (private ranges, denylist, header hygiene, request rate)
"""

from __future__ import annotations

import asyncio
import ipaddress
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import structlog

from warden.capabilities.denylist import Denylist, NullDenylist, is_denylisted
from warden.capabilities.geolocation import travel_speed
from warden.core.config import WardenConfig
from warden.devices.models import Device, RiskTag
from warden.signals import SignalSource
from warden.types import (
    SUSPICIOUS_DEVICE_EVENTS,
    Principal,
    RequestContext,
    SecurityEventKind,
)

logger = structlog.get_logger()

DAY = 86400.0
HOUR = 3600.0

AUTOMATION_SIGNATURES = (
    "curl",
    "wget",
    "python-requests",
    "bot",
    "crawler",
    "spider",
    "scraper",
)

PRIVATE_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
]

VPN_RANGE_SIZE = 1_000_000


class RiskLevel(str, Enum):
    """Risk level classifications."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RiskFactorName(str, Enum):
    """The five scored risk factors."""
    DEVICE = "device"
    LOCATION = "location"
    BEHAVIOR = "behavior"
    TEMPORAL = "temporal"
    NETWORK = "network"


FACTOR_RECOMMENDATIONS = {
    RiskFactorName.DEVICE: "Device verification required",
    RiskFactorName.LOCATION: "Geographic verification needed",
    RiskFactorName.BEHAVIOR: "Behavioral analysis required",
    RiskFactorName.NETWORK: "Network security review needed",
}


def clamp_score(value: float) -> int:
    """Round and clamp a score to [0, 100]."""
    return int(max(0, min(100, round(value))))


@dataclass
class FactorScore:
    """
    Score for a single risk factor with the reasons that produced it.
    """
    name: RiskFactorName
    score: int = 0
    reasons: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)
    tags: list[RiskTag] = field(default_factory=list)

    def add(self, points: float, reason: str, tag: Optional[RiskTag] = None) -> None:
        self.score = clamp_score(self.score + points)
        self.reasons.append(reason)
        if tag is not None and tag not in self.tags:
            self.tags.append(tag)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "reasons": self.reasons,
            "details": self.details,
        }


@dataclass
class RiskAssessment:
    """
    Complete risk assessment result.
    """
    total: int
    level: RiskLevel
    factors: dict[RiskFactorName, FactorScore]
    weights: dict[str, float]
    recommendations: list[str]
    timestamp: float = field(default_factory=time.time)

    @property
    def tags(self) -> list[RiskTag]:
        tags: list[RiskTag] = []
        for factor in self.factors.values():
            for tag in factor.tags:
                if tag not in tags:
                    tags.append(tag)
        return tags

    def factor(self, name: RiskFactorName) -> FactorScore:
        return self.factors[name]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "level": self.level.value,
            "factors": {name.value: f.to_dict() for name, f in self.factors.items()},
            "weights": self.weights,
            "recommendations": self.recommendations,
            "timestamp": self.timestamp,
        }


class RiskEngine:
    """
    Multi-factor risk scoring engine.

    All historical reads go through the SignalSource. The five factors are
    independent and evaluated concurrently.
    """

    def __init__(
        self,
        config: WardenConfig,
        signals: SignalSource,
        denylist: Optional[Denylist] = None,
    ) -> None:
        self.config = config
        self.signals = signals
        self.denylist = denylist if denylist is not None else NullDenylist()
        self._logger = logger.bind(component="risk_engine")

    async def assess(
        self,
        context: RequestContext,
        device: Device,
        principal: Optional[Principal] = None,
    ) -> RiskAssessment:
        """
        Score a request.

        Raises:
            HistoryUnavailable: if historical signals cannot be read
        """
        device_f, location_f, behavior_f, temporal_f, network_f = await asyncio.gather(
            self.assess_device(context, device),
            self.assess_location(context, principal),
            self.assess_behavior(context, principal),
            self.assess_temporal(context, principal),
            self.assess_network(context),
        )
        factors = {
            RiskFactorName.DEVICE: device_f,
            RiskFactorName.LOCATION: location_f,
            RiskFactorName.BEHAVIOR: behavior_f,
            RiskFactorName.TEMPORAL: temporal_f,
            RiskFactorName.NETWORK: network_f,
        }

        weights = self.config.risk_weights.as_dict()
        total = clamp_score(
            sum(factor.score * weights[name.value] for name, factor in factors.items())
        )
        level = self.level_for(total)

        assessment = RiskAssessment(
            total=total,
            level=level,
            factors=factors,
            weights=weights,
            recommendations=self.recommendations(total, factors),
            timestamp=context.timestamp,
        )

        self._logger.info(
            "Risk assessment completed",
            request_id=context.request_id,
            score=total,
            level=level.value,
            factors={name.value: f.score for name, f in factors.items()},
        )

        return assessment

    def level_for(self, total: int) -> RiskLevel:
        thresholds = self.config.risk_thresholds
        if total < thresholds.low:
            return RiskLevel.LOW
        if total < thresholds.medium:
            return RiskLevel.MEDIUM
        if total < thresholds.high:
            return RiskLevel.HIGH
        if total >= thresholds.critical:
            return RiskLevel.CRITICAL
        return RiskLevel.HIGH

    def recommendations(
        self,
        total: int,
        factors: dict[RiskFactorName, FactorScore],
    ) -> list[str]:
        thresholds = self.config.risk_thresholds
        recommendations: list[str] = []

        if total >= thresholds.critical:
            recommendations += [
                "Block access immediately",
                "Require administrator approval",
                "Investigate potential security breach",
            ]
        elif total >= thresholds.high:
            recommendations += [
                "Require multi-factor authentication",
                "Limit session duration",
                "Enhanced monitoring",
            ]
        elif total >= thresholds.medium:
            recommendations += [
                "Additional verification recommended",
                "Monitor session activity",
            ]

        for name, factor in factors.items():
            message = FACTOR_RECOMMENDATIONS.get(name)
            if message and factor.score > 50 and message not in recommendations:
                recommendations.append(message)

        return recommendations

    def _local_time(self, ts: float) -> datetime:
        zone = self.config.calendar.zone
        return datetime.fromtimestamp(ts, tz=timezone.utc).astimezone(zone)

    # -------------------------------------------------------------------------
    # Factors
    # -------------------------------------------------------------------------

    async def assess_device(self, context: RequestContext, device: Device) -> FactorScore:
        factor = FactorScore(RiskFactorName.DEVICE)
        now = context.timestamp

        if not device.is_verified:
            factor.add(40, "Unverified device")

        trust_penalty = max(0, 30 - device.trust_score)
        if trust_penalty:
            factor.add(trust_penalty, "Low device trust score")

        if context.traits.is_bot:
            factor.add(60, "Bot detected", RiskTag.BOT_DETECTED)

        ua = context.user_agent.lower()
        if any(sig in ua for sig in AUTOMATION_SIGNATURES) or len(context.user_agent) < 50:
            factor.add(30, "Suspicious user agent", RiskTag.SUSPICIOUS_USER_AGENT)

        if context.traits.is_mobile and not device.locations:
            factor.add(20, "Mobile device without location history")

        age_days = device.age_days(now)
        if age_days < 1:
            factor.add(25, "Very new device")
        elif age_days < 7:
            factor.add(15, "New device")

        suspicious = device.events_since(now - DAY, SUSPICIOUS_DEVICE_EVENTS)
        if suspicious:
            factor.add(10 * len(suspicious), f"{len(suspicious)} recent suspicious events")

        factor.details = {
            "trust_score": device.trust_score,
            "state": device.state.value,
            "age_days": round(age_days, 2),
            "suspicious_events": len(suspicious),
        }
        return factor

    async def assess_location(
        self,
        context: RequestContext,
        principal: Optional[Principal],
    ) -> FactorScore:
        factor = FactorScore(RiskFactorName.LOCATION)
        location = context.location

        if location is None:
            factor.add(25, "Unknown location")
            factor.details = {"location": "unknown"}
            return factor

        if principal and principal.known_locations:
            if not any(known.same_place(location) for known in principal.known_locations):
                factor.add(35, "Unknown location for principal", RiskTag.SUSPICIOUS_LOCATION)
        else:
            factor.add(20, "No known locations for principal")

        is_high_risk = (location.country_code or "").upper() in self.config.high_risk_countries
        if is_high_risk:
            factor.add(40, f"High-risk country: {location.country_code}", RiskTag.HIGH_RISK_COUNTRY)

        if location.is_vpn or location.is_proxy or (location.range_size or 0) > VPN_RANGE_SIZE:
            factor.add(25, "Possible VPN/Proxy", RiskTag.VPN_PROXY)

        speed = None
        if principal and principal.last_login_location and principal.last_login is not None:
            speed = travel_speed(
                principal.last_login_location,
                principal.last_login,
                location,
                context.timestamp,
            )
            if speed is not None and speed > self.config.threats.impossible_travel_kmh:
                factor.add(45, "Impossible travel speed detected", RiskTag.SUSPICIOUS_LOCATION)

        factor.details = {
            "country": location.country_code,
            "city": location.city,
            "is_high_risk": is_high_risk,
            "travel_speed_kmh": None if speed is None else round(speed, 1),
        }
        return factor

    async def assess_behavior(
        self,
        context: RequestContext,
        principal: Optional[Principal],
    ) -> FactorScore:
        factor = FactorScore(RiskFactorName.BEHAVIOR)

        if principal is None:
            factor.add(30, "No principal context")
            return factor

        now = context.timestamp
        pid = principal.principal_id

        failures, requests, escalations = await asyncio.gather(
            self.signals.failed_login_count(now - HOUR, principal_id=pid),
            self.signals.request_count(now - 5 * 60, principal_id=pid),
            self.signals.event_count(
                [SecurityEventKind.PRIVILEGE_ESCALATION], now - DAY, principal_id=pid
            ),
        )

        if failures > 0:
            factor.add(min(40, failures * 8), f"{failures} recent failed logins", RiskTag.FAILED_ATTEMPTS)

        if requests > 100:
            factor.add(50, "Excessive request volume", RiskTag.RAPID_REQUESTS)
        elif requests > 50:
            factor.add(25, "High request rate", RiskTag.RAPID_REQUESTS)

        if principal.last_login is not None:
            current_hour = self._local_time(now).hour
            last_hour = self._local_time(principal.last_login).hour
            if abs(current_hour - last_hour) > 12:
                factor.add(15, "Unusual access time", RiskTag.UNUSUAL_HOURS)

        if principal.active_session_count > self.config.max_concurrent_sessions:
            factor.add(20, "Multiple active sessions")

        if escalations > 0:
            factor.add(35, "Recent privilege escalation attempts")

        factor.details = {
            "principal_id": pid,
            "failed_logins": failures,
            "recent_requests": requests,
            "active_sessions": principal.active_session_count,
        }
        return factor

    async def assess_temporal(
        self,
        context: RequestContext,
        principal: Optional[Principal],
    ) -> FactorScore:
        factor = FactorScore(RiskFactorName.TEMPORAL)
        calendar = self.config.calendar
        local = self._local_time(context.timestamp)

        off_hours = local.hour < calendar.start_hour or local.hour > calendar.end_hour
        if off_hours:
            factor.add(20, "Off-hours access", RiskTag.UNUSUAL_HOURS)

        weekend = local.weekday() >= 5
        if weekend:
            factor.add(15, "Weekend access")

        if local.strftime("%m-%d") in calendar.holidays:
            factor.add(25, "Holiday access")

        if principal and principal.last_login is not None:
            since_login = context.timestamp - principal.last_login
            if 0 <= since_login < 60:
                factor.add(30, "Rapid successive login")
            elif 0 <= since_login < 300:
                factor.add(15, "Quick re-login")

        if principal and context.session_id and principal.session_started_at is not None:
            if context.timestamp - principal.session_started_at > 12 * HOUR:
                factor.add(20, "Unusually long session")

        factor.details = {
            "hour": local.hour,
            "weekday": local.weekday(),
            "is_weekend": weekend,
            "is_off_hours": off_hours,
        }
        return factor

    async def assess_network(self, context: RequestContext) -> FactorScore:
        factor = FactorScore(RiskFactorName.NETWORK)
        address = context.address

        is_private = _is_private(address)
        if is_private:
            factor.add(15, "Private IP address")

        if await is_denylisted(self.denylist, address):
            factor.add(70, "Known malicious IP")

        if not context.headers.accept_language:
            factor.add(10, "Missing Accept-Language header", RiskTag.MISSING_HEADERS)

        if not context.headers.accept_encoding:
            factor.add(15, "Missing Accept-Encoding header", RiskTag.MISSING_HEADERS)

        if has_manipulated_headers(context):
            factor.add(25, "Suspicious header patterns")

        rate = await self.signals.request_count(context.timestamp - 60, address=address)
        if rate > 100:
            factor.add(40, "High request rate", RiskTag.RAPID_REQUESTS)
        elif rate > 50:
            factor.add(20, "Elevated request rate", RiskTag.RAPID_REQUESTS)

        factor.details = {
            "address": address,
            "is_private": is_private,
            "request_rate": rate,
        }
        return factor


def _is_private(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip.version == net.version and ip in net for net in PRIVATE_NETWORKS)


def has_manipulated_headers(context: RequestContext) -> bool:
    """Forwarding header injected in the UA, odd Connection value, or no Host."""
    if "x-forwarded-for" in context.user_agent.lower():
        return True
    connection = context.connection.strip().lower()
    if connection and connection not in ("keep-alive", "close"):
        return True
    return not context.headers.host
