"""
Threat Detection.

Pattern and statistical threat scanner that runs independently of the risk
engine over the same request context plus the raw payload.

Checks:
- Brute force (failed logins per address and per principal)
- Rate limiting (requests per address)
- Malicious payload (SQL injection, XSS, path traversal, command injection)
- Anomalous behavior (z-score of access hour and daily volume)
- Suspicious user agent (scanner tools, truncated or non-browser agents)
- Geographic anomaly (new country, impossible travel)
- Temporal anomaly (small hours, weekends, rapid re-login)
- Device anomaly (unknown or blocked device, bots)
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import structlog

from warden.adaptive.risk import clamp_score
from warden.audit.aggregates import deviation
from warden.capabilities.geolocation import travel_speed
from warden.core.config import WardenConfig
from warden.devices.registry import DeviceObservation
from warden.signals import SignalSource
from warden.types import Principal, RequestContext, Severity

logger = structlog.get_logger()

DAY = 86400.0


class ThreatCategory(str, Enum):
    """Threat check categories."""
    BRUTE_FORCE = "brute_force"
    RATE_LIMITING = "rate_limiting"
    MALICIOUS_PAYLOAD = "malicious_payload"
    ANOMALOUS_BEHAVIOR = "anomalous_behavior"
    SUSPICIOUS_USER_AGENT = "suspicious_user_agent"
    GEOGRAPHIC_ANOMALY = "geographic_anomaly"
    TEMPORAL_ANOMALY = "temporal_anomaly"
    DEVICE_ANOMALY = "device_anomaly"


class ThreatAction(str, Enum):
    """Response suggested by a threat check."""
    NONE = "none"
    BLOCK_ADDRESS = "block_address"
    THROTTLE = "throttle"
    BLOCK_REQUEST = "block_request"
    ENHANCED_MONITORING = "enhanced_monitoring"
    ENHANCED_LOGGING = "enhanced_logging"
    REQUIRE_VERIFICATION = "require_verification"
    BLOCK_ACCESS = "block_access"
    LOG_ANOMALY = "log_anomaly"
    DEVICE_VERIFICATION = "device_verification"
    BLOCK_DEVICE = "block_device"


class PayloadCategory(str, Enum):
    SQL_INJECTION = "SQL_INJECTION"
    XSS = "XSS"
    PATH_TRAVERSAL = "PATH_TRAVERSAL"
    COMMAND_INJECTION = "COMMAND_INJECTION"


CATEGORY_WEIGHTS = {
    ThreatCategory.BRUTE_FORCE: 25,
    ThreatCategory.RATE_LIMITING: 15,
    ThreatCategory.MALICIOUS_PAYLOAD: 30,
    ThreatCategory.ANOMALOUS_BEHAVIOR: 10,
    ThreatCategory.SUSPICIOUS_USER_AGENT: 5,
    ThreatCategory.GEOGRAPHIC_ANOMALY: 10,
    ThreatCategory.TEMPORAL_ANOMALY: 3,
    ThreatCategory.DEVICE_ANOMALY: 2,
}

SEVERITY_MULTIPLIERS = {
    Severity.CRITICAL: 1.0,
    Severity.HIGH: 0.8,
    Severity.MEDIUM: 0.6,
    Severity.LOW: 0.3,
}

MALICIOUS_PATTERNS = [
    (re.compile(r"sql.*injection", re.IGNORECASE), PayloadCategory.SQL_INJECTION),
    (re.compile(r"union.*select", re.IGNORECASE), PayloadCategory.SQL_INJECTION),
    (re.compile(r"script.*alert", re.IGNORECASE), PayloadCategory.XSS),
    (re.compile(r"<script", re.IGNORECASE), PayloadCategory.XSS),
    (re.compile(r"javascript:", re.IGNORECASE), PayloadCategory.XSS),
    (re.compile(r"vbscript:", re.IGNORECASE), PayloadCategory.XSS),
    (re.compile(r"onload=", re.IGNORECASE), PayloadCategory.XSS),
    (re.compile(r"onerror=", re.IGNORECASE), PayloadCategory.XSS),
    (re.compile(r"\.\./\.\./"), PayloadCategory.PATH_TRAVERSAL),
    (re.compile(r"etc/passwd", re.IGNORECASE), PayloadCategory.PATH_TRAVERSAL),
    (re.compile(r"cmd\.exe", re.IGNORECASE), PayloadCategory.COMMAND_INJECTION),
    (re.compile(r"powershell", re.IGNORECASE), PayloadCategory.COMMAND_INJECTION),
]

SCANNER_SIGNATURES = (
    "sqlmap",
    "nikto",
    "nmap",
    "masscan",
    "burp",
    "owasp",
    "w3af",
    "acunetix",
    "nessus",
)

ACTION_RECOMMENDATIONS = {
    ThreatAction.BLOCK_ADDRESS: "Block IP address immediately",
    ThreatAction.BLOCK_ACCESS: "Block user access",
    ThreatAction.THROTTLE: "Apply rate limiting",
    ThreatAction.BLOCK_REQUEST: "Reject request payload",
    ThreatAction.REQUIRE_VERIFICATION: "Require additional verification",
    ThreatAction.ENHANCED_MONITORING: "Enable enhanced monitoring",
    ThreatAction.ENHANCED_LOGGING: "Enable enhanced request logging",
    ThreatAction.DEVICE_VERIFICATION: "Verify device identity",
    ThreatAction.BLOCK_DEVICE: "Keep device blocked pending review",
}


@dataclass
class ThreatCheck:
    """Outcome of a single threat check."""
    category: ThreatCategory
    detected: bool = False
    severity: Severity = Severity.LOW
    details: dict[str, Any] = field(default_factory=dict)
    action: ThreatAction = ThreatAction.NONE

    @property
    def weighted_score(self) -> float:
        if not self.detected:
            return 0.0
        return CATEGORY_WEIGHTS[self.category] * SEVERITY_MULTIPLIERS[self.severity]

    def to_dict(self) -> dict[str, Any]:
        return {
            "detected": self.detected,
            "severity": self.severity.value,
            "details": self.details,
            "action": self.action.value,
        }


@dataclass
class ThreatAnalysis:
    """Aggregated result of all threat checks."""
    score: int
    level: Severity
    checks: dict[ThreatCategory, ThreatCheck]
    recommendations: list[str]
    timestamp: float = field(default_factory=time.time)

    @property
    def detected(self) -> list[ThreatCheck]:
        return [c for c in self.checks.values() if c.detected]

    @property
    def critical(self) -> list[ThreatCheck]:
        """Detected checks that are independently severe enough to deny."""
        return [c for c in self.detected if c.severity == Severity.CRITICAL]

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level.value,
            "checks": {cat.value: c.to_dict() for cat, c in self.checks.items()},
            "recommendations": self.recommendations,
            "timestamp": self.timestamp,
        }


def scan_payload(payload: Any) -> list[dict[str, str]]:
    """Match a serialized payload against the malicious pattern catalog."""
    if payload is None:
        return []
    if isinstance(payload, (bytes, bytearray)):
        text = payload.decode("utf-8", errors="replace")
    elif isinstance(payload, str):
        text = payload
    else:
        text = json.dumps(payload, default=str)

    return [
        {"pattern": pattern.pattern, "category": category.value}
        for pattern, category in MALICIOUS_PATTERNS
        if pattern.search(text)
    ]


class ThreatDetector:
    """
    Runs the eight threat checks concurrently and scores the result.
    """

    def __init__(self, config: WardenConfig, signals: SignalSource) -> None:
        self.config = config
        self.patterns = config.threats
        self.signals = signals
        self._logger = logger.bind(component="threat_detector")

    async def analyze(
        self,
        context: RequestContext,
        observation: DeviceObservation,
        principal: Optional[Principal] = None,
        payload: Any = None,
    ) -> ThreatAnalysis:
        """
        Raises:
            HistoryUnavailable: if historical signals cannot be read
        """
        results = await asyncio.gather(
            self.check_brute_force(context, principal),
            self.check_rate_limiting(context),
            self.check_payload(payload),
            self.check_anomalous_behavior(context, principal),
            self.check_user_agent(context),
            self.check_geography(context, principal),
            self.check_temporal(context, principal),
            self.check_device(context, observation, principal),
        )
        checks = {check.category: check for check in results}

        score = clamp_score(sum(c.weighted_score for c in checks.values()))
        level = self.level_for(score)

        analysis = ThreatAnalysis(
            score=score,
            level=level,
            checks=checks,
            recommendations=self.recommendations(checks, score),
            timestamp=context.timestamp,
        )

        if analysis.detected:
            self._logger.warning(
                "Threats detected",
                request_id=context.request_id,
                score=score,
                level=level.value,
                categories=[c.category.value for c in analysis.detected],
            )

        return analysis

    @staticmethod
    def level_for(score: int) -> Severity:
        if score >= 80:
            return Severity.CRITICAL
        if score >= 60:
            return Severity.HIGH
        if score >= 30:
            return Severity.MEDIUM
        return Severity.LOW

    @staticmethod
    def recommendations(checks: dict[ThreatCategory, ThreatCheck], score: int) -> list[str]:
        recommendations: list[str] = []
        for check in checks.values():
            message = ACTION_RECOMMENDATIONS.get(check.action)
            if check.detected and message and message not in recommendations:
                recommendations.append(message)

        if score >= 80:
            recommendations.append("Immediate security team notification")
            recommendations.append("Consider incident response procedures")

        return recommendations

    def _local_time(self, ts: float) -> datetime:
        return datetime.fromtimestamp(ts, tz=timezone.utc).astimezone(self.config.calendar.zone)

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    async def check_brute_force(
        self,
        context: RequestContext,
        principal: Optional[Principal],
    ) -> ThreatCheck:
        since = context.timestamp - self.patterns.brute_force_window
        address_failures = await self.signals.failed_login_count(since, address=context.address)
        principal_failures = 0
        if principal:
            principal_failures = await self.signals.failed_login_count(
                since, principal_id=principal.principal_id
            )

        limit = self.patterns.brute_force_max_attempts
        detected = address_failures >= limit or principal_failures >= limit

        return ThreatCheck(
            category=ThreatCategory.BRUTE_FORCE,
            detected=detected,
            severity=Severity.CRITICAL if detected else Severity.LOW,
            details={
                "address_failures": address_failures,
                "principal_failures": principal_failures,
                "threshold": limit,
                "window_minutes": self.patterns.brute_force_window / 60,
            },
            action=ThreatAction.BLOCK_ADDRESS if detected else ThreatAction.NONE,
        )

    async def check_rate_limiting(self, context: RequestContext) -> ThreatCheck:
        since = context.timestamp - self.patterns.rate_limit_window
        count = await self.signals.request_count(since, address=context.address)
        detected = count >= self.patterns.rate_limit_max_requests

        return ThreatCheck(
            category=ThreatCategory.RATE_LIMITING,
            detected=detected,
            severity=Severity.MEDIUM if detected else Severity.LOW,
            details={
                "request_count": count,
                "threshold": self.patterns.rate_limit_max_requests,
                "window_seconds": self.patterns.rate_limit_window,
            },
            action=ThreatAction.THROTTLE if detected else ThreatAction.NONE,
        )

    async def check_payload(self, payload: Any) -> ThreatCheck:
        matches = scan_payload(payload)
        detected = bool(matches)
        categories = sorted({m["category"] for m in matches})

        return ThreatCheck(
            category=ThreatCategory.MALICIOUS_PAYLOAD,
            detected=detected,
            severity=Severity.HIGH if detected else Severity.LOW,
            details={"patterns": matches, "categories": categories},
            action=ThreatAction.BLOCK_REQUEST if detected else ThreatAction.NONE,
        )

    async def check_anomalous_behavior(
        self,
        context: RequestContext,
        principal: Optional[Principal],
    ) -> ThreatCheck:
        check = ThreatCheck(category=ThreatCategory.ANOMALOUS_BEHAVIOR)
        if principal is None:
            return check

        profile = await self.signals.activity_profile(
            principal.principal_id,
            context.timestamp,
            self.patterns.anomaly_lookback_days,
        )
        min_points = self.patterns.anomaly_min_points
        if profile.data_points < min_points:
            check.details = {"reason": "insufficient data", "data_points": profile.data_points}
            return check

        threshold = self.patterns.anomaly_std_devs
        anomalies = []

        hour = self._local_time(context.timestamp).hour
        hour_z = deviation(hour, profile.hour_mean, profile.hour_std)
        if hour_z > threshold:
            anomalies.append({
                "signal": "access_hour",
                "direction": "later" if hour > profile.hour_mean else "earlier",
                "value": hour,
                "mean": round(profile.hour_mean, 2),
            })

        # Today's count only grows during the day, so only spikes are meaningful
        if len(profile.daily_counts) >= min_points:
            count_z = deviation(profile.today_count, profile.daily_mean, profile.daily_std)
            if count_z > threshold and profile.today_count > profile.daily_mean:
                anomalies.append({
                    "signal": "daily_volume",
                    "direction": "spike",
                    "value": profile.today_count,
                    "mean": round(profile.daily_mean, 2),
                })

        check.detected = bool(anomalies)
        check.details = {
            "anomalies": anomalies,
            "data_points": profile.data_points,
            "current_hour": hour,
            "today_requests": profile.today_count,
        }
        if check.detected:
            check.severity = Severity.MEDIUM
            check.action = ThreatAction.ENHANCED_MONITORING
        return check

    async def check_user_agent(self, context: RequestContext) -> ThreatCheck:
        ua = context.user_agent.lower()
        tools = [tool for tool in SCANNER_SIGNATURES if tool in ua]
        detected = bool(tools) or len(ua) < 20 or "mozilla" not in ua

        return ThreatCheck(
            category=ThreatCategory.SUSPICIOUS_USER_AGENT,
            detected=detected,
            severity=Severity.MEDIUM if detected else Severity.LOW,
            details={"scanner_tools": tools, "length": len(ua)},
            action=ThreatAction.ENHANCED_LOGGING if detected else ThreatAction.NONE,
        )

    async def check_geography(
        self,
        context: RequestContext,
        principal: Optional[Principal],
    ) -> ThreatCheck:
        check = ThreatCheck(category=ThreatCategory.GEOGRAPHIC_ANOMALY)
        location = context.location
        if location is None or principal is None:
            return check

        since = context.timestamp - self.patterns.geo_lookback_days * DAY
        recent = await self.signals.recent_locations(principal.principal_id, since)
        if not recent:
            check.details = {"reason": "no recent location data"}
            return check

        recent_countries = sorted({loc.country_code for loc, _ in recent if loc.country_code})
        is_new_country = location.country_code not in recent_countries

        last_location, last_seen = recent[0]
        speed = travel_speed(last_location, last_seen, location, context.timestamp)
        impossible = speed is not None and speed > self.patterns.impossible_travel_kmh

        check.details = {
            "current_country": location.country_code,
            "recent_countries": recent_countries,
            "is_new_country": is_new_country,
            "impossible_travel": impossible,
            "travel_speed_kmh": None if speed is None else round(speed, 1),
        }
        if impossible:
            check.detected = True
            check.severity = Severity.CRITICAL
            check.action = ThreatAction.BLOCK_ACCESS
        elif is_new_country:
            check.detected = True
            check.severity = Severity.MEDIUM
            check.action = ThreatAction.REQUIRE_VERIFICATION
        return check

    async def check_temporal(
        self,
        context: RequestContext,
        principal: Optional[Principal],
    ) -> ThreatCheck:
        local = self._local_time(context.timestamp)
        anomalies = []

        if 2 <= local.hour <= 5:
            anomalies.append("Very late night access")
        if local.weekday() >= 5:
            anomalies.append("Weekend access")
        if principal and principal.last_login is not None:
            if 0 <= context.timestamp - principal.last_login < 30:
                anomalies.append("Rapid successive login")

        detected = bool(anomalies)
        return ThreatCheck(
            category=ThreatCategory.TEMPORAL_ANOMALY,
            detected=detected,
            severity=Severity.LOW,
            details={"hour": local.hour, "weekday": local.weekday(), "anomalies": anomalies},
            action=ThreatAction.LOG_ANOMALY if detected else ThreatAction.NONE,
        )

    async def check_device(
        self,
        context: RequestContext,
        observation: DeviceObservation,
        principal: Optional[Principal],
    ) -> ThreatCheck:
        check = ThreatCheck(category=ThreatCategory.DEVICE_ANOMALY)
        device = observation.device

        if device.is_blocked:
            check.detected = True
            check.severity = Severity.CRITICAL
            check.action = ThreatAction.BLOCK_DEVICE
            check.details = {"blocked_reason": device.blocked_reason}
            return check

        if principal is None:
            return check

        known_devices = await self.signals.devices_for_principal(principal.principal_id)
        anomalies = []
        if not observation.known_to_principal:
            anomalies.append("Unknown device")
        if context.traits.is_bot:
            anomalies.append("Bot detected")
        if len(context.user_agent) < 50:
            anomalies.append("Suspicious user agent")

        check.details = {
            "is_known_device": observation.known_to_principal,
            "known_device_count": len(known_devices),
            "anomalies": anomalies,
        }
        if anomalies:
            check.detected = True
            check.severity = Severity.MEDIUM
            check.action = ThreatAction.DEVICE_VERIFICATION
        return check
