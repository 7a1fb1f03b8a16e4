"""
Security Decision Engine.

Maps a risk assessment and a threat analysis to ALLOW, CHALLENGE or DENY.

Any independently CRITICAL threat (impossible travel, active brute force,
blocked device) denies access regardless of the blended score.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from warden.adaptive.risk import RiskAssessment
from warden.adaptive.threats import ThreatAnalysis
from warden.core.config import RiskThresholds

logger = structlog.get_logger()


class DecisionOutcome(str, Enum):
    ALLOW = "ALLOW"
    CHALLENGE = "CHALLENGE"
    DENY = "DENY"


class TrustLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    NONE = "NONE"


class DecisionReason(str, Enum):
    """Machine-readable decision reasons."""
    LOW_RISK = "low_risk"
    MEDIUM_RISK_RESTRICTED = "medium_risk_restricted"
    HIGH_RISK_CHALLENGE = "high_risk_challenge"
    CRITICAL_RISK = "critical_risk"
    CRITICAL_THREAT = "critical_threat"
    VERIFICATION_FAILED = "security_verification_failed"


RESTRICTED_SCOPE = ["LIMITED_SCOPE", "ENHANCED_LOGGING"]
CHALLENGE_MFA = "MFA"
FAIL_CLOSED_SCORE = 100


@dataclass
class SecurityDecision:
    """
    Outcome of a verification pass.

    DENY and CHALLENGE always carry the risk score and a machine-readable
    reason or challenge type.
    """
    outcome: DecisionOutcome
    risk_score: int
    reason: str
    trust_level: TrustLevel = TrustLevel.NONE
    restrictions: list[str] = field(default_factory=list)
    challenge_type: Optional[str] = None
    challenge_session_id: Optional[str] = None
    request_id: Optional[str] = None
    device_fingerprint: Optional[str] = None
    risk: Optional[RiskAssessment] = None
    threats: Optional[ThreatAnalysis] = None
    # Set when the pass failed and the decision was forced to DENY
    fail_closed: bool = False
    # Set when the audit record for this pass could not be written
    degraded_audit: bool = False
    # Timestamp of the pass that produced this decision
    verified_at: Optional[float] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == DecisionOutcome.ALLOW

    @property
    def http_status(self) -> int:
        if self.outcome == DecisionOutcome.ALLOW:
            return 200
        if self.outcome == DecisionOutcome.CHALLENGE:
            return 202
        if self.fail_closed:
            return 500
        return 403

    def to_response(self) -> dict[str, Any]:
        """Structured response body for the caller."""
        if self.outcome == DecisionOutcome.CHALLENGE:
            return {
                "success": False,
                "message": "Additional authentication required",
                "challenge_type": self.challenge_type,
                "risk_score": self.risk_score,
                "session_id": self.challenge_session_id,
            }
        if self.outcome == DecisionOutcome.DENY:
            return {
                "success": False,
                "message": (
                    "Security verification failed"
                    if self.fail_closed
                    else "Access denied by Zero-Trust policy"
                ),
                "reason": self.reason,
                "risk_score": self.risk_score,
            }
        return {
            "success": True,
            "trust_level": self.trust_level.value,
            "risk_score": self.risk_score,
            "restrictions": self.restrictions,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "risk_score": self.risk_score,
            "reason": self.reason,
            "trust_level": self.trust_level.value,
            "restrictions": self.restrictions,
            "challenge_type": self.challenge_type,
            "challenge_session_id": self.challenge_session_id,
            "request_id": self.request_id,
            "device_fingerprint": self.device_fingerprint,
            "fail_closed": self.fail_closed,
            "degraded_audit": self.degraded_audit,
            "risk": self.risk.to_dict() if self.risk else None,
            "threats": self.threats.to_dict() if self.threats else None,
        }


def fail_closed_decision(request_id: Optional[str] = None) -> SecurityDecision:
    """DENY used whenever a pass cannot complete."""
    return SecurityDecision(
        outcome=DecisionOutcome.DENY,
        risk_score=FAIL_CLOSED_SCORE,
        reason=DecisionReason.VERIFICATION_FAILED.value,
        request_id=request_id,
        fail_closed=True,
    )


class DecisionEngine:
    """Threshold-based decision gate with a critical-threat override."""

    def __init__(
        self,
        thresholds: Optional[RiskThresholds] = None,
        token_factory: Callable[[], str] = lambda: secrets.token_hex(16),
    ) -> None:
        self.thresholds = thresholds if thresholds is not None else RiskThresholds()
        self._token_factory = token_factory
        self._logger = logger.bind(component="decision_engine")

    def trust_level(self, total: int) -> TrustLevel:
        if total <= self.thresholds.low:
            return TrustLevel.HIGH
        if total <= self.thresholds.medium:
            return TrustLevel.MEDIUM
        if total <= self.thresholds.high:
            return TrustLevel.LOW
        return TrustLevel.NONE

    def decide(
        self,
        assessment: RiskAssessment,
        threats: Optional[ThreatAnalysis] = None,
    ) -> SecurityDecision:
        total = assessment.total
        critical = threats.critical if threats else []

        if critical:
            names = ",".join(check.category.value for check in critical)
            decision = SecurityDecision(
                outcome=DecisionOutcome.DENY,
                risk_score=total,
                reason=f"{DecisionReason.CRITICAL_THREAT.value}:{names}",
            )
        elif total >= self.thresholds.critical:
            decision = SecurityDecision(
                outcome=DecisionOutcome.DENY,
                risk_score=total,
                reason=DecisionReason.CRITICAL_RISK.value,
            )
        elif total >= self.thresholds.high:
            decision = SecurityDecision(
                outcome=DecisionOutcome.CHALLENGE,
                risk_score=total,
                reason=DecisionReason.HIGH_RISK_CHALLENGE.value,
                challenge_type=CHALLENGE_MFA,
                challenge_session_id=self._token_factory(),
            )
        elif total >= self.thresholds.medium:
            decision = SecurityDecision(
                outcome=DecisionOutcome.ALLOW,
                risk_score=total,
                reason=DecisionReason.MEDIUM_RISK_RESTRICTED.value,
                trust_level=self.trust_level(total),
                restrictions=list(RESTRICTED_SCOPE),
            )
        else:
            decision = SecurityDecision(
                outcome=DecisionOutcome.ALLOW,
                risk_score=total,
                reason=DecisionReason.LOW_RISK.value,
                trust_level=self.trust_level(total),
            )

        decision.risk = assessment
        decision.threats = threats

        if decision.outcome != DecisionOutcome.ALLOW:
            self._logger.info(
                "Access not granted",
                outcome=decision.outcome.value,
                reason=decision.reason,
                score=total,
            )
        return decision
