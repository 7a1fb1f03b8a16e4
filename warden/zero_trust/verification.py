"""
Continuous Verification.

Sessions that were already allowed may ride on their standing decision, but
every request is still screened: the threat checks run read-only, and the
request must come from the principal and device the session was granted to.
The full pipeline is re-run when any of these hold:
- the last verification is older than the session timeout;
- the behavior factor alone has climbed above the re-verification threshold;
- the screen finds a critical threat;
- the principal or device differs from the session's.

This is the only part of the system triggered by elapsed time rather than
purely by requests.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from warden.devices.models import compute_fingerprint
from warden.types import Principal, RawRequest, RequestContext
from warden.zero_trust.decision import SecurityDecision
from warden.zero_trust.pipeline import ZeroTrustPipeline

logger = structlog.get_logger()

BEHAVIOR_REVERIFY_THRESHOLD = 50


class ReverifyReason(str, Enum):
    NO_SESSION = "no_session"
    SESSION_TIMEOUT = "session_timeout"
    SESSION_MISMATCH = "session_mismatch"
    CRITICAL_THREAT = "critical_threat"
    SCREEN_FAILED = "screen_failed"
    BEHAVIORAL_ANOMALY = "behavioral_anomaly"
    BEHAVIOR_UNAVAILABLE = "behavior_unavailable"


@dataclass
class SessionState:
    """Standing verification state of a session."""
    session_id: str
    principal_id: Optional[str]
    device_fingerprint: Optional[str]
    decision: SecurityDecision
    verified_at: float
    verification_count: int = 1
    last_behavior_score: Optional[int] = None

    def age(self, now: float) -> float:
        return now - self.verified_at


class ContinuousVerifier:
    """
    Time- and behavior-triggered re-verification for long-lived sessions.
    """

    def __init__(
        self,
        pipeline: ZeroTrustPipeline,
        session_timeout: Optional[float] = None,
        behavior_threshold: int = BEHAVIOR_REVERIFY_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.pipeline = pipeline
        self.session_timeout = session_timeout or pipeline.config.session_timeout
        self.behavior_threshold = behavior_threshold
        self._clock = clock
        self._sessions: dict[str, SessionState] = {}
        self._logger = logger.bind(component="continuous_verifier")

    def get_session(self, session_id: str) -> Optional[SessionState]:
        return self._sessions.get(session_id)

    def end_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def reverify_reason(
        self,
        state: Optional[SessionState],
        behavior_score: Optional[int],
        now: float,
    ) -> Optional[ReverifyReason]:
        """Why a session must be re-verified, or None if it may pass through."""
        if state is None or not state.decision.allowed:
            return ReverifyReason.NO_SESSION
        if state.age(now) > self.session_timeout:
            return ReverifyReason.SESSION_TIMEOUT
        if behavior_score is None:
            return ReverifyReason.BEHAVIOR_UNAVAILABLE
        if behavior_score > self.behavior_threshold:
            return ReverifyReason.BEHAVIORAL_ANOMALY
        return None

    async def verify(
        self,
        request: RawRequest,
        principal: Optional[Principal] = None,
        payload: Any = None,
    ) -> SecurityDecision:
        session_id = request.session_id
        if not session_id:
            return await self.pipeline.evaluate(request, principal, payload)

        now = self._clock()
        state = self._sessions.get(session_id)

        # Session and timeout gates first; behavior is scored inside the screen
        reason = self.reverify_reason(state, 0, now)
        if reason is None:
            reason = await self._screen(state, request, principal, payload, now)
        if reason is None:
            return state.decision

        if reason != ReverifyReason.NO_SESSION:
            self._logger.info(
                "Session re-verification required",
                session_id=session_id,
                reason=reason.value,
                behavior_score=state.last_behavior_score if state else None,
            )

        decision = await self.pipeline.evaluate(request, principal, payload)

        if decision.allowed:
            count = state.verification_count + 1 if state else 1
            self._sessions[session_id] = SessionState(
                session_id=session_id,
                principal_id=principal.principal_id if principal else None,
                device_fingerprint=decision.device_fingerprint,
                decision=decision,
                verified_at=now,
                verification_count=count,
            )
        else:
            self.end_session(session_id)

        return decision

    async def _screen(
        self,
        state: SessionState,
        request: RawRequest,
        principal: Optional[Principal],
        payload: Any,
        now: float,
    ) -> Optional[ReverifyReason]:
        try:
            context = await self.pipeline.extractor.extract(request)
            principal_id = principal.principal_id if principal else None
            if (principal_id != state.principal_id
                    or compute_fingerprint(context) != state.device_fingerprint):
                return ReverifyReason.SESSION_MISMATCH

            threats = await self.pipeline.screen(context, principal, payload)
        except Exception as e:
            self._logger.warning(
                "Session screen failed, forcing re-verification",
                session_id=state.session_id,
                error=str(e),
            )
            return ReverifyReason.SCREEN_FAILED

        if threats is None:
            return ReverifyReason.SESSION_MISMATCH
        if threats.critical:
            return ReverifyReason.CRITICAL_THREAT

        behavior_score = await self._behavior_score(context, principal)
        state.last_behavior_score = behavior_score
        return self.reverify_reason(state, behavior_score, now)

    async def _behavior_score(
        self,
        context: RequestContext,
        principal: Optional[Principal],
    ) -> Optional[int]:
        try:
            factor = await self.pipeline.risk_engine.assess_behavior(context, principal)
        except Exception as e:
            self._logger.warning(
                "Behavior check failed, forcing re-verification",
                error=str(e),
            )
            return None
        return factor.score
