"""
Zero Trust verification pipeline.

Runs one verification pass per request:

    context extraction -> device registry -> {risk engine, threat detector}
    -> decision engine -> history append -> caller

The pipeline fails closed. Any registry, history or decision failure
produces DENY with a generic reason, and an audit write failure additionally
flags the pipeline as running with degraded audit.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from typing import Any, Callable, Optional

import structlog

from warden.adaptive.risk import RiskEngine
from warden.adaptive.threats import ThreatAnalysis, ThreatDetector
from warden.audit.store import HistoryStore, InMemoryHistoryStore, SecurityEventRecorder
from warden.capabilities.denylist import Denylist
from warden.capabilities.geolocation import GeoLocator
from warden.context.extractor import ContextExtractor
from warden.core.config import WardenConfig
from warden.devices.models import compute_fingerprint
from warden.devices.registry import DeviceObservation, DeviceRegistry, DeviceStore
from warden.exceptions import HistoryUnavailable, RegistryFailure
from warden.signals import SignalSource, StoreSignalSource
from warden.types import (
    Location,
    Principal,
    RawRequest,
    RequestContext,
    SecurityEvent,
    SecurityEventKind,
    Severity,
)
from warden.zero_trust.decision import (
    DecisionEngine,
    DecisionOutcome,
    SecurityDecision,
    fail_closed_decision,
)

logger = structlog.get_logger()


class ZeroTrustPipeline:
    """
    Orchestrates a complete verification pass.

    Every collaborator is injected at construction. In-memory stores and
    null capabilities are used for anything not supplied.
    """

    def __init__(
        self,
        config: Optional[WardenConfig] = None,
        geolocator: Optional[GeoLocator] = None,
        denylist: Optional[Denylist] = None,
        device_store: Optional[DeviceStore] = None,
        history: Optional[HistoryStore] = None,
        signals: Optional[SignalSource] = None,
        clock: Callable[[], float] = time.time,
        token_factory: Callable[[], str] = lambda: secrets.token_hex(16),
    ) -> None:
        self.config = config if config is not None else WardenConfig()
        zone = self.config.calendar.zone
        self._clock = clock

        self.extractor = ContextExtractor(
            geolocator=geolocator,
            trust_forwarded_headers=self.config.middleware.trust_forwarded_headers,
            clock=clock,
        )
        self.registry = DeviceRegistry(
            store=device_store,
            device_retention=self.config.retention.device_horizon,
            zone=zone,
            clock=clock,
        )
        if history is None:
            history = InMemoryHistoryStore(zone=zone, clock=clock)
        self.history = history
        self.recorder = SecurityEventRecorder(self.history, self.config.retention, clock)
        if signals is None:
            signals = StoreSignalSource(self.history, self.registry)
        self.signals = signals
        self.risk_engine = RiskEngine(self.config, self.signals, denylist)
        self.threat_detector = ThreatDetector(self.config, self.signals)
        self.decision_engine = DecisionEngine(self.config.risk_thresholds, token_factory)

        self.degraded_audit = False
        self._logger = logger.bind(component="zero_trust_pipeline")

    def now(self) -> float:
        return self._clock()

    async def evaluate(
        self,
        request: RawRequest,
        principal: Optional[Principal] = None,
        payload: Any = None,
    ) -> SecurityDecision:
        """
        Verify a request. Never raises; failures produce a fail-closed DENY.
        """
        try:
            context = await self.extractor.extract(request)
        except Exception as e:
            self._logger.error(
                "Context extraction failed",
                request_id=request.request_id,
                error=str(e),
                exc_info=True,
            )
            return fail_closed_decision(request.request_id)

        return await self.evaluate_context(context, principal, payload)

    async def evaluate_context(
        self,
        context: RequestContext,
        principal: Optional[Principal] = None,
        payload: Any = None,
    ) -> SecurityDecision:
        try:
            decision, observation = await self._decide(context, principal, payload)
        except (RegistryFailure, HistoryUnavailable) as e:
            self._logger.error(
                "Verification failed, denying request",
                request_id=context.request_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return fail_closed_decision(context.request_id)
        except Exception as e:
            self._logger.error(
                "Unexpected verification error, denying request",
                request_id=context.request_id,
                error=str(e),
                exc_info=True,
            )
            return fail_closed_decision(context.request_id)

        try:
            await self._update_device(context, decision, observation)
        except RegistryFailure as e:
            self._logger.error(
                "Device update failed, denying request",
                request_id=context.request_id,
                error=str(e),
            )
            decision = fail_closed_decision(context.request_id)
            decision.device_fingerprint = observation.device.fingerprint
            decision.verified_at = context.timestamp

        # The audit record always carries the decision returned to the caller
        try:
            await self._audit(context, principal, decision, observation)
        except HistoryUnavailable as e:
            self.degraded_audit = True
            self._logger.error(
                "Audit write failed, denying request",
                request_id=context.request_id,
                error=str(e),
            )
            denied = fail_closed_decision(context.request_id)
            denied.degraded_audit = True
            return denied

        self._logger.info(
            "Zero trust verification completed",
            request_id=context.request_id,
            outcome=decision.outcome.value,
            score=decision.risk_score,
            path=context.path,
        )
        return decision

    async def screen(
        self,
        context: RequestContext,
        principal: Optional[Principal] = None,
        payload: Any = None,
    ) -> Optional[ThreatAnalysis]:
        """
        Read-only threat pass for a request riding on an existing session.

        Nothing is written to the registry or the history. Returns None when
        the device behind the request is not registered.

        Raises:
            RegistryFailure: if the device store cannot be read
            HistoryUnavailable: if historical signals cannot be read
        """
        device = await self.registry.get(compute_fingerprint(context))
        if device is None:
            return None

        principal_id = principal.principal_id if principal else None
        observation = DeviceObservation(
            device=device,
            created=False,
            known_to_principal=principal_id is not None and principal_id in device.principals,
        )
        return await self.threat_detector.analyze(context, observation, principal, payload)

    async def _decide(
        self,
        context: RequestContext,
        principal: Optional[Principal],
        payload: Any,
    ) -> tuple[SecurityDecision, DeviceObservation]:
        principal_id = principal.principal_id if principal else None
        observation = await self.registry.observe(context, principal_id)

        assessment, threats = await asyncio.gather(
            self.risk_engine.assess(context, observation.device, principal),
            self.threat_detector.analyze(context, observation, principal, payload),
        )

        decision = self.decision_engine.decide(assessment, threats)
        decision.request_id = context.request_id
        decision.device_fingerprint = observation.device.fingerprint
        decision.verified_at = context.timestamp
        return decision, observation

    async def _audit(
        self,
        context: RequestContext,
        principal: Optional[Principal],
        decision: SecurityDecision,
        observation: DeviceObservation,
    ) -> SecurityEvent:
        risk = decision.risk
        threats = decision.threats
        return await self.recorder.record(
            SecurityEventKind.ZERO_TRUST_VERIFICATION,
            context.address,
            event_id=context.request_id,
            principal_id=principal.principal_id if principal else None,
            created_at=context.timestamp,
            location=context.location,
            device=observation.device.summary(),
            risk_score=decision.risk_score,
            risk=risk.to_dict() if risk else {},
            threat_score=threats.score if threats else 0,
            decision=decision.outcome.value,
            metadata={
                "path": context.path,
                "method": context.method,
                "user_agent": context.user_agent,
                "reason": decision.reason,
                "trust_level": decision.trust_level.value,
                "restrictions": decision.restrictions,
                "threat_level": threats.level.value if threats else None,
                "threats": [c.category.value for c in threats.detected] if threats else [],
                "new_device": observation.created,
            },
        )

    async def _update_device(
        self,
        context: RequestContext,
        decision: SecurityDecision,
        observation: DeviceObservation,
    ) -> None:
        if observation.replayed:
            return

        fingerprint = observation.device.fingerprint
        tags = decision.risk.tags if decision.risk else []
        await self.registry.record_assessment(
            fingerprint, decision.risk_score, tags=tags, now=context.timestamp
        )

        kind = None
        if decision.outcome == DecisionOutcome.DENY:
            kind = SecurityEventKind.ACCESS_DENIED
        elif decision.threats and any(
            c.severity.rank >= Severity.HIGH.rank for c in decision.threats.detected
        ):
            kind = SecurityEventKind.SUSPICIOUS_ACTIVITY

        if kind is not None:
            await self.registry.record_security_event(
                fingerprint,
                kind,
                address=context.address,
                risk_score=decision.risk_score,
                now=context.timestamp,
            )

    async def record_event(
        self,
        kind: SecurityEventKind,
        address: str,
        principal_id: Optional[str] = None,
        location: Optional[Location] = None,
        metadata: Optional[dict[str, Any]] = None,
        risk_score: int = 0,
        created_at: Optional[float] = None,
        event_id: Optional[str] = None,
    ) -> SecurityEvent:
        """
        Record an authentication fact reported by the host application
        (failed login, privilege escalation, plain API request).

        Raises:
            HistoryUnavailable: if the event cannot be stored
        """
        return await self.recorder.record(
            kind,
            address,
            principal_id=principal_id,
            location=location,
            metadata=metadata,
            risk_score=risk_score,
            created_at=created_at,
            event_id=event_id,
        )

    async def run_retention(self, now: Optional[float] = None) -> dict[str, int]:
        """Purge expired events and sweep stale devices."""
        now = self._clock() if now is None else now
        events = await self.history.purge_expired(now)
        devices = await self.registry.sweep(now)
        return {"events_purged": events, "devices_removed": devices}
