"""
Warden API Routes

FastAPI routes for health, the caller's verification state and the
security administration surface (events, devices, retention).
"""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

import structlog

from warden.audit.store import EventQuery
from warden.devices.models import VerificationMethod
from warden.types import SecurityEventKind, Severity
from warden.zero_trust.pipeline import ZeroTrustPipeline

logger = structlog.get_logger(__name__)

ADMIN_ROLES = {"admin", "security"}


# ==================== Request/Response Models ====================

class DeviceVerifyRequest(BaseModel):
    """Request to verify a device."""
    method: VerificationMethod = VerificationMethod.ADMIN_APPROVAL


class DeviceBlockRequest(BaseModel):
    """Request to block a device."""
    reason: str = Field(..., min_length=1, description="Why the device is blocked")


def _require_admin(request: Request) -> None:
    principal = getattr(request.state, "principal", None)
    roles = set(getattr(principal, "roles", None) or [])
    if not roles & ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Security administrator role required")


def setup_routes(app: FastAPI, pipeline: ZeroTrustPipeline) -> None:
    """Setup core routes."""

    @app.get("/health")
    async def health():
        """Health check. Reports degraded audit as unhealthy."""
        return {
            "status": "degraded" if pipeline.degraded_audit else "healthy",
            "degraded_audit": pipeline.degraded_audit,
            "timestamp": pipeline.now(),
        }

    @app.get("/zero-trust/session")
    async def session_state(request: Request):
        """Verification result for the current request."""
        decision = getattr(request.state, "zero_trust", None)
        if decision is None:
            raise HTTPException(status_code=404, detail="Request was not verified")
        return {
            "outcome": decision.outcome.value,
            "trust_level": decision.trust_level.value,
            "risk_score": decision.risk_score,
            "restrictions": decision.restrictions,
            "device_fingerprint": decision.device_fingerprint,
        }


def setup_admin_routes(app: FastAPI, pipeline: ZeroTrustPipeline) -> None:
    """Setup security administration routes."""

    @app.get("/zero-trust/events")
    async def list_events(
        request: Request,
        kind: Optional[SecurityEventKind] = None,
        principal_id: Optional[str] = None,
        address: Optional[str] = None,
        min_severity: Optional[Severity] = None,
        min_risk_score: Optional[int] = Query(default=None, ge=0, le=100),
        hours: float = Query(default=24.0, gt=0),
        limit: int = Query(default=50, ge=1, le=1000),
    ):
        """Query security events."""
        _require_admin(request)
        events = await pipeline.history.query(EventQuery(
            kinds=[kind] if kind else None,
            principal_id=principal_id,
            address=address,
            since=pipeline.now() - hours * 3600,
            min_severity=min_severity,
            min_risk_score=min_risk_score,
            limit=limit,
        ))
        return {"events": [e.to_dict() for e in events], "count": len(events)}

    @app.get("/zero-trust/events/summary")
    async def event_summary(request: Request, hours: float = Query(default=24.0, gt=0)):
        """Event counts by kind and severity."""
        _require_admin(request)
        summary = getattr(pipeline.history, "summary", None)
        if summary is None:
            raise HTTPException(status_code=501, detail="History store has no summaries")
        return await summary(since=pipeline.now() - hours * 3600)

    @app.get("/zero-trust/devices")
    async def list_devices(request: Request, principal_id: Optional[str] = None):
        """List devices, optionally for one principal."""
        _require_admin(request)
        if principal_id:
            devices = await pipeline.registry.devices_for_principal(principal_id)
        else:
            devices = await pipeline.registry.all_devices()
        return {"devices": [d.to_dict() for d in devices]}

    @app.get("/zero-trust/devices/high-risk")
    async def high_risk_devices(request: Request, threshold: int = Query(default=70, ge=0, le=100)):
        _require_admin(request)
        devices = await pipeline.registry.high_risk_devices(threshold)
        return {"devices": [d.to_dict() for d in devices]}

    @app.put("/zero-trust/devices/{fingerprint}/verify")
    async def verify_device(fingerprint: str, body: DeviceVerifyRequest, request: Request):
        """Mark a device as verified."""
        _require_admin(request)
        try:
            device = await pipeline.registry.verify(fingerprint, body.method)
        except KeyError:
            raise HTTPException(status_code=404, detail="Device not found")
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"device": device.to_dict()}

    @app.put("/zero-trust/devices/{fingerprint}/block")
    async def block_device(fingerprint: str, body: DeviceBlockRequest, request: Request):
        """Block a device."""
        _require_admin(request)
        try:
            device = await pipeline.registry.block(fingerprint, body.reason)
        except KeyError:
            raise HTTPException(status_code=404, detail="Device not found")
        return {"device": device.to_dict()}

    @app.put("/zero-trust/devices/{fingerprint}/unblock")
    async def unblock_device(fingerprint: str, request: Request):
        _require_admin(request)
        try:
            device = await pipeline.registry.unblock(fingerprint)
        except KeyError:
            raise HTTPException(status_code=404, detail="Device not found")
        return {"device": device.to_dict()}

    @app.post("/zero-trust/retention")
    async def run_retention(request: Request):
        """Purge expired events and stale devices."""
        _require_admin(request)
        result = await pipeline.run_retention()
        logger.info("Retention run triggered via API", **result)
        return result
