"""
Warden HTTP Middleware

FastAPI/Starlette middleware that puts every request through the zero trust
pipeline before it reaches a route handler.
"""

from __future__ import annotations

import json
from typing import Awaitable, Callable, List, Optional

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from warden.types import Principal, RawRequest
from warden.zero_trust.decision import SecurityDecision, fail_closed_decision
from warden.zero_trust.pipeline import ZeroTrustPipeline
from warden.zero_trust.verification import ContinuousVerifier

logger = structlog.get_logger(__name__)

PrincipalResolver = Callable[[Request], Awaitable[Optional[Principal]]]

BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


async def principal_from_state(request: Request) -> Optional[Principal]:
    """Principal placed on request.state by upstream authentication."""
    principal = getattr(request.state, "principal", None)
    return principal if isinstance(principal, Principal) else None


class ZeroTrustMiddleware(BaseHTTPMiddleware):
    """
    Zero trust middleware for FastAPI.

    Features:
    - Verification of every non-excluded request
    - 403 on DENY, 202 with a challenge on CHALLENGE, 500 when verification fails
    - Decision attached to request.state.zero_trust on ALLOW
    - Optional continuous verification of sessions
    """

    def __init__(
        self,
        app,
        pipeline: ZeroTrustPipeline,
        verifier: Optional[ContinuousVerifier] = None,
        exclude_paths: Optional[List[str]] = None,
        principal_resolver: PrincipalResolver = principal_from_state,
    ):
        super().__init__(app)
        self.pipeline = pipeline
        self.verifier = verifier
        self.exclude_paths = (
            exclude_paths
            if exclude_paths is not None
            else list(pipeline.config.middleware.excluded_paths)
        )
        self.principal_resolver = principal_resolver

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request through zero trust verification."""
        if self._is_excluded(request.url.path):
            return await call_next(request)

        try:
            raw = self._to_raw_request(request)
            principal = await self.principal_resolver(request)
            payload = await self._payload(request)

            if self.verifier is not None:
                decision = await self.verifier.verify(raw, principal, payload)
            else:
                decision = await self.pipeline.evaluate(raw, principal, payload)
        except Exception as e:
            logger.error("Zero trust middleware error", error=str(e), exc_info=True)
            decision = fail_closed_decision()

        if not decision.allowed:
            return self._decision_response(decision)

        request.state.zero_trust = decision
        response = await call_next(request)
        response.headers["X-Trust-Level"] = decision.trust_level.value
        return response

    def _is_excluded(self, path: str) -> bool:
        for prefix in self.exclude_paths:
            base = prefix.rstrip("/")
            if path == prefix or path == base or path.startswith(base + "/"):
                return True
        return False

    def _to_raw_request(self, request: Request) -> RawRequest:
        headers = dict(request.headers)
        session_id = request.headers.get("x-session-id") or request.cookies.get("session_id")
        return RawRequest(
            method=request.method,
            path=request.url.path,
            headers=headers,
            peer_address=request.client.host if request.client else None,
            is_secure=request.url.scheme == "https",
            session_id=session_id,
        )

    async def _payload(self, request: Request) -> Optional[dict]:
        payload: dict = {}
        if request.query_params:
            payload["query"] = dict(request.query_params)
        if request.method in BODY_METHODS:
            body = await request.body()
            if body:
                payload["body"] = body.decode("utf-8", errors="replace")
        return payload or None

    @staticmethod
    def _decision_response(decision: SecurityDecision) -> Response:
        return Response(
            content=json.dumps(decision.to_response()),
            status_code=decision.http_status,
            media_type="application/json",
        )
