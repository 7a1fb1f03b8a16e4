"""
Zero Trust Security Module.

Implements Zero Trust principles for every request:
- Never trust, always verify
- Fail closed
- Continuous re-verification of long-lived sessions

Components:
- Decision engine
- Verification pipeline
- Continuous verifier
"""

from warden.zero_trust.decision import (
    DecisionEngine,
    DecisionOutcome,
    SecurityDecision,
    TrustLevel,
)
from warden.zero_trust.pipeline import ZeroTrustPipeline
from warden.zero_trust.verification import ContinuousVerifier, SessionState

__all__ = [
    "ContinuousVerifier",
    "DecisionEngine",
    "DecisionOutcome",
    "SecurityDecision",
    "SessionState",
    "TrustLevel",
    "ZeroTrustPipeline",
]
