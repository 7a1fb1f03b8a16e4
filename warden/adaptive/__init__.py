"""
Adaptive Security Module.

Provides context-aware request scoring through:
- Multi-factor risk scoring
- Pattern and statistical threat detection
"""

from warden.adaptive.risk import (
    FactorScore,
    RiskAssessment,
    RiskEngine,
    RiskFactorName,
    RiskLevel,
)
from warden.adaptive.threats import (
    ThreatAction,
    ThreatAnalysis,
    ThreatCategory,
    ThreatCheck,
    ThreatDetector,
)

__all__ = [
    "FactorScore",
    "RiskAssessment",
    "RiskEngine",
    "RiskFactorName",
    "RiskLevel",
    "ThreatAction",
    "ThreatAnalysis",
    "ThreatCategory",
    "ThreatCheck",
    "ThreatDetector",
]
