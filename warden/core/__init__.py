"""
Core infrastructure: configuration and logging.
"""

from warden.core.config import (
    BusinessCalendar,
    RetentionConfig,
    RiskThresholds,
    RiskWeights,
    ThreatPatternConfig,
    WardenConfig,
    load_config,
)
from warden.core.logging import setup_logging

__all__ = [
    "BusinessCalendar",
    "RetentionConfig",
    "RiskThresholds",
    "RiskWeights",
    "ThreatPatternConfig",
    "WardenConfig",
    "load_config",
    "setup_logging",
]
