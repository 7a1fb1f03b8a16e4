"""
Warden - Zero Trust request-risk engine.

Continuous verification for every request:
- Multi-factor risk scoring
- Pattern and statistical threat detection
- Device identity with an evolving trust score
- Fail-closed ALLOW / CHALLENGE / DENY decisions backed by an audit log
"""

__version__ = "1.0.0"
__author__ = "Warden Team"

from warden.core.config import WardenConfig, load_config
from warden.zero_trust.pipeline import ZeroTrustPipeline

__all__ = ["WardenConfig", "ZeroTrustPipeline", "load_config", "__version__"]
