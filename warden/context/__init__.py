"""
Request context extraction.
"""

from warden.context.extractor import ContextExtractor, normalize_address
from warden.context.user_agent import UserAgentParser

__all__ = ["ContextExtractor", "UserAgentParser", "normalize_address"]
