"""
Warden exception hierarchy.

Only two kinds of failure ever leave a component:
- RegistryFailure and HistoryUnavailable, which the pipeline turns into DENY
- ConfigurationInvalid, which is raised at construction time only

Missing or malformed request signals are never raised. They become explicit
defaults on the RequestContext instead.
CapabilityUnavailable is raised by optional capabilities and handled where
they are queried, so it never leaves a component either.
"""

from __future__ import annotations

from typing import Any, Optional


class WardenError(Exception):
    """Base class for all Warden errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class CapabilityUnavailable(WardenError):
    """An optional capability (geolocation, denylist) is absent or failed."""

    def __init__(self, capability: str, message: str = "") -> None:
        super().__init__(message or f"Capability unavailable: {capability}", {"capability": capability})
        self.capability = capability


class RegistryFailure(WardenError):
    """The device registry could not be read or written."""


class HistoryUnavailable(WardenError):
    """The history store could not be read or written."""


class ConfigurationInvalid(WardenError, ValueError):
    """Policy configuration failed validation."""

    def __init__(self, message: str, errors: Optional[list[Any]] = None) -> None:
        super().__init__(message, {"errors": errors or []})
        self.errors = errors or []
