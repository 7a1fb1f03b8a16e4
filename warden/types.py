"""
Shared types for the Warden request-risk engine.

Includes:
- Request-side types (RawRequest, RequestContext, DeviceTraits)
- Principal data supplied by the identity layer
- The append-only SecurityEvent record
- Enumerations shared across components
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


UNKNOWN = "unknown"


# =============================================================================
# Enumerations
# =============================================================================


class Severity(str, Enum):
    """Severity of a threat check or security event."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class SecurityEventKind(str, Enum):
    """Kinds of events recorded in the history store."""
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    MFA_SUCCESS = "MFA_SUCCESS"
    MFA_FAILED = "MFA_FAILED"
    ACCESS_GRANTED = "ACCESS_GRANTED"
    ACCESS_DENIED = "ACCESS_DENIED"
    PRIVILEGE_ESCALATION = "PRIVILEGE_ESCALATION"
    ZERO_TRUST_VERIFICATION = "ZERO_TRUST_VERIFICATION"
    DEVICE_FINGERPRINT_NEW = "DEVICE_FINGERPRINT_NEW"
    DEVICE_VERIFIED = "DEVICE_VERIFIED"
    DEVICE_BLOCKED = "DEVICE_BLOCKED"
    RISK_ASSESSMENT = "RISK_ASSESSMENT"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    BRUTE_FORCE_ATTEMPT = "BRUTE_FORCE_ATTEMPT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    ANOMALOUS_BEHAVIOR = "ANOMALOUS_BEHAVIOR"
    GEO_ANOMALY = "GEO_ANOMALY"
    TIME_ANOMALY = "TIME_ANOMALY"
    API_REQUEST = "API_REQUEST"
    THREAT_DETECTED = "THREAT_DETECTED"


# Kinds that represent a request reaching a protected resource
REQUEST_KINDS = frozenset({
    SecurityEventKind.API_REQUEST,
    SecurityEventKind.ZERO_TRUST_VERIFICATION,
})

# Kinds counted as suspicious against a device
SUSPICIOUS_DEVICE_EVENTS = frozenset({
    SecurityEventKind.ACCESS_DENIED,
    SecurityEventKind.SUSPICIOUS_ACTIVITY,
})


class DeviceClass(str, Enum):
    """Coarse device classes derived from the user agent."""
    DESKTOP = "desktop"
    TABLET = "tablet"
    MOBILE = "mobile"
    BOT = "bot"
    UNKNOWN = "unknown"


class BrowserFamily(str, Enum):
    """Browser families."""
    CHROME = "chrome"
    FIREFOX = "firefox"
    SAFARI = "safari"
    EDGE = "edge"
    OPERA = "opera"
    IE = "ie"
    SAMSUNG = "samsung"
    OTHER = "other"
    UNKNOWN = "unknown"


class OSFamily(str, Enum):
    """Operating system families."""
    WINDOWS = "windows"
    MACOS = "macos"
    LINUX = "linux"
    ANDROID = "android"
    IOS = "ios"
    CHROME_OS = "chrome_os"
    UNKNOWN = "unknown"


# =============================================================================
# Locations and principals
# =============================================================================


@dataclass(frozen=True)
class Location:
    """Resolved geographic location of a client address."""
    country_code: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None
    is_vpn: bool = False
    is_proxy: bool = False
    is_tor: bool = False
    # Number of addresses in the allocated block the address belongs to
    range_size: Optional[int] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def same_place(self, other: Location) -> bool:
        """Two locations match when both country and city match."""
        return self.country_code == other.country_code and self.city == other.city

    def to_dict(self) -> dict[str, Any]:
        return {
            "country_code": self.country_code,
            "city": self.city,
            "region": self.region,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timezone": self.timezone,
            "is_vpn": self.is_vpn,
            "is_proxy": self.is_proxy,
            "is_tor": self.is_tor,
            "range_size": self.range_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Location:
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in fields})


@dataclass
class Principal:
    """
    Authenticated principal as supplied by the identity layer.

    Warden does not issue identities or sessions. It only consumes this
    snapshot of what the identity layer knows about the caller.
    """
    principal_id: str
    known_locations: list[Location] = field(default_factory=list)
    last_login: Optional[float] = None
    last_login_location: Optional[Location] = None
    active_session_count: int = 1
    session_started_at: Optional[float] = None
    roles: list[str] = field(default_factory=list)


# =============================================================================
# Requests
# =============================================================================


@dataclass
class RawRequest:
    """Transport-level request metadata handed to the pipeline."""
    method: str = "GET"
    path: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    peer_address: Optional[str] = None
    is_secure: bool = False
    session_id: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: Optional[float] = None

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def has_header(self, name: str) -> bool:
        lowered = name.lower()
        return any(key.lower() == lowered for key in self.headers)


@dataclass(frozen=True)
class DeviceTraits:
    """Device characteristics parsed from the user agent."""
    browser: BrowserFamily = BrowserFamily.UNKNOWN
    browser_version: Optional[str] = None
    os: OSFamily = OSFamily.UNKNOWN
    os_version: Optional[str] = None
    device_class: DeviceClass = DeviceClass.UNKNOWN
    is_mobile: bool = False
    is_bot: bool = False
    bot_name: Optional[str] = None


@dataclass(frozen=True)
class HeaderPresence:
    """Which of the commonly sent headers were present on the request."""
    accept_language: bool = False
    accept_encoding: bool = False
    connection: bool = False
    host: bool = False
    dnt: bool = False
    upgrade_insecure_requests: bool = False

    def missing(self) -> list[str]:
        return [name for name, present in self.__dict__.items() if not present]


@dataclass
class RequestContext:
    """
    Per-request signal bundle.

    Built fresh for every request and never persisted. Every field has an
    explicit value; signals that could not be read carry UNKNOWN or an empty
    string rather than raising.
    """
    request_id: str
    address: str
    user_agent: str
    traits: DeviceTraits
    headers: HeaderPresence
    accept_language: str = ""
    accept_encoding: str = ""
    connection: str = ""
    location: Optional[Location] = None
    timestamp: float = field(default_factory=time.time)
    path: str = "/"
    method: str = "GET"
    is_secure: bool = False
    session_id: Optional[str] = None
    # Defaults substituted for missing or malformed signals
    signal_defaults: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "address": self.address,
            "user_agent": self.user_agent,
            "browser": self.traits.browser.value,
            "os": self.traits.os.value,
            "device_class": self.traits.device_class.value,
            "is_mobile": self.traits.is_mobile,
            "is_bot": self.traits.is_bot,
            "location": self.location.to_dict() if self.location else None,
            "timestamp": self.timestamp,
            "path": self.path,
            "method": self.method,
            "is_secure": self.is_secure,
            "session_id": self.session_id,
        }


# =============================================================================
# Audit records
# =============================================================================


@dataclass(frozen=True)
class SecurityEvent:
    """
    Append-only security event.

    One event is written per completed verification pass. Host applications
    add authentication facts (failed logins, privilege changes) through the
    same record so that later passes can read them back.
    """
    event_id: str
    kind: SecurityEventKind
    severity: Severity
    address: str
    created_at: float
    expires_at: float
    principal_id: Optional[str] = None
    location: Optional[Location] = None
    device: dict[str, Any] = field(default_factory=dict)
    risk_score: int = 0
    risk: dict[str, Any] = field(default_factory=dict)
    threat_score: int = 0
    decision: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "address": self.address,
            "principal_id": self.principal_id,
            "location": self.location.to_dict() if self.location else None,
            "device": self.device,
            "risk_score": self.risk_score,
            "risk": self.risk,
            "threat_score": self.threat_score,
            "decision": self.decision,
            "metadata": self.metadata,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }
