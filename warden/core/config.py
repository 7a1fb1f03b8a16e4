"""
Warden Configuration Management

Policy configuration for the request-risk engine with:
- Environment-based configuration (WARDEN_ prefix, __ for nesting)
- Type-safe settings with Pydantic
- JSON file loading and saving
- Validation at construction time only

The configuration is an immutable value passed to the pipeline when it is
built. Components never look configuration up from a global.
"""

from __future__ import annotations

import json
import math
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from warden.exceptions import ConfigurationInvalid


DAY = 86400.0


class LogLevel(str, Enum):
    """Logging levels for Warden."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RiskThresholds(BaseModel):
    """Score boundaries between risk levels."""
    model_config = {"frozen": True}

    low: int = 25
    medium: int = 50
    high: int = 75
    critical: int = 90

    @model_validator(mode="after")
    def check_order(self) -> "RiskThresholds":
        values = [self.low, self.medium, self.high, self.critical]
        if any(v < 0 or v > 100 for v in values):
            raise ValueError("risk thresholds must lie in [0, 100]")
        if not (self.low < self.medium < self.high < self.critical):
            raise ValueError("risk thresholds must be strictly ordered low < medium < high < critical")
        return self


class RiskWeights(BaseModel):
    """Weights used to blend the five risk factors."""
    model_config = {"frozen": True}

    device: float = 0.25
    location: float = 0.20
    behavior: float = 0.25
    temporal: float = 0.15
    network: float = 0.15

    @model_validator(mode="after")
    def check_sum(self) -> "RiskWeights":
        weights = self.as_dict()
        if any(w < 0 for w in weights.values()):
            raise ValueError("risk weights must be non-negative")
        total = sum(weights.values())
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ValueError(f"risk weights must sum to 1.0, got {total:.4f}")
        return self

    def as_dict(self) -> dict[str, float]:
        return {
            "device": self.device,
            "location": self.location,
            "behavior": self.behavior,
            "temporal": self.temporal,
            "network": self.network,
        }


class BusinessCalendar(BaseModel):
    """Business hours, weekend and holiday calendar for temporal scoring."""
    model_config = {"frozen": True}

    start_hour: int = 6
    end_hour: int = 22
    timezone: str = "UTC"
    # Month-day strings, e.g. "12-25"
    holidays: list[str] = Field(default_factory=lambda: ["01-01", "07-04", "12-25"])

    @field_validator("start_hour", "end_hour")
    @classmethod
    def check_hour(cls, v: int) -> int:
        if not 0 <= v <= 24:
            raise ValueError("hours must be within 0-24")
        return v

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {v}") from exc
        return v

    @field_validator("holidays")
    @classmethod
    def check_holidays(cls, v: list[str]) -> list[str]:
        for day in v:
            try:
                datetime.strptime(f"2000-{day}", "%Y-%m-%d")
            except ValueError as exc:
                raise ValueError(f"holiday must be MM-DD, got {day!r}") from exc
        return v

    @model_validator(mode="after")
    def check_window(self) -> "BusinessCalendar":
        if self.start_hour >= self.end_hour:
            raise ValueError("business window start must precede its end")
        return self

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class ThreatPatternConfig(BaseModel):
    """Windows and limits for the threat detector."""
    model_config = {"frozen": True}

    brute_force_window: float = 15 * 60.0
    brute_force_max_attempts: int = 5
    rate_limit_window: float = 60.0
    rate_limit_max_requests: int = 100
    anomaly_std_devs: float = 3.0
    anomaly_min_points: int = 10
    anomaly_lookback_days: int = 30
    geo_lookback_days: int = 7
    impossible_travel_kmh: float = 1000.0


class RetentionConfig(BaseModel):
    """Retention horizons for audit events and device records."""
    model_config = {"frozen": True}

    default_days: int = 365
    # Per event-kind overrides, keyed by SecurityEventKind value
    per_kind_days: dict[str, int] = Field(default_factory=lambda: {"API_REQUEST": 30})
    device_days: int = 730

    @field_validator("default_days", "device_days")
    @classmethod
    def check_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("retention must be positive")
        return v

    def horizon_for(self, kind: str) -> float:
        """Retention horizon for an event kind, in seconds."""
        return self.per_kind_days.get(kind, self.default_days) * DAY

    @property
    def device_horizon(self) -> float:
        return self.device_days * DAY


class MiddlewareConfig(BaseModel):
    """HTTP middleware behavior."""
    model_config = {"frozen": True}

    enabled: bool = True
    excluded_paths: list[str] = Field(default_factory=lambda: ["/health", "/docs", "/openapi.json"])
    trust_forwarded_headers: bool = True


def _invalid(exc: ValidationError) -> ConfigurationInvalid:
    return ConfigurationInvalid(
        f"Invalid Warden configuration: {exc.error_count()} error(s)",
        errors=exc.errors(include_url=False),
    )


class WardenConfig(BaseSettings):
    """
    Main Warden Configuration

    Loads configuration from environment variables and/or config files.
    Environment variables are prefixed with WARDEN_
    (e.g., WARDEN_SESSION_TIMEOUT=900, WARDEN_RISK_THRESHOLDS__HIGH=70).
    """

    environment: Literal["development", "staging", "production"] = "development"
    log_level: LogLevel = LogLevel.INFO
    log_format: Literal["json", "console"] = "json"

    # Server configuration
    host: str = "0.0.0.0"
    port: int = 8000

    # Scoring policy
    risk_thresholds: RiskThresholds = Field(default_factory=RiskThresholds)
    risk_weights: RiskWeights = Field(default_factory=RiskWeights)
    session_timeout: float = 30 * 60.0
    max_concurrent_sessions: int = 5
    high_risk_countries: list[str] = Field(
        default_factory=lambda: ["CN", "RU", "KP", "IR", "SY", "AF"]
    )
    calendar: BusinessCalendar = Field(default_factory=BusinessCalendar)
    threats: ThreatPatternConfig = Field(default_factory=ThreatPatternConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    middleware: MiddlewareConfig = Field(default_factory=MiddlewareConfig)

    model_config = {
        "env_prefix": "WARDEN_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
        "frozen": True,
    }

    def __init__(self, **values: Any) -> None:
        try:
            super().__init__(**values)
        except ValidationError as exc:
            raise _invalid(exc) from exc

    @field_validator("high_risk_countries")
    @classmethod
    def normalize_countries(cls, v: list[str]) -> list[str]:
        return [c.strip().upper() for c in v if c.strip()]

    @field_validator("session_timeout")
    @classmethod
    def check_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("session_timeout must be positive")
        return v

    @classmethod
    def from_file(cls, config_path: Path) -> "WardenConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)


def load_config(
    config_path: Optional[Path] = None,
    **overrides: Any,
) -> WardenConfig:
    """
    Build a validated configuration.

    Raises:
        ConfigurationInvalid: if any value fails validation
    """
    if config_path is None:
        return WardenConfig(**overrides)

    try:
        with open(config_path) as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigurationInvalid(f"Config file is not valid JSON: {exc}") from exc
    data.update(overrides)
    return WardenConfig(**data)
