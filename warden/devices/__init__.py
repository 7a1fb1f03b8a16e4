"""
Device identity and trust.
"""

from warden.devices.models import (
    Device,
    DeviceEvent,
    DeviceState,
    RiskTag,
    VerificationMethod,
    compute_fingerprint,
)
from warden.devices.registry import (
    DeviceObservation,
    DeviceRegistry,
    DeviceStore,
    InMemoryDeviceStore,
)

__all__ = [
    "Device",
    "DeviceEvent",
    "DeviceObservation",
    "DeviceRegistry",
    "DeviceState",
    "DeviceStore",
    "InMemoryDeviceStore",
    "RiskTag",
    "VerificationMethod",
    "compute_fingerprint",
]
