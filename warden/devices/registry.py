"""
Device Registry.

Identifies or creates device identities for each request and maintains
their trust scores:
- Deterministic fingerprinting over normalized request traits
- Capped, de-duplicated address and location histories
- Trust recomputation on every sighting
- Externally driven verify / block / unblock
- Retention sweep of stale unverified devices

Storage failures surface as RegistryFailure. The registry never falls back to
treating an unreadable device as trusted.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import structlog

from warden.devices.models import (
    Device,
    DeviceEvent,
    DeviceState,
    RiskTag,
    VerificationMethod,
    compute_fingerprint,
)
from warden.exceptions import RegistryFailure
from warden.types import RequestContext, SecurityEventKind

logger = structlog.get_logger()


# =============================================================================
# Storage
# =============================================================================


class DeviceStore(ABC):
    """Persistence interface for device records."""

    @abstractmethod
    async def get(self, fingerprint: str) -> Optional[Device]:
        pass

    @abstractmethod
    async def put(self, device: Device) -> None:
        pass

    @abstractmethod
    async def delete(self, fingerprint: str) -> None:
        pass

    @abstractmethod
    async def all(self) -> list[Device]:
        pass


class InMemoryDeviceStore(DeviceStore):
    """Dictionary-backed device store."""

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}

    async def get(self, fingerprint: str) -> Optional[Device]:
        return self._devices.get(fingerprint)

    async def put(self, device: Device) -> None:
        self._devices[device.fingerprint] = device

    async def delete(self, fingerprint: str) -> None:
        self._devices.pop(fingerprint, None)

    async def all(self) -> list[Device]:
        return list(self._devices.values())

    def __len__(self) -> int:
        return len(self._devices)


# =============================================================================
# Registry
# =============================================================================


@dataclass
class DeviceObservation:
    """Result of registering a request against the device registry."""
    device: Device
    created: bool
    # Whether the principal was already associated with this device
    known_to_principal: bool
    # True when the request id had already been applied
    replayed: bool = False


class DeviceRegistry:
    """
    Device identity management.

    Writes are serialized with an asyncio.Lock, and each observation is
    applied at most once per request id.
    """

    def __init__(
        self,
        store: Optional[DeviceStore] = None,
        device_retention: float = 730 * 86400.0,
        zone: Optional[ZoneInfo] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store if store is not None else InMemoryDeviceStore()
        self.device_retention = device_retention
        self.zone = zone if zone is not None else ZoneInfo("UTC")
        self._clock = clock
        self._lock = asyncio.Lock()
        self._logger = logger.bind(component="device_registry")

    async def _get(self, fingerprint: str) -> Optional[Device]:
        try:
            return await self.store.get(fingerprint)
        except RegistryFailure:
            raise
        except Exception as e:
            raise RegistryFailure(f"Device lookup failed: {e}") from e

    async def _put(self, device: Device) -> None:
        try:
            await self.store.put(device)
        except RegistryFailure:
            raise
        except Exception as e:
            raise RegistryFailure(f"Device write failed: {e}") from e

    async def _all(self) -> list[Device]:
        try:
            return await self.store.all()
        except RegistryFailure:
            raise
        except Exception as e:
            raise RegistryFailure(f"Device scan failed: {e}") from e

    async def get(self, fingerprint: str) -> Optional[Device]:
        return await self._get(fingerprint)

    async def observe(
        self,
        context: RequestContext,
        principal_id: Optional[str] = None,
    ) -> DeviceObservation:
        """
        Identify the device behind a request, creating it on first sighting.

        Raises:
            RegistryFailure: if the device store cannot be read or written
        """
        fingerprint = compute_fingerprint(context)
        now = context.timestamp

        async with self._lock:
            device = await self._get(fingerprint)

            if device is None:
                device = Device(
                    fingerprint=fingerprint,
                    traits=context.traits,
                    user_agent=context.user_agent,
                    first_seen=now,
                    last_seen=now,
                )
                device.add_tag(RiskTag.NEW_DEVICE)
                device.add_address(context.address)
                device.add_location(context.location)
                self._record_behavior(device, context)
                if principal_id:
                    device.principals.add(principal_id)
                device.applied_requests.append(context.request_id)
                # Trust stays at zero until the device is seen again
                await self._put(device)

                self._logger.info(
                    "New device registered",
                    fingerprint=fingerprint[:16],
                    device_class=context.traits.device_class.value,
                    address=context.address,
                )
                return DeviceObservation(device=device, created=True, known_to_principal=False)

            known = principal_id is not None and principal_id in device.principals

            if context.request_id in device.applied_requests:
                return DeviceObservation(
                    device=device,
                    created=False,
                    known_to_principal=known,
                    replayed=True,
                )

            device.last_seen = max(device.last_seen, now)
            device.access_count += 1
            device.add_address(context.address)
            device.add_location(context.location)
            self._record_behavior(device, context)
            if principal_id:
                device.principals.add(principal_id)
            device.applied_requests.append(context.request_id)
            device.recompute_trust(now)
            await self._put(device)

            return DeviceObservation(device=device, created=False, known_to_principal=known)

    def _record_behavior(self, device: Device, context: RequestContext) -> None:
        local = datetime.fromtimestamp(context.timestamp, tz=timezone.utc).astimezone(self.zone)
        device.behavior.record(
            hour=local.hour,
            weekday=local.weekday(),
            endpoint=context.path,
            now=context.timestamp,
        )

    async def record_security_event(
        self,
        fingerprint: str,
        kind: SecurityEventKind,
        address: Optional[str] = None,
        risk_score: Optional[int] = None,
        tags: Optional[list[RiskTag]] = None,
        now: Optional[float] = None,
    ) -> Optional[Device]:
        """Append an event (and optional risk tags) to a device and recompute trust."""
        now = self._clock() if now is None else now
        async with self._lock:
            device = await self._get(fingerprint)
            if device is None:
                return None
            device.security_events.append(
                DeviceEvent(kind=kind, timestamp=now, address=address, risk_score=risk_score)
            )
            for tag in tags or []:
                device.add_tag(tag)
            device.recompute_trust(now)
            await self._put(device)
            return device

    async def record_assessment(
        self,
        fingerprint: str,
        risk_score: int,
        tags: Optional[list[RiskTag]] = None,
        now: Optional[float] = None,
    ) -> Optional[Device]:
        """Store the latest risk score and any new risk tags on a device."""
        now = self._clock() if now is None else now
        async with self._lock:
            device = await self._get(fingerprint)
            if device is None:
                return None
            device.last_risk_score = risk_score
            device.last_risk_assessment = now
            added = [tag for tag in tags or [] if device.add_tag(tag)]
            if added:
                device.recompute_trust(now)
            await self._put(device)
            return device

    async def verify(
        self,
        fingerprint: str,
        method: VerificationMethod = VerificationMethod.ADMIN_APPROVAL,
    ) -> Device:
        """Mark a device verified. Blocked devices must be unblocked first."""
        now = self._clock()
        async with self._lock:
            device = await self._require(fingerprint)
            if device.is_blocked:
                raise ValueError(f"Device {fingerprint[:16]} is blocked")
            device.state = DeviceState.VERIFIED
            device.verification_method = method
            device.verified_at = now
            device.recompute_trust(now)
            await self._put(device)

        self._logger.info("Device verified", fingerprint=fingerprint[:16], method=method.value)
        return device

    async def block(self, fingerprint: str, reason: str) -> Device:
        now = self._clock()
        async with self._lock:
            device = await self._require(fingerprint)
            device.state = DeviceState.BLOCKED
            device.blocked_reason = reason
            device.blocked_at = now
            device.recompute_trust(now)
            await self._put(device)

        self._logger.warning("Device blocked", fingerprint=fingerprint[:16], reason=reason)
        return device

    async def unblock(self, fingerprint: str) -> Device:
        now = self._clock()
        async with self._lock:
            device = await self._require(fingerprint)
            device.state = DeviceState.UNVERIFIED
            device.blocked_reason = None
            device.blocked_at = None
            device.recompute_trust(now)
            await self._put(device)

        self._logger.info("Device unblocked", fingerprint=fingerprint[:16])
        return device

    async def _require(self, fingerprint: str) -> Device:
        device = await self._get(fingerprint)
        if device is None:
            raise KeyError(f"Unknown device: {fingerprint}")
        return device

    async def all_devices(self) -> list[Device]:
        return sorted(await self._all(), key=lambda d: d.last_seen, reverse=True)

    async def devices_for_principal(self, principal_id: str) -> list[Device]:
        return [d for d in await self._all() if principal_id in d.principals]

    async def high_risk_devices(self, threshold: int = 70) -> list[Device]:
        """Unblocked devices whose last risk score is at or above threshold."""
        devices = [
            d for d in await self._all()
            if not d.is_blocked and d.last_risk_score is not None and d.last_risk_score >= threshold
        ]
        return sorted(devices, key=lambda d: d.last_risk_score, reverse=True)

    async def unverified_devices(self, older_than_days: float = 7) -> list[Device]:
        cutoff = self._clock() - older_than_days * 86400.0
        devices = [
            d for d in await self._all()
            if d.state == DeviceState.UNVERIFIED and d.first_seen <= cutoff
        ]
        return sorted(devices, key=lambda d: d.first_seen)

    async def sweep(self, now: Optional[float] = None) -> int:
        """
        Delete stale devices.

        Only unverified, unblocked devices whose last sighting is older than
        the retention horizon are removed.
        """
        now = self._clock() if now is None else now
        cutoff = now - self.device_retention
        removed = 0

        async with self._lock:
            for device in await self._all():
                if device.state == DeviceState.UNVERIFIED and device.last_seen < cutoff:
                    try:
                        await self.store.delete(device.fingerprint)
                    except Exception as e:
                        raise RegistryFailure(f"Device delete failed: {e}") from e
                    removed += 1

        if removed:
            self._logger.info("Device retention sweep completed", removed=removed)
        return removed
