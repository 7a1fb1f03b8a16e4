"""
Historical signal access for scoring.

The risk engine and the threat detector never touch the stores directly. They
read through SignalSource, which keeps them testable with in-memory fakes
and lets the stores change without touching scoring code.

Sliding-window counts are plain range counts over the history store. They are
monotonic scoring inputs, not an atomic admission gate: two concurrent
requests may both observe the same count.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from warden.audit.aggregates import ActivityProfile
from warden.audit.store import EventQuery, HistoryStore
from warden.devices.models import Device
from warden.devices.registry import DeviceRegistry
from warden.exceptions import HistoryUnavailable
from warden.types import REQUEST_KINDS, Location, SecurityEventKind


class SignalSource(ABC):
    """Read-only view of history used by scoring."""

    @abstractmethod
    async def event_count(
        self,
        kinds: Iterable[SecurityEventKind],
        since: float,
        principal_id: Optional[str] = None,
        address: Optional[str] = None,
    ) -> int:
        pass

    async def failed_login_count(
        self,
        since: float,
        principal_id: Optional[str] = None,
        address: Optional[str] = None,
    ) -> int:
        return await self.event_count(
            [SecurityEventKind.LOGIN_FAILED], since, principal_id=principal_id, address=address
        )

    async def request_count(
        self,
        since: float,
        principal_id: Optional[str] = None,
        address: Optional[str] = None,
    ) -> int:
        return await self.event_count(
            REQUEST_KINDS, since, principal_id=principal_id, address=address
        )

    @abstractmethod
    async def recent_locations(
        self,
        principal_id: str,
        since: float,
    ) -> list[tuple[Location, float]]:
        """(location, timestamp) pairs of located events, newest first."""
        pass

    @abstractmethod
    async def activity_profile(
        self,
        principal_id: str,
        now: float,
        lookback_days: int = 30,
    ) -> ActivityProfile:
        pass

    @abstractmethod
    async def devices_for_principal(self, principal_id: str) -> list[Device]:
        pass


class StoreSignalSource(SignalSource):
    """SignalSource backed by the history store and the device registry."""

    def __init__(self, history: HistoryStore, registry: DeviceRegistry) -> None:
        self.history = history
        self.registry = registry

    async def event_count(
        self,
        kinds: Iterable[SecurityEventKind],
        since: float,
        principal_id: Optional[str] = None,
        address: Optional[str] = None,
    ) -> int:
        query = EventQuery(kinds=kinds, since=since, principal_id=principal_id, address=address)
        try:
            return await self.history.count(query)
        except HistoryUnavailable:
            raise
        except Exception as e:
            raise HistoryUnavailable(f"History count failed: {e}") from e

    async def recent_locations(
        self,
        principal_id: str,
        since: float,
    ) -> list[tuple[Location, float]]:
        query = EventQuery(principal_id=principal_id, since=since, requires_location=True)
        try:
            events = await self.history.query(query)
        except HistoryUnavailable:
            raise
        except Exception as e:
            raise HistoryUnavailable(f"History query failed: {e}") from e
        return [(e.location, e.created_at) for e in events]

    async def activity_profile(
        self,
        principal_id: str,
        now: float,
        lookback_days: int = 30,
    ) -> ActivityProfile:
        try:
            return await self.history.activity_profile(principal_id, now, lookback_days)
        except HistoryUnavailable:
            raise
        except Exception as e:
            raise HistoryUnavailable(f"Activity profile failed: {e}") from e

    async def devices_for_principal(self, principal_id: str) -> list[Device]:
        return await self.registry.devices_for_principal(principal_id)
