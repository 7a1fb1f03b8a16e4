"""
Security history and audit.
"""

from warden.audit.aggregates import ActivityProfile, RollingAggregates
from warden.audit.store import (
    EventQuery,
    HistoryStore,
    InMemoryHistoryStore,
    SecurityEventRecorder,
    derive_severity,
)

__all__ = [
    "ActivityProfile",
    "EventQuery",
    "HistoryStore",
    "InMemoryHistoryStore",
    "RollingAggregates",
    "SecurityEventRecorder",
    "derive_severity",
]
