"""
Rolling activity aggregates.

Per-principal daily buckets of (count, hour sum, hour sum of squares) are
updated on every append. The hour-of-day and daily-count baselines used by
anomaly detection are derived from the buckets, so no history scan is needed.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo


@dataclass
class DayBucket:
    count: int = 0
    hour_sum: float = 0.0
    hour_sq_sum: float = 0.0


@dataclass
class ActivityProfile:
    """Baseline of a principal's activity over the lookback window."""
    data_points: int = 0
    hour_mean: float = 0.0
    hour_std: float = 0.0
    daily_counts: list[int] = field(default_factory=list)
    today_count: int = 0

    @property
    def daily_mean(self) -> float:
        if not self.daily_counts:
            return 0.0
        return sum(self.daily_counts) / len(self.daily_counts)

    @property
    def daily_std(self) -> float:
        return population_std(self.daily_counts)


def population_std(values: list[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance)


def deviation(value: float, mean: float, std: float) -> float:
    """
    Distance from the mean in standard deviations.

    With zero spread any differing value is infinitely far away.
    """
    if std == 0:
        return 0.0 if value == mean else math.inf
    return abs(value - mean) / std


class RollingAggregates:
    """
    Incrementally maintained per-principal daily buckets.

    Buckets older than the retention window are dropped lazily.
    """

    def __init__(self, zone: Optional[ZoneInfo] = None, keep_days: int = 30) -> None:
        self.zone = zone if zone is not None else ZoneInfo("UTC")
        self.keep_days = keep_days
        self._buckets: dict[str, dict[int, DayBucket]] = {}

    def _local(self, ts: float) -> datetime:
        return datetime.fromtimestamp(ts, tz=timezone.utc).astimezone(self.zone)

    def add(self, principal_id: str, ts: float) -> None:
        local = self._local(ts)
        day = local.toordinal()
        hour = local.hour

        buckets = self._buckets.setdefault(principal_id, {})
        bucket = buckets.get(day)
        if bucket is None:
            bucket = buckets[day] = DayBucket()
        bucket.count += 1
        bucket.hour_sum += hour
        bucket.hour_sq_sum += hour * hour

    def remove(self, principal_id: str, ts: float) -> None:
        """Reverse an add, used when events are purged."""
        buckets = self._buckets.get(principal_id)
        if not buckets:
            return
        local = self._local(ts)
        bucket = buckets.get(local.toordinal())
        if bucket is None:
            return
        bucket.count -= 1
        bucket.hour_sum -= local.hour
        bucket.hour_sq_sum -= local.hour * local.hour
        if bucket.count <= 0:
            del buckets[local.toordinal()]
        if not buckets:
            del self._buckets[principal_id]

    def profile(self, principal_id: str, now: float, lookback_days: int = 30) -> ActivityProfile:
        """
        Build the activity baseline for the lookback window ending at now.

        The hour baseline covers every event in the window. The daily-count
        baseline covers the days before today that saw any activity.
        """
        buckets = self._buckets.get(principal_id)
        if not buckets:
            return ActivityProfile()

        today = self._local(now).toordinal()
        first_day = today - lookback_days

        for day in [d for d in buckets if d < today - max(lookback_days, self.keep_days)]:
            del buckets[day]

        total = 0
        hour_sum = 0.0
        hour_sq_sum = 0.0
        daily_counts: list[int] = []
        today_count = 0

        for day, bucket in sorted(buckets.items()):
            if day < first_day or day > today:
                continue
            total += bucket.count
            hour_sum += bucket.hour_sum
            hour_sq_sum += bucket.hour_sq_sum
            if day == today:
                today_count = bucket.count
            else:
                daily_counts.append(bucket.count)

        if total == 0:
            return ActivityProfile()

        mean = hour_sum / total
        variance = max(0.0, hour_sq_sum / total - mean * mean)

        return ActivityProfile(
            data_points=total,
            hour_mean=mean,
            hour_std=math.sqrt(variance),
            daily_counts=daily_counts,
            today_count=today_count,
        )
