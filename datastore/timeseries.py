from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Dict, List, Optional

from models.records import HourlyBucket
from services.timeutils import floor_hour, hour_key, round_half_up, utcnow


@dataclass(slots=True)
class _MergedBucket:
    ts: datetime
    free: float = 0
    occ: float = 0
    total: float = 0
    n: int = 0


class TimeSeriesStore:
    """Per-area hourly samples accumulated from live snapshots.

    Each ``(area_id, hour)`` holds running sums and a sample count so repeated
    snapshots within the hour average out on read. Entries older than the
    retention window are dropped on every write.
    """

    def __init__(
        self,
        retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.retention = timedelta(days=retention_days)
        self._clock = clock
        self._areas: Dict[str, Dict[str, _MergedBucket]] = {}
        self._lock = Lock()

    def record(
        self,
        area_id: str,
        *,
        free: float = 0,
        occ: float = 0,
        total: float = 0,
        ts: Optional[datetime] = None,
    ) -> None:
        if not area_id:
            return
        moment = ts or self._clock()
        key = hour_key(moment)
        with self._lock:
            buckets = self._areas.setdefault(area_id, {})
            bucket = buckets.get(key)
            if bucket is None:
                bucket = buckets[key] = _MergedBucket(ts=floor_hour(moment))
            bucket.free += free or 0
            bucket.occ += occ or 0
            bucket.total += total or 0
            bucket.n += 1
            self._prune(buckets)

    def read(self, area_id: str, days: int = 14) -> List[HourlyBucket]:
        """Averaged hourly buckets from the last ``days`` days, oldest first."""
        cutoff = self._clock() - timedelta(days=days)
        with self._lock:
            buckets = sorted(self._areas.get(area_id, {}).items())
            return [
                HourlyBucket(
                    ts=bucket.ts,
                    free=round_half_up(bucket.free / max(1, bucket.n)),
                    occ=round_half_up(bucket.occ / max(1, bucket.n)),
                    total=round_half_up(bucket.total / max(1, bucket.n)),
                )
                for _, bucket in buckets
                if bucket.ts >= cutoff
            ]

    def snapshot(self) -> Dict[str, List[HourlyBucket]]:
        with self._lock:
            area_ids = list(self._areas)
        return {area_id: self.read(area_id, days=self.retention.days) for area_id in area_ids}

    def clear(self) -> None:
        with self._lock:
            self._areas.clear()

    def _prune(self, buckets: Dict[str, _MergedBucket]) -> None:
        cutoff = self._clock() - self.retention
        for key in [key for key, bucket in buckets.items() if bucket.ts < cutoff]:
            del buckets[key]
