"""Hour-of-day occupancy profiles and short-horizon projections."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

import numpy as np

from models.records import ForecastPoint, HodProfile, HodSlot, HourlyBucket
from services.timeutils import HOUR, clamp, floor_hour, round_half_up, utcnow

LOW_QUANTILE = 0.10
HIGH_QUANTILE = 0.90


class ForecastSource(str, Enum):
    """History backends a forecast can be built from."""

    live = "live"
    annual = "annual"

    @classmethod
    def parse(cls, value: "str | ForecastSource | None") -> "ForecastSource":
        try:
            return cls(value)
        except ValueError:
            return cls.live


def free_ratio(bucket: HourlyBucket) -> float:
    total = bucket.total or 0
    denominator = total if total > 0 else max(1, (bucket.free or 0) + (bucket.occ or 0))
    return clamp((bucket.free or 0) / denominator, 0.0, 1.0)


def build_hod_profile(buckets: Iterable[HourlyBucket]) -> HodProfile:
    """Summarize free ratios by UTC hour of day.

    Hours with no samples keep the neutral default slot.
    """
    by_hour: List[List[float]] = [[] for _ in range(24)]
    largest_total = 0
    for bucket in buckets:
        if bucket.ts is None:
            continue
        by_hour[bucket.ts.hour].append(free_ratio(bucket))
        if bucket.total and bucket.total > largest_total:
            largest_total = bucket.total

    slots: List[HodSlot] = []
    for ratios in by_hour:
        if not ratios:
            slots.append(HodSlot())
            continue
        values = np.asarray(ratios, dtype=float)
        slots.append(
            HodSlot(
                mean=clamp(float(values.mean()), 0.0, 1.0),
                p10=clamp(float(np.quantile(values, LOW_QUANTILE)), 0.0, 1.0),
                p90=clamp(float(np.quantile(values, HIGH_QUANTILE)), 0.0, 1.0),
            )
        )
    return HodProfile(slots=slots, total_from_rows=largest_total)


def forecast(
    hours: int,
    base_total: int,
    profile: HodProfile,
    now: Optional[datetime] = None,
) -> List[ForecastPoint]:
    """Project ``profile`` forward from the next full hour against ``base_total`` bays."""
    base_total = max(0, int(base_total))
    start = floor_hour(now or utcnow()) + HOUR
    points: List[ForecastPoint] = []
    for step in range(max(0, hours)):
        ts = start + step * HOUR
        slot = profile.slots[ts.hour]
        expected = int(clamp(round_half_up(slot.mean * base_total), 0, base_total))
        lo80 = int(clamp(round_half_up(slot.p10 * base_total), 0, expected))
        hi80 = int(clamp(round_half_up(slot.p90 * base_total), expected, base_total))
        points.append(
            ForecastPoint(
                ts=ts,
                expected_available=expected,
                lo80=lo80,
                hi80=hi80,
                free_ratio=slot.mean,
            )
        )
    return points
