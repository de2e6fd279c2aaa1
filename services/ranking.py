"""Order area cells by a desirability score."""

from __future__ import annotations

from dataclasses import replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from models.records import AreaCell, LatLng
from services.spatial import haversine_m


class RankStrategy(str, Enum):
    """Scoring strategies exposed to callers."""

    availability = "availability"
    occupancy = "occupancy"
    distance = "distance"
    mix = "mix"

    @classmethod
    def parse(cls, value: "str | RankStrategy | None") -> "RankStrategy":
        try:
            return cls(value)
        except ValueError:
            return cls.mix


Scorer = Callable[[AreaCell, Optional[float]], float]


def _availability(cell: AreaCell, distance: Optional[float]) -> float:
    return cell.available_bays - (distance / 50 if distance else 0)


def _occupancy(cell: AreaCell, distance: Optional[float]) -> float:
    return (1 - cell.occupancy_rate) - (distance / 5000 if distance else 0)


def _distance(cell: AreaCell, distance: Optional[float]) -> float:
    return -(distance or 0)


def _mix(cell: AreaCell, distance: Optional[float]) -> float:
    return cell.available_bays * 2 - (distance / 30 if distance else 0) - cell.occupancy_rate * 10


SCORERS: Dict[RankStrategy, Scorer] = {
    RankStrategy.availability: _availability,
    RankStrategy.occupancy: _occupancy,
    RankStrategy.distance: _distance,
    RankStrategy.mix: _mix,
}


def rank_areas(
    cells: Iterable[AreaCell],
    origin: Optional[LatLng] = None,
    strategy: "str | RankStrategy | None" = RankStrategy.mix,
) -> List[AreaCell]:
    """Return copies of ``cells`` with distance and score, best first.

    Ties keep their input order.
    """
    scorer = SCORERS[RankStrategy.parse(strategy)]
    scored: List[AreaCell] = []
    for cell in cells:
        distance = (
            haversine_m(origin.lat, origin.lng, cell.center.lat, cell.center.lng)
            if origin is not None
            else None
        )
        score = round(scorer(cell, distance), 3)
        scored.append(replace(cell, distance_m=distance, score=score))
    return sorted(scored, key=lambda cell: cell.score, reverse=True)
