"""Routing domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

UNPLACEABLE_TIME_WINDOW = "time_window"
UNPLACEABLE_UNRESOLVABLE = "unresolvable_location"


@dataclass(slots=True)
class StopVisit:
    stop_id: str
    sequence: int
    status: str
    priority: str
    eta_min: Optional[float]
    departure_min: Optional[float]
    wait_min: float
    distance_from_prev_km: float
    duration_from_prev_min: float


@dataclass(slots=True)
class RouteMetrics:
    total_distance_km: float
    travel_min: float
    wait_min: float
    service_min: float
    total_duration_min: float
    efficiency_pct: float
    utilization_pct: float
    end_min: float
    visits: List[StopVisit]
    unresolved_stop_ids: List[str] = field(default_factory=list)


@dataclass(slots=True)
class UnplaceableStop:
    stop_id: str
    reason: str
    detail: str


@dataclass(slots=True)
class SequenceResult:
    route_id: str
    order: List[str]
    unplaceable: List[UnplaceableStop]

    @property
    def placed_count(self) -> int:
        return len(self.order)
