"""Read models published by the dispatch board."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional

from ...models.domain import StopStatus
from ..routing.models import RouteMetrics, UnplaceableStop


@dataclass(slots=True)
class StopView:
    stop_id: str
    title: str
    address: Optional[str]
    work_order_id: Optional[str]
    sequence: int
    status: str
    priority: str
    service_minutes: float
    eta: Optional[datetime]
    departure: Optional[datetime]
    wait_min: float
    distance_from_prev_km: float
    duration_from_prev_min: float


@dataclass(slots=True)
class RouteSnapshot:
    board_date: date
    route_id: str
    technician_id: str
    technician_name: Optional[str]
    vehicle_id: str
    status: str
    start: datetime
    end: datetime
    metrics: RouteMetrics
    stops: List[StopView]
    unplaceable: List[UnplaceableStop] = field(default_factory=list)

    @property
    def placed_count(self) -> int:
        """Stops the technician will actually visit; skipped stops are excluded."""
        return sum(1 for stop in self.stops if stop.status != StopStatus.SKIPPED.value)


@dataclass(slots=True)
class OptimizationResult:
    route_id: str
    order: List[str]
    unplaceable: List[UnplaceableStop]
    changed: bool
    snapshot: RouteSnapshot


@dataclass(slots=True)
class RouteOptimizationOutcome:
    route_id: str
    result: Optional[OptimizationResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class BoardStats:
    board_date: date
    archived: bool
    total_routes: int
    active_routes: int
    total_stops: int
    unassigned_stops: int
    completed_stops: int
    in_progress_stops: int
    unplaceable_stops: int
    avg_efficiency_pct: float
