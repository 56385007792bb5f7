"""Route aggregates and per-stop ETAs derived from the current ordering."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from ...config import settings
from ...errors import UnresolvableLocationError
from ...models.domain import Location, Route, Stop, StopStatus
from .costs import CachedCostModel, CostModel
from .models import RouteMetrics, StopVisit

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Timeline:
    """State of a technician after walking a sequence of stops."""

    clock: float
    position: Location
    visits: list[StopVisit] = field(default_factory=list)
    distance_km: float = 0.0
    travel_min: float = 0.0
    wait_min: float = 0.0
    service_min: float = 0.0
    unresolved_stop_ids: list[str] = field(default_factory=list)


def simulate(
    stops: Sequence[Stop],
    *,
    depot: Location,
    start_minute: float,
    cost_model: CostModel,
) -> Timeline:
    """Walk ``stops`` in order from the depot, accumulating travel, waiting and service.

    Skipped stops are never visited. A leg the cost model cannot resolve
    contributes nothing and the technician stays at the previous position.
    """
    timeline = Timeline(clock=start_minute, position=depot)
    for sequence, stop in enumerate(stops, start=1):
        if stop.status is StopStatus.SKIPPED:
            timeline.visits.append(
                StopVisit(
                    stop_id=stop.stop_id,
                    sequence=sequence,
                    status=stop.status.value,
                    priority=stop.priority.value,
                    eta_min=None,
                    departure_min=None,
                    wait_min=0.0,
                    distance_from_prev_km=0.0,
                    duration_from_prev_min=0.0,
                )
            )
            continue

        try:
            leg_km = cost_model.distance(timeline.position, stop.location)
            leg_min = cost_model.duration(timeline.position, stop.location)
            resolved = True
        except UnresolvableLocationError as error:
            logger.warning(f"Cannot cost leg to stop '{stop.stop_id}': {error}")
            timeline.unresolved_stop_ids.append(stop.stop_id)
            leg_km = leg_min = 0.0
            resolved = False

        arrival = timeline.clock + leg_min
        wait = 0.0
        earliest = stop.time_window.earliest_minute if stop.time_window else None
        if earliest is not None and arrival < earliest:
            wait = earliest - arrival
        departure = arrival + wait + stop.service_minutes

        timeline.visits.append(
            StopVisit(
                stop_id=stop.stop_id,
                sequence=sequence,
                status=stop.status.value,
                priority=stop.priority.value,
                eta_min=arrival,
                departure_min=departure,
                wait_min=wait,
                distance_from_prev_km=leg_km,
                duration_from_prev_min=leg_min,
            )
        )
        timeline.distance_km += leg_km
        timeline.travel_min += leg_min
        timeline.wait_min += wait
        timeline.service_min += stop.service_minutes
        timeline.clock = departure
        if resolved:
            timeline.position = stop.location
    return timeline


def compute_route_metrics(
    route: Route,
    stops: Mapping[str, Stop],
    cost_model: CostModel,
    *,
    shift_length_minutes: int | None = None,
) -> RouteMetrics:
    shift_length = shift_length_minutes or settings.shift_length_minutes
    ordered = [stops[stop_id] for stop_id in route.stop_ids]
    cost = CachedCostModel(cost_model)
    cost.prepare([route.depot, *(stop.location for stop in ordered)])
    timeline = simulate(ordered, depot=route.depot, start_minute=route.start_minute, cost_model=cost)

    total = timeline.clock - route.start_minute
    efficiency = timeline.service_min / total * 100.0 if total > 0 else 0.0
    return RouteMetrics(
        total_distance_km=round(timeline.distance_km, 3),
        travel_min=round(timeline.travel_min, 2),
        wait_min=round(timeline.wait_min, 2),
        service_min=round(timeline.service_min, 2),
        total_duration_min=round(total, 2),
        efficiency_pct=round(efficiency, 1),
        utilization_pct=round(total / shift_length * 100.0, 1),
        end_min=timeline.clock,
        visits=timeline.visits,
        unresolved_stop_ids=timeline.unresolved_stop_ids,
    )
