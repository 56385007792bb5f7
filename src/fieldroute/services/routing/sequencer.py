"""Greedy visit sequencing for a single technician route.

Pending stops are appended one at a time from the current anchor: the highest
priority tier with a feasible stop wins, and inside a tier the nearest stop by
travel time is taken unless that would make a time-windowed stop of the same
tier late. Stops that are already in progress, completed or skipped keep their
relative order at the head of the route.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from ...errors import TimedOutError, UnresolvableLocationError
from ...models.domain import Location, Route, Stop, StopStatus
from .costs import CachedCostModel, CostModel
from .metrics import simulate
from .models import (
    UNPLACEABLE_TIME_WINDOW,
    UNPLACEABLE_UNRESOLVABLE,
    SequenceResult,
    UnplaceableStop,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Candidate:
    stop: Stop
    travel: float
    arrival: float

    @property
    def earliest(self) -> Optional[float]:
        return self.stop.time_window.earliest_minute if self.stop.time_window else None

    @property
    def latest(self) -> Optional[float]:
        return self.stop.time_window.latest_minute if self.stop.time_window else None

    @property
    def waits(self) -> bool:
        return self.earliest is not None and self.arrival < self.earliest

    @property
    def departure(self) -> float:
        start = max(self.arrival, self.earliest) if self.earliest is not None else self.arrival
        return start + self.stop.service_minutes

    @property
    def slack(self) -> float:
        return self.latest - self.arrival if self.latest is not None else math.inf


def _clock_label(minute: float) -> str:
    total = int(round(minute))
    return f"{total // 60:02d}:{total % 60:02d}"


def _check_deadline(route_id: str, deadline: float | None) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise TimedOutError(f"Sequencing route '{route_id}' exceeded its deadline.")


def _is_late(candidate: _Candidate) -> bool:
    return candidate.latest is not None and candidate.arrival > candidate.latest


def _late_after(chosen: _Candidate, other: _Candidate, cost: CostModel) -> bool:
    """True when serving ``chosen`` first pushes ``other`` past its latest bound."""
    try:
        travel = cost.duration(chosen.stop.location, other.stop.location)
    except UnresolvableLocationError:
        return False
    return chosen.departure + travel > other.latest


def _walk_end(stops: Sequence[Stop], clock: float, position: Location, cost: CostModel) -> Optional[float]:
    """Finish time of ``stops`` in order, or None if a window is missed or a leg is unknown."""
    for stop in stops:
        try:
            travel = cost.duration(position, stop.location)
        except UnresolvableLocationError:
            return None
        candidate = _Candidate(stop, travel, clock + travel)
        if _is_late(candidate):
            return None
        clock = candidate.departure
        position = stop.location
    return clock


def _earliest_fit(
    stop: Stop,
    ordered: list[Stop],
    clock: float,
    position: Location,
    cost: CostModel,
) -> Optional[int]:
    """Cheapest index in ``ordered`` where ``stop`` keeps every window, never ahead of a higher tier."""
    lowest = 0
    for index, placed in enumerate(ordered):
        if placed.priority.rank < stop.priority.rank:
            lowest = index + 1
    best: Optional[tuple[float, int]] = None
    for index in range(lowest, len(ordered) + 1):
        end = _walk_end([*ordered[:index], stop, *ordered[index:]], clock, position, cost)
        if end is not None and (best is None or end < best[0]):
            best = (end, index)
    return best[1] if best is not None else None


def sequence_route(
    route: Route,
    stops: Mapping[str, Stop],
    cost_model: CostModel,
    *,
    deadline: float | None = None,
) -> SequenceResult:
    """Compute a new visiting order for ``route`` without mutating it.

    ``deadline`` is a ``time.monotonic()`` value; passing it raises
    ``TimedOutError``. An unresolvable anchor (depot or last visited fixed stop)
    raises ``UnresolvableLocationError``; unresolvable or late pending stops are
    reported in ``SequenceResult.unplaceable`` instead.

    A stop that would be late even if served straight from the anchor is
    unplaceable. A stop that is only late at the current step stays deferred; if
    the greedy pass never reaches it in time, it is inserted at the cheapest
    earlier position that keeps every window, or reported when none exists.
    """
    members = [stops[stop_id] for stop_id in route.member_ids]
    fixed = [stop for stop in members if stop.status is not StopStatus.PENDING]
    movable = sorted(
        (stop for stop in members if stop.status is StopStatus.PENDING),
        key=lambda stop: stop.stop_id,
    )
    if not movable:
        return SequenceResult(route_id=route.route_id, order=[stop.stop_id for stop in fixed], unplaceable=[])

    cost = CachedCostModel(cost_model)
    cost.prepare([route.depot, *(stop.location for stop in members)])

    prefix = simulate(fixed, depot=route.depot, start_minute=route.start_minute, cost_model=cost)
    visited = [stop for stop in fixed if stop.status is not StopStatus.SKIPPED]
    if visited and visited[-1].stop_id in prefix.unresolved_stop_ids:
        raise UnresolvableLocationError(
            visited[-1].location,
            f"Route '{route.route_id}' cannot be extended from stop '{visited[-1].stop_id}'.",
        )
    _check_deadline(route.route_id, deadline)

    anchor_clock = prefix.clock
    anchor = prefix.position
    unplaceable: list[UnplaceableStop] = []
    remaining: list[Stop] = []
    for stop in movable:
        try:
            travel = cost.duration(anchor, stop.location)
        except UnresolvableLocationError as error:
            if error.location == anchor and stop.location != anchor:
                raise
            unplaceable.append(UnplaceableStop(stop.stop_id, UNPLACEABLE_UNRESOLVABLE, str(error)))
            continue
        candidate = _Candidate(stop, travel, anchor_clock + travel)
        if _is_late(candidate):
            unplaceable.append(
                UnplaceableStop(
                    stop.stop_id,
                    UNPLACEABLE_TIME_WINDOW,
                    f"earliest possible arrival {_clock_label(candidate.arrival)} "
                    f"is after latest {_clock_label(candidate.latest)}",
                )
            )
            continue
        remaining.append(stop)

    clock = anchor_clock
    position = anchor
    ordered: list[Stop] = []

    while remaining:
        _check_deadline(route.route_id, deadline)
        candidates: list[_Candidate] = []
        for stop in list(remaining):
            try:
                travel = cost.duration(position, stop.location)
            except UnresolvableLocationError as error:
                unplaceable.append(UnplaceableStop(stop.stop_id, UNPLACEABLE_UNRESOLVABLE, str(error)))
                remaining.remove(stop)
                continue
            candidate = _Candidate(stop, travel, clock + travel)
            if not _is_late(candidate):
                candidates.append(candidate)

        if not candidates:
            break

        tier = min(candidate.stop.priority.rank for candidate in candidates)
        in_tier = [candidate for candidate in candidates if candidate.stop.priority.rank == tier]
        chosen = min(in_tier, key=lambda c: (c.waits, c.travel, c.stop.stop_id))
        at_risk = [
            other
            for other in in_tier
            if other is not chosen and other.latest is not None and _late_after(chosen, other, cost)
        ]
        if at_risk:
            chosen = min([chosen, *at_risk], key=lambda c: (c.slack, c.travel, c.stop.stop_id))

        clock = chosen.departure
        position = chosen.stop.location
        ordered.append(chosen.stop)
        remaining.remove(chosen.stop)

    for stop in remaining:
        _check_deadline(route.route_id, deadline)
        index = _earliest_fit(stop, ordered, anchor_clock, anchor, cost)
        if index is None:
            unplaceable.append(
                UnplaceableStop(
                    stop.stop_id,
                    UNPLACEABLE_TIME_WINDOW,
                    f"no position in the route reaches it by {_clock_label(stop.time_window.latest_minute)}",
                )
            )
        else:
            ordered.insert(index, stop)

    _check_deadline(route.route_id, deadline)
    if unplaceable:
        logger.warning(
            f"Route '{route.route_id}': {len(unplaceable)} stop(s) could not be placed: "
            f"{', '.join(item.stop_id for item in unplaceable)}"
        )
    return SequenceResult(
        route_id=route.route_id,
        order=[*(stop.stop_id for stop in fixed), *(stop.stop_id for stop in ordered)],
        unplaceable=unplaceable,
    )
