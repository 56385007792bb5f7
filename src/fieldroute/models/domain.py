"""Domain models for stops, routes and locations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import List, Optional


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Sort weight, lower is served first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.URGENT: 0, Priority.HIGH: 1, Priority.NORMAL: 2}


class StopStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StopStatus.COMPLETED, StopStatus.SKIPPED)

    @property
    def is_fixed(self) -> bool:
        """Stops in these states keep their position when a route is re-sequenced."""
        return self in (StopStatus.IN_PROGRESS, StopStatus.COMPLETED)


class RouteStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


def minute_of_day(value: time) -> float:
    return value.hour * 60 + value.minute + value.second / 60.0


@dataclass(frozen=True, slots=True)
class Location:
    """A coordinate pair, an opaque key understood by a cost provider, or both."""

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    key: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def label(self) -> str:
        if self.key:
            return self.key
        if self.has_coordinates:
            return f"{self.latitude:.6f},{self.longitude:.6f}"
        return "<unaddressable>"


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """Arrival bounds on the board's operating day."""

    earliest: Optional[time] = None
    latest: Optional[time] = None

    @property
    def earliest_minute(self) -> Optional[float]:
        return minute_of_day(self.earliest) if self.earliest is not None else None

    @property
    def latest_minute(self) -> Optional[float]:
        return minute_of_day(self.latest) if self.latest is not None else None


@dataclass(slots=True)
class StatusChange:
    from_status: StopStatus
    to_status: StopStatus
    at: datetime


@dataclass(slots=True)
class Stop:
    """One work order to be visited by a technician."""

    stop_id: str
    title: str
    location: Optional[Location]
    priority: Optional[Priority] = Priority.NORMAL
    address: Optional[str] = None
    work_order_id: Optional[str] = None
    service_minutes: float = 0.0
    status: StopStatus = StopStatus.PENDING
    time_window: Optional[TimeWindow] = None
    assigned_route_id: Optional[str] = None
    sequence: Optional[int] = None
    status_history: List[StatusChange] = field(default_factory=list)


@dataclass(slots=True)
class Route:
    """One technician/vehicle's ordered work for the day.

    ``stop_ids`` is the visiting order. ``unplaceable_ids`` holds stops still
    claimed by the route that the last optimization could not place.
    """

    route_id: str
    technician_id: str
    vehicle_id: str
    depot: Location
    start_time: time
    technician_name: Optional[str] = None
    status: RouteStatus = RouteStatus.ACTIVE
    stop_ids: List[str] = field(default_factory=list)
    unplaceable_ids: List[str] = field(default_factory=list)

    @property
    def member_ids(self) -> List[str]:
        return [*self.stop_ids, *self.unplaceable_ids]

    @property
    def start_minute(self) -> float:
        return minute_of_day(self.start_time)
