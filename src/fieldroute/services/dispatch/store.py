"""Canonical in-memory store of the day's stops and their status machine."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from ...errors import InvalidTransitionError, NotFoundError, ValidationError
from ...models.domain import Priority, StatusChange, Stop, StopStatus
from ..geospatial import is_valid_coordinate

logger = logging.getLogger(__name__)

TRANSITIONS: dict[StopStatus, frozenset[StopStatus]] = {
    StopStatus.PENDING: frozenset({StopStatus.IN_PROGRESS, StopStatus.SKIPPED}),
    StopStatus.IN_PROGRESS: frozenset({StopStatus.COMPLETED, StopStatus.SKIPPED}),
    StopStatus.COMPLETED: frozenset(),
    StopStatus.SKIPPED: frozenset(),
}


def coerce_status(value: StopStatus | str) -> StopStatus:
    try:
        return StopStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown stop status '{value}'.") from exc


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StopStore:
    """Holds every stop known to a board.

    Route membership lives on the stop itself (``assigned_route_id`` and
    ``sequence``); the dispatch board is the only writer of those fields.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._stops: dict[str, Stop] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def __len__(self) -> int:
        return len(self._stops)

    def __contains__(self, stop_id: object) -> bool:
        return stop_id in self._stops

    def _validate(self, stop: Stop) -> None:
        if not stop.stop_id or not str(stop.stop_id).strip():
            raise ValidationError("Stop id is required.")
        if stop.location is None:
            raise ValidationError(f"Stop '{stop.stop_id}' has no location.")
        if stop.priority is None:
            raise ValidationError(f"Stop '{stop.stop_id}' has no priority.")
        try:
            stop.priority = Priority(stop.priority)
        except ValueError as exc:
            raise ValidationError(f"Stop '{stop.stop_id}' has unknown priority '{stop.priority}'.") from exc

        location = stop.location
        partial = (location.latitude is None) != (location.longitude is None)
        if partial:
            raise ValidationError(f"Stop '{stop.stop_id}' needs both latitude and longitude.")
        if not location.has_coordinates and not location.key:
            raise ValidationError(f"Stop '{stop.stop_id}' needs coordinates or a location key.")
        if location.has_coordinates and not is_valid_coordinate(location.latitude, location.longitude):
            raise ValidationError(
                f"Stop '{stop.stop_id}' has out-of-range coordinates ({location.latitude}, {location.longitude})."
            )

        window = stop.time_window
        if window and window.earliest and window.latest and window.earliest > window.latest:
            raise ValidationError(f"Stop '{stop.stop_id}' has a time window ending before it starts.")
        if stop.service_minutes < 0:
            raise ValidationError(f"Stop '{stop.stop_id}' has negative service time.")
        if stop.status is not StopStatus.PENDING:
            raise ValidationError(f"Stop '{stop.stop_id}' must be pending at intake, got '{stop.status}'.")
        if stop.assigned_route_id is not None:
            raise ValidationError(f"Stop '{stop.stop_id}' must be assigned through the dispatch board.")

    def add_stop(self, stop: Stop) -> str:
        self._validate(stop)
        with self._lock:
            if stop.stop_id in self._stops:
                raise ValidationError(f"Stop '{stop.stop_id}' already exists.")
            self._stops[stop.stop_id] = stop
        logger.debug(f"Added stop '{stop.stop_id}' ({stop.priority.value})")
        return stop.stop_id

    def get_stop(self, stop_id: str) -> Stop:
        try:
            return self._stops[stop_id]
        except KeyError:
            raise NotFoundError(f"Stop '{stop_id}' not found.") from None

    def remove_stop(self, stop_id: str) -> None:
        """Drop a cancelled work order. Only unassigned pending stops can go."""
        with self._lock:
            stop = self.get_stop(stop_id)
            if stop.assigned_route_id is not None:
                raise ValidationError(f"Stop '{stop_id}' is assigned to route '{stop.assigned_route_id}'.")
            if stop.status is not StopStatus.PENDING:
                raise ValidationError(f"Stop '{stop_id}' is {stop.status.value} and cannot be removed.")
            del self._stops[stop_id]

    def set_status(self, stop_id: str, new_status: StopStatus | str) -> None:
        target = coerce_status(new_status)
        with self._lock:
            stop = self.get_stop(stop_id)
            if target not in TRANSITIONS[stop.status]:
                raise InvalidTransitionError(stop_id, stop.status, target)
            stop.status_history.append(StatusChange(from_status=stop.status, to_status=target, at=self._clock()))
            stop.status = target
        logger.info(f"Stop '{stop_id}' moved to {target.value}")

    def list_stops(
        self,
        *,
        status: Optional[StopStatus] = None,
        unassigned: Optional[bool] = None,
    ) -> list[Stop]:
        stops: Iterable[Stop] = self._stops.values()
        if status is not None:
            stops = [stop for stop in stops if stop.status is status]
        if unassigned is not None:
            stops = [stop for stop in stops if (stop.assigned_route_id is None) == unassigned]
        return sorted(stops, key=lambda stop: stop.stop_id)

    def list_by_route(self, route_id: str) -> list[Stop]:
        """Stops claimed by ``route_id`` in visiting order, unplaceable ones last."""
        members = [stop for stop in self._stops.values() if stop.assigned_route_id == route_id]
        return sorted(
            members,
            key=lambda stop: (stop.sequence is None, stop.sequence or 0, stop.stop_id),
        )
