"""Dispatch board: all technician routes for one operating day.

Every mutation of a route runs under that route's lock. Operations that touch
two routes (or a route and the unassigned pool) take both locks in sorted id
order, with the pool first.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from datetime import date, datetime, time as dt_time, timedelta
from typing import Callable, Iterator, Optional, Sequence

from ...config import settings
from ...errors import (
    BoardArchivedError,
    DispatchError,
    InvalidTransitionError,
    NotFoundError,
    TimedOutError,
    ValidationError,
)
from ...models.domain import (
    Location,
    Priority,
    Route,
    RouteStatus,
    Stop,
    StopStatus,
    TimeWindow,
)
from ..geospatial import is_valid_coordinate
from ..routing.costs import CostModel, build_cost_model
from ..routing.metrics import compute_route_metrics
from ..routing.models import RouteMetrics, UnplaceableStop
from ..routing.sequencer import sequence_route
from .models import (
    BoardStats,
    OptimizationResult,
    RouteOptimizationOutcome,
    RouteSnapshot,
    StopView,
)
from .store import StopStore, coerce_status

logger = logging.getLogger(__name__)

# Lock key for stops that are not on any route. Sorts before every route id.
POOL = ""

RouteListener = Callable[[RouteSnapshot], None]


def _deadline(timeout: float | None) -> float | None:
    if timeout is None:
        return None
    if timeout <= 0:
        raise ValidationError("timeout must be > 0")
    return time.monotonic() + timeout


class DispatchBoard:
    def __init__(
        self,
        board_date: date,
        *,
        store: StopStore | None = None,
        cost_model_factory: Callable[[], CostModel] = build_cost_model,
        max_workers: int | None = None,
    ) -> None:
        self.date = board_date
        self.store = store or StopStore()
        self.archived = False
        self._cost_model_factory = cost_model_factory
        self._max_workers = max_workers or settings.optimize_max_workers
        self._routes: dict[str, Route] = {}
        self._locks: dict[str, threading.RLock] = {POOL: threading.RLock()}
        self._registry_lock = threading.Lock()
        self._metrics: dict[str, RouteMetrics] = {}
        self._unplaceable: dict[str, dict[str, UnplaceableStop]] = {}
        self._listeners: list[RouteListener] = []

    # -- locking -----------------------------------------------------------

    @contextmanager
    def _locked(self, keys: Sequence[str], deadline: float | None) -> Iterator[None]:
        acquired: list[threading.RLock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._locks[key]
                if deadline is None:
                    lock.acquire()
                elif not lock.acquire(timeout=max(0.0, deadline - time.monotonic())):
                    raise TimedOutError(f"Timed out waiting for lock on {'unassigned pool' if key == POOL else repr(key)}.")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    @contextmanager
    def _claim(self, stop: Stop, keys: Sequence[str], deadline: float | None) -> Iterator[Optional[str]]:
        """Lock the stop's current owner together with ``keys``; yields the owner id."""
        while True:
            owner = stop.assigned_route_id
            with self._locked([owner or POOL, *keys], deadline):
                if stop.assigned_route_id == owner:
                    yield owner
                    return
            # Owner changed while we waited; retry with the new owner.

    def _ensure_mutable(self) -> None:
        if self.archived:
            raise BoardArchivedError(f"Board {self.date.isoformat()} is archived.")

    # -- routes ------------------------------------------------------------

    def _route(self, route_id: str) -> Route:
        try:
            return self._routes[route_id]
        except KeyError:
            raise NotFoundError(f"Route '{route_id}' not found.") from None

    def add_route(
        self,
        route_id: str,
        technician_id: str,
        vehicle_id: str,
        depot: Location,
        *,
        start_time: dt_time | None = None,
        technician_name: str | None = None,
    ) -> Route:
        if not route_id or not technician_id or not vehicle_id:
            raise ValidationError("route_id, technician_id and vehicle_id are required.")
        if route_id == POOL:
            raise ValidationError("Route id cannot be empty.")
        if depot is None or not (depot.has_coordinates or depot.key):
            raise ValidationError(f"Route '{route_id}' needs a depot with coordinates or a location key.")
        if depot.has_coordinates and not is_valid_coordinate(depot.latitude, depot.longitude):
            raise ValidationError(f"Route '{route_id}' has an out-of-range depot.")

        with self._registry_lock:
            self._ensure_mutable()
            if route_id in self._routes:
                raise ValidationError(f"Route '{route_id}' already exists.")
            for existing in self._routes.values():
                if existing.technician_id == technician_id:
                    raise ValidationError(
                        f"Technician '{technician_id}' already has route '{existing.route_id}' on {self.date.isoformat()}."
                    )
            route = Route(
                route_id=route_id,
                technician_id=technician_id,
                vehicle_id=vehicle_id,
                depot=depot,
                start_time=start_time or settings.shift_start,
                technician_name=technician_name,
            )
            self._locks[route_id] = threading.RLock()
            self._routes[route_id] = route
        logger.info(f"Board {self.date.isoformat()}: added route '{route_id}' for technician '{technician_id}'")
        return route

    def get_route(self, route_id: str) -> Route:
        return self._route(route_id)

    def list_routes(self) -> list[Route]:
        return sorted(self._routes.values(), key=lambda route: route.route_id)

    def set_route_status(self, route_id: str, status: RouteStatus | str) -> RouteSnapshot:
        try:
            target = RouteStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown route status '{status}'.") from exc
        route = self._route(route_id)
        with self._locked([route_id], None):
            self._ensure_mutable()
            if route.status is RouteStatus.COMPLETED and target is not RouteStatus.COMPLETED:
                raise ValidationError(f"Route '{route_id}' is completed and cannot be reopened.")
            route.status = target
            self._changed(route)
        return self.snapshot(route_id)

    # -- stops -------------------------------------------------------------

    def create_stop(
        self,
        stop_id: str,
        title: str,
        location: Location | None,
        *,
        priority: Priority | str | None = Priority.NORMAL,
        address: str | None = None,
        work_order_id: str | None = None,
        service_minutes: float = 0.0,
        time_window: TimeWindow | None = None,
        route_id: str | None = None,
    ) -> str:
        self._ensure_mutable()
        if route_id is not None and self._route(route_id).status is RouteStatus.COMPLETED:
            raise ValidationError(f"Route '{route_id}' is completed.")
        stop = Stop(
            stop_id=stop_id,
            title=title,
            location=location,
            priority=priority,
            address=address,
            work_order_id=work_order_id,
            service_minutes=service_minutes,
            time_window=time_window,
        )
        self.store.add_stop(stop)
        if route_id is not None:
            try:
                self.assign_stop(stop_id, route_id)
            except DispatchError:
                # Intake and assignment commit together.
                self.store.remove_stop(stop_id)
                raise
        return stop_id

    def get_stop(self, stop_id: str) -> Stop:
        return self.store.get_stop(stop_id)

    def list_by_route(self, route_id: str) -> list[Stop]:
        self._route(route_id)
        return self.store.list_by_route(route_id)

    def _renumber(self, route: Route) -> None:
        for position, stop_id in enumerate(route.stop_ids, start=1):
            self.store.get_stop(stop_id).sequence = position
        for stop_id in route.unplaceable_ids:
            self.store.get_stop(stop_id).sequence = None

    def _detach(self, stop: Stop) -> Optional[Route]:
        if stop.assigned_route_id is None:
            return None
        route = self._routes[stop.assigned_route_id]
        if stop.stop_id in route.stop_ids:
            route.stop_ids.remove(stop.stop_id)
        if stop.stop_id in route.unplaceable_ids:
            route.unplaceable_ids.remove(stop.stop_id)
        self._unplaceable.get(route.route_id, {}).pop(stop.stop_id, None)
        stop.assigned_route_id = None
        stop.sequence = None
        self._renumber(route)
        return route

    def _attach(self, stop: Stop, route: Route) -> None:
        route.stop_ids.append(stop.stop_id)
        stop.assigned_route_id = route.route_id
        self._renumber(route)

    def _in_progress_on(self, route: Route, exclude: str | None = None) -> Optional[str]:
        for stop_id in route.member_ids:
            if stop_id != exclude and self.store.get_stop(stop_id).status is StopStatus.IN_PROGRESS:
                return stop_id
        return None

    def assign_stop(self, stop_id: str, route_id: str, *, timeout: float | None = None) -> RouteSnapshot:
        """Append a stop to the tail of ``route_id`` without re-sequencing."""
        deadline = _deadline(timeout)
        target = self._route(route_id)
        stop = self.store.get_stop(stop_id)
        with self._claim(stop, [route_id], deadline) as owner:
            self._ensure_mutable()
            if owner == route_id:
                return self.snapshot(route_id)
            if target.status is RouteStatus.COMPLETED:
                raise ValidationError(f"Route '{route_id}' is completed.")
            if owner is not None and stop.status.is_fixed:
                raise ValidationError(
                    f"Stop '{stop_id}' is {stop.status.value} on route '{owner}'; reassign it explicitly."
                )
            if owner is None and stop.status is not StopStatus.PENDING:
                raise ValidationError(f"Stop '{stop_id}' is {stop.status.value} and cannot be assigned.")
            previous = self._detach(stop)
            self._attach(stop, target)
            logger.info(f"Assigned stop '{stop_id}' to route '{route_id}'")
            if previous is not None:
                self._changed(previous)
            self._changed(target)
        return self.snapshot(route_id)

    def reassign_stop(self, stop_id: str, route_id: str, *, timeout: float | None = None) -> RouteSnapshot:
        """Move a stop between routes, including an in-progress hand-over."""
        deadline = _deadline(timeout)
        target = self._route(route_id)
        stop = self.store.get_stop(stop_id)
        with self._claim(stop, [route_id], deadline) as owner:
            self._ensure_mutable()
            if owner == route_id:
                return self.snapshot(route_id)
            if target.status is RouteStatus.COMPLETED:
                raise ValidationError(f"Route '{route_id}' is completed.")
            if stop.status is StopStatus.COMPLETED:
                raise ValidationError(f"Stop '{stop_id}' is completed and stays on route '{owner}'.")
            if stop.status is StopStatus.IN_PROGRESS:
                busy = self._in_progress_on(target)
                if busy is not None:
                    raise ValidationError(f"Route '{route_id}' already has stop '{busy}' in progress.")
            previous = self._detach(stop)
            self._attach(stop, target)
            logger.info(f"Reassigned stop '{stop_id}' from route '{owner}' to route '{route_id}'")
            if previous is not None:
                self._changed(previous)
            self._changed(target)
        return self.snapshot(route_id)

    def unassign_stop(self, stop_id: str, *, timeout: float | None = None) -> None:
        deadline = _deadline(timeout)
        stop = self.store.get_stop(stop_id)
        with self._claim(stop, [POOL], deadline) as owner:
            self._ensure_mutable()
            if owner is None:
                raise ValidationError(f"Stop '{stop_id}' is not assigned to a route.")
            if stop.status.is_fixed:
                raise ValidationError(f"Stop '{stop_id}' is {stop.status.value} and cannot be unassigned.")
            previous = self._detach(stop)
            self._changed(previous)

    def mark_stop_status(self, stop_id: str, status: StopStatus | str, *, timeout: float | None = None) -> Stop:
        target = coerce_status(status)
        deadline = _deadline(timeout)
        stop = self.store.get_stop(stop_id)
        with self._claim(stop, [], deadline) as owner:
            self._ensure_mutable()
            route = self._routes[owner] if owner is not None else None
            if target is StopStatus.IN_PROGRESS:
                if route is None:
                    raise ValidationError(f"Stop '{stop_id}' must be assigned to a route before it can start.")
                if route.status is RouteStatus.COMPLETED:
                    raise ValidationError(f"Route '{route.route_id}' is completed.")
                busy = self._in_progress_on(route, exclude=stop_id)
                if busy is not None:
                    raise InvalidTransitionError(
                        stop_id,
                        stop.status,
                        target,
                        f"Stop '{stop_id}' cannot start: route '{route.route_id}' already has stop '{busy}' in progress.",
                    )
            self.store.set_status(stop_id, target)
            if route is not None:
                if stop_id in route.unplaceable_ids:
                    route.unplaceable_ids.remove(stop_id)
                    self._unplaceable.get(route.route_id, {}).pop(stop_id, None)
                    route.stop_ids.append(stop_id)
                    self._renumber(route)
                self._changed(route)
        return stop

    # -- optimization ------------------------------------------------------

    def _optimize(self, route_id: str, deadline: float | None) -> OptimizationResult:
        route = self._route(route_id)
        with self._locked([route_id], deadline):
            self._ensure_mutable()
            if not route.member_ids:
                return OptimizationResult(
                    route_id=route_id, order=[], unplaceable=[], changed=False, snapshot=self.snapshot(route_id)
                )
            stops = {stop_id: self.store.get_stop(stop_id) for stop_id in route.member_ids}
            started = time.monotonic()
            result = sequence_route(route, stops, self._cost_model_factory(), deadline=deadline)

            unplaceable_ids = [item.stop_id for item in result.unplaceable]
            changed = result.order != route.stop_ids or unplaceable_ids != route.unplaceable_ids
            route.stop_ids = list(result.order)
            route.unplaceable_ids = unplaceable_ids
            self._unplaceable[route_id] = {item.stop_id: item for item in result.unplaceable}
            self._renumber(route)
            self._changed(route)
            logger.info(
                f"Optimized route '{route_id}' in {time.monotonic() - started:.3f}s: "
                f"{len(result.order)} placed, {len(unplaceable_ids)} unplaceable"
            )
            return OptimizationResult(
                route_id=route_id,
                order=list(result.order),
                unplaceable=list(result.unplaceable),
                changed=changed,
                snapshot=self.snapshot(route_id),
            )

    def optimize_route(self, route_id: str, *, timeout: float | None = None) -> OptimizationResult:
        """Re-sequence one route. Unplaceable stops are reported, never raised."""
        if timeout is None:
            timeout = settings.optimize_timeout_seconds
        return self._optimize(route_id, _deadline(timeout))

    def optimize_all(self, *, timeout: float | None = None) -> dict[str, RouteOptimizationOutcome]:
        """Re-sequence every active route concurrently.

        ``timeout`` bounds the whole call. A failure in one route is captured in
        its outcome and does not affect the others.
        """
        self._ensure_mutable()
        if timeout is None:
            timeout = settings.optimize_timeout_seconds
        deadline = _deadline(timeout)
        active = [route.route_id for route in self.list_routes() if route.status is RouteStatus.ACTIVE]
        outcomes: dict[str, RouteOptimizationOutcome] = {}
        if not active:
            return outcomes

        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(active))) as executor:
            future_to_route = {executor.submit(self._optimize, route_id, deadline): route_id for route_id in active}
            for future in as_completed(future_to_route):
                route_id = future_to_route[future]
                try:
                    outcomes[route_id] = RouteOptimizationOutcome(route_id=route_id, result=future.result())
                except DispatchError as exc:
                    logger.warning(f"Optimization of route '{route_id}' failed: {exc}")
                    outcomes[route_id] = RouteOptimizationOutcome(
                        route_id=route_id, error=str(exc), error_type=type(exc).__name__
                    )
                except Exception as exc:
                    logger.exception(f"Unexpected error optimizing route '{route_id}': {exc}")
                    outcomes[route_id] = RouteOptimizationOutcome(
                        route_id=route_id, error=str(exc), error_type=type(exc).__name__
                    )
        return dict(sorted(outcomes.items()))

    # -- read models -------------------------------------------------------

    def _at(self, minute: float | None) -> datetime | None:
        if minute is None:
            return None
        return datetime.combine(self.date, dt_time()) + timedelta(minutes=minute)

    def _route_metrics(self, route: Route) -> RouteMetrics:
        metrics = self._metrics.get(route.route_id)
        if metrics is None:
            stops = {stop_id: self.store.get_stop(stop_id) for stop_id in route.stop_ids}
            metrics = compute_route_metrics(route, stops, self._cost_model_factory())
            self._metrics[route.route_id] = metrics
        return metrics

    def snapshot(self, route_id: str) -> RouteSnapshot:
        route = self._route(route_id)
        with self._locked([route_id], None):
            metrics = self._route_metrics(route)
            views = []
            for visit in metrics.visits:
                stop = self.store.get_stop(visit.stop_id)
                views.append(
                    StopView(
                        stop_id=stop.stop_id,
                        title=stop.title,
                        address=stop.address,
                        work_order_id=stop.work_order_id,
                        sequence=visit.sequence,
                        status=visit.status,
                        priority=visit.priority,
                        service_minutes=stop.service_minutes,
                        eta=self._at(visit.eta_min),
                        departure=self._at(visit.departure_min),
                        wait_min=round(visit.wait_min, 2),
                        distance_from_prev_km=round(visit.distance_from_prev_km, 3),
                        duration_from_prev_min=round(visit.duration_from_prev_min, 2),
                    )
                )
            reasons = self._unplaceable.get(route_id, {})
            unplaceable = [
                reasons.get(stop_id) or UnplaceableStop(stop_id, "unplaceable", "")
                for stop_id in route.unplaceable_ids
            ]
            return RouteSnapshot(
                board_date=self.date,
                route_id=route.route_id,
                technician_id=route.technician_id,
                technician_name=route.technician_name,
                vehicle_id=route.vehicle_id,
                status=route.status.value,
                start=self._at(route.start_minute),
                end=self._at(metrics.end_min),
                metrics=metrics,
                stops=views,
                unplaceable=unplaceable,
            )

    def snapshots(self) -> list[RouteSnapshot]:
        return [self.snapshot(route.route_id) for route in self.list_routes()]

    def stats(self) -> BoardStats:
        snapshots = self.snapshots()
        stops = self.store.list_stops()
        efficiencies = [snap.metrics.efficiency_pct for snap in snapshots if snap.stops]
        return BoardStats(
            board_date=self.date,
            archived=self.archived,
            total_routes=len(snapshots),
            active_routes=sum(1 for snap in snapshots if snap.status == RouteStatus.ACTIVE.value),
            total_stops=len(stops),
            unassigned_stops=sum(1 for stop in stops if stop.assigned_route_id is None),
            completed_stops=sum(1 for stop in stops if stop.status is StopStatus.COMPLETED),
            in_progress_stops=sum(1 for stop in stops if stop.status is StopStatus.IN_PROGRESS),
            unplaceable_stops=sum(len(snap.unplaceable) for snap in snapshots),
            avg_efficiency_pct=round(sum(efficiencies) / len(efficiencies), 1) if efficiencies else 0.0,
        )

    # -- publication & lifecycle ---------------------------------------------

    def subscribe(self, listener: RouteListener) -> Callable[[], None]:
        """Register a listener for route snapshots; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self, route: Route) -> None:
        self._metrics.pop(route.route_id, None)
        if not self._listeners:
            return
        snapshot = self.snapshot(route.route_id)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception(f"Route listener failed for route '{route.route_id}'")

    def archive(self) -> list[RouteSnapshot]:
        """Freeze the board; returns the final snapshots."""
        with self._locked(list(self._locks), None):
            self._ensure_mutable()
            self.archived = True
        logger.info(f"Board {self.date.isoformat()} archived")
        return self.snapshots()
