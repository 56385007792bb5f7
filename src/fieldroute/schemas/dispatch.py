"""Dispatch request/response schemas."""

from __future__ import annotations

from datetime import date, datetime, time
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.domain import Location, Priority, RouteStatus, StopStatus, TimeWindow


class LocationModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    key: Optional[str] = Field(default=None, description="Opaque location key understood by the cost provider.")

    def to_domain(self) -> Location:
        return Location(latitude=self.latitude, longitude=self.longitude, key=self.key)


class TimeWindowModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    earliest: Optional[time] = None
    latest: Optional[time] = None

    def to_domain(self) -> TimeWindow:
        return TimeWindow(earliest=self.earliest, latest=self.latest)


class CreateBoardRequest(BaseModel):
    board_date: date


class CreateRouteRequest(BaseModel):
    route_id: str
    technician_id: str
    vehicle_id: str
    depot: LocationModel
    start_time: Optional[time] = Field(default=None, description="Shift start; defaults to the configured value.")
    technician_name: Optional[str] = None


class CreateStopRequest(BaseModel):
    stop_id: str
    title: str
    location: LocationModel
    priority: Priority = Priority.NORMAL
    address: Optional[str] = None
    work_order_id: Optional[str] = None
    service_minutes: float = Field(default=0.0, ge=0)
    time_window: Optional[TimeWindowModel] = None
    route_id: Optional[str] = Field(default=None, description="Assign to this route right after intake.")


class AssignStopRequest(BaseModel):
    route_id: str
    reassign: bool = Field(
        default=False,
        description="Explicit reassignment, which may hand over an in-progress stop.",
    )


class StopStatusRequest(BaseModel):
    status: StopStatus


class RouteStatusRequest(BaseModel):
    status: RouteStatus


class OptimizeRequest(BaseModel):
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class StopModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stop_id: str
    title: str
    address: Optional[str]
    work_order_id: Optional[str]
    location: LocationModel
    priority: Priority
    service_minutes: float
    status: StopStatus
    time_window: Optional[TimeWindowModel]
    assigned_route_id: Optional[str]
    sequence: Optional[int]


class StopViewModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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


class RouteMetricsModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_distance_km: float
    travel_min: float
    wait_min: float
    service_min: float
    total_duration_min: float
    efficiency_pct: float
    utilization_pct: float
    unresolved_stop_ids: List[str]


class UnplaceableStopModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stop_id: str
    reason: str
    detail: str


class RouteSnapshotModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    board_date: date
    route_id: str
    technician_id: str
    technician_name: Optional[str]
    vehicle_id: str
    status: str
    start: datetime
    end: datetime
    metrics: RouteMetricsModel
    stops: List[StopViewModel]
    unplaceable: List[UnplaceableStopModel]


class OptimizationResultModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    route_id: str
    order: List[str]
    unplaceable: List[UnplaceableStopModel]
    changed: bool
    snapshot: RouteSnapshotModel


class RouteOptimizationOutcomeModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    route_id: str
    ok: bool
    result: Optional[OptimizationResultModel] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class OptimizeAllResponse(BaseModel):
    board_date: date
    outcomes: Dict[str, RouteOptimizationOutcomeModel]


class BoardStatsModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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


class BoardSummaryModel(BaseModel):
    board_date: date
    archived: bool
    stats: BoardStatsModel
    routes: List[RouteSnapshotModel]


class ArchiveResponse(BaseModel):
    board_date: date
    output_dir: Optional[str]
    stats: BoardStatsModel
