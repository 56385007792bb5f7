"""Stop (work order) endpoints."""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Query, status

from ...errors import DispatchError
from ...models.domain import StopStatus
from ...schemas.dispatch import (
    AssignStopRequest,
    CreateStopRequest,
    RouteSnapshotModel,
    StopModel,
    StopStatusRequest,
)
from ..deps import ServiceDep, http_error

router = APIRouter(prefix="/boards/{board_date}/stops", tags=["stops"])


@router.post("", response_model=StopModel, status_code=status.HTTP_201_CREATED)
def create_stop(board_date: date, payload: CreateStopRequest, service: ServiceDep) -> StopModel:
    try:
        board = service.get_board(board_date)
        stop_id = board.create_stop(
            payload.stop_id,
            payload.title,
            payload.location.to_domain(),
            priority=payload.priority,
            address=payload.address,
            work_order_id=payload.work_order_id,
            service_minutes=payload.service_minutes,
            time_window=payload.time_window.to_domain() if payload.time_window else None,
            route_id=payload.route_id,
        )
        stop = board.get_stop(stop_id)
    except DispatchError as exc:
        raise http_error(exc) from exc
    return StopModel.model_validate(stop)


@router.get("", response_model=List[StopModel], status_code=status.HTTP_200_OK)
def list_stops(
    board_date: date,
    service: ServiceDep,
    status_filter: Optional[StopStatus] = Query(default=None, alias="status"),
    unassigned: Optional[bool] = Query(default=None, description="Only stops without a route"),
) -> List[StopModel]:
    try:
        stops = service.get_board(board_date).store.list_stops(status=status_filter, unassigned=unassigned)
    except DispatchError as exc:
        raise http_error(exc) from exc
    return [StopModel.model_validate(stop) for stop in stops]


@router.get("/{stop_id}", response_model=StopModel, status_code=status.HTTP_200_OK)
def get_stop(board_date: date, stop_id: str, service: ServiceDep) -> StopModel:
    try:
        stop = service.get_board(board_date).get_stop(stop_id)
    except DispatchError as exc:
        raise http_error(exc) from exc
    return StopModel.model_validate(stop)


@router.post("/{stop_id}/assign", response_model=RouteSnapshotModel, status_code=status.HTTP_200_OK)
def assign_stop(board_date: date, stop_id: str, payload: AssignStopRequest, service: ServiceDep) -> RouteSnapshotModel:
    try:
        board = service.get_board(board_date)
        if payload.reassign:
            snapshot = board.reassign_stop(stop_id, payload.route_id)
        else:
            snapshot = board.assign_stop(stop_id, payload.route_id)
    except DispatchError as exc:
        raise http_error(exc) from exc
    return RouteSnapshotModel.model_validate(snapshot)


@router.post("/{stop_id}/unassign", response_model=StopModel, status_code=status.HTTP_200_OK)
def unassign_stop(board_date: date, stop_id: str, service: ServiceDep) -> StopModel:
    try:
        board = service.get_board(board_date)
        board.unassign_stop(stop_id)
        stop = board.get_stop(stop_id)
    except DispatchError as exc:
        raise http_error(exc) from exc
    return StopModel.model_validate(stop)


@router.post("/{stop_id}/status", response_model=StopModel, status_code=status.HTTP_200_OK)
def mark_stop_status(board_date: date, stop_id: str, payload: StopStatusRequest, service: ServiceDep) -> StopModel:
    try:
        stop = service.get_board(board_date).mark_stop_status(stop_id, payload.status)
    except DispatchError as exc:
        raise http_error(exc) from exc
    return StopModel.model_validate(stop)
