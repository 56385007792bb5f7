"""Technician route endpoints."""

from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Body, HTTPException, status

from ...errors import DispatchError
from ...schemas.dispatch import (
    CreateRouteRequest,
    OptimizationResultModel,
    OptimizeRequest,
    RouteSnapshotModel,
    RouteStatusRequest,
)
from ..deps import ServiceDep, http_error

router = APIRouter(prefix="/boards/{board_date}/routes", tags=["routes"])
logger = logging.getLogger(__name__)


@router.post("", response_model=RouteSnapshotModel, status_code=status.HTTP_201_CREATED)
def add_route(board_date: date, payload: CreateRouteRequest, service: ServiceDep) -> RouteSnapshotModel:
    try:
        board = service.get_board(board_date)
        board.add_route(
            payload.route_id,
            payload.technician_id,
            payload.vehicle_id,
            payload.depot.to_domain(),
            start_time=payload.start_time,
            technician_name=payload.technician_name,
        )
        snapshot = board.snapshot(payload.route_id)
    except DispatchError as exc:
        raise http_error(exc) from exc
    return RouteSnapshotModel.model_validate(snapshot)


@router.get("", response_model=List[RouteSnapshotModel], status_code=status.HTTP_200_OK)
def list_routes(board_date: date, service: ServiceDep) -> List[RouteSnapshotModel]:
    try:
        snapshots = service.get_board(board_date).snapshots()
    except DispatchError as exc:
        raise http_error(exc) from exc
    return [RouteSnapshotModel.model_validate(snapshot) for snapshot in snapshots]


@router.get("/{route_id}", response_model=RouteSnapshotModel, status_code=status.HTTP_200_OK)
def get_route(board_date: date, route_id: str, service: ServiceDep) -> RouteSnapshotModel:
    try:
        snapshot = service.get_board(board_date).snapshot(route_id)
    except DispatchError as exc:
        raise http_error(exc) from exc
    return RouteSnapshotModel.model_validate(snapshot)


@router.patch("/{route_id}/status", response_model=RouteSnapshotModel, status_code=status.HTTP_200_OK)
def set_route_status(
    board_date: date, route_id: str, payload: RouteStatusRequest, service: ServiceDep
) -> RouteSnapshotModel:
    try:
        snapshot = service.get_board(board_date).set_route_status(route_id, payload.status)
    except DispatchError as exc:
        raise http_error(exc) from exc
    return RouteSnapshotModel.model_validate(snapshot)


@router.post("/{route_id}/optimize", response_model=OptimizationResultModel, status_code=status.HTTP_200_OK)
def optimize_route(
    board_date: date,
    route_id: str,
    service: ServiceDep,
    payload: Optional[OptimizeRequest] = Body(default=None),
) -> OptimizationResultModel:
    try:
        board = service.get_board(board_date)
        result = board.optimize_route(route_id, timeout=payload.timeout_seconds if payload else None)
    except DispatchError as exc:
        raise http_error(exc) from exc
    except Exception as exc:
        logger.exception(f"Error optimizing route {route_id}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to optimize route: {str(exc)}",
        ) from exc
    return OptimizationResultModel.model_validate(result)
