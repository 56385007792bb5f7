"""Dispatch board endpoints."""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Body, HTTPException, status

from ...errors import DispatchError
from ...schemas.dispatch import (
    ArchiveResponse,
    BoardStatsModel,
    BoardSummaryModel,
    CreateBoardRequest,
    OptimizeAllResponse,
    OptimizeRequest,
    RouteOptimizationOutcomeModel,
    RouteSnapshotModel,
)
from ...services.dispatch.board import DispatchBoard
from ..deps import ServiceDep, http_error

router = APIRouter(prefix="/boards", tags=["boards"])
logger = logging.getLogger(__name__)


def _summary(board: DispatchBoard) -> BoardSummaryModel:
    return BoardSummaryModel(
        board_date=board.date,
        archived=board.archived,
        stats=BoardStatsModel.model_validate(board.stats()),
        routes=[RouteSnapshotModel.model_validate(snapshot) for snapshot in board.snapshots()],
    )


@router.post("", response_model=BoardSummaryModel, status_code=status.HTTP_201_CREATED)
def create_board(payload: CreateBoardRequest, service: ServiceDep) -> BoardSummaryModel:
    try:
        board = service.create_board(payload.board_date)
    except DispatchError as exc:
        raise http_error(exc) from exc
    return _summary(board)


@router.get("/{board_date}", response_model=BoardSummaryModel, status_code=status.HTTP_200_OK)
def get_board(board_date: date, service: ServiceDep) -> BoardSummaryModel:
    try:
        board = service.get_board(board_date)
    except DispatchError as exc:
        raise http_error(exc) from exc
    return _summary(board)


@router.post("/{board_date}/archive", response_model=ArchiveResponse, status_code=status.HTTP_200_OK)
def archive_board(board_date: date, service: ServiceDep) -> ArchiveResponse:
    try:
        output_dir = service.archive_board(board_date)
        board = service.get_board(board_date)
    except DispatchError as exc:
        raise http_error(exc) from exc
    return ArchiveResponse(
        board_date=board_date,
        output_dir=str(output_dir) if output_dir else None,
        stats=BoardStatsModel.model_validate(board.stats()),
    )


@router.post("/{board_date}/optimize", response_model=OptimizeAllResponse, status_code=status.HTTP_200_OK)
def optimize_all(
    board_date: date,
    service: ServiceDep,
    payload: Optional[OptimizeRequest] = Body(default=None),
) -> OptimizeAllResponse:
    try:
        board = service.get_board(board_date)
        outcomes = board.optimize_all(timeout=payload.timeout_seconds if payload else None)
    except DispatchError as exc:
        raise http_error(exc) from exc
    except Exception as exc:
        logger.exception(f"Error optimizing board {board_date}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to optimize routes: {str(exc)}",
        ) from exc
    return OptimizeAllResponse(
        board_date=board_date,
        outcomes={
            route_id: RouteOptimizationOutcomeModel.model_validate(outcome)
            for route_id, outcome in outcomes.items()
        },
    )
