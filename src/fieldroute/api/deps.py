"""Shared API dependencies and error translation."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status

from ..errors import (
    BoardArchivedError,
    DispatchError,
    InvalidTransitionError,
    NotFoundError,
    TimedOutError,
    UnresolvableLocationError,
    ValidationError,
)
from ..services.dispatch.service import DispatchService, dispatch_service


def get_dispatch_service() -> DispatchService:
    return dispatch_service


ServiceDep = Annotated[DispatchService, Depends(get_dispatch_service)]

_STATUS_BY_ERROR: tuple[tuple[type[DispatchError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (BoardArchivedError, status.HTTP_409_CONFLICT),
    (TimedOutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (UnresolvableLocationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def http_error(exc: DispatchError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: str | dict = str(exc)
    if isinstance(exc, InvalidTransitionError):
        detail = {
            "message": str(exc),
            "stop_id": exc.stop_id,
            "from_status": getattr(exc.from_status, "value", exc.from_status),
            "to_status": getattr(exc.to_status, "value", exc.to_status),
        }
    return HTTPException(status_code=status_code, detail=detail)
