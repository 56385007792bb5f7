"""Dispatch board, stop store and per-day board registry."""

from .board import DispatchBoard
from .service import DispatchService, dispatch_service
from .store import StopStore

__all__ = [
    "DispatchBoard",
    "DispatchService",
    "StopStore",
    "dispatch_service",
]
