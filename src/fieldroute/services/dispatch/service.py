"""Dispatch orchestration service: one board per operating day."""

from __future__ import annotations

import logging
import threading
from datetime import date
from pathlib import Path
from typing import Callable

from ...errors import NotFoundError, ValidationError
from ...persistence.filesystem import FileStorage
from ..outputs.board_formatter import board_to_csv, board_to_json
from ..routing.costs import CostModel, build_cost_model
from .board import DispatchBoard

logger = logging.getLogger(__name__)


class DispatchService:
    """Registry of dispatch boards keyed by operating day."""

    def __init__(
        self,
        *,
        cost_model_factory: Callable[[], CostModel] = build_cost_model,
        storage_factory: Callable[[], FileStorage] = FileStorage,
    ) -> None:
        self._boards: dict[date, DispatchBoard] = {}
        self._archives: dict[date, Path] = {}
        self._lock = threading.Lock()
        self._cost_model_factory = cost_model_factory
        self._storage_factory = storage_factory

    def create_board(self, board_date: date) -> DispatchBoard:
        with self._lock:
            if board_date in self._boards:
                raise ValidationError(f"Board for {board_date.isoformat()} already exists.")
            board = DispatchBoard(board_date, cost_model_factory=self._cost_model_factory)
            self._boards[board_date] = board
        logger.info(f"Created dispatch board for {board_date.isoformat()}")
        return board

    def get_board(self, board_date: date) -> DispatchBoard:
        try:
            return self._boards[board_date]
        except KeyError:
            raise NotFoundError(f"No dispatch board for {board_date.isoformat()}.") from None

    def get_or_create_board(self, board_date: date) -> DispatchBoard:
        with self._lock:
            board = self._boards.get(board_date)
            if board is None:
                board = DispatchBoard(board_date, cost_model_factory=self._cost_model_factory)
                self._boards[board_date] = board
            return board

    def list_boards(self) -> list[DispatchBoard]:
        return [self._boards[key] for key in sorted(self._boards)]

    def archive_board(self, board_date: date, *, persist: bool = True) -> Path | None:
        """Close the day: freeze the board and write its final snapshot to disk."""
        board = self.get_board(board_date)
        snapshots = board.archive()
        if not persist:
            return None

        storage = self._storage_factory()
        run_dir = storage.make_run_directory(prefix=f"board_{board_date.isoformat()}")
        storage.write_json(run_dir / "summary.json", board_to_json(board.stats(), snapshots))
        storage.write_csv(run_dir / "stops.csv", board_to_csv(snapshots))
        self._archives[board_date] = run_dir
        logger.info(f"Archived board {board_date.isoformat()} to {run_dir}")
        return run_dir

    def archive_path(self, board_date: date) -> Path | None:
        return self._archives.get(board_date)


dispatch_service = DispatchService()
