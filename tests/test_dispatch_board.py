import random
import threading
import time as clock
from datetime import date, time

import pytest

from src.fieldroute.errors import (
    BoardArchivedError,
    InvalidTransitionError,
    NotFoundError,
    TimedOutError,
    ValidationError,
)
from src.fieldroute.models.domain import Location, Priority, RouteStatus, StopStatus, TimeWindow
from src.fieldroute.services.dispatch.board import DispatchBoard
from src.fieldroute.services.routing.costs import CostModel, MatrixCostModel

BOARD_DATE = date(2025, 3, 4)

POSITIONS = {
    "DEPOT": 0,
    "A": 5,
    "B": 12,
    "C": 3,
    "D": 40,
    "E": 8,
    "FAR": 75,
    "X": 2,
    "Y": 4,
}


def _line_model(positions: dict[str, float] = POSITIONS) -> MatrixCostModel:
    durations = {(a, b): abs(positions[a] - positions[b]) for a in positions for b in positions if a != b}
    return MatrixCostModel(durations)


class SlowModel(CostModel):
    def __init__(self, inner: CostModel, delay: float) -> None:
        self.inner = inner
        self.delay = delay

    def duration(self, origin, destination):
        clock.sleep(self.delay)
        return self.inner.duration(origin, destination)

    def distance(self, origin, destination):
        return self.inner.distance(origin, destination)


def _board(model: CostModel | None = None, **kwargs) -> DispatchBoard:
    model = model or _line_model()
    return DispatchBoard(BOARD_DATE, cost_model_factory=lambda: model, **kwargs)


def _add_route(board: DispatchBoard, route_id: str = "R1", depot: str = "DEPOT") -> None:
    board.add_route(route_id, f"tech-{route_id}", f"van-{route_id}", Location(key=depot), start_time=time(8, 0))


def _add_stop(board: DispatchBoard, sid: str, route_id: str | None = "R1", **kwargs) -> None:
    board.create_stop(sid, f"Work order {sid}", Location(key=kwargs.pop("key", sid)), route_id=route_id, **kwargs)


def _assert_membership(board: DispatchBoard) -> None:
    """Every stop's back-reference matches exactly one route's membership."""
    owners: dict[str, str] = {}
    for route in board.list_routes():
        for stop_id in route.member_ids:
            assert stop_id not in owners, f"{stop_id} appears in {owners.get(stop_id)} and {route.route_id}"
            owners[stop_id] = route.route_id
    for stop in board.store.list_stops():
        assert stop.assigned_route_id == owners.get(stop.stop_id)
        if stop.assigned_route_id is not None:
            route = board.get_route(stop.assigned_route_id)
            if stop.stop_id in route.stop_ids:
                assert stop.sequence == route.stop_ids.index(stop.stop_id) + 1
            else:
                assert stop.sequence is None
        else:
            assert stop.sequence is None


def _fixed_subsequence(board: DispatchBoard, route_id: str) -> list[str]:
    return [
        stop_id
        for stop_id in board.get_route(route_id).stop_ids
        if board.get_stop(stop_id).status in (StopStatus.IN_PROGRESS, StopStatus.COMPLETED)
    ]


def test_assign_appends_to_tail_without_resequencing():
    board = _board()
    _add_route(board)
    for sid in ("B", "A", "C"):
        _add_stop(board, sid)

    snapshot = board.snapshot("R1")

    assert [stop.stop_id for stop in snapshot.stops] == ["B", "A", "C"]
    assert [stop.sequence for stop in snapshot.stops] == [1, 2, 3]
    assert [s.stop_id for s in board.list_by_route("R1")] == ["B", "A", "C"]
    _assert_membership(board)


def test_assign_unknown_ids_raise_not_found():
    board = _board()
    _add_route(board)
    _add_stop(board, "A", route_id=None)

    with pytest.raises(NotFoundError):
        board.assign_stop("A", "R9")
    with pytest.raises(NotFoundError):
        board.assign_stop("ZZZ", "R1")
    assert board.get_stop("A").assigned_route_id is None


def test_pending_stop_moves_between_routes_atomically():
    board = _board()
    _add_route(board, "R1")
    _add_route(board, "R2")
    _add_stop(board, "A")
    _add_stop(board, "B")

    board.assign_stop("A", "R2")

    assert board.get_route("R1").stop_ids == ["B"]
    assert board.get_route("R2").stop_ids == ["A"]
    assert board.get_stop("B").sequence == 1
    _assert_membership(board)


def test_in_progress_stop_cannot_be_assigned_elsewhere():
    board = _board()
    _add_route(board, "R1")
    _add_route(board, "R2")
    _add_stop(board, "A")
    board.mark_stop_status("A", StopStatus.IN_PROGRESS)

    with pytest.raises(ValidationError, match="reassign"):
        board.assign_stop("A", "R2")
    assert board.get_route("R1").stop_ids == ["A"]
    _assert_membership(board)


def test_reassign_hands_over_in_progress_stop_but_never_completed():
    board = _board()
    _add_route(board, "R1")
    _add_route(board, "R2")
    _add_stop(board, "A")
    _add_stop(board, "B")
    board.mark_stop_status("A", StopStatus.IN_PROGRESS)

    board.reassign_stop("A", "R2")
    assert board.get_stop("A").assigned_route_id == "R2"

    board.mark_stop_status("B", StopStatus.IN_PROGRESS)
    board.mark_stop_status("B", StopStatus.COMPLETED)
    with pytest.raises(ValidationError):
        board.reassign_stop("B", "R2")
    _assert_membership(board)


def test_reassign_refuses_second_in_progress_on_target():
    board = _board()
    _add_route(board, "R1")
    _add_route(board, "R2")
    _add_stop(board, "A")
    _add_stop(board, "B", route_id="R2")
    board.mark_stop_status("A", StopStatus.IN_PROGRESS)
    board.mark_stop_status("B", StopStatus.IN_PROGRESS)

    with pytest.raises(ValidationError):
        board.reassign_stop("A", "R2")
    assert board.get_stop("A").assigned_route_id == "R1"


def test_unassign_returns_stop_to_pool():
    board = _board()
    _add_route(board)
    _add_stop(board, "A")
    _add_stop(board, "B")

    board.unassign_stop("A")

    assert board.get_route("R1").stop_ids == ["B"]
    assert board.get_stop("A").assigned_route_id is None
    assert board.get_stop("A").sequence is None
    _assert_membership(board)


def test_only_one_stop_in_progress_per_route():
    board = _board()
    _add_route(board)
    _add_stop(board, "A")
    _add_stop(board, "B")
    board.mark_stop_status("A", StopStatus.IN_PROGRESS)

    with pytest.raises(InvalidTransitionError, match="already has stop 'A'"):
        board.mark_stop_status("B", StopStatus.IN_PROGRESS)

    board.mark_stop_status("A", StopStatus.COMPLETED)
    board.mark_stop_status("B", StopStatus.IN_PROGRESS)
    assert board.get_stop("B").status is StopStatus.IN_PROGRESS


def test_unassigned_stop_cannot_start():
    board = _board()
    _add_route(board)
    _add_stop(board, "A", route_id=None)

    with pytest.raises(ValidationError):
        board.mark_stop_status("A", StopStatus.IN_PROGRESS)
    assert board.get_stop("A").status is StopStatus.PENDING


def test_status_change_refreshes_route_aggregates():
    board = _board()
    _add_route(board)
    _add_stop(board, "A")
    _add_stop(board, "D")

    before = board.snapshot("R1").metrics.total_distance_km
    board.mark_stop_status("D", StopStatus.SKIPPED)
    after = board.snapshot("R1").metrics.total_distance_km

    assert before == pytest.approx(40)
    assert after == pytest.approx(5)


def test_snapshot_reports_etas_on_board_date():
    board = _board()
    _add_route(board)
    _add_stop(board, "A", service_minutes=30)
    _add_stop(board, "B")

    snapshot = board.snapshot("R1")

    assert snapshot.start.isoformat() == "2025-03-04T08:00:00"
    assert snapshot.stops[0].eta.isoformat() == "2025-03-04T08:05:00"
    assert snapshot.stops[1].eta.isoformat() == "2025-03-04T08:42:00"


def test_optimize_route_scenario_a_urgent_first():
    board = _board(_line_model({"DEPOT": 0, "P1": 2, "P2": -30}))
    _add_route(board)
    _add_stop(board, "P1")
    _add_stop(board, "P2", priority=Priority.URGENT)

    result = board.optimize_route("R1")

    assert result.order == ["P2", "P1"]
    assert result.changed is True
    assert [stop.stop_id for stop in result.snapshot.stops] == ["P2", "P1"]


def test_optimize_route_scenario_b_keeps_in_progress_first():
    board = _board(_line_model({"DEPOT": 0, "S1": 10, "S2": 30, "S3": 12}))
    _add_route(board)
    for sid in ("S1", "S2", "S3"):
        _add_stop(board, sid)
    board.mark_stop_status("S1", StopStatus.IN_PROGRESS)

    result = board.optimize_route("R1")

    assert result.order == ["S1", "S3", "S2"]


def test_optimize_route_scenario_c_reports_unplaceable_stop():
    board = _board()
    _add_route(board)
    _add_stop(board, "A")
    _add_stop(board, "FAR", time_window=TimeWindow(latest=time(9, 0)))
    _add_stop(board, "B")
    placed_before = board.snapshot("R1").placed_count

    result = board.optimize_route("R1")

    assert [item.stop_id for item in result.unplaceable] == ["FAR"]
    assert result.snapshot.placed_count == placed_before - 1
    assert [item.stop_id for item in result.snapshot.unplaceable] == ["FAR"]
    far = board.get_stop("FAR")
    assert far.assigned_route_id == "R1"
    assert far.sequence is None
    assert [s.stop_id for s in board.list_by_route("R1")] == ["A", "B", "FAR"]
    _assert_membership(board)


def test_optimize_route_is_idempotent_and_preserves_fixed_stops():
    board = _board()
    _add_route(board)
    for sid in ("D", "A", "B", "C", "E"):
        _add_stop(board, sid)
    board.mark_stop_status("B", StopStatus.IN_PROGRESS)
    board.mark_stop_status("B", StopStatus.COMPLETED)
    board.mark_stop_status("D", StopStatus.IN_PROGRESS)
    fixed_before = _fixed_subsequence(board, "R1")

    first = board.optimize_route("R1")
    second = board.optimize_route("R1")

    assert _fixed_subsequence(board, "R1") == fixed_before == ["D", "B"]
    assert second.order == first.order
    assert second.changed is False
    _assert_membership(board)


def test_optimize_empty_route_is_a_no_op():
    board = _board()
    _add_route(board)

    result = board.optimize_route("R1")

    assert result.order == []
    assert result.changed is False


def test_unplaceable_stop_started_by_technician_rejoins_sequence():
    board = _board()
    _add_route(board)
    _add_stop(board, "A")
    _add_stop(board, "FAR", time_window=TimeWindow(latest=time(9, 0)))
    board.optimize_route("R1")

    board.mark_stop_status("FAR", StopStatus.IN_PROGRESS)

    route = board.get_route("R1")
    assert route.stop_ids == ["A", "FAR"]
    assert route.unplaceable_ids == []
    _assert_membership(board)


def test_optimize_all_scenario_d_isolates_failures():
    board = _board()
    _add_route(board, "R1")
    _add_route(board, "R2")
    _add_route(board, "R3", depot="NOWHERE")
    _add_stop(board, "A", route_id="R1")
    _add_stop(board, "GHOST", route_id="R1")
    _add_stop(board, "B", route_id="R2")
    _add_stop(board, "C", route_id="R2")
    _add_stop(board, "E", route_id="R3")

    outcomes = board.optimize_all()

    assert list(outcomes) == ["R1", "R2", "R3"]
    assert outcomes["R1"].ok
    assert outcomes["R1"].result.order == ["A"]
    assert [item.stop_id for item in outcomes["R1"].result.unplaceable] == ["GHOST"]
    assert outcomes["R2"].ok
    assert outcomes["R2"].result.order == ["C", "B"]
    assert not outcomes["R3"].ok
    assert outcomes["R3"].error_type == "UnresolvableLocationError"
    assert board.get_route("R3").stop_ids == ["E"]


def test_optimize_all_captures_unexpected_errors_per_route():
    inner = _line_model()

    class FlakyModel(CostModel):
        def prepare(self, locations):
            if any(location.label == "D" for location in locations):
                raise RuntimeError("distance matrix provider outage")

        def duration(self, origin, destination):
            return inner.duration(origin, destination)

        def distance(self, origin, destination):
            return inner.distance(origin, destination)

    board = _board()
    _add_route(board, "R1")
    _add_route(board, "R2")
    _add_stop(board, "A", route_id="R1")
    _add_stop(board, "D", route_id="R2")
    board._cost_model_factory = FlakyModel

    outcomes = board.optimize_all()

    assert outcomes["R1"].ok
    assert outcomes["R2"].error_type == "RuntimeError"
    assert board.get_route("R2").stop_ids == ["D"]


def test_provider_error_on_one_leg_only_affects_that_stop():
    inner = _line_model()

    class FlakyLegModel(CostModel):
        def duration(self, origin, destination):
            if destination.label == "D":
                raise RuntimeError("matrix service returned 500")
            return inner.duration(origin, destination)

        def distance(self, origin, destination):
            return inner.distance(origin, destination)

    board = _board()
    _add_route(board)
    _add_stop(board, "A")
    _add_stop(board, "D")
    _add_stop(board, "B")
    board._cost_model_factory = FlakyLegModel

    outcomes = board.optimize_all()

    assert outcomes["R1"].ok
    assert outcomes["R1"].result.order == ["A", "B"]
    assert [item.stop_id for item in outcomes["R1"].result.unplaceable] == ["D"]


def test_optimize_all_only_runs_active_routes():
    board = _board()
    _add_route(board, "R1")
    _add_route(board, "R2")
    _add_stop(board, "A", route_id="R2")
    board.set_route_status("R2", RouteStatus.PAUSED)

    outcomes = board.optimize_all()

    assert list(outcomes) == ["R1"]


def test_optimize_timeout_leaves_order_unchanged():
    board = _board(SlowModel(_line_model(), delay=0.02))
    _add_route(board)
    for sid in ("D", "B", "A", "C"):
        _add_stop(board, sid)

    with pytest.raises(TimedOutError):
        board.optimize_route("R1", timeout=0.05)

    assert board.get_route("R1").stop_ids == ["D", "B", "A", "C"]
    _assert_membership(board)


def test_mutation_times_out_while_route_is_being_optimized():
    inner = _line_model()
    armed = threading.Event()
    entered = threading.Event()
    release = threading.Event()

    class BlockingModel(CostModel):
        def duration(self, origin, destination):
            if armed.is_set():
                entered.set()
                release.wait(5)
            return inner.duration(origin, destination)

        def distance(self, origin, destination):
            return inner.distance(origin, destination)

    board = _board(BlockingModel())
    _add_route(board)
    _add_stop(board, "A")
    _add_stop(board, "X", route_id=None)

    armed.set()
    worker = threading.Thread(target=board.optimize_route, args=("R1",))
    worker.start()
    try:
        assert entered.wait(2)
        with pytest.raises(TimedOutError):
            board.assign_stop("X", "R1", timeout=0.05)
    finally:
        release.set()
        worker.join(5)
        armed.clear()

    assert board.get_stop("X").assigned_route_id is None
    assert board.get_route("R1").stop_ids == ["A"]


def test_concurrent_assignments_keep_single_ownership():
    board = _board()
    for route_id in ("R1", "R2", "R3"):
        _add_route(board, route_id)
    for sid in ("A", "B", "C"):
        _add_stop(board, sid, route_id=None)

    rng = random.Random(7)
    jobs = [(sid, rng.choice(["R1", "R2", "R3"])) for _ in range(20) for sid in ("A", "B", "C")]

    def worker(chunk):
        for stop_id, route_id in chunk:
            board.assign_stop(stop_id, route_id)

    threads = [threading.Thread(target=worker, args=(jobs[i::6],)) for i in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert sum(len(route.member_ids) for route in board.list_routes()) == 3
    _assert_membership(board)


def test_listeners_receive_snapshots_and_failures_are_contained():
    board = _board()
    _add_route(board)
    received = []
    board.subscribe(lambda snapshot: received.append([stop.stop_id for stop in snapshot.stops]))

    def broken(snapshot):
        raise RuntimeError("notification service down")

    board.subscribe(broken)
    _add_stop(board, "A")
    unsubscribe = board.subscribe(lambda snapshot: received.append("late"))
    unsubscribe()
    _add_stop(board, "B")

    assert received == [["A"], ["A", "B"]]


def test_duplicate_routes_and_technicians_are_rejected():
    board = _board()
    _add_route(board, "R1")

    with pytest.raises(ValidationError):
        _add_route(board, "R1")
    with pytest.raises(ValidationError, match="Technician"):
        board.add_route("R2", "tech-R1", "van-9", Location(key="DEPOT"))


def test_completed_route_cannot_reopen_or_take_stops():
    board = _board()
    _add_route(board)
    _add_stop(board, "A", route_id=None)
    board.set_route_status("R1", "completed")

    with pytest.raises(ValidationError):
        board.set_route_status("R1", RouteStatus.ACTIVE)
    with pytest.raises(ValidationError):
        board.assign_stop("A", "R1")


def test_stats_summarise_the_board():
    board = _board()
    _add_route(board, "R1")
    _add_route(board, "R2")
    _add_stop(board, "A", service_minutes=15)
    _add_stop(board, "B", route_id="R2")
    _add_stop(board, "C", route_id=None)
    board.mark_stop_status("A", StopStatus.IN_PROGRESS)
    board.mark_stop_status("A", StopStatus.COMPLETED)
    board.set_route_status("R2", RouteStatus.PAUSED)

    stats = board.stats()

    assert stats.total_routes == 2
    assert stats.active_routes == 1
    assert stats.total_stops == 3
    assert stats.unassigned_stops == 1
    assert stats.completed_stops == 1
    assert stats.avg_efficiency_pct == pytest.approx(37.5)


def test_archived_board_is_read_only():
    board = _board()
    _add_route(board)
    _add_stop(board, "A")

    snapshots = board.archive()

    assert [snapshot.route_id for snapshot in snapshots] == ["R1"]
    with pytest.raises(BoardArchivedError):
        board.optimize_route("R1")
    with pytest.raises(BoardArchivedError):
        board.mark_stop_status("A", StopStatus.IN_PROGRESS)
    with pytest.raises(BoardArchivedError):
        _add_stop(board, "B")
    with pytest.raises(BoardArchivedError):
        board.optimize_all()
    assert board.snapshot("R1").stops[0].stop_id == "A"


def test_rejected_intake_leaves_no_stop_behind():
    board = _board()
    _add_route(board)
    board.set_route_status("R1", RouteStatus.COMPLETED)

    with pytest.raises(ValidationError):
        _add_stop(board, "A")

    assert "A" not in board.store
    _add_stop(board, "A", route_id=None)
    assert board.get_stop("A").assigned_route_id is None


def test_failed_assignment_during_intake_removes_the_stop(monkeypatch):
    board = _board()
    _add_route(board)

    def refuse(stop_id, route_id, **kwargs):
        raise TimedOutError(f"Timed out waiting for lock on {route_id!r}.")

    monkeypatch.setattr(board, "assign_stop", refuse)

    with pytest.raises(TimedOutError):
        _add_stop(board, "A")
    assert "A" not in board.store
    assert board.get_route("R1").stop_ids == []


def test_placed_count_excludes_skipped_stops():
    board = _board()
    _add_route(board)
    _add_stop(board, "A")
    _add_stop(board, "B")

    board.mark_stop_status("B", StopStatus.SKIPPED)

    snapshot = board.snapshot("R1")
    assert len(snapshot.stops) == 2
    assert snapshot.placed_count == 1
