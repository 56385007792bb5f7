"""Serializers for archived dispatch boards."""

from __future__ import annotations

import csv
import io
from typing import Sequence

from ...schemas.dispatch import BoardStatsModel, RouteSnapshotModel
from ..dispatch.models import BoardStats, RouteSnapshot


def board_to_json(stats: BoardStats, snapshots: Sequence[RouteSnapshot]) -> dict:
    return {
        "date": stats.board_date.isoformat(),
        "stats": BoardStatsModel.model_validate(stats).model_dump(mode="json"),
        "routes": [RouteSnapshotModel.model_validate(snapshot).model_dump(mode="json") for snapshot in snapshots],
    }


def board_to_csv(snapshots: Sequence[RouteSnapshot]) -> str:
    buffer = io.StringIO()
    fieldnames = [
        "route_id",
        "technician_id",
        "vehicle_id",
        "sequence",
        "stop_id",
        "work_order_id",
        "status",
        "priority",
        "eta",
        "distance_from_prev_km",
        "total_distance_km",
        "total_duration_min",
        "efficiency_pct",
        "unplaceable_reason",
    ]
    writer = csv.DictWriter(buffer, fieldnames=fieldnames)
    writer.writeheader()
    for snapshot in snapshots:
        totals = {
            "route_id": snapshot.route_id,
            "technician_id": snapshot.technician_id,
            "vehicle_id": snapshot.vehicle_id,
            "total_distance_km": snapshot.metrics.total_distance_km,
            "total_duration_min": snapshot.metrics.total_duration_min,
            "efficiency_pct": snapshot.metrics.efficiency_pct,
        }
        for stop in snapshot.stops:
            writer.writerow(
                {
                    **totals,
                    "sequence": stop.sequence,
                    "stop_id": stop.stop_id,
                    "work_order_id": stop.work_order_id or "",
                    "status": stop.status,
                    "priority": stop.priority,
                    "eta": stop.eta.isoformat() if stop.eta else "",
                    "distance_from_prev_km": stop.distance_from_prev_km,
                    "unplaceable_reason": "",
                }
            )
        for item in snapshot.unplaceable:
            writer.writerow(
                {
                    **totals,
                    "sequence": "",
                    "stop_id": item.stop_id,
                    "work_order_id": "",
                    "status": "pending",
                    "priority": "",
                    "eta": "",
                    "distance_from_prev_km": "",
                    "unplaceable_reason": item.reason,
                }
            )
    return buffer.getvalue()
