"""Travel cost models between locations.

Durations are minutes and distances are kilometres. Costs are directional:
``duration(a, b)`` and ``duration(b, a)`` are independent lookups.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Mapping, Sequence

import httpx

from ...config import settings
from ...errors import UnresolvableLocationError
from ...models.domain import Location
from ..geospatial import haversine_km, is_valid_coordinate
from .osrm_client import OSRMClient

logger = logging.getLogger(__name__)


class CostModel(ABC):
    """Contract for travel cost providers."""

    @abstractmethod
    def duration(self, origin: Location, destination: Location) -> float:
        raise NotImplementedError

    @abstractmethod
    def distance(self, origin: Location, destination: Location) -> float:
        raise NotImplementedError

    def prepare(self, locations: Sequence[Location]) -> None:
        """Hook for providers that batch lookups ahead of an optimization run."""


class StraightLineCostModel(CostModel):
    """Haversine distance scaled by a detour factor, driven at a constant speed."""

    def __init__(self, average_speed_kmh: float | None = None, detour_factor: float | None = None) -> None:
        self.average_speed_kmh = average_speed_kmh or settings.average_speed_kmh
        self.detour_factor = detour_factor or settings.detour_factor

    def _coordinates(self, location: Location) -> tuple[float, float]:
        if not location.has_coordinates or not is_valid_coordinate(location.latitude, location.longitude):
            raise UnresolvableLocationError(location)
        return location.latitude, location.longitude

    def distance(self, origin: Location, destination: Location) -> float:
        lat1, lon1 = self._coordinates(origin)
        lat2, lon2 = self._coordinates(destination)
        return haversine_km(lat1, lon1, lat2, lon2) * self.detour_factor

    def duration(self, origin: Location, destination: Location) -> float:
        return self.distance(origin, destination) / self.average_speed_kmh * 60.0


class MatrixCostModel(CostModel):
    """Precomputed directional matrices keyed by ``Location.label`` pairs."""

    def __init__(
        self,
        durations: Mapping[tuple[str, str], float],
        distances: Mapping[tuple[str, str], float] | None = None,
    ) -> None:
        self.durations = dict(durations)
        self.distances = dict(distances) if distances is not None else {}
        self._known = {label for pair in self.durations for label in pair}

    def _lookup(self, table: dict, origin: Location, destination: Location) -> float:
        if origin.label == destination.label:
            return 0.0
        value = table.get((origin.label, destination.label))
        if value is None:
            culprit = origin if origin.label not in self._known else destination
            raise UnresolvableLocationError(culprit)
        return float(value)

    def duration(self, origin: Location, destination: Location) -> float:
        return self._lookup(self.durations, origin, destination)

    def distance(self, origin: Location, destination: Location) -> float:
        if not self.distances:
            # durations double as distances when only one matrix is supplied
            return self._lookup(self.durations, origin, destination)
        return self._lookup(self.distances, origin, destination)


class OSRMCostModel(CostModel):
    """Remote distance-matrix provider with a straight-line fallback.

    Once the provider fails the model stays on the fallback for the rest of its
    lifetime, so one optimization run never mixes sources.
    """

    def __init__(self, client: OSRMClient | None = None, fallback: CostModel | None = None) -> None:
        self.client = client or OSRMClient()
        self.fallback = fallback or StraightLineCostModel()
        self.degraded = False
        self._durations: dict[tuple[Location, Location], float | None] = {}
        self._distances: dict[tuple[Location, Location], float | None] = {}

    def _degrade(self, error: Exception) -> None:
        if not self.degraded:
            logger.warning(f"OSRM cost provider unavailable ({error}). Using straight-line fallback.")
        self.degraded = True

    def _fetch(self, locations: Sequence[Location]) -> None:
        unique: list[Location] = []
        for location in locations:
            if location.has_coordinates and location not in unique:
                unique.append(location)
        if len(unique) < 2:
            return
        try:
            table = self.client.table([(loc.latitude, loc.longitude) for loc in unique])
        except (ConnectionError, httpx.HTTPError, ValueError) as error:
            self._degrade(error)
            return
        for i, origin in enumerate(unique):
            for j, destination in enumerate(unique):
                seconds = table["durations"][i][j]
                meters = table["distances"][i][j]
                self._durations[(origin, destination)] = seconds / 60.0 if seconds is not None else None
                self._distances[(origin, destination)] = meters / 1000.0 if meters is not None else None

    def prepare(self, locations: Sequence[Location]) -> None:
        if not self.degraded:
            self._fetch(locations)

    def _lookup(self, table: dict, origin: Location, destination: Location) -> float | None:
        for location in (origin, destination):
            if not location.has_coordinates or not is_valid_coordinate(location.latitude, location.longitude):
                raise UnresolvableLocationError(location)
        if origin == destination:
            return 0.0
        if (origin, destination) not in table and not self.degraded:
            self._fetch([origin, destination])
        if self.degraded:
            return None
        value = table.get((origin, destination))
        if value is None:
            raise UnresolvableLocationError(destination, f"OSRM has no route from {origin.label} to {destination.label}.")
        return value

    def duration(self, origin: Location, destination: Location) -> float:
        value = self._lookup(self._durations, origin, destination)
        return value if value is not None else self.fallback.duration(origin, destination)

    def distance(self, origin: Location, destination: Location) -> float:
        value = self._lookup(self._distances, origin, destination)
        return value if value is not None else self.fallback.distance(origin, destination)


class CachedCostModel(CostModel):
    """Memoizes a provider for the length of one run, failures included.

    Any other provider error on a single leg is reported as an unresolvable
    destination so the failure stays with the stop that caused it.
    """

    def __init__(self, inner: CostModel) -> None:
        self.inner = inner
        self._durations: dict[tuple[Location, Location], float | UnresolvableLocationError] = {}
        self._distances: dict[tuple[Location, Location], float | UnresolvableLocationError] = {}

    @staticmethod
    def _memo(cache: dict, compute, origin: Location, destination: Location) -> float:
        key = (origin, destination)
        if key not in cache:
            try:
                cache[key] = compute(origin, destination)
            except UnresolvableLocationError as error:
                cache[key] = error
            except Exception as error:
                logger.warning(f"Cost provider failed for {origin.label} -> {destination.label}: {error}")
                cache[key] = UnresolvableLocationError(
                    destination, f"Cost provider failed for {origin.label} -> {destination.label}: {error}"
                )
        value = cache[key]
        if isinstance(value, UnresolvableLocationError):
            raise value
        return value

    def prepare(self, locations: Sequence[Location]) -> None:
        self.inner.prepare(locations)

    def duration(self, origin: Location, destination: Location) -> float:
        return self._memo(self._durations, self.inner.duration, origin, destination)

    def distance(self, origin: Location, destination: Location) -> float:
        return self._memo(self._distances, self.inner.distance, origin, destination)


def build_cost_model() -> CostModel:
    """Return the OSRM-backed model when configured, else the straight-line model."""
    if settings.osrm_base_url:
        return OSRMCostModel(OSRMClient())
    return StraightLineCostModel()
