"""Error taxonomy for the dispatch engine."""

from __future__ import annotations

from typing import Any


class DispatchError(Exception):
    """Base class for all dispatch engine errors."""


class ValidationError(DispatchError, ValueError):
    """Malformed input or a request that conflicts with current assignments."""


class NotFoundError(DispatchError, LookupError):
    """Unknown stop, route or board identifier."""


class InvalidTransitionError(DispatchError):
    """Illegal stop status change."""

    def __init__(self, stop_id: str, from_status: Any, to_status: Any, message: str | None = None) -> None:
        self.stop_id = stop_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message
            or f"Stop '{stop_id}' cannot move from '{_value(from_status)}' to '{_value(to_status)}'."
        )


class UnresolvableLocationError(DispatchError):
    """The cost model cannot resolve a location."""

    def __init__(self, location: Any, message: str | None = None) -> None:
        self.location = location
        super().__init__(message or f"Location {location!r} cannot be resolved by the cost model.")


class TimedOutError(DispatchError, TimeoutError):
    """An operation exceeded its deadline; no state was changed."""


class BoardArchivedError(DispatchError):
    """Mutation attempted on an archived (read-only) board."""


def _value(status: Any) -> str:
    return getattr(status, "value", str(status))
