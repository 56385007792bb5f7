"""Route group exports."""

from . import boards, health, routes, stops

__all__ = ["boards", "health", "routes", "stops"]
