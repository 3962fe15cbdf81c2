from __future__ import annotations

import math
from typing import Dict, Optional, Protocol, Sequence, Tuple

from Messages import RoutePreferences, RoutingMode
from RouteGeometry import LatLon, RouteGeometry, haversine_m


class RouteLookupError(RuntimeError):
    """The routing service could not produce a route. Retryable."""


class RouteProvider(Protocol):
    async def lookup(self,
                     origin: LatLon,
                     destination: LatLon,
                     routing_mode: RoutingMode = RoutingMode.STANDARD,
                     preferences: Optional[RoutePreferences] = None) -> RouteGeometry:
        ...


class StaticRouteProvider:
    """
    Offline provider: registered geometries for known legs, otherwise a
    straight line cut into `steps` hops. Duration assumes `speed_mps`.
    """

    def __init__(self,
                 routes: Optional[Dict[Tuple[LatLon, LatLon], Sequence[LatLon]]] = None,
                 steps: int = 20,
                 speed_mps: float = 10.0):
        self.routes = dict(routes or {})
        self.steps = max(1, steps)
        self.speed_mps = speed_mps
        self.lookups = 0

    def register(self, origin: LatLon, destination: LatLon, points: Sequence[LatLon]) -> None:
        self.routes[(tuple(origin), tuple(destination))] = list(points)

    async def lookup(self,
                     origin: LatLon,
                     destination: LatLon,
                     routing_mode: RoutingMode = RoutingMode.STANDARD,
                     preferences: Optional[RoutePreferences] = None) -> RouteGeometry:
        self.lookups += 1
        points = self.routes.get((tuple(origin), tuple(destination)))
        if points is None:
            points = [
                (origin[0] + (destination[0] - origin[0]) * i / self.steps,
                 origin[1] + (destination[1] - origin[1]) * i / self.steps)
                for i in range(self.steps + 1)
            ]
        dist = sum(haversine_m(points[i], points[i + 1]) for i in range(len(points) - 1))
        duration = math.ceil(dist / self.speed_mps) if self.speed_mps > 0 else None
        return RouteGeometry.from_points(points, distance_m=dist, duration_s=duration)
