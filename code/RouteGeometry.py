from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

LatLon = Tuple[float, float]  # (lat, lon)


def haversine_m(a: LatLon, b: LatLon) -> float:
    R = 6371000.0
    lat1, lon1 = map(math.radians, a)
    lat2, lon2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    x = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * R * math.asin(math.sqrt(x))


def bearing_deg(a: LatLon, b: LatLon) -> Optional[float]:
    """Screen-style bearing of a -> b in degrees, None for a zero-length hop."""
    dlat = b[0] - a[0]
    dlon = b[1] - a[1]
    if dlat == 0.0 and dlon == 0.0:
        return None
    return math.degrees(math.atan2(dlon, dlat))


def angle_delta(a: float, b: float) -> float:
    """Absolute angular difference in [0, 180]."""
    d = (b - a) % 360.0
    return 360.0 - d if d > 180.0 else d


def lerp(a: LatLon, b: LatLon, alpha: float) -> LatLon:
    return (a[0] + alpha * (b[0] - a[0]), a[1] + alpha * (b[1] - a[1]))


@dataclass(frozen=True)
class RouteGeometry:
    """
    Road-snapped polyline for one navigation leg.
    points: waypoints from origin to destination, at least one
    duration_s / distance_m: optional routing-service estimates
    """
    points: Tuple[LatLon, ...]
    duration_s: Optional[float] = None
    distance_m: Optional[float] = None

    def __post_init__(self):
        pts = tuple((float(lat), float(lon)) for lat, lon in self.points)
        if not pts:
            raise ValueError("route geometry needs at least one point")
        object.__setattr__(self, "points", pts)

    @classmethod
    def from_points(cls, points: Sequence[LatLon], **estimates) -> "RouteGeometry":
        return cls(points=tuple(points), **estimates)

    def __len__(self) -> int:
        return len(self.points)

    @property
    def start(self) -> LatLon:
        return self.points[0]

    @property
    def dest(self) -> LatLon:
        return self.points[-1]

    @property
    def segment_count(self) -> int:
        return max(len(self.points) - 1, 0)

    def locate(self, progress: float) -> Tuple[int, float]:
        """Map progress to (segment index, fraction along it). Progress is clamped to [0, 1]."""
        n = len(self.points)
        if n == 1:
            return 0, 0.0
        p = min(max(progress, 0.0), 1.0)
        t = p * (n - 1)
        # p == 1 lands at the end of the last segment, not on a phantom one
        idx = min(int(math.floor(t)), n - 2)
        return idx, t - idx

    def segment(self, idx: int) -> Tuple[LatLon, LatLon]:
        n = len(self.points)
        i = min(max(idx, 0), n - 1)
        return self.points[i], self.points[min(i + 1, n - 1)]

    def position_at(self, progress: float) -> LatLon:
        idx, frac = self.locate(progress)
        a, b = self.segment(idx)
        return lerp(a, b, frac)

    def bearing_at(self, progress: float) -> Optional[float]:
        idx, _ = self.locate(progress)
        return bearing_deg(*self.segment(idx))

    def initial_bearing(self) -> Optional[float]:
        for i in range(self.segment_count):
            b = bearing_deg(*self.segment(i))
            if b is not None:
                return b
        return None

    def turn_severity(self, idx: int) -> float:
        """Bearing change between segment idx and the one after it, 0 on the final segment."""
        if idx + 1 >= self.segment_count:
            return 0.0
        cur = bearing_deg(*self.segment(idx))
        nxt = bearing_deg(*self.segment(idx + 1))
        if cur is None or nxt is None:
            return 0.0
        return angle_delta(cur, nxt)

    def length_m(self) -> float:
        if self.distance_m is not None:
            return self.distance_m
        return sum(haversine_m(self.points[i], self.points[i + 1]) for i in range(self.segment_count))
