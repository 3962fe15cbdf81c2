import asyncio
import logging
from functools import lru_cache
from typing import Optional

import polyline
import requests

import config
from Messages import RoutePreferences, RoutingMode
from RouteGeometry import LatLon, RouteGeometry
from RouteProvider import RouteLookupError

logger = logging.getLogger(__name__)


# -------------------------
# OSRM route fetch + cache
# -------------------------
def fetch_route(start: LatLon,
                dest: LatLon,
                routing_mode: RoutingMode = RoutingMode.STANDARD,
                base: str = config.OSRM_URL,
                profile: str = config.OSRM_PROFILE,
                timeout: float = config.OSRM_TIMEOUT_S) -> RouteGeometry:
    a_lat, a_lon = start
    b_lat, b_lon = dest

    coords = f"{a_lon},{a_lat};{b_lon},{b_lat}"
    url = f"{base}/route/v1/{profile}/{coords}"
    params = {"overview": "full", "geometries": "polyline", "steps": "false"}
    if routing_mode is RoutingMode.INTELLIGENT:
        # let OSRM pick major roads over tight residential turns
        params["continue_straight"] = "false"

    try:
        r = requests.get(url, params=params, timeout=timeout)
        r.raise_for_status()
        data = r.json()
    except requests.RequestException as e:
        raise RouteLookupError(f"routing service unreachable: {e}") from e
    except ValueError as e:
        raise RouteLookupError(f"routing service sent invalid JSON: {e}") from e

    if data.get("code") != "Ok" or not data.get("routes"):
        raise RouteLookupError(f"no route from {start} to {dest}: {data.get('code')} {data.get('message', '')}".strip())

    route = data["routes"][0]
    points = polyline.decode(route.get("geometry") or "")
    if not points:
        raise RouteLookupError("routing service returned an empty geometry")

    return RouteGeometry.from_points(
        points,
        duration_s=route.get("duration"),
        distance_m=route.get("distance"),
    )


@lru_cache(maxsize=1_024)
def route_cached(
        a_lat: float, a_lon: float,
        b_lat: float, b_lon: float,
        routing_mode: RoutingMode,
        base: str,
        profile: str,
) -> RouteGeometry:
    # cache key is primitive floats + mode; failures are not cached
    return fetch_route((a_lat, a_lon), (b_lat, b_lon), routing_mode, base=base, profile=profile)


class OsrmRouteProvider:
    """RouteProvider backed by an OSRM HTTP endpoint; requests run off the event loop."""

    def __init__(self, base: str = config.OSRM_URL, profile: str = config.OSRM_PROFILE,
                 use_cache: bool = True):
        self.base = base.rstrip("/")
        self.profile = profile
        self.use_cache = use_cache

    def fetch(self, origin: LatLon, destination: LatLon, routing_mode: RoutingMode) -> RouteGeometry:
        if self.use_cache:
            return route_cached(origin[0], origin[1], destination[0], destination[1],
                                routing_mode, self.base, self.profile)
        return fetch_route(origin, destination, routing_mode, base=self.base, profile=self.profile)

    async def lookup(self,
                     origin: LatLon,
                     destination: LatLon,
                     routing_mode: RoutingMode = RoutingMode.STANDARD,
                     preferences: Optional[RoutePreferences] = None) -> RouteGeometry:
        if preferences is not None and preferences.labels():
            # OSRM has no knobs for these; forwarded for the record only
            logger.debug("route preferences passed through: %s", ", ".join(preferences.labels()))
        route = await asyncio.to_thread(self.fetch, origin, destination, routing_mode)
        logger.info("route %s -> %s: %d points, %.0f m", origin, destination,
                    len(route), route.length_m())
        return route
