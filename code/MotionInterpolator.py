from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

import config
from RouteGeometry import LatLon, RouteGeometry, bearing_deg, lerp
from Scheduler import Scheduler, TickHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MotionSample:
    position: LatLon
    heading: float          # unwrapped, smoothed
    progress: float
    segment_index: int
    eta_min: int
    zoom: Optional[float] = None

    @property
    def compass(self) -> float:
        return self.heading % 360.0


@dataclass(frozen=True)
class DurationPolicy:
    """How far progress moves per tick, and how ETA is projected from it."""
    step: float = config.DEFAULT_PROGRESS_STEP
    eta_horizon_min: float = config.ETA_HORIZON_MIN

    def __post_init__(self):
        if self.step <= 0:
            raise ValueError(f"progress step must be positive, got {self.step}")

    @classmethod
    def fixed_step(cls, step: float) -> "DurationPolicy":
        return cls(step=step)

    @classmethod
    def from_estimate(cls,
                      duration_s: Optional[float],
                      tick_interval_s: float = config.TICK_INTERVAL_S,
                      time_scale: float = 1.0) -> "DurationPolicy":
        if not duration_s or duration_s <= 0:
            return cls()
        return cls(step=tick_interval_s * time_scale / duration_s,
                   eta_horizon_min=duration_s / 60.0)

    def eta_minutes(self, progress: float) -> int:
        remaining = 1.0 - min(max(progress, 0.0), 1.0)
        return max(1, math.ceil(remaining * self.eta_horizon_min))


def unwrap_toward(target: float, current: float) -> float:
    """Shift target by whole turns so that |target - current| <= 180."""
    while target - current > 180.0:
        target -= 360.0
    while target - current < -180.0:
        target += 360.0
    return target


class HeadingSmoother:
    """Exponential smoothing of a bearing along the shorter angular path."""

    def __init__(self, alpha: float, initial: float = 0.0, max_step_deg: Optional[float] = None):
        if not 0.0 < alpha <= 1.0:
            raise ValueError("alpha must be in (0, 1]")
        self.alpha = alpha
        self.max_step_deg = max_step_deg
        self.value = initial

    def update(self, target: Optional[float]) -> float:
        if target is None:
            return self.value
        delta = (unwrap_toward(target, self.value) - self.value) * self.alpha
        if self.max_step_deg is not None:
            delta = max(-self.max_step_deg, min(self.max_step_deg, delta))
        self.value += delta
        return self.value


class ZoomFollower:
    """Eases camera zoom in on sharp turns and out on straights."""

    def __init__(self,
                 alpha: float = config.ZOOM_ALPHA,
                 turn_threshold_deg: float = config.TURN_THRESHOLD_DEG,
                 turn_zoom: float = config.ZOOM_TURN,
                 straight_zoom: float = config.ZOOM_STRAIGHT):
        self.alpha = alpha
        self.turn_threshold_deg = turn_threshold_deg
        self.turn_zoom = turn_zoom
        self.straight_zoom = straight_zoom
        self.value = straight_zoom

    def target_for(self, turn_severity: float) -> float:
        return self.turn_zoom if turn_severity > self.turn_threshold_deg else self.straight_zoom

    def update(self, turn_severity: float) -> float:
        self.value += (self.target_for(turn_severity) - self.value) * self.alpha
        return self.value


class _Cycle:
    def __init__(self, route: RouteGeometry, policy: DurationPolicy,
                 heading: HeadingSmoother, zoom: Optional[ZoomFollower]):
        self.route = route
        self.policy = policy
        self.heading = heading
        self.zoom = zoom
        self.progress = 0.0
        self.handle: Optional[TickHandle] = None
        self.arrived = False


class MotionInterpolator:
    """
    Drives a position/heading animation along a RouteGeometry.

    Each tick either finishes the cycle (progress > 1, `on_arrived` fires once)
    or emits a MotionSample for the current progress and then advances it.
    Only one cycle runs at a time; start() replaces whatever was running.
    """

    def __init__(self,
                 scheduler: Scheduler,
                 on_sample: Optional[Callable[[MotionSample], None]] = None,
                 on_arrived: Optional[Callable[[RouteGeometry], None]] = None,
                 heading_alpha: float = config.HEADING_ALPHA_CHASE,
                 max_heading_step: Optional[float] = None,
                 follow_camera: bool = False,
                 tick_interval: float = config.TICK_INTERVAL_S,
                 name: str = "interpolator"):
        self.scheduler = scheduler
        self.on_sample = on_sample
        self.on_arrived = on_arrived
        self.heading_alpha = heading_alpha
        self.max_heading_step = max_heading_step
        self.follow_camera = follow_camera
        self.tick_interval = tick_interval
        self.name = name
        self.last_sample: Optional[MotionSample] = None
        self._cycle: Optional[_Cycle] = None

    @property
    def route(self) -> Optional[RouteGeometry]:
        return self._cycle.route if self._cycle else None

    @property
    def progress(self) -> Optional[float]:
        return self._cycle.progress if self._cycle else None

    def is_active(self) -> bool:
        return self._cycle is not None

    def start(self, route: RouteGeometry, policy: Optional[DurationPolicy] = None) -> None:
        self.stop()
        heading = HeadingSmoother(self.heading_alpha,
                                  initial=route.initial_bearing() or 0.0,
                                  max_step_deg=self.max_heading_step)
        zoom = ZoomFollower() if self.follow_camera else None
        cycle = _Cycle(route, policy or DurationPolicy(), heading, zoom)
        self._cycle = cycle
        self.last_sample = None
        cycle.handle = self.scheduler.every(self.tick_interval, lambda: self._tick(cycle))
        logger.debug("%s: cycle started, %d points, step %.5f",
                     self.name, len(route), cycle.policy.step)

    def stop(self) -> None:
        cycle, self._cycle = self._cycle, None
        if cycle is not None and cycle.handle is not None:
            cycle.handle.cancel()
            logger.debug("%s: cycle stopped at progress %.3f", self.name, cycle.progress)

    def _sample(self, cycle: _Cycle) -> MotionSample:
        route = cycle.route
        idx, frac = route.locate(cycle.progress)
        a, b = route.segment(idx)
        # bearing of the whole segment, not the sub-point, to stay stable on tiny hops
        heading = cycle.heading.update(bearing_deg(a, b))
        zoom = cycle.zoom.update(route.turn_severity(idx)) if cycle.zoom else None
        return MotionSample(
            position=lerp(a, b, frac),
            heading=heading,
            progress=min(cycle.progress, 1.0),
            segment_index=idx,
            eta_min=cycle.policy.eta_minutes(cycle.progress),
            zoom=zoom,
        )

    def _tick(self, cycle: _Cycle) -> None:
        if cycle is not self._cycle:
            return
        if cycle.progress > 1.0:
            self._finish(cycle)
            return
        self.last_sample = self._sample(cycle)
        cycle.progress += cycle.policy.step
        if self.on_sample:
            self.on_sample(self.last_sample)

    def _finish(self, cycle: _Cycle) -> None:
        if cycle.arrived:
            return
        cycle.arrived = True
        self.stop()
        logger.info("%s: arrived at %s", self.name, cycle.route.dest)
        if self.on_arrived:
            self.on_arrived(cycle.route)
