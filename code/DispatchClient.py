from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import config
from Messages import Message, MessageKind, Payload, RoutePreferences, RoutingMode
from MotionInterpolator import DurationPolicy, MotionInterpolator, MotionSample
from ParticipantState import ParticipantState, Role
from RouteGeometry import LatLon, RouteGeometry
from RouteProvider import RouteLookupError, RouteProvider
from Scheduler import Scheduler
from ws_bus import Subscription, SyncBus

logger = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]


class DispatchClient:
    """
    Shared participant plumbing: one bus subscription, one interpolator, one
    state struct. Subclasses set `role` and fill `handlers` with the message
    kinds they consume; everything else is dropped.

    Listeners get (event, payload) pairs for presentation side effects and
    never touch the state themselves.
    """

    role: Role

    def __init__(self,
                 bus: SyncBus,
                 scheduler: Scheduler,
                 router: RouteProvider,
                 heading_alpha: float = config.HEADING_ALPHA_CHASE,
                 follow_camera: bool = False,
                 tick_interval: float = config.TICK_INTERVAL_S,
                 progress_step: Optional[float] = None,
                 time_scale: float = 1.0):
        self.bus = bus
        self.scheduler = scheduler
        self.router = router
        self.tick_interval = tick_interval
        self.progress_step = progress_step
        self.time_scale = time_scale
        self.state = ParticipantState(role=self.role)
        self.listeners: List[Listener] = []
        self.handlers: Dict[MessageKind, Callable[[Any], None]] = {}
        self.interpolator = MotionInterpolator(
            scheduler,
            on_sample=self._on_sample,
            on_arrived=self._on_arrived,
            heading_alpha=heading_alpha,
            follow_camera=follow_camera,
            tick_interval=tick_interval,
            name=self.role.value,
        )
        self._subscription: Optional[Subscription] = None

    # bus

    def attach(self) -> None:
        if self._subscription is None:
            self._subscription = self.bus.subscribe(self.receive)

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self.interpolator.stop()

    def receive(self, message: Message) -> None:
        handler = self.handlers.get(message.type)
        if handler is None:
            logger.debug("%s ignores %s", self.role.value, message.type.value)
            return
        handler(message.payload)

    def publish(self, payload: Payload) -> Message:
        message = Message.create(payload)
        self.bus.publish(message)
        return message

    # presentation hooks

    def add_listener(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def notify(self, event: str, payload: Any = None) -> None:
        for listener in list(self.listeners):
            listener(event, payload)

    # navigation legs

    def policy_for(self, route: RouteGeometry) -> DurationPolicy:
        if self.progress_step is not None:
            return DurationPolicy.fixed_step(self.progress_step)
        return DurationPolicy.from_estimate(route.duration_s, self.tick_interval, self.time_scale)

    async def lookup(self, origin: LatLon, destination: LatLon,
                     routing_mode: RoutingMode = RoutingMode.STANDARD,
                     preferences: Optional[RoutePreferences] = None) -> Optional[RouteGeometry]:
        try:
            route = await self.router.lookup(origin, destination, routing_mode, preferences)
        except RouteLookupError as e:
            self.state.route_error = str(e)
            logger.warning("%s: route lookup failed: %s", self.role.value, e)
            self.notify("route_failed", e)
            return None
        self.state.route_error = None
        return route

    def start_leg(self, route: RouteGeometry, leg: str) -> None:
        self.state.route = route
        self.state.leg = leg
        self.interpolator.start(route, self.policy_for(route))
        self.notify("leg_started", leg)

    def _on_sample(self, sample: MotionSample) -> None:
        raise NotImplementedError

    def _on_arrived(self, route: RouteGeometry) -> None:
        raise NotImplementedError
