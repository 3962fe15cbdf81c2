from __future__ import annotations

import logging
from typing import Optional

import config
from DispatchClient import DispatchClient
from Messages import (DriverPosition, DriverStatus, DriverStatusUpdate, EmergencyRequest,
                      MessageKind, RequestAccepted, RoutingMode, TripStatus, TripStatusUpdate)
from MotionInterpolator import MotionSample
from ParticipantState import Role
from RouteGeometry import LatLon, RouteGeometry
from TripStateMachine import TransitionRecord, TripPhase, TripStateMachine

logger = logging.getLogger(__name__)

PICKUP = "pickup"
DESTINATION = "destination"


class ResponderClient(DispatchClient):
    """
    Driver side. Owns the TripStateMachine; every transition it makes is
    mirrored to the requester through TRIP_STATUS / DRIVER_STATUS messages.
    """

    role = Role.RESPONDER

    def __init__(self, bus, scheduler, router,
                 start_position: LatLon = config.START_POS,
                 hospital: LatLon = config.HOSPITAL_POS,
                 driver_name: str = config.DRIVER_NAME,
                 vehicle: str = config.DRIVER_VEHICLE,
                 verification_code: str = config.VERIFICATION_CODE,
                 **kwargs):
        kwargs.setdefault("follow_camera", True)
        super().__init__(bus, scheduler, router, **kwargs)
        self.hospital = hospital
        self.driver_name = driver_name
        self.vehicle = vehicle
        self.trip = TripStateMachine(verification_code, on_transition=self._on_transition)
        self.state.position = start_position
        self.state.vehicle_visible = True
        self._failed_leg: Optional[str] = None
        self.handlers[MessageKind.EMERGENCY_REQUEST] = self._handle_request

    @property
    def phase(self) -> TripPhase:
        return self.trip.phase

    def _on_transition(self, record: TransitionRecord) -> None:
        self.state.trip_phase = record.target
        self.notify("trip_phase", record)

    # inbound

    def _handle_request(self, request: EmergencyRequest) -> None:
        if self.state.offline:
            logger.info("offline, ignoring emergency request at %s", request.address)
            return
        if self.trip.is_terminal:
            self.trip.reset()
            self.state.trip_phase = TripPhase.IDLE
        if self.trip.phase is not TripPhase.IDLE:
            logger.debug("already handling a request (%s), ignoring", self.trip.phase.name)
            return
        self.state.request = request
        self.trip.receive_request()
        logger.info("emergency request: %s (%s, %s routing)",
                    request.address, request.condition, request.routing_mode.value)
        self.notify("request", request)

    # operator actions

    async def accept_request(self) -> bool:
        self.trip.accept()
        self.publish(RequestAccepted(driver_name=self.driver_name, vehicle=self.vehicle))
        return await self._navigate(PICKUP)

    def decline_request(self) -> None:
        self.trip.decline_request()
        self.state.request = None

    async def enter_verification_code(self, code: str) -> bool:
        if not self.trip.enter_verification_code(code):
            self.notify("code_rejected", code)
            return False
        self.publish(TripStatusUpdate(TripStatus.ON_BOARD))
        await self._navigate(DESTINATION)
        return True

    async def override_verification(self, reason: str = "critical emergency override") -> bool:
        self.trip.override_verification(reason)
        self.interpolator.stop()
        self.publish(TripStatusUpdate(TripStatus.ON_BOARD))
        return await self._navigate(DESTINATION)

    def mark_trip_complete(self) -> None:
        self.trip.complete("operator marked complete")
        self.interpolator.stop()
        self.publish(TripStatusUpdate(TripStatus.REACHED_HOSPITAL))

    def cancel(self, reason: str = "operator cancelled") -> None:
        self.trip.cancel(reason)
        self.interpolator.stop()
        self._failed_leg = None
        self.publish(TripStatusUpdate(TripStatus.CANCELLED))

    def go_offline(self) -> None:
        if not self.trip.is_terminal:
            # raises once the patient is onboard
            self.trip.cancel("responder went offline")
        self.interpolator.stop()
        self._failed_leg = None
        self.state.offline = True
        self.publish(DriverStatusUpdate(DriverStatus.OFFLINE))
        self.notify("offline", None)

    def go_online(self) -> None:
        self.state.offline = False
        if self.trip.is_terminal:
            self.trip.reset()
            self.state.trip_phase = TripPhase.IDLE
        self.notify("online", None)

    async def retry_navigation(self) -> bool:
        if self._failed_leg is None:
            raise RuntimeError("no failed leg to retry")
        return await self._navigate(self._failed_leg)

    # legs

    def _leg_target(self, leg: str) -> LatLon:
        if leg == PICKUP:
            req = self.state.request
            return req.patient_location if req else config.PATIENT_POS
        return self.hospital

    async def _navigate(self, leg: str) -> bool:
        req = self.state.request
        origin = self.state.position or config.START_POS
        mode = req.routing_mode if req else RoutingMode.STANDARD
        prefs = req.route_preferences if req else None
        route = await self.lookup(origin, self._leg_target(leg), mode, prefs)
        if route is None:
            self._failed_leg = leg
            return False
        expected = TripPhase.ACCEPTED if leg == PICKUP else TripPhase.ONBOARD
        if self.trip.phase is not expected:
            # cancelled or overridden while the lookup was in flight
            logger.info("discarding %s route, trip is now %s", leg, self.trip.phase.name)
            return False
        self._failed_leg = None
        if leg == PICKUP:
            self.trip.depart_to_pickup()
        else:
            self.trip.depart_to_destination()
        self.start_leg(route, leg)
        return True

    def _on_sample(self, sample: MotionSample) -> None:
        self.state.position = sample.position
        self.state.heading = sample.heading
        self.state.eta_min = sample.eta_min
        self.state.zoom = sample.zoom
        self.publish(DriverPosition(pos=sample.position, angle=sample.heading, eta=sample.eta_min))
        self.notify("position", sample)

    def _on_arrived(self, route: RouteGeometry) -> None:
        self.state.position = route.dest
        leg, self.state.leg = self.state.leg, None
        self.state.route = None
        if leg == PICKUP:
            self.trip.arrive_at_pickup()
            self.publish(TripStatusUpdate(TripStatus.ARRIVED))
        elif leg == DESTINATION:
            self.trip.complete()
            self.publish(TripStatusUpdate(TripStatus.REACHED_HOSPITAL))
        self.notify("arrived", leg)
