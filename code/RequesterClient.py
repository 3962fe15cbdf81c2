from __future__ import annotations

import logging
from typing import Dict, Optional

import config
from DispatchClient import DispatchClient
from EscalationTimer import EscalationPhase, EscalationTimer
from Messages import (DriverPosition, DriverStatus, DriverStatusUpdate, EmergencyRequest,
                      MessageKind, RequestAccepted, TripStatus, TripStatusUpdate)
from MotionInterpolator import MotionSample
from ParticipantState import Role
from RouteGeometry import LatLon, RouteGeometry
from TripStateMachine import TripPhase

logger = logging.getLogger(__name__)

# TRIP_STATUS wire value -> mirrored phase
STATUS_PHASES: Dict[TripStatus, TripPhase] = {
    TripStatus.ARRIVED: TripPhase.ARRIVED_PICKUP,
    TripStatus.ON_BOARD: TripPhase.ONBOARD,
    TripStatus.REACHED_HOSPITAL: TripPhase.COMPLETED,
    TripStatus.CANCELLED: TripPhase.CANCELLED,
}


class RequesterClient(DispatchClient):
    """
    Patient side. Holds a read-only mirror of the responder's trip phase and
    position; the only local writer is the optimistic interpolator, which
    yields to the first authoritative DRIVER_POSITION.
    """

    role = Role.REQUESTER

    def __init__(self, bus, scheduler, router,
                 responder_origin: LatLon = config.START_POS,
                 verification_code: str = config.VERIFICATION_CODE,
                 escalation_options: Optional[dict] = None,
                 **kwargs):
        kwargs.setdefault("heading_alpha", config.HEADING_ALPHA_TOPDOWN)
        super().__init__(bus, scheduler, router, **kwargs)
        self.responder_origin = responder_origin
        self.verification_code = verification_code
        self.escalation_options = dict(escalation_options or {})
        self.escalation: Optional[EscalationTimer] = None
        self.handlers.update({
            MessageKind.DRIVER_POSITION: self._handle_position,
            MessageKind.REQUEST_ACCEPTED: self._handle_accepted,
            MessageKind.TRIP_STATUS: self._handle_trip_status,
            MessageKind.DRIVER_STATUS: self._handle_driver_status,
        })

    # actions

    async def request_emergency(self, request: EmergencyRequest) -> bool:
        self.cancel_request()
        st = self.state
        st.request = request
        st.trip_phase = TripPhase.IDLE
        st.last_trip_status = None
        st.pickup_code = None
        st.driver_name = st.vehicle = None
        st.assignment_void = False
        st.position_authoritative = False
        st.position = self.responder_origin
        st.vehicle_visible = False

        self.publish(request)
        self.escalation = EscalationTimer(
            self.scheduler,
            on_phase=self._on_escalation,
            on_partner_notified=lambda p: self.notify("partner_notified", p),
            **self.escalation_options,
        )
        st.escalation_phase = EscalationPhase.SEARCHING
        self.escalation.start()
        logger.info("emergency request published for %s", request.address)
        return await self.retry_route()

    async def retry_route(self) -> bool:
        req = self.state.request
        if req is None:
            raise RuntimeError("no active request")
        route = await self.lookup(self.responder_origin, req.patient_location,
                                  req.routing_mode, req.route_preferences)
        if route is None:
            return False
        if self.state.position_authoritative or self.state.request is not req:
            return False
        self.state.vehicle_visible = True
        self.start_leg(route, "optimistic")
        return True

    def cancel_request(self) -> None:
        if self.escalation is not None:
            self.escalation.cancel()
            self.escalation = None
        self.interpolator.stop()
        self.state.request = None

    def _on_escalation(self, phase: EscalationPhase) -> None:
        self.state.escalation_phase = phase
        self.notify("escalation", phase)

    # local optimistic rendering

    def _on_sample(self, sample: MotionSample) -> None:
        if self.state.position_authoritative:
            return
        self.state.position = sample.position
        self.state.heading = sample.heading
        self.state.eta_min = sample.eta_min
        self.notify("position", sample)

    def _on_arrived(self, route: RouteGeometry) -> None:
        self.notify("arrived", "optimistic")

    # inbound mirror updates

    def _handle_position(self, update: DriverPosition) -> None:
        st = self.state
        if not st.position_authoritative:
            st.position_authoritative = True
            # one writer only from here on
            self.interpolator.stop()
        st.position = update.pos
        st.heading = update.angle
        st.eta_min = update.eta
        st.vehicle_visible = True
        self.notify("position", update)

    def _handle_accepted(self, accepted: RequestAccepted) -> None:
        if self.escalation is not None:
            self.escalation.confirm()
        st = self.state
        st.driver_name = accepted.driver_name
        st.vehicle = accepted.vehicle
        st.assignment_void = False
        if st.last_trip_status is None:
            st.trip_phase = TripPhase.ACCEPTED
        self.notify("accepted", accepted)

    def _handle_trip_status(self, update: TripStatusUpdate) -> None:
        st = self.state
        st.last_trip_status = update.status
        st.trip_phase = STATUS_PHASES[update.status]
        if update.status is TripStatus.ARRIVED:
            st.pickup_code = self.verification_code
        elif update.status in (TripStatus.ON_BOARD, TripStatus.REACHED_HOSPITAL):
            st.pickup_code = None
        elif update.status is TripStatus.CANCELLED:
            st.vehicle_visible = False
            self.interpolator.stop()
        self.notify("trip_phase", st.trip_phase)

    def _handle_driver_status(self, update: DriverStatusUpdate) -> None:
        if update.status is not DriverStatus.OFFLINE:
            return
        st = self.state
        st.vehicle_visible = False
        st.driver_name = st.vehicle = None
        st.assignment_void = True
        self.interpolator.stop()
        logger.info("responder went offline, assignment void pending re-dispatch")
        self.notify("vehicle_hidden", None)
