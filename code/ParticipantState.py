from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from EscalationTimer import EscalationPhase
from Messages import EmergencyRequest, TripStatus
from RouteGeometry import LatLon, RouteGeometry
from TripStateMachine import TripPhase


class Role(Enum):
    REQUESTER = "requester"
    RESPONDER = "responder"


@dataclass
class ParticipantState:
    """
    Everything one participant knows. Owned by that participant's client and
    only mutated from its own event-loop callbacks.
    """
    role: Role
    trip_phase: TripPhase = TripPhase.IDLE
    position: Optional[LatLon] = None
    heading: float = 0.0
    eta_min: Optional[int] = None
    zoom: Optional[float] = None
    vehicle_visible: bool = False
    position_authoritative: bool = False
    offline: bool = False

    request: Optional[EmergencyRequest] = None
    driver_name: Optional[str] = None
    vehicle: Optional[str] = None
    assignment_void: bool = False
    last_trip_status: Optional[TripStatus] = None
    pickup_code: Optional[str] = None
    escalation_phase: Optional[EscalationPhase] = None

    route: Optional[RouteGeometry] = None
    leg: Optional[str] = None
    route_error: Optional[str] = None

    def snapshot(self) -> Dict[str, Any]:
        pos = self.position
        return {
            "role": self.role.value,
            "phase": self.trip_phase.name,
            "position": {"lat": pos[0], "lon": pos[1]} if pos else None,
            "heading": self.heading,
            "eta_min": self.eta_min,
            "zoom": self.zoom,
            "vehicle_visible": self.vehicle_visible,
            "offline": self.offline,
            "driver": {"name": self.driver_name, "vehicle": self.vehicle} if self.driver_name else None,
            "trip_status": self.last_trip_status.value if self.last_trip_status else None,
            "pickup_code": self.pickup_code,
            "escalation": self.escalation_phase.name if self.escalation_phase is not None else None,
            "leg": self.leg,
            "route_error": self.route_error,
        }
