"""
Message taxonomy exchanged between the requester and responder.

On the wire every message is a JSON envelope
``{"type": KIND, "data": {...}, "timestamp": epoch_ms}`` with coordinates as
``[lat, lon]`` arrays and camelCase payload keys.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Type, Union

from RouteGeometry import LatLon


class MessageKind(str, Enum):
    EMERGENCY_REQUEST = "EMERGENCY_REQUEST"
    DRIVER_POSITION = "DRIVER_POSITION"
    REQUEST_ACCEPTED = "REQUEST_ACCEPTED"
    TRIP_STATUS = "TRIP_STATUS"
    DRIVER_STATUS = "DRIVER_STATUS"


class RoutingMode(str, Enum):
    STANDARD = "STANDARD"
    INTELLIGENT = "INTELLIGENT"


class TripStatus(str, Enum):
    ARRIVED = "ARRIVED"
    ON_BOARD = "ON_BOARD"
    REACHED_HOSPITAL = "REACHED_HOSPITAL"
    CANCELLED = "CANCELLED"


class DriverStatus(str, Enum):
    OFFLINE = "OFFLINE"


class MessageDecodeError(ValueError):
    pass


def _coord(value: Any) -> LatLon:
    lat, lon = value
    return float(lat), float(lon)


@dataclass(frozen=True)
class RoutePreferences:
    prefer_wide_roads: bool = False
    avoid_narrow_lanes: bool = False
    avoid_school_zones: bool = False
    avoid_market_areas: bool = False

    @classmethod
    def intelligent(cls) -> "RoutePreferences":
        return cls(True, True, True, True)

    def labels(self):
        out = []
        if self.prefer_wide_roads:
            out.append("Wide Roads Prioritized")
        if self.avoid_narrow_lanes:
            out.append("Narrow Lanes Avoided")
        if self.avoid_school_zones:
            out.append("School Zones Bypassed")
        if self.avoid_market_areas:
            out.append("Market Areas Avoided")
        return out

    def to_wire(self) -> Dict[str, bool]:
        return {
            "preferWideRoads": self.prefer_wide_roads,
            "avoidNarrowLanes": self.avoid_narrow_lanes,
            "avoidSchoolZones": self.avoid_school_zones,
            "avoidMarketAreas": self.avoid_market_areas,
        }

    @classmethod
    def from_wire(cls, d: Dict[str, Any]) -> "RoutePreferences":
        return cls(
            prefer_wide_roads=bool(d["preferWideRoads"]),
            avoid_narrow_lanes=bool(d["avoidNarrowLanes"]),
            avoid_school_zones=bool(d["avoidSchoolZones"]),
            avoid_market_areas=bool(d["avoidMarketAreas"]),
        )


@dataclass(frozen=True)
class EmergencyRequest:
    patient_location: LatLon
    address: str
    condition: str
    routing_mode: RoutingMode = RoutingMode.STANDARD
    route_preferences: RoutePreferences = field(default_factory=RoutePreferences)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "patientLocation": list(self.patient_location),
            "address": self.address,
            "condition": self.condition,
            "routingMode": self.routing_mode.value,
            "routePreferences": self.route_preferences.to_wire(),
        }

    @classmethod
    def from_wire(cls, d: Dict[str, Any]) -> "EmergencyRequest":
        return cls(
            patient_location=_coord(d["patientLocation"]),
            address=str(d["address"]),
            condition=str(d["condition"]),
            routing_mode=RoutingMode(d["routingMode"]),
            route_preferences=RoutePreferences.from_wire(d["routePreferences"]),
        )


@dataclass(frozen=True)
class DriverPosition:
    pos: LatLon
    angle: float
    eta: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"pos": list(self.pos), "angle": self.angle}
        if self.eta is not None:
            d["eta"] = self.eta
        return d

    @classmethod
    def from_wire(cls, d: Dict[str, Any]) -> "DriverPosition":
        eta = d.get("eta")
        return cls(pos=_coord(d["pos"]), angle=float(d["angle"]),
                   eta=int(eta) if eta is not None else None)


@dataclass(frozen=True)
class RequestAccepted:
    driver_name: str
    vehicle: str

    def to_wire(self) -> Dict[str, Any]:
        return {"driverName": self.driver_name, "vehicle": self.vehicle}

    @classmethod
    def from_wire(cls, d: Dict[str, Any]) -> "RequestAccepted":
        return cls(driver_name=str(d["driverName"]), vehicle=str(d["vehicle"]))


@dataclass(frozen=True)
class TripStatusUpdate:
    status: TripStatus

    def to_wire(self) -> Dict[str, Any]:
        return {"status": self.status.value}

    @classmethod
    def from_wire(cls, d: Dict[str, Any]) -> "TripStatusUpdate":
        return cls(status=TripStatus(d["status"]))


@dataclass(frozen=True)
class DriverStatusUpdate:
    status: DriverStatus = DriverStatus.OFFLINE

    def to_wire(self) -> Dict[str, Any]:
        return {"status": self.status.value}

    @classmethod
    def from_wire(cls, d: Dict[str, Any]) -> "DriverStatusUpdate":
        return cls(status=DriverStatus(d["status"]))


Payload = Union[EmergencyRequest, DriverPosition, RequestAccepted, TripStatusUpdate, DriverStatusUpdate]

PAYLOAD_TYPES: Dict[MessageKind, Type] = {
    MessageKind.EMERGENCY_REQUEST: EmergencyRequest,
    MessageKind.DRIVER_POSITION: DriverPosition,
    MessageKind.REQUEST_ACCEPTED: RequestAccepted,
    MessageKind.TRIP_STATUS: TripStatusUpdate,
    MessageKind.DRIVER_STATUS: DriverStatusUpdate,
}


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Message:
    type: MessageKind
    payload: Payload
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self):
        expected = PAYLOAD_TYPES[self.type]
        if not isinstance(self.payload, expected):
            raise TypeError(f"{self.type.value} carries {expected.__name__}, got {type(self.payload).__name__}")

    @classmethod
    def create(cls, payload: Payload) -> "Message":
        for kind, payload_cls in PAYLOAD_TYPES.items():
            if isinstance(payload, payload_cls):
                return cls(type=kind, payload=payload)
        raise TypeError(f"not a message payload: {payload!r}")


def encode_message(message: Message) -> str:
    return json.dumps({
        "type": message.type.value,
        "data": message.payload.to_wire(),
        "timestamp": message.timestamp,
    })


def decode_message(raw: Union[str, bytes]) -> Message:
    try:
        obj = json.loads(raw)
        kind = MessageKind(obj["type"])
        payload = PAYLOAD_TYPES[kind].from_wire(obj["data"])
        return Message(type=kind, payload=payload, timestamp=int(obj.get("timestamp") or now_ms()))
    except (KeyError, TypeError, ValueError) as e:
        raise MessageDecodeError(f"bad message frame: {e}") from e
