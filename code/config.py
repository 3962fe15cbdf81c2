import os
from typing import List

from RouteGeometry import LatLon


def _latlon(name: str, default: str) -> LatLon:
    lat, lon = os.getenv(name, default).split(",")
    return float(lat), float(lon)


def _names(name: str, default: str) -> List[str]:
    return [s.strip() for s in os.getenv(name, default).split(";") if s.strip()]


# routing service
OSRM_URL = os.getenv("DISPATCH_OSRM_URL", "https://router.project-osrm.org").rstrip("/")
OSRM_PROFILE = os.getenv("DISPATCH_OSRM_PROFILE", "driving")
OSRM_TIMEOUT_S = float(os.getenv("DISPATCH_OSRM_TIMEOUT_S", "20"))

# websocket relay
RELAY_HOST = os.getenv("DISPATCH_RELAY_HOST", "127.0.0.1")
RELAY_PORT = int(os.getenv("DISPATCH_RELAY_PORT", "8000"))
BROADCAST_CHANNEL = os.getenv("DISPATCH_CHANNEL", "rapid_aid_dispatch")

LOG_LEVEL = os.getenv("DISPATCH_LOG_LEVEL", "INFO")

# Bangalore demo positions
START_POS = _latlon("DISPATCH_START_POS", "12.9850,77.6100")
PATIENT_POS = _latlon("DISPATCH_PATIENT_POS", "12.9716,77.5946")
HOSPITAL_POS = _latlon("DISPATCH_HOSPITAL_POS", "12.9650,77.5850")

VERIFICATION_CODE = os.getenv("DISPATCH_VERIFICATION_CODE", "4029")

DRIVER_NAME = os.getenv("DISPATCH_DRIVER_NAME", "Sarah Wilson")
DRIVER_VEHICLE = os.getenv("DISPATCH_DRIVER_VEHICLE", "KA-01-MJ-2024")

# motion
TICK_INTERVAL_S = float(os.getenv("DISPATCH_TICK_INTERVAL_S", "0.04"))
DEFAULT_PROGRESS_STEP = 0.0005   # ~3-4 min per leg at 25 ticks/s
ETA_HORIZON_MIN = 15.0           # eta horizon when no routing estimate is known
HEADING_ALPHA_CHASE = 0.08
HEADING_ALPHA_TOPDOWN = 0.35
TURN_THRESHOLD_DEG = 20.0
ZOOM_TURN = 18.5
ZOOM_STRAIGHT = 17.0
ZOOM_ALPHA = 0.02

# escalation
ESCALATION_TICK_S = 1.0
RADIUS_EXPAND_AFTER_S = 20.0
PARTNERS_AFTER_S = 30.0
SATELLITE_AFTER_S = 45.0
BASE_SEARCH_RADIUS_KM = 2.0
EXPANDED_SEARCH_RADIUS_KM = 5.0
PARTNER_NOTIFY_DELAY_S = float(os.getenv("DISPATCH_PARTNER_NOTIFY_DELAY_S", "2.0"))
PARTNER_FACILITIES = _names(
    "DISPATCH_PARTNERS",
    "City Care Hospital;Apollo Clinic;GreenLife Medical",
)
