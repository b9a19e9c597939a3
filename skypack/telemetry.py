"""
Helpers for telemetry payloads and target-state commands.

The transport treats payloads as opaque; these functions hold the knowledge
of the few fields callers actually use:

    nav.lla       [lat, lon, alt]  latitude/longitude in radians, altitude in meters
    ref           [lat, lon, alt]  reference position, degrees
    time.clocks   [{name, scale, state, time}, ...]

Example:
    response = client.get_telemetry_sync().raise_for_status()
    lat, lon, alt = nav_lla(response.payload)
"""

import math
from typing import Any, Optional, Sequence

import numpy as np

from .errors import TelemetryError

# time.clocks[].scale / .state values
CLOCK_SCALE_UTC = 1
CLOCK_STATE_SYNCHRONIZED = 2

LLA = tuple[float, float, float]


def _lookup(telemetry: Any, *path):
    node = telemetry
    for key in path:
        try:
            node = node[key]
        except (KeyError, IndexError, TypeError):
            dotted = ".".join(str(p) for p in path)
            raise TelemetryError(f"Telemetry has no {dotted}") from None
    return node


def _number(value, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TelemetryError(f"Telemetry {what} is not a number: {value!r}")
    return float(value)


def nav_lla(telemetry: Any) -> LLA:
    """Current navigation position as (lat_deg, lon_deg, alt_m).

    Raises:
        TelemetryError: If nav.lla is missing or not numeric
    """
    lla = _lookup(telemetry, "nav", "lla")
    lat = _number(_lookup(lla, 0), "latitude")
    lon = _number(_lookup(lla, 1), "longitude")
    alt = _number(_lookup(lla, 2), "altitude")
    return (math.degrees(lat), math.degrees(lon), alt)


def reference_lla(telemetry: Any) -> Optional[LLA]:
    """Reference position as (lat_deg, lon_deg, alt_m), or None if not reported yet."""
    ref = telemetry.get("ref") if isinstance(telemetry, dict) else None
    if not isinstance(ref, (list, tuple)) or len(ref) < 3:
        return None
    try:
        return (_number(ref[0], "ref"), _number(ref[1], "ref"), _number(ref[2], "ref"))
    except TelemetryError:
        return None


def locked_gnss_time(telemetry: Any) -> float:
    """UTC time in seconds from the GNSS clock, once it is locked.

    Raises:
        TelemetryError: If there is no GNSS clock, or it is not UTC or not synchronized
    """
    clocks = _lookup(telemetry, "time", "clocks")
    if not isinstance(clocks, list):
        raise TelemetryError("Telemetry has no clocks")

    gnss = next((c for c in clocks if isinstance(c, dict) and c.get("name") == "gnss"), None)
    if gnss is None:
        raise TelemetryError("Telemetry has no GNSS clock")
    if gnss.get("scale") != CLOCK_SCALE_UTC:
        raise TelemetryError("GNSS clock is not UTC")
    if gnss.get("state") != CLOCK_STATE_SYNCHRONIZED:
        raise TelemetryError("GNSS clock is not synchronized")
    if "time" not in gnss:
        raise TelemetryError("GNSS clock has no time")
    return _number(gnss["time"], "GNSS time")


def velocity_ned(speed: float, heading_degrees: float) -> np.ndarray:
    """Horizontal velocity vector (north, east, down) for a speed and heading."""
    angle = math.radians(heading_degrees)
    return np.array([math.cos(angle) * speed, math.sin(angle) * speed, 0.0])


def _vector3(value: Sequence[float], name: str) -> list:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (3,):
        raise ValueError(f"{name} must have 3 components, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} must be finite, got {arr.tolist()}")
    return arr.tolist()


def target_state_payload(
    position: Sequence[float],
    velocity: Sequence[float],
    timestamp: float,
    *,
    orientation: Sequence[float] = (0.0, 0.0, 0.0),
    frame: str = "lla",
    item_id: int = 1,
) -> dict:
    """Build the payload of a target-state update.

    Args:
        position: (lat_deg, lon_deg, alt_m) for frame "lla"
        velocity: (north, east, down) in m/s
        timestamp: Device UTC seconds the state refers to
        orientation: (roll, pitch, yaw)
        frame: Coordinate frame name understood by the device
        item_id: Target item identifier

    Raises:
        ValueError: If a vector is not 3 finite numbers
    """
    return {
        "items": [
            {
                "id": item_id,
                "frame": frame,
                "pos": _vector3(position, "position"),
                "vel": _vector3(velocity, "velocity"),
                "rpy": _vector3(orientation, "orientation"),
                "ts": float(timestamp),
            }
        ]
    }
