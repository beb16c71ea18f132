"""Qibla bearing and its projection onto a live device heading."""

import math
from dataclasses import dataclass

KAABA_LAT = 21.4225
KAABA_LON = 39.8262


def bearing(lat: float, lon: float) -> float:
    """
    Great-circle initial bearing from (lat, lon) to the Kaaba, in [0, 360).

    At the Kaaba itself the direction is undefined; the value returned there
    is whatever atan2 gives for a zero-length path and carries no meaning.
    """
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise ValueError(f"non-finite coordinates: {lat}, {lon}")
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise ValueError(f"coordinates out of range: {lat}, {lon}")

    phi1 = math.radians(lat)
    phi2 = math.radians(KAABA_LAT)
    d_lambda = math.radians(KAABA_LON - lon)

    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    angle = (math.degrees(math.atan2(y, x)) + 360.0) % 360.0
    # Float rounding can land exactly on 360.0 for tiny negative angles.
    return 0.0 if angle >= 360.0 else angle


@dataclass(frozen=True)
class Rotation:
    degrees: float
    # False when no device heading was available and ``degrees`` is from true north.
    live: bool


def fuse_rotation(bearing_to_target: float, device_heading: float = None) -> Rotation:
    """Indicator rotation for the qibla needle relative to where the device points."""
    if not math.isfinite(bearing_to_target):
        raise ValueError(f"non-finite bearing: {bearing_to_target}")
    if device_heading is None:
        return Rotation(bearing_to_target % 360.0, live=False)
    if not math.isfinite(device_heading):
        raise ValueError(f"non-finite heading: {device_heading}")
    return Rotation((bearing_to_target - device_heading + 360.0) % 360.0, live=True)


@dataclass(frozen=True)
class QiblaState:
    bearing_to_target: float = None
    device_heading: float = None
    permission_granted: bool = False
    sensor_supported: bool = True

    @property
    def rotation(self) -> Rotation:
        if self.bearing_to_target is None:
            return None
        return fuse_rotation(self.bearing_to_target, self.device_heading)
