# ride_monitor/sampler.py

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0


# ── Readings ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Reading:
    """
    A sensor value that may be unknown.

    Scoring code asks `reading.known` once per factor and applies that
    factor's missing-data policy, instead of sprinkling None checks around.
    """
    value: Optional[float] = None

    @classmethod
    def of(cls, value) -> 'Reading':
        if value is None:
            return UNKNOWN
        value = float(value)
        if math.isnan(value) or math.isinf(value):
            return UNKNOWN
        return cls(value)

    @property
    def known(self) -> bool:
        return self.value is not None

    def or_default(self, default: float) -> float:
        return self.value if self.value is not None else default


UNKNOWN = Reading(None)


# ── Positions ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Position:
    lat: float
    lng: float
    accuracy: Optional[float] = None

    @property
    def valid(self) -> bool:
        try:
            lat, lng = float(self.lat), float(self.lng)
        except (TypeError, ValueError):
            return False
        if math.isnan(lat) or math.isnan(lng):
            return False
        return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0

    def as_dict(self) -> dict:
        d = {'lat': self.lat, 'lng': self.lng}
        if self.accuracy is not None:
            d['accuracy'] = self.accuracy
        return d


def haversine_m(a: Position, b: Position) -> float:
    """Great-circle distance in metres between two positions."""
    lat1, lng1, lat2, lng2 = map(math.radians, [a.lat, a.lng, b.lat, b.lng])
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


# ── Samples ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Sample:
    """
    One normalized reading produced by GeoMotionSampler.

    Location samples carry position / speed fields, motion samples carry the
    acceleration fields, orientation samples carry orientation_instability.
    Samples are ephemeral and never persisted.

    speed_kmh            : instantaneous speed derived from displacement / time
    previous_speed_kmh   : speed of the previous location sample
    distance_m           : displacement since the previous valid fix
    accel_magnitude      : |(x, y, z)| of the raw acceleration vector
    accel_delta          : |current vector - previous vector|
    orientation_instability : |beta| + |gamma|
    """
    timestamp: float
    position: Optional[Position] = None
    speed_kmh: Optional[float] = None
    previous_speed_kmh: Optional[float] = None
    distance_m: float = 0.0
    accel_magnitude: Optional[float] = None
    accel_delta: Optional[float] = None
    orientation_instability: Optional[float] = None

    @property
    def is_location(self) -> bool:
        return self.position is not None

    @property
    def is_motion(self) -> bool:
        return self.accel_magnitude is not None

    @property
    def is_orientation(self) -> bool:
        return self.orientation_instability is not None


class GeoMotionSampler:
    """
    Turns raw location / accelerometer / orientation callbacks into Samples.

    Missing or invalid inputs return None ("no update this tick") and leave
    the previous state intact so the next good fix is measured against the
    last good one.
    """

    def __init__(self):
        self._last_position: Optional[Position] = None
        self._last_fix_time: Optional[float] = None
        self._last_speed = 0.0
        self._last_accel: Tuple[float, float, float] = (0.0, 0.0, 0.0)
        self._max_speed = 0.0
        self.distance_m = 0.0

    # ── Public API ────────────────────────────────────────────────────────────

    def location_update(self, position: Optional[Position], timestamp: float) -> Optional[Sample]:
        if position is None or not position.valid:
            logger.warning("Ignoring invalid position fix | ts=%s | position=%s", timestamp, position)
            return None

        if self._last_position is None:
            self._last_position = position
            self._last_fix_time = timestamp
            return Sample(timestamp=timestamp, position=position,
                          speed_kmh=0.0, previous_speed_kmh=0.0)

        elapsed = timestamp - self._last_fix_time
        if elapsed <= 0:
            logger.debug("Out-of-order or duplicate fix dropped | ts=%s", timestamp)
            return None

        distance = haversine_m(self._last_position, position)
        speed_kmh = (distance / elapsed) * 3.6

        sample = Sample(
            timestamp=timestamp,
            position=position,
            speed_kmh=speed_kmh,
            previous_speed_kmh=self._last_speed,
            distance_m=distance,
        )

        self.distance_m += distance
        self._max_speed = max(self._max_speed, speed_kmh)
        self._last_speed = speed_kmh
        self._last_position = position
        self._last_fix_time = timestamp
        return sample

    def motion_update(self, x, y, z, timestamp: float) -> Optional[Sample]:
        if x is None and y is None and z is None:
            return None
        vec = (float(x or 0.0), float(y or 0.0), float(z or 0.0))
        if any(math.isnan(v) for v in vec):
            return None

        magnitude = math.sqrt(sum(v * v for v in vec))
        delta = math.sqrt(sum((a - b) ** 2 for a, b in zip(vec, self._last_accel)))
        self._last_accel = vec
        return Sample(timestamp=timestamp, accel_magnitude=magnitude, accel_delta=delta)

    def orientation_update(self, beta, gamma, timestamp: float) -> Optional[Sample]:
        if beta is None and gamma is None:
            return None
        instability = abs(float(beta or 0.0)) + abs(float(gamma or 0.0))
        if math.isnan(instability):
            return None
        return Sample(timestamp=timestamp, orientation_instability=instability)

    def reset(self):
        self._last_position = None
        self._last_fix_time = None
        self._last_speed = 0.0
        self._last_accel = (0.0, 0.0, 0.0)
        self._max_speed = 0.0
        self.distance_m = 0.0

    # ── Read-only state ───────────────────────────────────────────────────────

    @property
    def last_position(self) -> Optional[Position]:
        return self._last_position

    @property
    def current_speed(self) -> float:
        return self._last_speed

    @property
    def max_speed(self) -> float:
        return self._max_speed
