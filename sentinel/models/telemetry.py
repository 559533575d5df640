"""
MODULE: TELEMETRY_DATA_MODEL

DESCRIPTION:
    The value types that flow through the drive core:
    - SignalSample: one tick of fused phone telemetry (immutable).
    - TelematicsEvent: a discrete driving behaviour detected upstream.
    - Trip: one driving session, open while the vehicle is moving and
      sealed once the end time is stamped.
"""

import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from sentinel.errors import TripFinalized

EARTH_RADIUS_KM = 6371.0


class ActivityType(str, Enum):
    IN_VEHICLE = "in_vehicle"
    ON_BICYCLE = "on_bicycle"
    ON_FOOT = "on_foot"
    WALKING = "walking"
    RUNNING = "running"
    STILL = "still"
    TILTING = "tilting"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value) -> Optional["ActivityType"]:
        """Accepts enum members or their string values; anything else is None."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


class ConfidenceTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def weight(self) -> float:
        return {"low": 0.3, "medium": 0.6, "high": 1.0}[self.value]


class DrivingContext(str, Enum):
    IDEAL = "ideal"
    GOOD = "good"
    MODERATE = "moderate"
    CHALLENGING = "challenging"
    DIFFICULT = "difficult"
    POOR = "poor"


class DrivingState(str, Enum):
    NOT_DRIVING = "not_driving"
    STARTING_DRIVE = "starting_drive"
    DRIVING = "driving"
    STOPPING_DRIVE = "stopping_drive"


class TelematicsEventType(str, Enum):
    HARD_BRAKING = "hard_braking"
    RAPID_ACCELERATION = "rapid_acceleration"
    SHARP_TURN = "sharp_turn"
    SPEEDING = "speeding"
    HIGH_G_FORCE = "high_g_force"
    IDLING = "idling"
    PHONE_USAGE = "phone_usage"


@dataclass(frozen=True)
class SignalSample:
    """
    One fused telemetry reading. Only the timestamp is mandatory;
    any other field may be None when the source did not deliver it.
    """
    timestamp: float
    speed_kmh: Optional[float] = None
    gps_accuracy_m: Optional[float] = None
    accel_magnitude: Optional[float] = None
    gyro_magnitude: Optional[float] = None
    activity: Optional[ActivityType] = None
    activity_confidence: Optional[ConfidenceTier] = None
    motion_stability: Optional[float] = None
    recent_event_count: Optional[int] = None
    context: Optional[DrivingContext] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_fix(self) -> bool:
        return is_number(self.latitude) and is_number(self.longitude)


@dataclass(frozen=True)
class TelematicsEvent:
    event_type: TelematicsEventType
    magnitude: float
    severity: float
    timestamp: float
    confidence: Optional[float] = None
    ml_validated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "magnitude": self.magnitude,
            "severity": self.severity,
            "timestamp": self.timestamp,
            "confidence": self.confidence,
            "ml_validated": self.ml_validated,
        }


@dataclass
class Trip:
    """
    A driving session. Created when a drive is confirmed, updated only while
    driving, and sealed by `finalize`. A sealed trip rejects all mutation.
    """
    start_time: float
    trip_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    end_time: Optional[float] = None
    distance_km: float = 0.0
    max_speed_kmh: float = 0.0
    safety_score: float = 100.0
    event_count: int = 0
    event_counts: Dict[str, int] = field(default_factory=dict)
    start_latitude: Optional[float] = None
    start_longitude: Optional[float] = None
    end_latitude: Optional[float] = None
    end_longitude: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @property
    def duration_s(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return max(0.0, end - self.start_time)

    def _check_open(self):
        if self.end_time is not None:
            raise TripFinalized(f"Trip {self.trip_id} already ended at {self.end_time}")

    def add_distance(self, km: float):
        self._check_open()
        if km > 0 and math.isfinite(km):
            self.distance_km += km

    def observe_speed(self, speed_kmh: float):
        self._check_open()
        if speed_kmh > self.max_speed_kmh:
            self.max_speed_kmh = speed_kmh

    def record_event(self, event: TelematicsEvent, new_score: float):
        self._check_open()
        self.event_count += 1
        key = event.event_type.value
        self.event_counts[key] = self.event_counts.get(key, 0) + 1
        self.safety_score = new_score

    def finalize(self, end_time: float, latitude: Optional[float] = None,
                 longitude: Optional[float] = None):
        self._check_open()
        self.end_time = max(end_time, self.start_time)
        self.end_latitude = latitude
        self.end_longitude = longitude

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trip_id": self.trip_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "distance_km": self.distance_km,
            "max_speed_kmh": self.max_speed_kmh,
            "safety_score": self.safety_score,
            "event_count": self.event_count,
            "event_counts": dict(self.event_counts),
            "start_latitude": self.start_latitude,
            "start_longitude": self.start_longitude,
            "end_latitude": self.end_latitude,
            "end_longitude": self.end_longitude,
        }


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two fixes."""
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lon2 - lon1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
