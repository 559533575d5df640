"""
MODULE: DRIVE_EMULATOR
PROFILE: PHONE IN A COMMUTER CAR (VIRTUAL)

DESCRIPTION:
    Stands in for the phone's sensor / location stack when no device is
    attached. Produces a deterministic commute on the sample clock:

    0-60s:     Parked (phone still on the desk)
    60-120s:   Walking to the car
    120-600s:  City driving (stop & go)
    600-1200s: Highway cruise
    1200-1320s: Slow down and park
    1320s+:    Parked again

    Telematics events are injected during the drive (braking at the city
    stops, one speeding stretch on the highway) so the safety score has
    something to chew on.
"""

import math
import random
from typing import Iterator, List, Optional, Tuple

from sentinel.models.telemetry import (
    ActivityType,
    ConfidenceTier,
    SignalSample,
    TelematicsEvent,
    TelematicsEventType,
)

KM_PER_DEG_LAT = 111.32

DRIVE_START_S = 120.0
HIGHWAY_START_S = 600.0
PARK_START_S = 1200.0
PARKED_S = 1320.0


class DriveEmulator:
    def __init__(self, start_time: float = 1700000000.0, step_s: float = 1.0, seed: int = 7,
                 origin: Tuple[float, float] = (38.7223, -9.1393)):
        self.start_time = start_time
        self.step_s = step_s
        self.rng = random.Random(seed)
        self.t = 0.0
        self.speed = 0.0
        self.lat, self.lon = origin
        self.heading = math.radians(45.0)

    def _target_speed(self, t: float) -> Tuple[float, ActivityType]:
        if t < 60:
            return 0.0, ActivityType.STILL
        if t < DRIVE_START_S:
            return 4.5, ActivityType.WALKING
        if t < HIGHWAY_START_S:
            # Sine wave traffic, floored at a standstill for the lights
            return max(0.0, 30 + 25 * math.sin(t / 40.0)), ActivityType.IN_VEHICLE
        if t < PARK_START_S:
            boost = 25.0 if 900 <= t < 960 else 0.0
            return 105 + boost + self.rng.uniform(-3, 3), ActivityType.IN_VEHICLE
        if t < PARKED_S:
            return 10.0, ActivityType.IN_VEHICLE
        return 0.0, ActivityType.STILL

    def generate_sample(self) -> SignalSample:
        t = self.t
        target, activity = self._target_speed(t)

        # Inertia (walking has none worth modelling)
        if activity is ActivityType.IN_VEHICLE:
            self.speed = self.speed * 0.85 + target * 0.15
        else:
            self.speed = target
        speed = self.speed

        # Dead-reckon the position along the current heading
        km = speed * self.step_s / 3600.0
        self.lat += km * math.cos(self.heading) / KM_PER_DEG_LAT
        self.lon += km * math.sin(self.heading) / (KM_PER_DEG_LAT * math.cos(math.radians(self.lat)))

        driving = activity is ActivityType.IN_VEHICLE
        sample = SignalSample(
            timestamp=self.start_time + t,
            speed_kmh=speed,
            gps_accuracy_m=self.rng.uniform(4, 12) if driving else self.rng.uniform(8, 30),
            accel_magnitude=9.81 + self.rng.gauss(0, 0.6 if driving else 0.1),
            gyro_magnitude=abs(self.rng.gauss(0, 0.3 if driving else 0.05)),
            activity=activity,
            activity_confidence=ConfidenceTier.HIGH if self.rng.random() > 0.2 else ConfidenceTier.MEDIUM,
            motion_stability=min(1.0, max(0.0, (0.85 if driving else 0.25) + self.rng.gauss(0, 0.05))),
            latitude=self.lat,
            longitude=self.lon,
        )
        self.t += self.step_s
        return sample

    def events_for(self, sample: SignalSample) -> List[TelematicsEvent]:
        """Telematics events an upstream detector would raise for this tick."""
        t = sample.timestamp - self.start_time
        events = []
        if DRIVE_START_S <= t < HIGHWAY_START_S and int(t) % 120 == 0:
            events.append(TelematicsEvent(TelematicsEventType.HARD_BRAKING, magnitude=4.2,
                                          severity=0.7, timestamp=sample.timestamp, confidence=0.85))
        if 900 <= t < 960 and int(t) % 20 == 0:
            events.append(TelematicsEvent(TelematicsEventType.SPEEDING, magnitude=sample.speed_kmh or 0.0,
                                          severity=0.5, timestamp=sample.timestamp, confidence=0.55))
        return events

    def stream(self, duration_s: Optional[float] = None) -> Iterator[Tuple[SignalSample, List[TelematicsEvent]]]:
        """Yields (sample, events) pairs; endless when duration_s is None."""
        while duration_s is None or self.t < duration_s:
            sample = self.generate_sample()
            yield sample, self.events_for(sample)
