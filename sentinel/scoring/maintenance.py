"""
MODULE: MAINTENANCE_WEAR_TRACKER

DESCRIPTION:
    Turns finished trips into maintenance-relevant signals for the vehicle.

    Lifetime usage (km, operating hours, trips and the harsh-driving event
    counts) accumulates one sealed trip at a time. Each component wears as
    the sum of:
    1. DISTANCE  - km / rated life in km.
    2. TIME      - operating hours / rated life in hours (where rated).
    3. EVENTS    - a fixed fraction per harsh event that stresses the part.
    4. STARTS    - trips / rated starts (battery only).
    capped at 1.0. Health = 100 * (1 - wear).

    Next service is the first multiple of the service interval past the
    current odometer (counted from the last service).
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional

from sentinel.models.telemetry import TelematicsEventType, Trip

logger = logging.getLogger("SENTINEL.SCORING.MAINTENANCE")

SERVICE_ALERT_KM = 1000.0


class Component(str, Enum):
    BRAKES = "brakes"
    ENGINE = "engine"
    TIRES = "tires"
    SUSPENSION = "suspension"
    TRANSMISSION = "transmission"
    BATTERY = "battery"
    AIR_FILTER = "air_filter"
    OIL_FILTER = "oil_filter"


class Criticality(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class WearModel:
    life_km: float
    service_interval_km: float
    life_hours: Optional[float] = None
    life_starts: Optional[float] = None
    per_event: Mapping[TelematicsEventType, float] = field(default_factory=dict)


WEAR_MODELS: Dict[Component, WearModel] = {
    Component.BRAKES: WearModel(50000.0, 40000.0, life_hours=3000.0,
                                per_event={TelematicsEventType.HARD_BRAKING: 0.01}),
    Component.ENGINE: WearModel(300000.0, 15000.0, life_hours=8000.0,
                                per_event={TelematicsEventType.RAPID_ACCELERATION: 0.005,
                                           TelematicsEventType.SPEEDING: 0.002}),
    Component.TIRES: WearModel(60000.0, 50000.0,
                               per_event={TelematicsEventType.SHARP_TURN: 0.008,
                                          TelematicsEventType.HARD_BRAKING: 0.006,
                                          TelematicsEventType.RAPID_ACCELERATION: 0.004}),
    Component.SUSPENSION: WearModel(150000.0, 80000.0,
                                    per_event={TelematicsEventType.SHARP_TURN: 0.01,
                                               TelematicsEventType.HARD_BRAKING: 0.002,
                                               TelematicsEventType.RAPID_ACCELERATION: 0.002}),
    Component.TRANSMISSION: WearModel(250000.0, 60000.0, life_hours=6000.0,
                                      per_event={TelematicsEventType.RAPID_ACCELERATION: 0.008}),
    Component.BATTERY: WearModel(200000.0, 100000.0, life_hours=5000.0, life_starts=10000.0),
    Component.AIR_FILTER: WearModel(20000.0, 15000.0, life_hours=500.0),
    Component.OIL_FILTER: WearModel(10000.0, 10000.0, life_hours=300.0),
}

TRACKED_EVENTS = (
    TelematicsEventType.HARD_BRAKING,
    TelematicsEventType.RAPID_ACCELERATION,
    TelematicsEventType.SHARP_TURN,
    TelematicsEventType.SPEEDING,
)


@dataclass(frozen=True)
class VehicleUsage:
    distance_km: float = 0.0
    operating_hours: float = 0.0
    trips: int = 0
    event_counts: Mapping[str, int] = field(default_factory=dict)

    def events(self, event_type: TelematicsEventType) -> int:
        return int(self.event_counts.get(event_type.value, 0))

    def plus(self, trip: Trip) -> "VehicleUsage":
        counts = dict(self.event_counts)
        for event_type in TRACKED_EVENTS:
            n = trip.event_counts.get(event_type.value, 0)
            if n:
                counts[event_type.value] = counts.get(event_type.value, 0) + n
        return VehicleUsage(
            distance_km=self.distance_km + trip.distance_km,
            operating_hours=self.operating_hours + trip.duration_s / 3600.0,
            trips=self.trips + 1,
            event_counts=counts,
        )

    def to_dict(self):
        return {
            "distance_km": self.distance_km,
            "operating_hours": self.operating_hours,
            "trips": self.trips,
            "event_counts": dict(self.event_counts),
        }


@dataclass(frozen=True)
class ComponentHealth:
    component: Component
    wear: float
    health_score: float
    criticality: Criticality
    next_service_km: float
    km_to_service: float
    km_to_worn_out: Optional[float]

    @property
    def urgency(self) -> float:
        return (100.0 - self.health_score) / 100.0


@dataclass(frozen=True)
class MaintenanceAlert:
    component: Component
    severity: Criticality
    message: str


@dataclass(frozen=True)
class MaintenanceReport:
    usage: VehicleUsage
    components: Dict[Component, ComponentHealth]
    alerts: List[MaintenanceAlert]

    @property
    def overall_health(self) -> float:
        return sum(c.health_score for c in self.components.values()) / len(self.components)


def wear_level(model: WearModel, usage: VehicleUsage) -> float:
    wear = usage.distance_km / model.life_km
    if model.life_hours:
        wear += usage.operating_hours / model.life_hours
    if model.life_starts:
        wear += usage.trips / model.life_starts
    for event_type, fraction in model.per_event.items():
        wear += usage.events(event_type) * fraction
    return min(1.0, wear)


def criticality_for(health_score: float) -> Criticality:
    if health_score >= 80:
        return Criticality.LOW
    if health_score >= 60:
        return Criticality.MEDIUM
    if health_score >= 40:
        return Criticality.HIGH
    return Criticality.CRITICAL


def next_service_km(interval_km: float, odometer_km: float, last_service_km: float = 0.0) -> float:
    due = last_service_km + interval_km
    if odometer_km > due:
        cycles = math.ceil((odometer_km - last_service_km) / interval_km)
        due = last_service_km + cycles * interval_km
    return due


def assess(component: Component, usage: VehicleUsage, last_service_km: float = 0.0) -> ComponentHealth:
    model = WEAR_MODELS[component]
    wear = wear_level(model, usage)
    health = max(0.0, 100.0 - wear * 100.0)
    due = next_service_km(model.service_interval_km, usage.distance_km, last_service_km)

    # Linear projection of the observed wear per km.
    worn_out = None
    if usage.distance_km > 0 and wear > 0:
        worn_out = max(0.0, (1.0 - wear) / (wear / usage.distance_km))

    return ComponentHealth(
        component=component,
        wear=wear,
        health_score=health,
        criticality=criticality_for(health),
        next_service_km=due,
        km_to_service=due - usage.distance_km,
        km_to_worn_out=worn_out,
    )


def alerts_for(health: ComponentHealth) -> List[MaintenanceAlert]:
    out = []
    name = health.component.value
    if health.health_score < 30:
        out.append(MaintenanceAlert(health.component, Criticality.CRITICAL,
                                    f"{name} health critical: {health.health_score:.1f}%"))
    elif health.health_score < 50:
        out.append(MaintenanceAlert(health.component, Criticality.HIGH,
                                    f"{name} health low: {health.health_score:.1f}%"))
    if 0 < health.km_to_service < SERVICE_ALERT_KM:
        out.append(MaintenanceAlert(health.component, Criticality.MEDIUM,
                                    f"{name} service due in {health.km_to_service:.0f} km"))
    return out


_SEVERITY_ORDER = list(Criticality)


class MaintenanceTracker:
    """
    Lifetime usage of one vehicle. Only sealed trips count; the usage
    snapshot is replaced whole, so report() can run on any thread.
    """

    def __init__(self, usage: Optional[VehicleUsage] = None,
                 last_service_km: Optional[Mapping[Component, float]] = None):
        self.usage = usage or VehicleUsage()
        self.last_service_km = dict(last_service_km or {})

    def add_trip(self, trip: Trip) -> bool:
        if trip.is_active:
            logger.warning(f"Trip {trip.trip_id} is still open, not counted")
            return False
        self.usage = self.usage.plus(trip)
        logger.debug(f"Usage now {self.usage.distance_km:.1f} km over {self.usage.trips} trips")
        return True

    def report(self) -> MaintenanceReport:
        usage = self.usage
        components = {c: assess(c, usage, self.last_service_km.get(c, 0.0)) for c in Component}
        alerts = [a for h in components.values() for a in alerts_for(h)]
        alerts.sort(key=lambda a: _SEVERITY_ORDER.index(a.severity), reverse=True)
        return MaintenanceReport(usage, components, alerts)
