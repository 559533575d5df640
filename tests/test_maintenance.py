"""
UNIT TEST: COMPONENT WEAR

DESCRIPTION:
    Checks the wear arithmetic per component on a known usage profile, the
    service schedule, alert ordering, and that only sealed trips add usage.
"""

import unittest
import logging
import sys
import os

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sentinel.models.telemetry import TelematicsEvent, TelematicsEventType, Trip
from sentinel.scoring.maintenance import (
    Component,
    Criticality,
    MaintenanceTracker,
    VehicleUsage,
    WEAR_MODELS,
    assess,
    criticality_for,
    next_service_km,
    wear_level,
)


class TestComponentWear(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)
        # Odometer only, ten hard stops, no operating hours on record.
        self.usage = VehicleUsage(9500.0, 0.0, 0, {"hard_braking": 10})

    def test_distance_and_events_add_up(self):
        brakes = assess(Component.BRAKES, self.usage)
        self.assertAlmostEqual(brakes.wear, 0.29)
        self.assertAlmostEqual(brakes.health_score, 71.0)
        self.assertEqual(brakes.criticality, Criticality.MEDIUM)
        self.assertEqual(brakes.next_service_km, 40000.0)
        self.assertAlmostEqual(brakes.km_to_worn_out, 0.71 * 9500.0 / 0.29)

        tires = assess(Component.TIRES, self.usage)
        self.assertAlmostEqual(tires.health_score, 100.0 * (1 - (9500.0 / 60000.0 + 0.06)))
        self.assertEqual(tires.criticality, Criticality.MEDIUM)

    def test_filters_and_engine(self):
        oil = assess(Component.OIL_FILTER, self.usage)
        self.assertAlmostEqual(oil.health_score, 5.0)
        self.assertEqual(oil.criticality, Criticality.CRITICAL)
        self.assertAlmostEqual(oil.km_to_service, 500.0)

        air = assess(Component.AIR_FILTER, self.usage)
        self.assertAlmostEqual(air.health_score, 52.5)
        self.assertEqual(air.criticality, Criticality.HIGH)

        engine = assess(Component.ENGINE, self.usage)
        self.assertEqual(engine.criticality, Criticality.LOW)
        self.assertEqual(engine.next_service_km, 15000.0)

    def test_hours_and_starts(self):
        usage = VehicleUsage(0.0, 150.0, 5000, {})
        self.assertAlmostEqual(wear_level(WEAR_MODELS[Component.OIL_FILTER], usage), 0.5)
        self.assertAlmostEqual(wear_level(WEAR_MODELS[Component.BATTERY], usage), 150.0 / 5000.0 + 0.5)
        self.assertEqual(wear_level(WEAR_MODELS[Component.TIRES], usage), 0.0)
        self.assertIsNone(assess(Component.TIRES, usage).km_to_worn_out)

    def test_wear_is_capped(self):
        usage = VehicleUsage(50000.0, 0.0, 0, {"hard_braking": 500})
        health = assess(Component.BRAKES, usage)
        self.assertEqual(health.wear, 1.0)
        self.assertEqual(health.health_score, 0.0)
        self.assertEqual(health.km_to_worn_out, 0.0)

    def test_service_schedule(self):
        self.assertEqual(next_service_km(10000.0, 4000.0), 10000.0)
        self.assertEqual(next_service_km(10000.0, 25000.0), 30000.0)
        self.assertEqual(next_service_km(10000.0, 25000.0, last_service_km=22000.0), 32000.0)

    def test_criticality_bands(self):
        cases = [(100.0, Criticality.LOW), (80.0, Criticality.LOW), (79.9, Criticality.MEDIUM),
                 (60.0, Criticality.MEDIUM), (45.0, Criticality.HIGH), (39.9, Criticality.CRITICAL)]
        for score, expected in cases:
            with self.subTest(score=score):
                self.assertEqual(criticality_for(score), expected)


class TestMaintenanceTracker(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)

    def test_report_orders_alerts_by_severity(self):
        report = MaintenanceTracker(VehicleUsage(9500.0, 0.0, 0, {"hard_braking": 10})).report()
        self.assertEqual(len(report.components), len(Component))
        self.assertEqual([(a.component, a.severity) for a in report.alerts], [
            (Component.OIL_FILTER, Criticality.CRITICAL),
            (Component.OIL_FILTER, Criticality.MEDIUM),
        ])
        self.assertIn("500 km", report.alerts[1].message)

    def test_last_service_moves_the_schedule(self):
        tracker = MaintenanceTracker(VehicleUsage(9500.0), last_service_km={Component.OIL_FILTER: 9000.0})
        oil = tracker.report().components[Component.OIL_FILTER]
        self.assertEqual(oil.next_service_km, 19000.0)
        self.assertEqual([a for a in tracker.report().alerts if a.severity == Criticality.MEDIUM], [])

    def test_only_sealed_trips_count(self):
        tracker = MaintenanceTracker()
        trip = Trip(start_time=0.0)
        trip.add_distance(12.0)
        trip.record_event(TelematicsEvent(TelematicsEventType.HARD_BRAKING, 4.2, 0.8, 60.0), 95.0)
        trip.record_event(TelematicsEvent(TelematicsEventType.IDLING, 1.0, 0.1, 90.0), 94.0)

        self.assertFalse(tracker.add_trip(trip))
        self.assertEqual(tracker.usage.trips, 0)

        trip.finalize(1800.0)
        self.assertTrue(tracker.add_trip(trip))
        usage = tracker.usage
        self.assertEqual((usage.distance_km, usage.operating_hours, usage.trips), (12.0, 0.5, 1))
        self.assertEqual(dict(usage.event_counts), {"hard_braking": 1})

        tracker.add_trip(trip)
        self.assertEqual(tracker.usage.events(TelematicsEventType.HARD_BRAKING), 2)
        self.assertEqual(tracker.usage.distance_km, 24.0)


if __name__ == '__main__':
    unittest.main()
