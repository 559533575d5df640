"""
UNIT TEST: SAFETY SCORE
"""

import unittest
import logging
import sys
import os

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sentinel.errors import TripFinalized
from sentinel.models.telemetry import TelematicsEvent, TelematicsEventType, Trip
from sentinel.scoring.safety import PENALTIES, SafetyScoreAccumulator


def event(kind, confidence=None):
    return TelematicsEvent(kind, magnitude=1.0, severity=0.5, timestamp=0.0, confidence=confidence)


class TestSafetyScore(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)
        self.acc = SafetyScoreAccumulator()

    def test_braking_then_speeding(self):
        self.assertEqual(self.acc.on_event(event(TelematicsEventType.HARD_BRAKING)), 95.0)
        self.assertEqual(self.acc.on_event(event(TelematicsEventType.SPEEDING)), 87.0)
        self.assertEqual(self.acc.event_count, 2)

    def test_never_below_zero_and_non_increasing(self):
        previous = self.acc.score
        for _ in range(30):
            score = self.acc.on_event(event(TelematicsEventType.HIGH_G_FORCE))
            self.assertLessEqual(score, previous)
            self.assertGreaterEqual(score, 0.0)
            previous = score
        self.assertEqual(self.acc.score, 0.0)

    def test_low_confidence_costs_half(self):
        self.assertEqual(self.acc.on_event(event(TelematicsEventType.HARD_BRAKING, confidence=0.5)), 97.5)
        self.assertEqual(self.acc.on_event(event(TelematicsEventType.HARD_BRAKING, confidence=0.6)), 92.5)

    def test_every_type_has_a_penalty(self):
        for kind in TelematicsEventType:
            self.assertGreater(PENALTIES[kind], 0)
        self.assertGreater(PENALTIES[TelematicsEventType.HARD_BRAKING], PENALTIES[TelematicsEventType.IDLING])

    def test_reset(self):
        self.acc.on_event(event(TelematicsEventType.PHONE_USAGE))
        self.assertEqual(self.acc.reset(), 100.0)
        self.assertEqual(self.acc.counts, {})

    def test_finalized_trip_rejects_events(self):
        trip = Trip(start_time=10.0)
        trip.record_event(event(TelematicsEventType.IDLING), 99.0)
        trip.finalize(20.0)
        with self.assertRaises(TripFinalized):
            trip.record_event(event(TelematicsEventType.IDLING), 98.0)
        self.assertEqual(trip.duration_s, 10.0)
        self.assertEqual(trip.event_counts, {"idling": 1})


if __name__ == '__main__':
    unittest.main()
