"""
UNIT TEST: SERVICE WIRING

DESCRIPTION:
    Covers the callback dispatcher, configuration loading and a full
    orchestrator session: samples and one braking event go in through the
    input queue, a finished trip comes out in the ledger together with the
    vehicle usage it adds. User labels retrain the event models in place.
"""

import unittest
import logging
import shutil
import signal
import tempfile
import threading
import sys
import os

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sentinel.ai.ensemble import EnsembleStrategy
from sentinel.core.config import (
    DEFAULT_CONFIG_PATH,
    DatabaseConfig,
    LearningConfig,
    SentinelConfig,
    config_from_dict,
    load_config,
)
from sentinel.core.database import DriveDatabase
from sentinel.core.dispatcher import CallbackDispatcher
from sentinel.core.orchestrator import DriveOrchestrator
from sentinel.errors import InvalidConfiguration
from sentinel.models.telemetry import (
    ActivityType,
    ConfidenceTier,
    SignalSample,
    TelematicsEvent,
    TelematicsEventType,
)
from tools.train_ensemble import generate_event_samples

BASE = 1700050800.0
STEP = 5.0


class TestDispatcher(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)
        self.dispatcher = CallbackDispatcher(high_water_mark=2)

    def tearDown(self):
        self.dispatcher.close()

    def test_runs_in_submission_order_off_thread(self):
        seen, threads = [], []

        def record(value):
            seen.append(value)
            threads.append(threading.current_thread().name)

        for i in range(20):
            self.dispatcher.submit(record, i)
        self.dispatcher.drain()
        self.assertEqual(seen, list(range(20)))
        self.assertNotIn(threading.current_thread().name, threads)

    def test_failing_handler_does_not_stop_worker(self):
        seen = []

        def boom():
            raise RuntimeError("listener bug")

        self.dispatcher.submit(boom)
        self.dispatcher.submit(seen.append, "after")
        self.dispatcher.drain()
        self.assertEqual(seen, ["after"])
        metrics = self.dispatcher.metrics
        self.assertEqual((metrics["submitted"], metrics["processed"], metrics["errors"]), (2, 1, 1))

    def test_backlog_is_never_dropped(self):
        gate = threading.Event()
        seen = []
        self.dispatcher.submit(gate.wait)
        for i in range(10):
            self.assertTrue(self.dispatcher.submit(seen.append, i))
        self.assertGreater(self.dispatcher.metrics["peak_depth"], 2)
        gate.set()
        self.dispatcher.close()
        self.assertEqual(seen, list(range(10)))
        self.assertFalse(self.dispatcher.submit(seen.append, 99))


class TestConfig(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)

    def test_missing_file_gives_defaults(self):
        config = load_config("/nonexistent/settings.yaml")
        self.assertEqual(config.detection.start_threshold, 0.6)
        self.assertEqual(config.ensemble.strategy, EnsembleStrategy.ADAPTIVE)

    def test_shipped_settings_load(self):
        config = load_config(DEFAULT_CONFIG_PATH)
        self.assertEqual(config.detection.stop_confirmation_s, 60.0)
        self.assertEqual(config.events.window_s, 300.0)
        self.assertAlmostEqual(sum(config.detection.weights.values()), 1.0)
        self.assertEqual((config.learning.min_samples, config.learning.retrain_every), (100, 50))
        self.assertTrue(config.learning.collect_samples)

    def test_partial_weights_are_merged(self):
        config = config_from_dict({"detection": {"weights": {"ml": 0.5}}})
        self.assertEqual(config.detection.weights["ml"], 0.5)
        self.assertEqual(config.detection.weights["speed"], 0.30)

    def test_invalid_values_rejected(self):
        bad = [
            {"ensemble": {"strategy": "majority"}},
            {"events": {"window_s": -1}},
            {"detection": {"start_threshold": 0.3, "end_threshold": 0.5}},
            {"detection": {"speed_window": "ten"}},
            {"detection": {"colour": "red"}},
            {"telemetry": {}},
            {"learning": {"min_samples": 0}},
            {"learning": {"retrain_every": -5}},
        ]
        for data in bad:
            with self.subTest(data=data):
                with self.assertRaises(InvalidConfiguration):
                    config_from_dict(data)

    def test_unreadable_yaml(self):
        tmp = tempfile.mkdtemp()
        try:
            path = os.path.join(tmp, "settings.yaml")
            with open(path, "w") as f:
                f.write("detection: [unclosed\n")
            with self.assertRaises(InvalidConfiguration):
                load_config(path)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)


def commute():
    """(sample, event) pairs; one hard brake while cruising."""
    def sample(ts, speed, activity, stability):
        return SignalSample(timestamp=ts, speed_kmh=speed, gps_accuracy_m=5.0, activity=activity,
                            activity_confidence=ConfidenceTier.HIGH, motion_stability=stability)

    speeds = [0.0] * 6 + [10, 20, 30, 40, 50] + [60.0] * 20 + [0.0] * 40
    out = []
    for i, speed in enumerate(speeds):
        ts = BASE + i * STEP
        if speed > 0:
            s = sample(ts, speed, ActivityType.IN_VEHICLE, 0.9)
        else:
            s = sample(ts, speed, ActivityType.STILL, 0.2)
        event = None
        if i == 20:
            event = TelematicsEvent(TelematicsEventType.HARD_BRAKING, 4.5, 0.7, ts, confidence=0.9)
        out.append((s, event))
    return out


class TestOrchestrator(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)
        self.tmp = tempfile.mkdtemp()
        self.db_path = os.path.join(self.tmp, "drive.db")
        self.config = SentinelConfig(database=DatabaseConfig(path=self.db_path)).validate()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_session_persists_trip_and_events(self):
        daemon = DriveOrchestrator(self.config).start()
        self.assertIsNone(daemon.detector.voter)

        for sample, event in commute():
            if event is not None:
                daemon.submit_event(event)
            daemon.submit(sample)
        daemon.join_input()

        self.assertEqual(daemon.processed, 72)
        self.assertIsNone(daemon.detector.current_trip)
        daemon.dispatcher.drain()
        report = daemon.maintenance_report()
        self.assertEqual(report.usage.trips, 1)
        self.assertGreater(report.overall_health, 99.0)
        self.assertIsNone(daemon.stop())

        ledger = DriveDatabase(self.db_path).connect()
        try:
            trips = ledger.load_trips()
            self.assertEqual(len(trips), 1)
            trip = trips[0]
            self.assertEqual(trip["safety_score"], 95.0)
            self.assertEqual(trip["event_counts"], {"hard_braking": 1})
            self.assertEqual(trip["max_speed_kmh"], 60.0)

            events = ledger.load_events(trip["trip_id"])
            self.assertEqual(len(events), 1)
            self.assertEqual(events[0]["event_type"], "hard_braking")

            usage = ledger.load_vehicle_usage()
            self.assertEqual(usage.trips, 1)
            self.assertEqual(usage.events(TelematicsEventType.HARD_BRAKING), 1)
            self.assertGreater(usage.distance_km, 0.0)
            self.assertGreater(usage.operating_hours, 0.0)
        finally:
            ledger.close()

    def test_stop_finalizes_open_trip(self):
        daemon = DriveOrchestrator(self.config).start()
        for sample, _ in commute()[:31]:
            daemon.submit(sample)
        daemon.join_input()
        self.assertIsNotNone(daemon.detector.current_trip)

        trip = daemon.stop(timestamp=BASE + 1000)
        self.assertEqual(trip.end_time, BASE + 1000)

        ledger = DriveDatabase(self.db_path).connect()
        try:
            self.assertEqual([t["trip_id"] for t in ledger.load_trips()], [trip.trip_id])
        finally:
            ledger.close()

    def test_loop_survives_bad_input(self):
        daemon = DriveOrchestrator(self.config).start()
        daemon.submit("not a sample")
        daemon.submit(SignalSample(timestamp=BASE))
        daemon.join_input()
        self.assertEqual(daemon.processed, 2)
        daemon.stop()

    def test_item_taken_after_shutdown_signal_is_not_processed(self):
        daemon = DriveOrchestrator(self.config).start()
        thread = daemon._thread
        daemon._shutdown(signal.SIGTERM, None)
        daemon.submit(SignalSample(timestamp=BASE, speed_kmh=30.0))
        thread.join(timeout=5.0)

        self.assertFalse(thread.is_alive())
        self.assertEqual(daemon.processed, 0)
        self.assertEqual(daemon.detector.sample_count, 0)
        daemon.stop()


class TestLearningLoop(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)
        self.tmp = tempfile.mkdtemp()
        self.db_path = os.path.join(self.tmp, "drive.db")
        self.config = SentinelConfig(
            database=DatabaseConfig(path=self.db_path),
            learning=LearningConfig(min_samples=40, retrain_every=20),
        ).validate()
        self.samples = generate_event_samples(samples=60, seed=5)

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def label(self, daemon, samples):
        for s in samples:
            daemon.record_feedback(s.sample_id, s.is_valid_event)
        daemon.dispatcher.drain()

    def test_labels_trigger_retrain_and_swap_models(self):
        daemon = DriveOrchestrator(self.config)
        try:
            daemon.db.save_training_samples(self.samples)

            self.label(daemon, self.samples[:39])
            self.assertEqual(daemon.trainings, 0)
            self.assertEqual(len(daemon.ensemble), 0)

            self.label(daemon, self.samples[39:40])
            self.assertEqual(daemon.trainings, 1)
            self.assertTrue(daemon.last_training.success)
            self.assertEqual(len(daemon.ensemble), 4)
            self.assertEqual(set(daemon.ensemble.model_names), {
                "event_logistic_regression", "event_naive_bayes", "event_decision_tree", "event_svm"})

            fresh = generate_event_samples(samples=1, seed=9)[0]
            prediction = daemon.validate_event(fresh)
            self.assertEqual(len(prediction.predictions), 4)
            daemon.dispatcher.drain()
            stats = daemon.db.ml_statistics()
            self.assertEqual((stats["total_samples"], stats["total_predictions"]), (61, 4))

            self.label(daemon, self.samples[40:59])
            self.assertEqual(daemon.trainings, 1)
            self.label(daemon, self.samples[59:])
            self.assertEqual(daemon.trainings, 2)
            self.assertEqual(len(daemon.ensemble), 4)
        finally:
            daemon.stop()

        # A restart picks the retrained models up from the ledger.
        daemon = DriveOrchestrator(self.config)
        try:
            self.assertEqual(len(daemon.ensemble), 4)
            self.assertEqual(daemon.retrain_policy.last, 60)
            daemon.validate_event(generate_event_samples(samples=1, seed=11)[0])
        finally:
            daemon.stop()

    def test_manual_retrain_without_collection(self):
        config = SentinelConfig(
            database=DatabaseConfig(path=self.db_path),
            learning=LearningConfig(collect_samples=False, auto_train=False, min_samples=40, retrain_every=20),
        ).validate()
        daemon = DriveOrchestrator(config)
        try:
            daemon.db.save_training_samples(self.samples)
            self.label(daemon, self.samples)
            self.assertEqual(daemon.trainings, 0)

            report = daemon.retrain()
            self.assertTrue(report.success)
            self.assertEqual(daemon.trainings, 1)
            self.assertEqual(len(daemon.ensemble), 4)

            daemon.validate_event(generate_event_samples(samples=1, seed=9)[0])
            daemon.dispatcher.drain()
            self.assertEqual(daemon.db.count_training_samples(), 60)
        finally:
            daemon.stop()

    def test_feedback_for_unknown_sample(self):
        daemon = DriveOrchestrator(self.config)
        try:
            daemon.record_feedback("missing", True)
            daemon.dispatcher.drain()
            self.assertEqual(daemon.db.count_training_samples(has_user_feedback=True), 0)
        finally:
            daemon.stop()


if __name__ == '__main__':
    unittest.main()
