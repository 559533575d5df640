"""
MODULE: DRIVE_ORCHESTRATOR (BACKGROUND SERVICE)

DESCRIPTION:
    Wires the drive core together at start-up and runs it as one background
    loop per device. No singletons: every component is built here and
    handed to the parts that need it.

    It prioritizes:
    1. ORDER: samples and events are consumed by ONE thread, in arrival order.
    2. HOT PATH: trip/event persistence and listener callbacks go through
       the dispatcher, never inline with a tick.
    3. INTEGRITY: stop() finalizes the open trip and drains the dispatcher
       before the ledger is sealed.
    4. LEARNING: validated event samples are kept; user labels trigger a
       retrain on the dispatcher thread once enough accumulate.

    USAGE:
    'python -m sentinel.core.orchestrator' replays the drive emulator.
"""

import dataclasses
import logging
import os
import queue
import signal
import sys
import threading
from collections import deque
from typing import Optional, Union

from sentinel.ai.ensemble import EnsemblePrediction, EnsembleScorer
from sentinel.ai.learning import RetrainPolicy, retrain_event_models
from sentinel.ai.trainer import TrainingReport
from sentinel.core.config import BASE_DIR, LoggingConfig, SentinelConfig, load_config
from sentinel.core.database import DriveDatabase
from sentinel.core.dispatcher import CallbackDispatcher
from sentinel.detection.signals import WINDOW_FEATURE_NAMES, EnsembleVoter
from sentinel.detection.trip_detector import TripDetector
from sentinel.features.engineer import FeatureEngineer
from sentinel.features.statistics import StatisticsStore
from sentinel.models.samples import MLDataSample
from sentinel.models.telemetry import SignalSample, TelematicsEvent, Trip, is_number
from sentinel.scoring.maintenance import MaintenanceReport, MaintenanceTracker

logger = logging.getLogger("SENTINEL.DAEMON")

_STOP = object()


def configure_logging(config: LoggingConfig):
    log_dir = config.dir if os.path.isabs(config.dir) else os.path.join(BASE_DIR, config.dir)
    os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, str(config.level).upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s",
        handlers=[
            logging.FileHandler(os.path.join(log_dir, "sentinel_service.log")),
            logging.StreamHandler(sys.stdout),
        ],
    )


class DriveOrchestrator:
    """
    The long-running service manager.
    """

    def __init__(self, config: Union[SentinelConfig, str, None] = None):
        self.config = config if isinstance(config, SentinelConfig) else load_config(config)
        logger.info("--- STARTING SENTINEL DRIVE CORE ---")

        db_path = self.config.database.path
        if db_path != ":memory:" and not os.path.isabs(db_path):
            db_path = os.path.join(BASE_DIR, db_path)
        self.db = DriveDatabase(db_path).connect()

        self.statistics = StatisticsStore()
        stored = self.db.load_feature_statistics()
        if stored is not None:
            self.statistics.load(stored)
        self.engineer = FeatureEngineer(self.statistics)

        # Event-validation models and trip-window models share the ledger
        # but not a schema, so they live in separate ensembles.
        self.ensemble = EnsembleScorer(self.config.ensemble.strategy)
        self.trip_ensemble = EnsembleScorer(self.config.ensemble.strategy)
        self._model_ids = {}
        for model in self.db.load_active_models():
            accuracy = model.validation_accuracy if model.validation_accuracy is not None else 0.5
            target = self.trip_ensemble if tuple(model.feature_names) == WINDOW_FEATURE_NAMES else self.ensemble
            target.add_model(model.name, model.params, accuracy, feature_names=model.feature_names)
            self._model_ids[model.name] = model.id

        labelled = self.db.count_training_samples(has_user_feedback=True)
        self.retrain_policy = RetrainPolicy(self.config.learning, labelled if len(self.ensemble) else 0)
        self.last_training: Optional[TrainingReport] = None
        self.trainings = 0

        self.maintenance = MaintenanceTracker(self.db.load_vehicle_usage())

        self.dispatcher = CallbackDispatcher(self.config.dispatcher.high_water_mark)

        voter = None
        if self.config.detection.use_ml and len(self.trip_ensemble):
            voter = EnsembleVoter(self.trip_ensemble, window=self.config.detection.speed_window)
        self.detector = TripDetector(self.config.detection, voter=voter, dispatcher=self.dispatcher)
        self.detector.subscribe(trip_started=self._on_trip_started, trip_ended=self._on_trip_ended)

        self._events = deque()
        self._input: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self.running = False
        self.processed = 0

    # --- INPUT ---

    def submit(self, sample: SignalSample):
        self._input.put(sample)

    def submit_event(self, event: TelematicsEvent):
        self._input.put(event)

    # --- LIFECYCLE ---

    def start(self) -> "DriveOrchestrator":
        if self._thread is not None:
            return self
        self.running = True
        self._thread = threading.Thread(target=self._loop, daemon=True, name="sentinel-loop")
        self._thread.start()
        logger.info("Drive loop running")
        return self

    def join_input(self):
        """Blocks until every submitted item has been processed."""
        self._input.join()

    def stop(self, timestamp: Optional[float] = None) -> Optional[Trip]:
        """
        The in-flight item completes; anything still queued is discarded.
        The open trip (if any) is finalized and persisted before the ledger closes.
        """
        if self.db.conn is None:
            return None
        logger.warning("SHUTDOWN REQUESTED. FLUSHING BUFFERS...")
        self.running = False
        if self._thread is not None:
            self._input.put(_STOP)
            self._thread.join(timeout=10.0)
            self._thread = None

        dropped = 0
        while True:
            try:
                item = self._input.get_nowait()
            except queue.Empty:
                break
            self._input.task_done()
            if item is not _STOP:
                dropped += 1
        if dropped:
            logger.info(f"{dropped} queued items discarded at shutdown")

        trip = self.detector.stop(timestamp)
        self.dispatcher.close()
        self.db.close()
        logger.info("Daemon Stopped Gracefully.")
        return trip

    def _shutdown(self, signum, frame):
        logger.warning("SHUTDOWN SIGNAL RECEIVED.")
        self.running = False

    # --- LOOP ---

    def _loop(self):
        while self.running:
            item = self._input.get()
            try:
                if item is _STOP:
                    return
                if not self.running:
                    logger.info("Shutdown requested, item left unprocessed")
                    return
                if isinstance(item, TelematicsEvent):
                    self._handle_event(item)
                else:
                    self._handle_sample(item)
                self.processed += 1
            except Exception as e:
                logger.error(f"CRASH IN LOOP: {e}", exc_info=True)
            finally:
                self._input.task_done()

    def _recent_event_count(self, now: float) -> int:
        horizon = now - self.config.events.window_s
        while self._events and self._events[0] <= horizon:
            self._events.popleft()
        return sum(1 for ts in self._events if ts <= now)

    def _handle_sample(self, sample: SignalSample):
        if (isinstance(sample, SignalSample) and sample.recent_event_count is None
                and is_number(sample.timestamp)):
            sample = dataclasses.replace(sample, recent_event_count=self._recent_event_count(sample.timestamp))
        self.detector.tick(sample)

    def _handle_event(self, event: TelematicsEvent):
        self._events.append(event.timestamp)
        score = self.detector.on_event(event)
        trip = self.detector.current_trip
        self.dispatcher.submit(self.db.save_event, event, trip.trip_id if trip and score is not None else None)
        if score is not None and score < 50:
            logger.warning(f"Safety score down to {score:.0f} after {event.event_type.value}")

    # --- EVENT VALIDATION ---

    def validate_event(self, sample: MLDataSample) -> EnsemblePrediction:
        """
        Scores one raw event sample with the event ensemble. Raises NotReady
        without statistics and EmptyEnsemble without models. The sample and
        the per-model verdicts are recorded off the calling thread.
        """
        prediction = self.ensemble.predict(self.engineer.normalize_sample(sample))
        if self.config.learning.collect_samples:
            self.dispatcher.submit(self.db.save_training_samples, [sample])
        for p in prediction.predictions:
            model_id = self._model_ids.get(p.model_name)
            if model_id is not None:
                self.dispatcher.submit(self.db.save_prediction, sample.sample_id, model_id,
                                       p.score, p.is_valid, p.confidence)
        return prediction

    def record_feedback(self, sample_id: str, is_valid_event: bool):
        """Queues a user label; may trigger a retrain on the dispatcher thread."""
        self.dispatcher.submit(self._apply_feedback, sample_id, is_valid_event)

    def _apply_feedback(self, sample_id: str, is_valid_event: bool):
        if not self.db.update_user_feedback(sample_id, is_valid_event):
            logger.warning(f"Feedback for unknown sample {sample_id} ignored")
            return
        labelled = self.db.count_training_samples(has_user_feedback=True)
        if self.retrain_policy.due(labelled):
            self.retrain()

    def retrain(self) -> TrainingReport:
        """
        Refits the event models on every labelled sample and swaps the
        winners and their statistics into the live ensemble.
        """
        labelled = self.db.count_training_samples(has_user_feedback=True)
        report, model_ids, statistics = retrain_event_models(self.db)
        self.retrain_policy.mark(labelled)
        self.last_training = report
        if not report.success:
            return report

        for result in report.results:
            if not result.success:
                continue
            name = f"event_{result.kind.value}"
            self.ensemble.add_model(name, result.params, result.validation_accuracy,
                                    feature_names=report.feature_names)
            self._model_ids[name] = model_ids[name]
        self.statistics.load(statistics)
        self.trainings += 1
        logger.info(f"Event ensemble retrained on {labelled} labelled samples, "
                    f"best {report.best_kind.value} at {report.best_accuracy * 100:.1f}%")
        return report

    # --- MAINTENANCE ---

    def maintenance_report(self) -> MaintenanceReport:
        return self.maintenance.report()

    # --- LISTENERS (dispatcher thread) ---

    def _on_trip_started(self, trip: Trip):
        logger.info(f"TRIP STARTED: {trip.trip_id}")

    def _on_trip_ended(self, trip: Trip):
        self.db.save_trip(trip)
        if self.maintenance.add_trip(trip):
            self.db.save_vehicle_usage(self.maintenance.usage)
            for alert in self.maintenance.report().alerts:
                logger.warning(f"MAINTENANCE [{alert.severity.value.upper()}]: {alert.message}")

    # --- DEMO ENTRY POINT ---

    def run(self, source):
        """Feeds (sample, events) pairs from a source until stopped or exhausted."""
        signal.signal(signal.SIGINT, self._shutdown)
        signal.signal(signal.SIGTERM, self._shutdown)
        self.start()
        for sample, events in source:
            if not self.running:
                break
            for event in events:
                self.submit_event(event)
            self.submit(sample)
        if self.running:
            self.join_input()
        self.stop()


if __name__ == "__main__":
    from sentinel.hardware.emulator import DriveEmulator

    settings = load_config(os.environ.get("SENTINEL_CONFIG"))
    configure_logging(settings.logging)
    daemon = DriveOrchestrator(settings)
    daemon.run(DriveEmulator().stream(duration_s=1500))
