"""
MODULE: DRIVE_LEDGER (PERSISTENCE LAYER)
STATUS: SQLITE WAL MODE

DESCRIPTION:
    Local store for everything the drive core wants to keep across restarts:
    1. TRAINING DATA: labelled event samples (JSON feature blobs).
    2. STATISTICS: the frozen normalization table, one row per feature.
    3. MODELS: trained parameter blobs; one active model per kind and schema.
    4. PREDICTIONS: per-sample verdicts, kept for feedback analysis.
    5. TRIPS / EVENTS: finished driving sessions and their telematics events.
    6. VEHICLE USAGE: lifetime km, hours, trips and harsh-event totals.

    WAL mode lets the dispatcher thread write trips while the trainer or a
    dashboard reads. A single lock serializes statements on the shared
    connection.
"""

import json
import logging
import os
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from sentinel.ai.classifiers import ModelKind, ModelParams, decode_params, encode_params
from sentinel.features.statistics import FeatureStatistics
from sentinel.models.samples import MLDataSample
from sentinel.models.telemetry import TelematicsEvent, Trip
from sentinel.scoring.maintenance import VehicleUsage

logger = logging.getLogger("SENTINEL.DB")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS ml_training_samples (
        id TEXT PRIMARY KEY,
        timestamp REAL NOT NULL,
        event_type TEXT NOT NULL,
        magnitude REAL NOT NULL,
        sensor_features TEXT NOT NULL,
        context_features TEXT NOT NULL,
        preprocessing_features TEXT NOT NULL,
        is_valid_event INTEGER NOT NULL,
        user_feedback REAL,
        created_at REAL NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS ml_feature_statistics (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        feature_name TEXT NOT NULL,
        mean_value REAL NOT NULL,
        std_deviation REAL NOT NULL,
        min_value REAL NOT NULL,
        max_value REAL NOT NULL,
        created_at REAL NOT NULL,
        UNIQUE(feature_name)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS ml_trained_models (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        model_name TEXT NOT NULL,
        model_type TEXT NOT NULL,
        model_data TEXT NOT NULL,
        feature_names TEXT NOT NULL,
        training_accuracy REAL,
        validation_accuracy REAL,
        sample_count INTEGER NOT NULL,
        created_at REAL NOT NULL,
        is_active INTEGER DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS ml_predictions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sample_id TEXT NOT NULL,
        model_id INTEGER NOT NULL,
        prediction_score REAL NOT NULL,
        is_valid_prediction INTEGER NOT NULL,
        confidence REAL NOT NULL,
        created_at REAL NOT NULL,
        FOREIGN KEY (model_id) REFERENCES ml_trained_models (id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS trips (
        trip_id TEXT PRIMARY KEY,
        start_time REAL NOT NULL,
        end_time REAL,
        distance_km REAL,
        max_speed_kmh REAL,
        safety_score REAL,
        event_count INTEGER,
        event_counts TEXT,
        start_latitude REAL,
        start_longitude REAL,
        end_latitude REAL,
        end_longitude REAL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS telematics_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        trip_id TEXT,
        timestamp REAL NOT NULL,
        event_type TEXT NOT NULL,
        magnitude REAL,
        severity REAL,
        confidence REAL,
        ml_validated INTEGER DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS vehicle_usage (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        distance_km REAL NOT NULL,
        operating_hours REAL NOT NULL,
        trips INTEGER NOT NULL,
        event_counts TEXT NOT NULL,
        updated_at REAL NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_ml_samples_timestamp ON ml_training_samples(timestamp);",
    "CREATE INDEX IF NOT EXISTS idx_ml_samples_event_type ON ml_training_samples(event_type);",
    "CREATE INDEX IF NOT EXISTS idx_ml_predictions_sample ON ml_predictions(sample_id);",
    "CREATE INDEX IF NOT EXISTS idx_events_trip ON telematics_events(trip_id);",
)


@dataclass(frozen=True)
class StoredModel:
    id: int
    name: str
    kind: ModelKind
    params: ModelParams
    feature_names: List[str]
    training_accuracy: Optional[float]
    validation_accuracy: Optional[float]
    sample_count: int
    created_at: float
    is_active: bool


class DriveDatabase:
    """
    The drive ledger. Call connect() before use; every operation is a no-op
    (or returns empty) while disconnected.
    """

    def __init__(self, db_path: str):
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def connect(self) -> "DriveDatabase":
        if self.conn:
            return self
        # check_same_thread=False: the dispatcher thread writes trips
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        with self._lock:
            for statement in SCHEMA:
                self.conn.execute(statement)
            self.conn.commit()
        logger.info(f"[DB] Ledger open at {self.db_path}. Mode: WAL")
        return self

    def _query(self, sql: str, args: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(args)).fetchall()

    def _scalar(self, sql: str, args: Sequence[Any] = ()) -> int:
        rows = self._query(sql, args)
        return rows[0][0] if rows and rows[0][0] is not None else 0

    # --- TRAINING SAMPLES ---

    def save_training_samples(self, samples: Sequence[MLDataSample]) -> int:
        if not self.conn or not samples:
            return 0
        now = time.time()
        rows = []
        for s in samples:
            row = s.to_row()
            rows.append((row["id"], row["timestamp"], row["event_type"], row["magnitude"],
                         row["sensor_features"], row["context_features"],
                         row["preprocessing_features"], row["is_valid_event"],
                         row["user_feedback"], now))
        with self._lock:
            self.conn.executemany("""
                INSERT OR REPLACE INTO ml_training_samples
                (id, timestamp, event_type, magnitude, sensor_features, context_features,
                 preprocessing_features, is_valid_event, user_feedback, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)
            self.conn.commit()
        logger.info(f"[DB] {len(rows)} training samples saved")
        return len(rows)

    def load_training_samples(self, limit: Optional[int] = None,
                              start_time: Optional[float] = None,
                              end_time: Optional[float] = None,
                              event_type: Optional[str] = None,
                              has_user_feedback: Optional[bool] = None) -> List[MLDataSample]:
        """Newest first, filtered by any combination of the arguments."""
        if not self.conn:
            return []
        sql = "SELECT * FROM ml_training_samples WHERE 1=1"
        args: List[Any] = []
        if start_time is not None:
            sql += " AND timestamp >= ?"
            args.append(start_time)
        if end_time is not None:
            sql += " AND timestamp <= ?"
            args.append(end_time)
        if event_type is not None:
            sql += " AND event_type = ?"
            args.append(getattr(event_type, "value", event_type))
        if has_user_feedback is not None:
            sql += " AND user_feedback IS NOT NULL" if has_user_feedback else " AND user_feedback IS NULL"
        sql += " ORDER BY timestamp DESC"
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))

        samples = [MLDataSample.from_row(dict(row)) for row in self._query(sql, args)]
        logger.debug(f"[DB] {len(samples)} training samples loaded")
        return samples

    def count_training_samples(self, has_user_feedback: Optional[bool] = None) -> int:
        if not self.conn:
            return 0
        sql = "SELECT COUNT(*) FROM ml_training_samples"
        if has_user_feedback is not None:
            sql += " WHERE user_feedback IS NOT NULL" if has_user_feedback else " WHERE user_feedback IS NULL"
        return self._scalar(sql)

    def update_user_feedback(self, sample_id: str, is_valid_event: bool) -> bool:
        if not self.conn:
            return False
        with self._lock:
            cur = self.conn.execute("""
                UPDATE ml_training_samples SET user_feedback = ?, is_valid_event = ? WHERE id = ?
            """, (1.0 if is_valid_event else 0.0, 1 if is_valid_event else 0, sample_id))
            self.conn.commit()
        return cur.rowcount > 0

    # --- FEATURE STATISTICS ---

    def save_feature_statistics(self, statistics: FeatureStatistics):
        """Replaces the whole table; statistics are never merged."""
        if not self.conn:
            return
        now = time.time()
        rows = [(name, statistics.means[name], statistics.stddevs[name],
                 statistics.minimums[name], statistics.maximums[name], now)
                for name in statistics.feature_names]
        with self._lock:
            self.conn.execute("DELETE FROM ml_feature_statistics")
            self.conn.executemany("""
                INSERT INTO ml_feature_statistics
                (feature_name, mean_value, std_deviation, min_value, max_value, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, rows)
            self.conn.commit()
        logger.info(f"[DB] Statistics for {len(rows)} features saved")

    def load_feature_statistics(self) -> Optional[FeatureStatistics]:
        if not self.conn:
            return None
        rows = self._query("SELECT * FROM ml_feature_statistics")
        if not rows:
            return None
        return FeatureStatistics(
            means={r["feature_name"]: r["mean_value"] for r in rows},
            stddevs={r["feature_name"]: r["std_deviation"] for r in rows},
            minimums={r["feature_name"]: r["min_value"] for r in rows},
            maximums={r["feature_name"]: r["max_value"] for r in rows},
        )

    # --- MODELS ---

    def save_trained_model(self, name: str, kind, params: Union[ModelParams, Mapping[str, Any]],
                           feature_names: Sequence[str],
                           training_accuracy: Optional[float] = None,
                           validation_accuracy: Optional[float] = None,
                           sample_count: int = 0,
                           set_active: bool = False) -> int:
        """
        Activating a model retires the previous active model of the same kind
        trained on the same feature schema.
        """
        if not self.conn:
            return -1
        kind = ModelKind.parse(kind)
        blob = params if isinstance(params, Mapping) else encode_params(params)
        schema = json.dumps(list(feature_names))
        with self._lock:
            if set_active:
                self.conn.execute(
                    "UPDATE ml_trained_models SET is_active = 0 WHERE model_type = ? AND feature_names = ?",
                    (kind.value, schema))
            cur = self.conn.execute("""
                INSERT INTO ml_trained_models
                (model_name, model_type, model_data, feature_names, training_accuracy,
                 validation_accuracy, sample_count, created_at, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (name, kind.value, json.dumps(blob), schema,
                  training_accuracy, validation_accuracy, int(sample_count), time.time(),
                  1 if set_active else 0))
            self.conn.commit()
        logger.info(f"[DB] Model {name} ({kind.value}) saved with id {cur.lastrowid}")
        return cur.lastrowid

    @staticmethod
    def _stored_model(row: sqlite3.Row) -> StoredModel:
        kind = ModelKind.parse(row["model_type"])
        return StoredModel(
            id=row["id"],
            name=row["model_name"],
            kind=kind,
            params=decode_params(kind, row["model_data"]),
            feature_names=json.loads(row["feature_names"]),
            training_accuracy=row["training_accuracy"],
            validation_accuracy=row["validation_accuracy"],
            sample_count=row["sample_count"],
            created_at=row["created_at"],
            is_active=bool(row["is_active"]),
        )

    def load_active_model(self, kind, feature_names: Optional[Sequence[str]] = None) -> Optional[StoredModel]:
        """
        Newest active model of this kind (optionally for one feature schema).
        Raises InvalidConfiguration on a corrupt parameter blob.
        """
        if not self.conn:
            return None
        kind = ModelKind.parse(kind)
        sql = "SELECT * FROM ml_trained_models WHERE model_type = ? AND is_active = 1"
        args: List[Any] = [kind.value]
        if feature_names is not None:
            sql += " AND feature_names = ?"
            args.append(json.dumps(list(feature_names)))
        rows = self._query(sql + " ORDER BY id DESC LIMIT 1", args)
        return self._stored_model(rows[0]) if rows else None

    def load_active_models(self) -> List[StoredModel]:
        """Every active model; unreadable rows are logged and skipped."""
        if not self.conn:
            return []
        models = []
        for row in self._query("SELECT * FROM ml_trained_models WHERE is_active = 1 ORDER BY id"):
            try:
                models.append(self._stored_model(row))
            except Exception as e:
                logger.error(f"[DB] Active model {row['model_name']} unreadable, skipped: {e}")
        return models

    def list_models(self) -> List[Dict[str, Any]]:
        if not self.conn:
            return []
        rows = self._query("""
            SELECT id, model_name, model_type, training_accuracy, validation_accuracy,
                   sample_count, created_at, is_active
            FROM ml_trained_models ORDER BY created_at DESC, id DESC
        """)
        return [dict(row, is_active=bool(row["is_active"])) for row in rows]

    # --- PREDICTIONS ---

    def save_prediction(self, sample_id: str, model_id: int, prediction_score: float,
                        is_valid_prediction: bool, confidence: float):
        if not self.conn:
            return
        with self._lock:
            self.conn.execute("""
                INSERT INTO ml_predictions
                (sample_id, model_id, prediction_score, is_valid_prediction, confidence, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (sample_id, model_id, prediction_score, 1 if is_valid_prediction else 0,
                  confidence, time.time()))
            self.conn.commit()

    # --- TRIPS & EVENTS ---

    def save_trip(self, trip: Trip):
        if not self.conn:
            return
        d = trip.to_dict()
        with self._lock:
            self.conn.execute("""
                INSERT OR REPLACE INTO trips
                (trip_id, start_time, end_time, distance_km, max_speed_kmh, safety_score,
                 event_count, event_counts, start_latitude, start_longitude,
                 end_latitude, end_longitude)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (d["trip_id"], d["start_time"], d["end_time"], d["distance_km"],
                  d["max_speed_kmh"], d["safety_score"], d["event_count"],
                  json.dumps(d["event_counts"]), d["start_latitude"], d["start_longitude"],
                  d["end_latitude"], d["end_longitude"]))
            self.conn.commit()
        logger.info(f"[DB] Trip {trip.trip_id} recorded")

    def load_trips(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if not self.conn:
            return []
        sql = "SELECT * FROM trips ORDER BY start_time DESC"
        args: List[Any] = []
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))
        return [dict(row, event_counts=json.loads(row["event_counts"] or "{}"))
                for row in self._query(sql, args)]

    def save_event(self, event: TelematicsEvent, trip_id: Optional[str] = None):
        if not self.conn:
            return
        with self._lock:
            self.conn.execute("""
                INSERT INTO telematics_events
                (trip_id, timestamp, event_type, magnitude, severity, confidence, ml_validated)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (trip_id, event.timestamp, event.event_type.value, event.magnitude,
                  event.severity, event.confidence, 1 if event.ml_validated else 0))
            self.conn.commit()

    def load_events(self, trip_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if not self.conn:
            return []
        if trip_id is None:
            rows = self._query("SELECT * FROM telematics_events ORDER BY timestamp")
        else:
            rows = self._query("SELECT * FROM telematics_events WHERE trip_id = ? ORDER BY timestamp",
                               (trip_id,))
        return [dict(row) for row in rows]

    # --- VEHICLE USAGE ---

    def save_vehicle_usage(self, usage: VehicleUsage):
        """Single-row table; the lifetime totals are overwritten in place."""
        if not self.conn:
            return
        with self._lock:
            self.conn.execute("""
                INSERT OR REPLACE INTO vehicle_usage
                (id, distance_km, operating_hours, trips, event_counts, updated_at)
                VALUES (1, ?, ?, ?, ?, ?)
            """, (usage.distance_km, usage.operating_hours, usage.trips,
                  json.dumps(dict(usage.event_counts)), time.time()))
            self.conn.commit()

    def load_vehicle_usage(self) -> Optional[VehicleUsage]:
        if not self.conn:
            return None
        rows = self._query("SELECT * FROM vehicle_usage WHERE id = 1")
        if not rows:
            return None
        row = rows[0]
        return VehicleUsage(
            distance_km=row["distance_km"],
            operating_hours=row["operating_hours"],
            trips=row["trips"],
            event_counts=json.loads(row["event_counts"]),
        )

    # --- HOUSEKEEPING ---

    def ml_statistics(self) -> Dict[str, Any]:
        if not self.conn:
            return {}
        total = self._scalar("SELECT COUNT(*) FROM ml_training_samples")
        feedback = self._scalar("SELECT COUNT(*) FROM ml_training_samples WHERE user_feedback IS NOT NULL")
        per_type = self._query("""
            SELECT event_type, COUNT(*) AS count,
                   SUM(CASE WHEN user_feedback = 1.0 THEN 1 ELSE 0 END) AS valid_count
            FROM ml_training_samples GROUP BY event_type
        """)
        return {
            "total_samples": total,
            "samples_with_feedback": feedback,
            "total_models": self._scalar("SELECT COUNT(*) FROM ml_trained_models"),
            "total_predictions": self._scalar("SELECT COUNT(*) FROM ml_predictions"),
            "total_trips": self._scalar("SELECT COUNT(*) FROM trips"),
            "event_statistics": [dict(row) for row in per_type],
            "feedback_ratio": feedback / total if total else 0.0,
        }

    def cleanup_old_data(self, keep_days: int = 30) -> Dict[str, int]:
        """Drops stale unlabelled samples and predictions; user-labelled samples are kept."""
        if not self.conn:
            return {"samples": 0, "predictions": 0}
        cutoff = time.time() - keep_days * 86400
        with self._lock:
            samples = self.conn.execute(
                "DELETE FROM ml_training_samples WHERE created_at < ? AND user_feedback IS NULL",
                (cutoff,)).rowcount
            predictions = self.conn.execute(
                "DELETE FROM ml_predictions WHERE created_at < ?", (cutoff,)).rowcount
            self.conn.commit()
        logger.info(f"[DB] Cleanup removed {samples} samples and {predictions} predictions")
        return {"samples": samples, "predictions": predictions}

    def close(self):
        if self.conn:
            with self._lock:
                self.conn.close()
                self.conn = None
            logger.info("[DB] Ledger sealed.")
