"""
TOOL: ENSEMBLE_TRAINER
OUTPUT: Active models + feature statistics in the drive ledger

DESCRIPTION:
    Generates synthetic telematics event samples representing both
    'REAL' events (phone mounted, sensors agree, GPS moving) and 'FALSE'
    events (phone dropped or handled: a big accel spike the gyro and GPS
    do not back up).

    It then trains the four model kinds on the engineered features, and a
    second set on trip windows replayed from the drive emulator, and marks
    every successful model active so the orchestrator picks it up.
"""

import os
import sys
import uuid

import numpy as np

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sentinel.ai.learning import fit_and_store
from sentinel.core.config import BASE_DIR, load_config
from sentinel.core.database import DriveDatabase
from sentinel.detection.signals import WINDOW_FEATURE_NAMES, window_features
from sentinel.features.engineer import FeatureEngineer
from sentinel.hardware.emulator import DriveEmulator
from sentinel.models.samples import MLDataSample, ProcessedFeatures
from sentinel.models.telemetry import ActivityType, TelematicsEventType

EVENT_TYPES = [
    TelematicsEventType.HARD_BRAKING,
    TelematicsEventType.RAPID_ACCELERATION,
    TelematicsEventType.SHARP_TURN,
    TelematicsEventType.SPEEDING,
    TelematicsEventType.HIGH_G_FORCE,
]


def generate_event_samples(samples=2000, seed=42, start_time=1700000000.0):
    print(f'Generating {samples} synthetic telematics events...')
    rng = np.random.default_rng(seed)

    # 1. LABELS: roughly 40% of raw detections are handling noise
    is_valid = rng.random(samples) > 0.4

    out = []
    for i in range(samples):
        valid = bool(is_valid[i])
        event_type = EVENT_TYPES[rng.integers(len(EVENT_TYPES))]

        # 2. SENSOR SIGNATURE
        # Real events: accel and gyro move together, magnitude consistent
        # False events: accel spike with a quiet gyro
        accel = rng.normal(4.0, 1.0) if valid else rng.normal(6.0, 2.5)
        gyro = rng.normal(1.2, 0.3) if valid else rng.normal(0.2, 0.1)
        accel, gyro = abs(accel), abs(gyro)
        total = np.hypot(accel, gyro) * (rng.normal(1.0, 0.05) if valid else rng.normal(1.6, 0.3))

        # 3. CONTEXT: real events happen in a moving car with a decent fix
        speed = rng.normal(55, 20) if valid else rng.normal(8, 8)
        accuracy = rng.normal(8, 3) if valid else rng.normal(30, 15)

        out.append(MLDataSample(
            sample_id=uuid.uuid4().hex,
            timestamp=start_time + i * 37.0,
            event_type=event_type,
            magnitude=float(accel),
            sensor_features={
                "accel_magnitude": float(accel),
                "gyro_magnitude": float(gyro),
                "mag_magnitude": float(abs(rng.normal(45, 5))),
                "total_magnitude": float(abs(total)),
            },
            context_features={
                "speed": float(max(0.0, speed)),
                "accuracy": float(max(1.0, accuracy)),
            },
            preprocessing_features={
                "phone_is_mounted": 1.0 if (valid and rng.random() > 0.2) else 0.0,
                "gps_has_data": 1.0,
                "gps_is_valid": 1.0 if accuracy < 20 else 0.0,
                "phone_stability_score": float(np.clip(rng.normal(0.8 if valid else 0.3, 0.1), 0, 1)),
                "gps_validation_confidence": float(np.clip(rng.normal(0.8 if valid else 0.4, 0.1), 0, 1)),
            },
            is_valid_event=valid,
        ))
    return out


def generate_trip_windows(duration_s=1500, window=10, seed=7):
    """Labelled window vectors replayed from the emulator (label = in a vehicle)."""
    print(f'Replaying {duration_s}s of emulated driving for trip windows...')
    history = []
    windows = []
    for sample, _ in DriveEmulator(seed=seed).stream(duration_s=duration_s):
        history.append(sample)
        history = history[-window:]
        vector = window_features(history, window)
        if vector is None:
            continue
        target = 1.0 if sample.activity is ActivityType.IN_VEHICLE else 0.0
        windows.append(ProcessedFeatures(vector=vector, target=target,
                                         metadata={"timestamp": sample.timestamp}))
    return windows


def train_and_store(db, name_prefix, processed, seed=42):
    report, _ = fit_and_store(db, name_prefix, processed, seed=seed)

    print(f'\n--- {name_prefix.upper()} RESULTS ---')
    for result in report.results:
        status = f'{result.validation_accuracy * 100:.1f}%' if result.success else result.message
        print(f'{result.kind.value:<20} {status}')
    return report


def train_and_export():
    config = load_config(os.environ.get('SENTINEL_CONFIG'))
    db_path = config.database.path
    if not os.path.isabs(db_path):
        db_path = os.path.join(BASE_DIR, db_path)
    db = DriveDatabase(db_path).connect()

    # 1. EVENT VALIDATION MODELS
    samples = generate_event_samples()
    db.save_training_samples(samples)
    engineer = FeatureEngineer()
    processed = engineer.process_batch(samples)
    stats, names = engineer.store.snapshot()
    db.save_feature_statistics(stats)
    print(f'Feature schema: {len(names)} features')
    events = train_and_store(db, 'event', processed)

    # 2. TRIP WINDOW MODELS (unnormalized window features)
    windows = generate_trip_windows()
    assert tuple(windows[0].vector.names) == WINDOW_FEATURE_NAMES
    trips = train_and_store(db, 'trip', windows)

    print(f'\nSUCCESS: best event model {events.best_kind.value if events.best_kind else "-"}, '
          f'best trip model {trips.best_kind.value if trips.best_kind else "-"}')
    print(f'Models saved to: {db_path}')
    db.close()


if __name__ == '__main__':
    train_and_export()
