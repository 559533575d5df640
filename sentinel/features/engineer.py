"""
MODULE: FEATURE_ENGINEER

DESCRIPTION:
    Turns raw MLDataSamples (sensor + GPS context + preprocessing maps) into
    the fixed-schema feature vectors consumed by the classifiers.

    Derived features:
    1. TEMPORAL: hour of day, rush-hour and night indicators (UTC clock).
    2. KINEMATIC: squared and log magnitude / speed (log floored at 0.1).
    3. EVENT TYPE: one-hot indicators for the five motion event types.
    4. CROSS-SENSOR: accel/gyro and accel/mag ratios plus a consistency score
       comparing sqrt(a^2 + g^2) with the reported total magnitude.
    5. PREPROCESSING: stability x GPS confidence and an agreement score.

    The schema (sorted feature names) is frozen by the first batch. Later
    samples missing a known feature get 0.0; unknown features are ignored.
"""

import logging
import math
import random
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sentinel.features.statistics import FeatureStatistics, StatisticsStore, normalize
from sentinel.models.samples import FeatureVector, MLDataSample, ProcessedFeatures
from sentinel.models.telemetry import TelematicsEventType

logger = logging.getLogger("SENTINEL.FEATURES.ENGINEER")

LOG_FLOOR = 0.1

EVENT_INDICATORS = {
    "is_braking_event": TelematicsEventType.HARD_BRAKING,
    "is_acceleration_event": TelematicsEventType.RAPID_ACCELERATION,
    "is_turn_event": TelematicsEventType.SHARP_TURN,
    "is_speed_event": TelematicsEventType.SPEEDING,
    "is_gforce_event": TelematicsEventType.HIGH_G_FORCE,
}


def safe_ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def sensor_consistency(sensor_features: Dict[str, float]) -> float:
    """How well sqrt(accel^2 + gyro^2) explains the reported total magnitude."""
    accel = sensor_features.get("accel_magnitude", 0.0)
    gyro = sensor_features.get("gyro_magnitude", 0.0)
    total = sensor_features.get("total_magnitude", 0.0)
    if total <= 0:
        return 0.0
    return min(1.0, math.sqrt(accel * accel + gyro * gyro) / total)


def preprocessing_agreement(pre: Dict[str, float]) -> float:
    """Fraction of preprocessing checks that vouch for the event (0.5 if none apply)."""
    agreement = 0.0
    factors = 0
    if pre.get("phone_is_mounted", 0.0) > 0.5:
        agreement += 1.0
        factors += 1
    if pre.get("gps_has_data", 0.0) > 0.5:
        if pre.get("gps_is_valid", 0.0) > 0.5:
            agreement += 1.0
        factors += 1
    return agreement / factors if factors else 0.5


def derive_features(sample: MLDataSample) -> Dict[str, float]:
    """Combined raw maps plus every derived feature for one sample (unnormalized)."""
    features: Dict[str, float] = {}
    features.update(sample.sensor_features)
    features.update(sample.context_features)
    features.update(sample.preprocessing_features)

    hour = datetime.fromtimestamp(sample.timestamp, tz=timezone.utc).hour
    features["hour_of_day"] = float(hour)
    features["is_rush_hour"] = 1.0 if (7 <= hour <= 9) or (17 <= hour <= 19) else 0.0
    features["is_night"] = 1.0 if (hour >= 22 or hour <= 6) else 0.0

    m = sample.magnitude
    features["magnitude_squared"] = m * m
    features["magnitude_log"] = math.log(max(LOG_FLOOR, m))

    for name, event_type in EVENT_INDICATORS.items():
        features[name] = 1.0 if sample.event_type == event_type else 0.0

    sensors = sample.sensor_features
    accel = sensors.get("accel_magnitude", 0.0)
    features["accel_gyro_ratio"] = safe_ratio(accel, sensors.get("gyro_magnitude", 0.0))
    features["accel_mag_ratio"] = safe_ratio(accel, sensors.get("mag_magnitude", 0.0))
    features["sensor_consistency"] = sensor_consistency(sensors)

    speed = sample.context_features.get("speed", 0.0)
    accuracy = sample.context_features.get("accuracy", 100.0)
    features["speed_squared"] = speed * speed
    features["speed_log"] = math.log(max(LOG_FLOOR, speed))
    features["gps_quality"] = max(0.0, 1.0 - accuracy / 100.0)
    features["is_moving"] = 1.0 if speed > 5.0 else 0.0
    features["is_high_speed"] = 1.0 if speed > 80.0 else 0.0

    pre = sample.preprocessing_features
    features["stability_confidence_product"] = (
        pre.get("phone_stability_score", 0.5) * pre.get("gps_validation_confidence", 0.5))
    features["preprocessing_agreement"] = preprocessing_agreement(pre)
    return features


class FeatureEngineer:
    """
    Owns the batch -> statistics -> normalized vector pipeline.
    Statistics live in a StatisticsStore that can be shared with other readers.
    """

    def __init__(self, store: Optional[StatisticsStore] = None):
        self.store = store or StatisticsStore()

    @property
    def feature_names(self) -> Tuple[str, ...]:
        return self.store.snapshot()[1]

    def feature_vector(self, sample: MLDataSample) -> FeatureVector:
        """Unnormalized vector over the frozen schema."""
        _, names = self.store.snapshot()
        return FeatureVector.from_mapping(derive_features(sample), names)

    def process_batch(self, samples: Sequence[MLDataSample]) -> List[ProcessedFeatures]:
        if not samples:
            return []
        logger.info(f"Processing {len(samples)} samples")

        rows = [derive_features(s) for s in samples]
        stats, names = self.store.ensure(rows)

        processed = []
        for sample, row in zip(samples, rows):
            vector = normalize(FeatureVector.from_mapping(row, names), stats)
            processed.append(ProcessedFeatures(
                vector=vector,
                target=sample.target,
                metadata={
                    "id": sample.sample_id,
                    "timestamp": sample.timestamp,
                    "event_type": sample.event_type.value,
                    "magnitude": sample.magnitude,
                },
            ))
        logger.info(f"{len(processed)} samples processed with {len(names)} features")
        return processed

    def normalize_sample(self, sample: MLDataSample) -> FeatureVector:
        """Single-sample path; raises NotReady until statistics exist."""
        stats, names = self.store.snapshot()
        return normalize(FeatureVector.from_mapping(derive_features(sample), names), stats)

    def set_statistics(self, statistics: FeatureStatistics):
        self.store.load(statistics)

    def feature_info(self) -> Dict[str, Any]:
        if not self.store.is_ready:
            return {"has_statistics": False, "feature_count": 0, "feature_names": [], "statistics": None}
        stats, names = self.store.snapshot()
        return {
            "has_statistics": True,
            "feature_count": len(names),
            "feature_names": list(names),
            "statistics": stats.to_dict(),
        }


def split_train_test(samples: Sequence[ProcessedFeatures], train_ratio: float = 0.8,
                     seed: Optional[int] = None) -> Tuple[List[ProcessedFeatures], List[ProcessedFeatures]]:
    """Uniform shuffle then cut; a fixed seed reproduces the same split."""
    shuffled = list(samples)
    random.Random(seed).shuffle(shuffled)
    train_size = int(round(len(shuffled) * train_ratio))
    train, test = shuffled[:train_size], shuffled[train_size:]
    logger.debug(f"Train/test split: {len(train)}/{len(test)}")
    return train, test


def balance_dataset(samples: Sequence[ProcessedFeatures],
                    seed: Optional[int] = None) -> List[ProcessedFeatures]:
    """Downsamples the majority class to the minority size and reshuffles."""
    rng = random.Random(seed)
    positives = [s for s in samples if s.target > 0.5]
    negatives = [s for s in samples if s.target <= 0.5]
    size = min(len(positives), len(negatives))
    if size == 0:
        logger.warning("Cannot balance dataset: one class is empty")
        return list(samples)

    rng.shuffle(positives)
    rng.shuffle(negatives)
    balanced = positives[:size] + negatives[:size]
    rng.shuffle(balanced)
    logger.info(f"Dataset balanced: {len(balanced)} samples ({size} per class)")
    return balanced
