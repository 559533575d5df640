"""
MODULE: TRAINING_SAMPLE_MODEL

DESCRIPTION:
    Containers for the event-validation learning pipeline.
    An MLDataSample is the raw evidence captured when an upstream detector
    fires; ProcessedFeatures is the same sample after feature engineering
    and normalization, ready for training or inference.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

from sentinel.models.telemetry import TelematicsEventType


@dataclass(frozen=True)
class FeatureVector:
    """Ordered numeric features paired with their (sorted, unique) names."""
    values: Tuple[float, ...]
    names: Tuple[str, ...]

    def __post_init__(self):
        if len(self.values) != len(self.names):
            raise ValueError(
                f"FeatureVector has {len(self.values)} values for {len(self.names)} names")
        if len(set(self.names)) != len(self.names):
            raise ValueError("FeatureVector names must be unique")

    def __len__(self) -> int:
        return len(self.values)

    def as_dict(self) -> Dict[str, float]:
        return dict(zip(self.names, self.values))

    @classmethod
    def from_mapping(cls, features: Dict[str, float], names: Sequence[str]) -> "FeatureVector":
        """Projects a feature map onto a fixed schema; absent names become 0.0."""
        names = tuple(names)
        return cls(tuple(float(features.get(n, 0.0)) for n in names), names)


@dataclass
class MLDataSample:
    sample_id: str
    timestamp: float
    event_type: TelematicsEventType
    magnitude: float
    sensor_features: Dict[str, float] = field(default_factory=dict)
    context_features: Dict[str, float] = field(default_factory=dict)
    preprocessing_features: Dict[str, float] = field(default_factory=dict)
    is_valid_event: bool = True
    user_feedback: Optional[float] = None

    @property
    def target(self) -> float:
        if self.user_feedback is not None:
            return float(self.user_feedback)
        return 1.0 if self.is_valid_event else 0.0

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.sample_id,
            "timestamp": self.timestamp,
            "event_type": self.event_type.value,
            "magnitude": self.magnitude,
            "sensor_features": json.dumps(self.sensor_features),
            "context_features": json.dumps(self.context_features),
            "preprocessing_features": json.dumps(self.preprocessing_features),
            "is_valid_event": 1 if self.is_valid_event else 0,
            "user_feedback": self.user_feedback,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MLDataSample":
        return cls(
            sample_id=row["id"],
            timestamp=float(row["timestamp"]),
            event_type=TelematicsEventType(row["event_type"]),
            magnitude=float(row["magnitude"]),
            sensor_features=json.loads(row["sensor_features"]),
            context_features=json.loads(row["context_features"]),
            preprocessing_features=json.loads(row["preprocessing_features"]),
            is_valid_event=bool(row["is_valid_event"]),
            user_feedback=row["user_feedback"],
        )


@dataclass(frozen=True)
class ProcessedFeatures:
    vector: FeatureVector
    target: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def features(self) -> Tuple[float, ...]:
        return self.vector.values
