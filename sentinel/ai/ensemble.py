"""
MODULE: ENSEMBLE_SCORER (AI JUDGE)
CLASSIFICATION: MACHINE LEARNING

DESCRIPTION:
    Aggregates the verdicts of independently trained classifiers into one
    validity / confidence prediction.

    Combination strategies:
    1. VOTING            - majority of is_valid flags, score = fraction valid.
    2. WEIGHTED_AVERAGE  - registered weight (defaults to model accuracy).
    3. STACKING          - accuracy^2 weighting (quadratic trust in better models).
    4. ADAPTIVE          - keep confident (> 0.7) predictions when any exist,
                           weight them by confidence^2. (Default.)

    A single model failing (bad params, schema mismatch, numeric error) is
    logged and skipped; the ensemble only fails when every member fails.

    The registry is copy-and-swap: writers publish a new immutable snapshot
    under a lock, predict() reads one snapshot reference from start to end.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from sentinel.ai.classifiers import (
    ModelKind,
    ModelParams,
    ModelPrediction,
    classify,
    decode_params,
    encode_params,
)
from sentinel.errors import (
    EmptyEnsemble,
    InvalidConfiguration,
    NoValidPredictions,
    SchemaMismatch,
)
from sentinel.models.samples import FeatureVector

logger = logging.getLogger("SENTINEL.AI.ENSEMBLE")

HIGH_CONFIDENCE = 0.7


class EnsembleStrategy(str, Enum):
    VOTING = "voting"
    WEIGHTED_AVERAGE = "weighted_average"
    STACKING = "stacking"
    ADAPTIVE = "adaptive"

    @classmethod
    def parse(cls, value) -> "EnsembleStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise InvalidConfiguration(f"Unknown ensemble strategy: {value!r}") from None


@dataclass(frozen=True)
class TrainedModel:
    name: str
    params: ModelParams
    accuracy: float
    weight: float
    feature_names: Tuple[str, ...] = ()

    @property
    def kind(self) -> ModelKind:
        return self.params.kind


@dataclass(frozen=True)
class EnsemblePrediction:
    final_score: float
    is_valid: bool
    confidence: float
    predictions: Tuple[ModelPrediction, ...]
    weights: Mapping[str, float]
    strategy: str


@dataclass(frozen=True)
class _Registry:
    models: Mapping[str, TrainedModel] = field(default_factory=lambda: MappingProxyType({}))
    strategy: EnsembleStrategy = EnsembleStrategy.ADAPTIVE


def _weighted(pairs: Sequence[Tuple[ModelPrediction, float]]) -> Tuple[float, float]:
    """(score, confidence) weighted means; 0.5/0.5 when the total weight is zero."""
    total = sum(w for _, w in pairs)
    if total <= 0:
        return 0.5, 0.5
    score = sum(p.score * w for p, w in pairs) / total
    confidence = sum(p.confidence * w for p, w in pairs) / total
    return score, confidence


def combine_voting(predictions, models) -> Tuple[float, bool, float]:
    valid = sum(1 for p in predictions if p.is_valid)
    invalid = len(predictions) - valid
    score = valid / len(predictions)
    confidence = sum(p.confidence for p in predictions) / len(predictions)
    return score, valid > invalid, confidence


def combine_weighted_average(predictions, models) -> Tuple[float, bool, float]:
    score, confidence = _weighted([(p, models[p.model_name].weight) for p in predictions])
    return score, score > 0.5, confidence


def combine_stacking(predictions, models) -> Tuple[float, bool, float]:
    score, confidence = _weighted([(p, models[p.model_name].accuracy ** 2) for p in predictions])
    return score, score > 0.5, confidence


def combine_adaptive(predictions, models) -> Tuple[float, bool, float]:
    selected = [p for p in predictions if p.confidence > HIGH_CONFIDENCE] or list(predictions)
    score, confidence = _weighted([(p, p.confidence ** 2) for p in selected])
    return score, score > 0.5, confidence


COMBINERS = {
    EnsembleStrategy.VOTING: combine_voting,
    EnsembleStrategy.WEIGHTED_AVERAGE: combine_weighted_average,
    EnsembleStrategy.STACKING: combine_stacking,
    EnsembleStrategy.ADAPTIVE: combine_adaptive,
}


class EnsembleScorer:
    """
    Named collection of trained models plus the active combination strategy.
    """

    def __init__(self, strategy: Union[EnsembleStrategy, str] = EnsembleStrategy.ADAPTIVE):
        self._write_lock = threading.Lock()
        self._registry = _Registry(strategy=EnsembleStrategy.parse(strategy))

    # --- REGISTRY (WRITERS) ---

    def _publish(self, models: Dict[str, TrainedModel], strategy: EnsembleStrategy):
        self._registry = _Registry(MappingProxyType(models), strategy)

    def add_model(self, name: str, params: ModelParams, accuracy: float,
                  weight: Optional[float] = None, feature_names: Sequence[str] = ()):
        model = TrainedModel(
            name=name,
            params=params,
            accuracy=float(accuracy),
            weight=float(accuracy if weight is None else weight),
            feature_names=tuple(feature_names),
        )
        with self._write_lock:
            current = self._registry
            models = dict(current.models)
            models[name] = model
            self._publish(models, current.strategy)
        logger.info(f"Model {name} ({model.kind.value}) added, accuracy {accuracy * 100:.1f}%")

    def remove_model(self, name: str) -> bool:
        with self._write_lock:
            current = self._registry
            if name not in current.models:
                return False
            models = dict(current.models)
            del models[name]
            self._publish(models, current.strategy)
        logger.info(f"Model {name} removed")
        return True

    def set_strategy(self, strategy: Union[EnsembleStrategy, str]):
        strategy = EnsembleStrategy.parse(strategy)
        with self._write_lock:
            self._publish(dict(self._registry.models), strategy)
        logger.info(f"Strategy set to {strategy.value}")

    def update_weights(self, accuracies: Mapping[str, float]):
        """Re-rates known models; accuracy and weight both take the new value."""
        with self._write_lock:
            current = self._registry
            models = dict(current.models)
            for name, acc in accuracies.items():
                if name in models:
                    old = models[name]
                    models[name] = TrainedModel(old.name, old.params, float(acc), float(acc), old.feature_names)
            self._publish(models, current.strategy)
        logger.info("Model weights updated")

    # --- INFERENCE (READERS) ---

    @property
    def strategy(self) -> EnsembleStrategy:
        return self._registry.strategy

    @property
    def model_names(self) -> List[str]:
        return list(self._registry.models)

    def __len__(self) -> int:
        return len(self._registry.models)

    def predict(self, vector: Union[FeatureVector, Sequence[float]]) -> EnsemblePrediction:
        registry = self._registry
        if not registry.models:
            raise EmptyEnsemble("No models registered in the ensemble")

        if isinstance(vector, FeatureVector):
            values, names = vector.values, vector.names
        else:
            values, names = tuple(vector), ()

        predictions: List[ModelPrediction] = []
        for name, model in registry.models.items():
            try:
                if model.feature_names:
                    if names and tuple(model.feature_names) != tuple(names):
                        raise SchemaMismatch(len(model.feature_names), len(names), name)
                    if len(values) != len(model.feature_names):
                        raise SchemaMismatch(len(model.feature_names), len(values), name)
                predictions.append(classify(values, model.params, name))
            except Exception as e:
                logger.warning(f"Model {name} failed, skipping: {e}")

        if not predictions:
            raise NoValidPredictions(f"All {len(registry.models)} models failed")

        score, is_valid, confidence = COMBINERS[registry.strategy](predictions, registry.models)
        return EnsemblePrediction(
            final_score=score,
            is_valid=is_valid,
            confidence=confidence,
            predictions=tuple(predictions),
            weights={n: m.weight for n, m in registry.models.items()},
            strategy=registry.strategy.value,
        )

    # --- PERSISTENCE ---

    def info(self) -> Dict[str, Any]:
        registry = self._registry
        accuracies = {n: m.accuracy for n, m in registry.models.items()}
        return {
            "model_count": len(registry.models),
            "models": list(registry.models),
            "accuracies": accuracies,
            "weights": {n: m.weight for n, m in registry.models.items()},
            "strategy": registry.strategy.value,
            "average_accuracy": sum(accuracies.values()) / len(accuracies) if accuracies else 0.0,
        }

    def to_dict(self) -> Dict[str, Any]:
        registry = self._registry
        return {
            "models": {
                n: {
                    "kind": m.kind.value,
                    "params": encode_params(m.params),
                    "accuracy": m.accuracy,
                    "weight": m.weight,
                    "feature_names": list(m.feature_names),
                }
                for n, m in registry.models.items()
            },
            "strategy": registry.strategy.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EnsembleScorer":
        ensemble = cls(data.get("strategy", EnsembleStrategy.ADAPTIVE.value))
        for name, entry in data.get("models", {}).items():
            ensemble.add_model(
                name,
                decode_params(entry["kind"], entry["params"]),
                entry["accuracy"],
                weight=entry.get("weight"),
                feature_names=entry.get("feature_names", ()),
            )
        logger.info(f"Ensemble restored with {len(ensemble)} models")
        return ensemble
