"""
MODULE: DRIVING_SIGNAL_SCORERS

DESCRIPTION:
    Each scorer looks at the recent sample history and answers one question
    with a value in [0, 1]: "how much does this signal look like driving?"

    1. SPEED      - average / peak speed tiers over samples with a usable fix.
    2. ACTIVITY   - confidence-weighted share of in_vehicle vs on-foot vs still.
    3. STABILITY  - mean motion stability (a mounted phone is steady).
    4. TELEMATICS - driving events seen in the recent window.
    5. CONTEXT    - driving context tier, else an hour-of-day prior.
    6. ML         - optional ensemble vote over window features.

    ACTIVITY and STABILITY fall back to average-speed tiers when the stream
    carries speed but no recognition or motion data. A scorer with nothing
    to go on returns None; the detector substitutes NEUTRAL_SCORE so a
    missing signal never aborts a tick.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Sequence

import numpy as np

from sentinel.ai.ensemble import EnsembleScorer
from sentinel.errors import SentinelError
from sentinel.features.statistics import StatisticsStore, normalize
from sentinel.models.samples import FeatureVector
from sentinel.models.telemetry import ActivityType, ConfidenceTier, DrivingContext, SignalSample, is_number

logger = logging.getLogger("SENTINEL.DETECT.SIGNALS")

NEUTRAL_SCORE = 0.5
KMH_TO_MS = 1.0 / 3.6

# (min average m/s, min peak m/s, score), first match wins
SPEED_TIERS = (
    (12.0, 20.0, 0.9),
    (8.0, 15.0, 0.8),
    (5.0, 12.0, 0.7),
    (3.0, 8.0, 0.4),
    (1.0, 5.0, 0.2),
)

CONTEXT_SCORES = {
    DrivingContext.IDEAL: 0.9,
    DrivingContext.GOOD: 0.9,
    DrivingContext.MODERATE: 0.7,
    DrivingContext.CHALLENGING: 0.5,
    DrivingContext.DIFFICULT: 0.3,
    DrivingContext.POOR: 0.1,
}

ON_FOOT = (ActivityType.WALKING, ActivityType.ON_FOOT, ActivityType.RUNNING)

WINDOW_FEATURE_NAMES = ("avg_speed", "avg_stability", "driving_ratio", "max_speed", "speed_variance")


def _tail(history: Sequence[SignalSample], n: int) -> Sequence[SignalSample]:
    return history[-n:] if n > 0 else history


def speed_score(history: Sequence[SignalSample], window: int = 10,
                accuracy_gate_m: float = 50.0) -> Optional[float]:
    speeds = []
    for s in _tail(history, window):
        if not is_number(s.speed_kmh) or s.speed_kmh < 0:
            continue
        if is_number(s.gps_accuracy_m) and s.gps_accuracy_m > accuracy_gate_m:
            continue
        speeds.append(s.speed_kmh * KMH_TO_MS)
    if not speeds:
        return None

    avg, peak = float(np.mean(speeds)), float(np.max(speeds))
    for min_avg, min_peak, score in SPEED_TIERS:
        if avg > min_avg and peak > min_peak:
            return score
    return 0.1


def activity_ratios(history: Sequence[SignalSample], window: int = 10) -> Optional[Dict[str, float]]:
    """Confidence-weighted shares of driving / on-foot / still readings."""
    totals = {"driving": 0.0, "walking": 0.0, "still": 0.0}
    weight_sum = 0.0
    for s in _tail(history, window):
        activity = ActivityType.coerce(s.activity) if s.activity is not None else None
        if activity is None:
            continue
        tier = s.activity_confidence
        try:
            weight = ConfidenceTier(tier).weight if tier is not None else ConfidenceTier.MEDIUM.weight
        except ValueError:
            weight = ConfidenceTier.LOW.weight
        weight_sum += weight
        if activity is ActivityType.IN_VEHICLE:
            totals["driving"] += weight
        elif activity in ON_FOOT:
            totals["walking"] += weight
        elif activity is ActivityType.STILL:
            totals["still"] += weight
    if weight_sum <= 0:
        return None
    return {k: v / weight_sum for k, v in totals.items()}


def average_speed_ms(history: Sequence[SignalSample], window: int = 10) -> Optional[float]:
    speeds = [s.speed_kmh * KMH_TO_MS for s in _tail(history, window)
              if is_number(s.speed_kmh) and s.speed_kmh >= 0]
    return float(np.mean(speeds)) if speeds else None


def activity_score(history: Sequence[SignalSample], window: int = 10) -> Optional[float]:
    ratios = activity_ratios(history, window)
    if ratios is None:
        # No recognition data: speed stands in for the activity.
        avg = average_speed_ms(history, window)
        if avg is None:
            return None
        if avg > 8.0:
            return 0.7
        return 0.3 if avg > 3.0 else 0.1
    if ratios["driving"] > 0.6:
        return 0.9
    if ratios["driving"] > 0.3:
        return 0.7
    if ratios["walking"] > 0.6:
        return 0.2
    if ratios["still"] > 0.6:
        return 0.1
    return 0.5


def stability_score(history: Sequence[SignalSample], window: int = 20) -> Optional[float]:
    values = [s.motion_stability for s in _tail(history, window) if is_number(s.motion_stability)]
    if not values:
        avg = average_speed_ms(history, window)
        if avg is None:
            return None
        if avg > 10.0:
            return 0.8
        return 0.4 if avg > 3.0 else 0.2
    return min(1.0, max(0.0, float(np.mean(values))))


def telematics_score(history: Sequence[SignalSample]) -> Optional[float]:
    if not history or not is_number(history[-1].recent_event_count):
        return None
    count = history[-1].recent_event_count
    if count > 5:
        return 0.9
    if count > 2:
        return 0.8
    if count > 0:
        return 0.7
    return 0.3


def hour_score(timestamp: float) -> float:
    hour = datetime.fromtimestamp(timestamp, tz=timezone.utc).hour
    if 6 <= hour <= 9 or 17 <= hour <= 20:
        return 0.7
    if 10 <= hour <= 16:
        return 0.6
    if 21 <= hour <= 23:
        return 0.5
    return 0.3


def context_score(history: Sequence[SignalSample]) -> Optional[float]:
    if not history:
        return None
    latest = history[-1]
    if latest.context is not None:
        try:
            return CONTEXT_SCORES[DrivingContext(latest.context)]
        except ValueError:
            logger.debug(f"Unknown driving context {latest.context!r}, using hour of day")
    if not is_number(latest.timestamp):
        return None
    return hour_score(latest.timestamp)


def window_features(history: Sequence[SignalSample], window: int = 10) -> Optional[FeatureVector]:
    """Trip-level feature vector the ensemble votes on."""
    recent = _tail(history, window)
    speeds = [s.speed_kmh * KMH_TO_MS for s in recent if is_number(s.speed_kmh)]
    if not speeds:
        return None
    stabilities = [s.motion_stability for s in recent if is_number(s.motion_stability)]
    ratios = activity_ratios(history, window) or {"driving": 0.0}
    features = {
        "avg_speed": float(np.mean(speeds)),
        "max_speed": float(np.max(speeds)),
        "speed_variance": float(np.var(speeds)),
        "avg_stability": float(np.mean(stabilities)) if stabilities else NEUTRAL_SCORE,
        "driving_ratio": ratios["driving"],
    }
    return FeatureVector.from_mapping(features, WINDOW_FEATURE_NAMES)


class EnsembleVoter:
    """
    Adapts an EnsembleScorer into a detector signal. Any drive-core error
    (no models, schema mismatch, every model failing) is a neutral vote.
    """

    def __init__(self, ensemble: EnsembleScorer, statistics: Optional[StatisticsStore] = None,
                 window: int = 10):
        self.ensemble = ensemble
        self.statistics = statistics
        self.window = window

    def __call__(self, history: Sequence[SignalSample]) -> Optional[float]:
        vector = window_features(history, self.window)
        if vector is None:
            return None
        try:
            if self.statistics is not None and self.statistics.is_ready:
                stats, names = self.statistics.snapshot()
                if tuple(names) == vector.names:
                    vector = normalize(vector, stats)
            return self.ensemble.predict(vector).final_score
        except SentinelError as e:
            logger.debug(f"Ensemble vote unavailable: {e}")
            return None


class WeightedBlend:
    """
    Confidence = weighted mean of the algorithm scores present this tick,
    normalized by the weights of those algorithms only.
    """

    def __init__(self, weights: Mapping[str, float]):
        self.weights = dict(weights)

    def __call__(self, scores: Mapping[str, float]) -> float:
        total = 0.0
        blended = 0.0
        for name, score in scores.items():
            weight = self.weights.get(name, 0.0)
            total += weight
            blended += weight * score
        if total <= 0:
            return NEUTRAL_SCORE
        return min(1.0, max(0.0, blended / total))


Blend = Callable[[Mapping[str, float]], float]


def score_signals(history: Sequence[SignalSample], config,
                  voter: Optional[Callable[[Sequence[SignalSample]], Optional[float]]] = None
                  ) -> Dict[str, Optional[float]]:
    """Raw per-algorithm scores; None marks a signal with no usable data."""
    scores: Dict[str, Optional[float]] = {
        "speed": speed_score(history, config.speed_window, config.gps_accuracy_gate_m),
        "activity": activity_score(history, config.activity_window),
        "stability": stability_score(history, config.stability_window),
        "telematics": telematics_score(history),
        "context": context_score(history),
    }
    if voter is not None:
        scores["ml"] = voter(history)
    for name, value in scores.items():
        if value is not None and not math.isfinite(value):
            scores[name] = None
    return scores
