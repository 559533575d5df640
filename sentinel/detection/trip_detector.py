"""
MODULE: HYBRID_TRIP_DETECTOR
CLASSIFICATION: STATE MACHINE (SEQUENTIAL, ONE SAMPLE PER TICK)

DESCRIPTION:
    Decides whether the user is driving by blending weak signals into one
    confidence value and walking a four-state machine:

        NOT_DRIVING --(conf >= start)--> STARTING_DRIVE
        STARTING_DRIVE --(held start_confirmation_s)--> DRIVING      [trip started]
        STARTING_DRIVE --(conf < start)--> NOT_DRIVING
        DRIVING --(conf <= end)--> STOPPING_DRIVE
        STOPPING_DRIVE --(conf > end)--> DRIVING
        STOPPING_DRIVE --(held stop_confirmation_s)--> NOT_DRIVING  [trip ended]

    Windows are measured on sample timestamps, not the wall clock, so a
    replayed stream produces the same trips as a live one.

    tick() is total: a failure inside one tick is logged and reported as a
    neutral result, the machine keeps its state. Listener callbacks go
    through the dispatcher and never run inside tick().
"""

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from sentinel.core.config import DetectionConfig
from sentinel.detection.signals import NEUTRAL_SCORE, Blend, WeightedBlend, score_signals
from sentinel.models.telemetry import (
    DrivingState,
    SignalSample,
    TelematicsEvent,
    Trip,
    haversine_km,
    is_number,
)
from sentinel.scoring.safety import SafetyScoreAccumulator

logger = logging.getLogger("SENTINEL.DETECT.TRIP")


@dataclass(frozen=True)
class AnalysisResult:
    timestamp: float
    state: DrivingState
    confidence: float
    scores: Mapping[str, float] = field(default_factory=dict)
    reasoning: str = ""
    should_start: bool = False
    should_end: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "state": self.state.value,
            "confidence": self.confidence,
            "scores": dict(self.scores),
            "reasoning": self.reasoning,
            "should_start": self.should_start,
            "should_end": self.should_end,
        }


class TripDetector:
    """
    One logical session. Not thread-safe: feed it from a single consumer.
    """

    def __init__(self, config: Optional[DetectionConfig] = None,
                 blend: Optional[Blend] = None,
                 voter: Optional[Callable[[Sequence[SignalSample]], Optional[float]]] = None,
                 dispatcher=None,
                 safety: Optional[SafetyScoreAccumulator] = None):
        self.config = config or DetectionConfig()
        self.config.validate()
        self.blend = blend or WeightedBlend(self.config.weights)
        self.voter = voter
        self.dispatcher = dispatcher
        self.safety = safety or SafetyScoreAccumulator()

        self.state = DrivingState.NOT_DRIVING
        self.current_trip: Optional[Trip] = None
        self.last_result: Optional[AnalysisResult] = None

        self._history: deque = deque(maxlen=self.config.history_size)
        self._state_since: Optional[float] = None
        self._anchor: Optional[SignalSample] = None
        self._last_sample: Optional[SignalSample] = None

        self._trip_started: List[Callable[[Trip], None]] = []
        self._trip_ended: List[Callable[[Trip], None]] = []
        self._analysis: List[Callable[[AnalysisResult], None]] = []

    # --- LISTENERS ---

    def subscribe(self, trip_started: Optional[Callable[[Trip], None]] = None,
                  trip_ended: Optional[Callable[[Trip], None]] = None,
                  analysis: Optional[Callable[[AnalysisResult], None]] = None):
        if trip_started:
            self._trip_started.append(trip_started)
        if trip_ended:
            self._trip_ended.append(trip_ended)
        if analysis:
            self._analysis.append(analysis)

    def _emit(self, listeners, payload):
        for listener in listeners:
            if self.dispatcher is not None:
                self.dispatcher.submit(listener, payload)
                continue
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Listener {getattr(listener, '__name__', listener)} failed: {e}")

    # --- TICK ---

    @property
    def sample_count(self) -> int:
        return len(self._history)

    def tick(self, sample: SignalSample) -> AnalysisResult:
        try:
            result = self._tick(sample)
        except Exception as e:
            logger.error(f"Tick failed, state kept at {self.state.value}: {e}", exc_info=True)
            ts = getattr(sample, "timestamp", None)
            result = AnalysisResult(
                timestamp=ts if is_number(ts) else time.time(),
                state=self.state,
                confidence=NEUTRAL_SCORE,
                reasoning=f"analysis unavailable: {e}",
            )
        self.last_result = result
        self._emit(self._analysis, result)
        return result

    def _tick(self, sample: SignalSample) -> AnalysisResult:
        if not isinstance(sample, SignalSample) or not is_number(sample.timestamp):
            raise ValueError(f"Malformed sample: {sample!r}")

        previous = self._last_sample
        if previous is not None and sample.timestamp < previous.timestamp:
            logger.warning(f"Out-of-order sample {sample.timestamp} < {previous.timestamp}")

        self._history.append(sample)
        history = list(self._history)

        raw = score_signals(history, self.config, self.voter)
        scores = {name: (NEUTRAL_SCORE if v is None else v) for name, v in raw.items()}
        missing = sorted(name for name, v in raw.items() if v is None)

        confidence = float(self.blend(scores))
        if not math.isfinite(confidence):
            confidence = NEUTRAL_SCORE
        confidence = min(1.0, max(0.0, confidence))

        if self.state is DrivingState.DRIVING and self.current_trip is not None:
            self._accumulate(previous, sample)
        self._last_sample = sample

        transition = self._advance(sample, confidence)

        return AnalysisResult(
            timestamp=sample.timestamp,
            state=self.state,
            confidence=confidence,
            scores=scores,
            reasoning=self._reasoning(confidence, scores, missing, transition),
            should_start=transition == "trip started",
            should_end=transition == "trip ended",
        )

    def _accumulate(self, previous: Optional[SignalSample], sample: SignalSample):
        trip = self.current_trip
        if is_number(sample.speed_kmh):
            trip.observe_speed(sample.speed_kmh)
        if previous is None:
            return
        if sample.has_fix and previous.has_fix:
            trip.add_distance(haversine_km(previous.latitude, previous.longitude,
                                           sample.latitude, sample.longitude))
        elif is_number(sample.speed_kmh):
            dt = sample.timestamp - previous.timestamp
            if dt > 0:
                trip.add_distance(sample.speed_kmh * dt / 3600.0)

    def _enter(self, state: DrivingState, sample: SignalSample):
        logger.info(f"{self.state.value} -> {state.value}")
        self.state = state
        self._state_since = sample.timestamp
        self._anchor = sample

    def _advance(self, sample: SignalSample, confidence: float) -> Optional[str]:
        cfg = self.config
        now = sample.timestamp
        if len(self._history) < cfg.min_samples:
            return None

        if self.state is DrivingState.NOT_DRIVING:
            if confidence >= cfg.start_threshold:
                self._enter(DrivingState.STARTING_DRIVE, sample)
                return "possible start"

        elif self.state is DrivingState.STARTING_DRIVE:
            if confidence < cfg.start_threshold:
                self._enter(DrivingState.NOT_DRIVING, sample)
                return "false start"
            if now - self._state_since >= cfg.start_confirmation_s:
                anchor = self._anchor
                self._open_trip(anchor)
                self.state = DrivingState.DRIVING
                self._state_since = now
                return "trip started"

        elif self.state is DrivingState.DRIVING:
            if confidence <= cfg.end_threshold:
                self._enter(DrivingState.STOPPING_DRIVE, sample)
                return "possible stop"

        elif self.state is DrivingState.STOPPING_DRIVE:
            if confidence > cfg.end_threshold:
                self._enter(DrivingState.DRIVING, sample)
                return "drive resumed"
            if now - self._state_since >= cfg.stop_confirmation_s:
                self._close_trip(self._state_since, self._anchor)
                self._enter(DrivingState.NOT_DRIVING, sample)
                return "trip ended"
        return None

    def _open_trip(self, anchor: SignalSample):
        trip = Trip(start_time=anchor.timestamp)
        if anchor.has_fix:
            trip.start_latitude, trip.start_longitude = anchor.latitude, anchor.longitude
        trip.safety_score = self.safety.reset()
        self.current_trip = trip
        logger.info(f"Trip {trip.trip_id} started at {trip.start_time}")
        self._emit(self._trip_started, trip)

    def _close_trip(self, end_time: float, anchor: Optional[SignalSample]) -> Optional[Trip]:
        trip = self.current_trip
        if trip is None:
            return None
        lat = anchor.latitude if anchor is not None and anchor.has_fix else None
        lon = anchor.longitude if anchor is not None and anchor.has_fix else None
        trip.finalize(end_time, lat, lon)
        self.current_trip = None
        logger.info(f"Trip {trip.trip_id} ended: {trip.distance_km:.2f} km, "
                    f"max {trip.max_speed_kmh:.0f} km/h, score {trip.safety_score:.0f}")
        self._emit(self._trip_ended, trip)
        return trip

    def _reasoning(self, confidence: float, scores: Mapping[str, float],
                   missing: Sequence[str], transition: Optional[str]) -> str:
        parts = ", ".join(f"{name} {value:.2f}" for name, value in scores.items())
        text = f"{self.state.value}: confidence {confidence:.2f} ({parts})"
        if missing:
            text += f"; no data for {', '.join(missing)}"
        if len(self._history) < self.config.min_samples:
            text += f"; warming up {len(self._history)}/{self.config.min_samples}"
        if transition:
            text += f"; {transition}"
        return text

    # --- EVENTS & LIFECYCLE ---

    def on_event(self, event: TelematicsEvent) -> Optional[float]:
        """Penalizes the open trip. Events outside DRIVING are ignored."""
        if self.state is not DrivingState.DRIVING or self.current_trip is None:
            logger.debug(f"Ignoring {event.event_type.value} while {self.state.value}")
            return None
        score = self.safety.on_event(event)
        self.current_trip.record_event(event, score)
        return score

    def stop(self, timestamp: Optional[float] = None) -> Optional[Trip]:
        """Seals any open trip and parks the machine in NOT_DRIVING."""
        trip = None
        if self.current_trip is not None:
            if self.state is DrivingState.STOPPING_DRIVE:
                end_time = self._state_since
            elif timestamp is not None:
                end_time = timestamp
            elif self._last_sample is not None:
                end_time = self._last_sample.timestamp
            else:
                end_time = time.time()
            trip = self._close_trip(end_time, self._last_sample)
        self.state = DrivingState.NOT_DRIVING
        self._state_since = None
        self._anchor = None
        return trip
