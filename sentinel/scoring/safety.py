"""
MODULE: SAFETY_SCORE_ACCUMULATOR

DESCRIPTION:
    Per-trip 0..100 driving score. Every telematics event subtracts a fixed
    penalty for its type; events the upstream detector was unsure about
    (confidence < 0.6) cost half. The score never rises within a trip and
    never drops below zero.
"""

import logging
from typing import Dict, Mapping, Optional

from sentinel.models.telemetry import TelematicsEvent, TelematicsEventType

logger = logging.getLogger("SENTINEL.SCORING.SAFETY")

MAX_SCORE = 100.0
LOW_CONFIDENCE = 0.6

PENALTIES: Dict[TelematicsEventType, float] = {
    TelematicsEventType.HARD_BRAKING: 5.0,
    TelematicsEventType.RAPID_ACCELERATION: 4.0,
    TelematicsEventType.SHARP_TURN: 3.0,
    TelematicsEventType.SPEEDING: 8.0,
    TelematicsEventType.HIGH_G_FORCE: 10.0,
    TelematicsEventType.IDLING: 1.0,
    TelematicsEventType.PHONE_USAGE: 10.0,
}


def penalty_for(event: TelematicsEvent, table: Mapping[TelematicsEventType, float] = PENALTIES) -> float:
    penalty = table.get(event.event_type, 0.0)
    if event.confidence is not None and event.confidence < LOW_CONFIDENCE:
        penalty *= 0.5
    return penalty


class SafetyScoreAccumulator:

    def __init__(self, penalties: Optional[Mapping[TelematicsEventType, float]] = None):
        self.penalties = dict(penalties or PENALTIES)
        self.score = MAX_SCORE
        self.counts: Dict[TelematicsEventType, int] = {}

    def on_event(self, event: TelematicsEvent) -> float:
        penalty = penalty_for(event, self.penalties)
        self.score = max(0.0, self.score - penalty)
        self.counts[event.event_type] = self.counts.get(event.event_type, 0) + 1
        logger.debug(f"{event.event_type.value}: -{penalty:.1f} -> {self.score:.1f}")
        return self.score

    def reset(self) -> float:
        self.score = MAX_SCORE
        self.counts = {}
        return self.score

    @property
    def event_count(self) -> int:
        return sum(self.counts.values())
