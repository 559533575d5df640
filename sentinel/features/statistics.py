"""
MODULE: FEATURE_STATISTICS
METHOD: Z-SCORE NORMALIZATION (CLAMPED)

DESCRIPTION:
    Computes per-feature mean / stddev / min / max over a training batch and
    normalizes feature vectors against them.

    The statistics are computed ONCE per batch and then reused for every
    single-sample normalization. The StatisticsStore holds the process-wide
    snapshot: created on the first batch, replaced only by an explicit
    load(), and swapped atomically so concurrent readers never observe a
    half-written schema.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from sentinel.errors import NotReady
from sentinel.models.samples import FeatureVector

logger = logging.getLogger("SENTINEL.FEATURES.STATS")

CLAMP_LIMIT = 5.0


@dataclass(frozen=True)
class FeatureStatistics:
    means: Mapping[str, float]
    stddevs: Mapping[str, float]
    minimums: Mapping[str, float]
    maximums: Mapping[str, float]

    @property
    def feature_names(self) -> Tuple[str, ...]:
        return tuple(sorted(self.means))

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        return {
            "means": dict(self.means),
            "stddevs": dict(self.stddevs),
            "minimums": dict(self.minimums),
            "maximums": dict(self.maximums),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Mapping[str, float]]) -> "FeatureStatistics":
        return cls(
            means={k: float(v) for k, v in data["means"].items()},
            stddevs={k: float(v) for k, v in data["stddevs"].items()},
            minimums={k: float(v) for k, v in data["minimums"].items()},
            maximums={k: float(v) for k, v in data["maximums"].items()},
        )


def compute_statistics(rows: Sequence[Mapping[str, float]],
                       names: Optional[Iterable[str]] = None) -> FeatureStatistics:
    """
    Population statistics per feature over the whole batch.
    Rows lacking a feature contribute 0.0 for it.
    """
    if names is None:
        names = sorted({key for row in rows for key in row})
    names = list(names)
    if not rows or not names:
        return FeatureStatistics({}, {}, {}, {})

    matrix = np.array([[float(row.get(n, 0.0)) for n in names] for row in rows], dtype=float)
    means = matrix.mean(axis=0)
    stds = matrix.std(axis=0)
    mins = matrix.min(axis=0)
    maxs = matrix.max(axis=0)

    logger.info(f"Statistics computed for {len(names)} features over {len(rows)} samples")
    return FeatureStatistics(
        means=dict(zip(names, means.tolist())),
        stddevs=dict(zip(names, stds.tolist())),
        minimums=dict(zip(names, mins.tolist())),
        maximums=dict(zip(names, maxs.tolist())),
    )


def normalize(vector: FeatureVector, statistics: FeatureStatistics) -> FeatureVector:
    """
    Z-score each value against the statistics, clamp to [-5, 5].
    A non-positive stddev (or a feature the statistics never saw) maps to 0.0.
    """
    out: List[float] = []
    for name, value in zip(vector.names, vector.values):
        std = statistics.stddevs.get(name, 0.0)
        if std > 0:
            z = (value - statistics.means.get(name, 0.0)) / std
            if not np.isfinite(z):
                z = 0.0
        else:
            z = 0.0
        out.append(float(min(CLAMP_LIMIT, max(-CLAMP_LIMIT, z))))
    return FeatureVector(tuple(out), vector.names)


class StatisticsStore:
    """
    Holder of the current (statistics, schema) snapshot.

    Writers swap a whole new tuple under the lock; readers grab the tuple
    reference, so they always see one consistent snapshot.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot: Optional[Tuple[FeatureStatistics, Tuple[str, ...]]] = None

    @property
    def is_ready(self) -> bool:
        return self._snapshot is not None

    def snapshot(self) -> Tuple[FeatureStatistics, Tuple[str, ...]]:
        snap = self._snapshot
        if snap is None:
            raise NotReady("Feature statistics have not been computed or loaded")
        return snap

    def ensure(self, rows: Sequence[Mapping[str, float]]) -> Tuple[FeatureStatistics, Tuple[str, ...]]:
        """
        Returns the existing snapshot, or computes it from this batch if none
        exists yet. The schema is the sorted union of every key in this
        batch and is frozen from then on.
        """
        with self._lock:
            if self._snapshot is None:
                names = tuple(sorted({key for row in rows for key in row}))
                stats = compute_statistics(rows, names)
                self._snapshot = (stats, names)
                logger.info(f"Feature schema frozen with {len(names)} features")
            return self._snapshot

    def load(self, statistics: FeatureStatistics):
        """Explicit replacement (e.g. statistics restored from the database)."""
        with self._lock:
            self._snapshot = (statistics, statistics.feature_names)
        logger.info(f"Statistics loaded with {len(statistics.feature_names)} features")

    def clear(self):
        with self._lock:
            self._snapshot = None
