"""
MODULE: ERROR_TAXONOMY

DESCRIPTION:
    Every condition the drive core reports to its callers.
    None of these are fatal to the background service; the orchestrator logs
    and survives them.
"""


class SentinelError(Exception):
    """Base class for all drive-core errors."""


class SchemaMismatch(SentinelError):
    """Feature vector length does not match the model's parameter length."""

    def __init__(self, expected: int, actual: int, model: str = ""):
        self.expected = expected
        self.actual = actual
        self.model = model
        where = f" ({model})" if model else ""
        super().__init__(f"Schema mismatch{where}: expected {expected} features, got {actual}")


class NotReady(SentinelError):
    """Normalization or inference attempted before statistics/models exist."""


class EmptyEnsemble(SentinelError):
    """Prediction requested from an ensemble with no registered models."""


class NoValidPredictions(SentinelError):
    """Every model in the ensemble failed for the given vector."""


class InvalidConfiguration(SentinelError):
    """Unknown strategy/algorithm name or an out-of-range setting."""


class TripFinalized(SentinelError):
    """Mutation attempted on a trip whose end time is already set."""
