"""
MODULE: CONFIGURATION_LOADER

DESCRIPTION:
    Reads config/settings.yaml into typed sections. Every key is optional;
    a missing file yields the defaults below. Values that would make the
    detector or dispatcher misbehave (negative windows, inverted thresholds,
    unknown strategy) are rejected with InvalidConfiguration at load time.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

import yaml

from sentinel.ai.ensemble import EnsembleStrategy
from sentinel.errors import InvalidConfiguration

logger = logging.getLogger("SENTINEL.CONFIG")

BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
DEFAULT_CONFIG_PATH = os.path.join(BASE_DIR, "config", "settings.yaml")

DEFAULT_WEIGHTS = {
    "speed": 0.30,
    "activity": 0.20,
    "stability": 0.15,
    "telematics": 0.15,
    "context": 0.15,
    "ml": 0.05,
}


@dataclass
class DatabaseConfig:
    path: str = os.path.join("data", "sentinel.db")


@dataclass
class LoggingConfig:
    dir: str = os.path.join("data", "logs")
    level: str = "INFO"

    def validate(self):
        if not isinstance(logging.getLevelName(str(self.level).upper()), int):
            raise InvalidConfiguration(f"Unknown log level: {self.level!r}")


@dataclass
class DetectionConfig:
    start_threshold: float = 0.6
    end_threshold: float = 0.4
    start_confirmation_s: float = 30.0
    stop_confirmation_s: float = 60.0
    history_size: int = 50
    min_samples: int = 5
    speed_window: int = 10
    activity_window: int = 10
    stability_window: int = 20
    gps_accuracy_gate_m: float = 50.0
    use_ml: bool = True
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))

    def validate(self):
        for name in ("start_threshold", "end_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise InvalidConfiguration(f"detection.{name} must be within [0, 1], got {value}")
        if self.end_threshold > self.start_threshold:
            raise InvalidConfiguration("detection.end_threshold cannot exceed start_threshold")
        for name in ("start_confirmation_s", "stop_confirmation_s", "gps_accuracy_gate_m"):
            if getattr(self, name) < 0:
                raise InvalidConfiguration(f"detection.{name} cannot be negative")
        for name in ("history_size", "min_samples", "speed_window", "activity_window", "stability_window"):
            if getattr(self, name) < 1:
                raise InvalidConfiguration(f"detection.{name} must be at least 1")
        for algorithm, weight in self.weights.items():
            if weight < 0:
                raise InvalidConfiguration(f"detection.weights.{algorithm} cannot be negative")


@dataclass
class EnsembleConfig:
    strategy: EnsembleStrategy = EnsembleStrategy.ADAPTIVE

    def validate(self):
        self.strategy = EnsembleStrategy.parse(self.strategy)


@dataclass
class DispatcherConfig:
    high_water_mark: int = 1000

    def validate(self):
        if self.high_water_mark < 1:
            raise InvalidConfiguration("dispatcher.high_water_mark must be at least 1")


@dataclass
class EventsConfig:
    window_s: float = 300.0

    def validate(self):
        if self.window_s < 0:
            raise InvalidConfiguration("events.window_s cannot be negative")


@dataclass
class LearningConfig:
    collect_samples: bool = True
    auto_train: bool = True
    min_samples: int = 100
    retrain_every: int = 50

    def validate(self):
        for name in ("min_samples", "retrain_every"):
            if getattr(self, name) < 1:
                raise InvalidConfiguration(f"learning.{name} must be at least 1")


@dataclass
class SentinelConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    ensemble: EnsembleConfig = field(default_factory=EnsembleConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)

    def validate(self) -> "SentinelConfig":
        for f in fields(self):
            section = getattr(self, f.name)
            if hasattr(section, "validate"):
                section.validate()
        return self


def _build_section(cls, name: str, raw: Any):
    if raw is None:
        return cls()
    if not isinstance(raw, Mapping):
        raise InvalidConfiguration(f"Section '{name}' must be a mapping")

    known = {f.name: f for f in fields(cls)}
    unknown = set(raw) - set(known)
    if unknown:
        raise InvalidConfiguration(f"Unknown keys in '{name}': {sorted(unknown)}")

    values = {}
    for key, value in raw.items():
        default = getattr(cls(), key)
        try:
            if key == "weights":
                merged = dict(default)
                merged.update({str(k): float(v) for k, v in (value or {}).items()})
                value = merged
            elif isinstance(default, bool):
                value = bool(value)
            elif isinstance(default, int):
                value = int(value)
            elif isinstance(default, float):
                value = float(value)
        except (TypeError, ValueError):
            raise InvalidConfiguration(f"Invalid value for {name}.{key}: {value!r}") from None
        values[key] = value
    return cls(**values)


def config_from_dict(data: Optional[Mapping[str, Any]]) -> SentinelConfig:
    data = data or {}
    if not isinstance(data, Mapping):
        raise InvalidConfiguration("Configuration root must be a mapping")

    sections = {f.name: f.default_factory for f in fields(SentinelConfig)}
    unknown = set(data) - set(sections)
    if unknown:
        raise InvalidConfiguration(f"Unknown configuration sections: {sorted(unknown)}")

    config = SentinelConfig(**{
        name: _build_section(factory, name, data.get(name))
        for name, factory in sections.items()
    })
    return config.validate()


def load_config(path: Optional[str] = None) -> SentinelConfig:
    path = path or DEFAULT_CONFIG_PATH
    if not os.path.exists(path):
        logger.warning(f"Config {path} not found, using defaults")
        return SentinelConfig().validate()

    with open(path, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InvalidConfiguration(f"Unreadable config {path}: {e}") from e
    logger.info(f"Configuration loaded from {path}")
    return config_from_dict(data)
