"""
Silo Monitor - Thresholds Configuration
Typed, immutable thresholds document with deep-merge updates and validation.

The aggregation service owns the document. Edge agents hold a cached copy.
Updates never mutate a document in place: a publish builds a new snapshot
and swaps it in atomically.
"""

import json
import logging
import math
import os
import threading
import typing
from dataclasses import dataclass, field, fields, is_dataclass, replace
from typing import Any, Dict, List, Optional

from silo_errors import ConfigValidationError

logger = logging.getLogger(__name__)


# ============================================================================
# DOCUMENT SECTIONS
# ============================================================================

@dataclass(frozen=True)
class RangeThresholds:
    """Ideal / warning / critical bounds for one metric."""
    ideal_min: float
    ideal_max: float
    warning_min: float
    warning_max: float
    critical_min: float
    critical_max: float
    unit: str = ""


@dataclass(frozen=True)
class AirQualityThresholds:
    good: float = 150.0
    moderate: float = 300.0
    poor: float = 500.0
    very_poor: float = 600.0
    unit: str = "MQ135"


@dataclass(frozen=True)
class RiskTiers:
    """Ascending spoilage-risk classification cut points (percent)."""
    low: float = 20.0
    medium: float = 40.0
    high: float = 70.0
    critical: float = 85.0
    unit: str = "%"


@dataclass(frozen=True)
class CondensationThresholds:
    dew_point_difference: float = 2.0
    unit: str = "°C"


def _default_temperature() -> RangeThresholds:
    return RangeThresholds(
        ideal_min=4.0, ideal_max=8.0,
        warning_min=3.0, warning_max=12.0,
        critical_min=2.0, critical_max=15.0,
        unit="°C",
    )


def _default_humidity() -> RangeThresholds:
    return RangeThresholds(
        ideal_min=90.0, ideal_max=95.0,
        warning_min=85.0, warning_max=98.0,
        critical_min=80.0, critical_max=100.0,
        unit="%",
    )


@dataclass(frozen=True)
class Thresholds:
    temperature: RangeThresholds = field(default_factory=_default_temperature)
    humidity: RangeThresholds = field(default_factory=_default_humidity)
    air_quality: AirQualityThresholds = field(default_factory=AirQualityThresholds)
    spoilage_risk: RiskTiers = field(default_factory=RiskTiers)
    condensation: CondensationThresholds = field(default_factory=CondensationThresholds)


@dataclass(frozen=True)
class AlertSettings:
    buzzer_enabled: bool = False
    buzzer_duration: int = 1000           # ms, one full on/off cycle
    critical_risk_threshold: float = 70.0  # alarm trigger
    clear_risk_threshold: float = 50.0     # alarm clear, below the trigger
    mute_after_acknowledge: bool = False
    sound_pattern: str = "pulsing"


@dataclass(frozen=True)
class DataCollectionSettings:
    sample_interval: int = 30000
    auto_refresh_interval: int = 5000
    data_retention_days: int = 30
    history_size: int = 10
    unit: str = "milliseconds"


@dataclass(frozen=True)
class TrendDetectionSettings:
    rising_rapidly_threshold: float = 1.0
    rising_threshold: float = 0.3
    falling_rapidly_threshold: float = -1.0
    falling_threshold: float = -0.3
    minimum_data_points: int = 3


@dataclass(frozen=True)
class ConfidenceThresholds:
    high: float = 70.0
    medium: float = 40.0
    low: float = 0.0


@dataclass(frozen=True)
class PredictionSettings:
    minimum_data_points: int = 5
    horizon_samples: int = 6
    confidence_thresholds: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)
    time_to_critical_enabled: bool = True


@dataclass(frozen=True)
class PatternSettings:
    spike_threshold: float = 0.15
    acceleration_multiplier: float = 1.5


@dataclass(frozen=True)
class AnalyticsSettings:
    trend_detection: TrendDetectionSettings = field(default_factory=TrendDetectionSettings)
    predictions: PredictionSettings = field(default_factory=PredictionSettings)
    patterns: PatternSettings = field(default_factory=PatternSettings)


@dataclass(frozen=True)
class ThresholdsConfiguration:
    """The complete versioned configuration document."""
    thresholds: Thresholds = field(default_factory=Thresholds)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    data_collection: DataCollectionSettings = field(default_factory=DataCollectionSettings)
    analytics: AnalyticsSettings = field(default_factory=AnalyticsSettings)
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase JSON document shape."""
        return _section_to_dict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThresholdsConfiguration":
        """
        Build a configuration from a (possibly partial) document.
        Absent keys keep their defaults.

        Raises:
            ConfigValidationError: listing every structural problem and every
                violated invariant found in the document.
        """
        errors: List[str] = []
        config = _section_from_dict(cls(), data, "", errors)
        errors.extend(validate_config(config))
        if errors:
            raise ConfigValidationError(errors)
        return config

    @classmethod
    def from_json(cls, text: str) -> "ThresholdsConfiguration":
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ConfigValidationError([f"Configuration is not valid JSON: {e}"])
        return cls.from_dict(data)


def default_config() -> ThresholdsConfiguration:
    return ThresholdsConfiguration()


# ============================================================================
# SERIALIZATION HELPERS
# ============================================================================

def _camel(name: str) -> str:
    first, *rest = name.split("_")
    return first + "".join(part.title() for part in rest)


def _section_to_dict(section) -> Dict[str, Any]:
    output = {}
    for f in fields(section):
        value = getattr(section, f.name)
        output[_camel(f.name)] = _section_to_dict(value) if is_dataclass(value) else value
    return output


def _is_number(value) -> bool:
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value))


def _section_from_dict(default, data, path: str, errors: List[str]):
    """
    Overlay a document section onto its default instance.
    Problems are recorded in errors and the offending field keeps its default.
    """
    if not isinstance(data, dict):
        errors.append(f"{path or 'configuration'} must be an object")
        return default

    cls = type(default)
    known = {_camel(f.name): f for f in fields(cls)}
    for key in data:
        if key not in known:
            errors.append(f"Unknown configuration key: {_join(path, key)}")

    hints = typing.get_type_hints(cls)
    changes = {}
    for key, f in known.items():
        if key not in data:
            continue
        value = data[key]
        kind = hints[f.name]
        where = _join(path, key)

        if is_dataclass(kind):
            changes[f.name] = _section_from_dict(getattr(default, f.name), value, where, errors)
        elif kind is bool:
            if isinstance(value, bool):
                changes[f.name] = value
            else:
                errors.append(f"{where} must be true or false")
        elif kind in (int, float):
            if not _is_number(value):
                errors.append(f"{where} must be a number")
            elif kind is int and value != int(value):
                errors.append(f"{where} must be a whole number")
            else:
                changes[f.name] = kind(value)
        elif kind is str:
            if isinstance(value, str):
                changes[f.name] = value
            else:
                errors.append(f"{where} must be a string")

    return replace(default, **changes)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge source into a copy of target.
    Nested objects merge key by key; any other provided value overrides.
    """
    output = dict(target)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            output[key] = deep_merge(target[key], value)
        else:
            output[key] = value
    return output


# ============================================================================
# VALIDATION
# ============================================================================

def _check_range(name: str, r: RangeThresholds, errors: List[str]):
    if r.ideal_min >= r.ideal_max:
        errors.append(f"{name} idealMin must be less than idealMax")
    if r.warning_min >= r.warning_max:
        errors.append(f"{name} warningMin must be less than warningMax")
    if r.critical_min >= r.critical_max:
        errors.append(f"{name} criticalMin must be less than criticalMax")


def _strictly_ascending(values) -> bool:
    return all(a < b for a, b in zip(values, values[1:]))


def validate_config(config: ThresholdsConfiguration) -> List[str]:
    """Return every violated invariant; an empty list means valid."""
    errors: List[str] = []
    t = config.thresholds

    _check_range("Temperature", t.temperature, errors)
    _check_range("Humidity", t.humidity, errors)

    h = t.humidity
    humidity_bounds = [h.ideal_min, h.ideal_max, h.warning_min, h.warning_max, h.critical_min, h.critical_max]
    if any(v < 0 or v > 100 for v in humidity_bounds):
        errors.append("Humidity values must be between 0 and 100")

    aq = t.air_quality
    if not _strictly_ascending([aq.good, aq.moderate, aq.poor, aq.very_poor]):
        errors.append("Air quality thresholds must be in ascending order")

    tiers = t.spoilage_risk
    tier_values = [tiers.low, tiers.medium, tiers.high, tiers.critical]
    if not _strictly_ascending(tier_values):
        errors.append("Spoilage risk thresholds must be in ascending order")
    if any(v < 0 or v > 100 for v in tier_values):
        errors.append("Spoilage risk thresholds must be between 0 and 100")

    if t.condensation.dew_point_difference < 0:
        errors.append("Dew point difference must not be negative")

    alerts = config.alerts
    if alerts.buzzer_duration <= 0:
        errors.append("Buzzer duration must be positive")
    if not 0 <= alerts.critical_risk_threshold <= 100:
        errors.append("Critical risk threshold must be between 0 and 100")
    if not 0 <= alerts.clear_risk_threshold <= 100:
        errors.append("Clear risk threshold must be between 0 and 100")
    if alerts.clear_risk_threshold >= alerts.critical_risk_threshold:
        errors.append("Clear risk threshold must be less than critical risk threshold")

    dc = config.data_collection
    if dc.sample_interval < 1000:
        errors.append("Sample interval must be at least 1000ms")
    if dc.auto_refresh_interval < 1000:
        errors.append("Auto refresh interval must be at least 1000ms")
    if dc.data_retention_days < 1:
        errors.append("Data retention must be at least 1 day")
    if dc.history_size < 1:
        errors.append("History size must be at least 1")

    td = config.analytics.trend_detection
    if not (td.rising_rapidly_threshold > td.rising_threshold >= 0
            >= td.falling_threshold > td.falling_rapidly_threshold):
        errors.append("Trend detection thresholds must be symmetric bands around zero")
    if td.minimum_data_points < 2:
        errors.append("Trend detection needs at least 2 data points")

    pred = config.analytics.predictions
    if pred.minimum_data_points < 2:
        errors.append("Predictions need at least 2 data points")
    if pred.horizon_samples < 1:
        errors.append("Prediction horizon must be at least 1 sample")
    ct = pred.confidence_thresholds
    if not ct.high > ct.medium >= ct.low:
        errors.append("Confidence thresholds must be in ascending order")

    patterns = config.analytics.patterns
    if patterns.spike_threshold < 0:
        errors.append("Spike threshold must not be negative")
    if patterns.acceleration_multiplier <= 0:
        errors.append("Acceleration multiplier must be positive")

    if config.version < 1:
        errors.append("Configuration version must be at least 1")

    return errors


# ============================================================================
# CONFIGURATION STORE
# ============================================================================

class ConfigStore:
    """
    Single owner of the current configuration.

    Readers take `current` once per evaluation and work on that snapshot.
    Publishing builds a new document and swaps the reference under a lock,
    so no reader ever observes a partially merged configuration.
    """

    def __init__(self, path: Optional[str] = None, initial: Optional[ThresholdsConfiguration] = None):
        self.path = path
        self._lock = threading.Lock()
        self._current = initial or default_config()

    @property
    def current(self) -> ThresholdsConfiguration:
        return self._current

    def fetch(self) -> ThresholdsConfiguration:
        return self._current

    def load(self) -> ThresholdsConfiguration:
        """Load the document from disk, falling back to defaults."""
        if not self.path or not os.path.exists(self.path):
            logger.warning("No configuration file at %s, using defaults", self.path)
            return self._current
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                config = ThresholdsConfiguration.from_json(f.read())
        except (OSError, ConfigValidationError) as e:
            logger.error("Error loading configuration: %s", e)
            logger.warning("Using default configuration")
            config = default_config()
        with self._lock:
            self._current = config
        logger.info("Configuration loaded (version %d)", config.version)
        return config

    def publish(self, updates: Dict[str, Any]) -> ThresholdsConfiguration:
        """
        Deep-merge a partial update into the current document and apply it.

        Raises:
            ConfigValidationError: the merged document is rejected and the
                prior configuration stays in effect.
            OSError: the document could not be persisted.
        """
        if not isinstance(updates, dict):
            raise ConfigValidationError(["Configuration update must be an object"])
        with self._lock:
            merged = deep_merge(self._current.to_dict(), updates)
            merged["version"] = self._current.version + 1
            candidate = ThresholdsConfiguration.from_dict(merged)
            self._save(candidate)
            self._current = candidate
        logger.info("Configuration updated to version %d", candidate.version)
        return candidate

    def reset(self) -> ThresholdsConfiguration:
        """Replace the document with the defaults."""
        with self._lock:
            candidate = ThresholdsConfiguration(version=self._current.version + 1)
            self._save(candidate)
            self._current = candidate
        logger.info("Configuration reset to defaults (version %d)", candidate.version)
        return candidate

    def _save(self, config: ThresholdsConfiguration):
        if not self.path:
            return
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(config.to_json())
        os.replace(tmp_path, self.path)
