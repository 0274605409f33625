"""
Silo Monitor - Trend Analysis
History window, slope estimation, trend classification and pattern detection.

Slope estimation is shared by the edge agent and the aggregation service:
both use the least-squares slope of value against sample index.
"""

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Sequence, Tuple

import numpy as np

from risk_scorer import Reading
from thresholds import Thresholds, TrendDetectionSettings


# ============================================================================
# HISTORY WINDOW
# ============================================================================

class HistoryWindow:
    """
    Bounded, ordered window of the most recent readings (oldest first).

    Appending past capacity evicts the oldest reading. The edge agent keeps
    one as a ring buffer; the aggregation service fills one from a query.
    Evaluations work on snapshot(), never on the live window.
    """

    def __init__(self, capacity: int, readings: Iterable[Reading] = ()):
        if capacity < 1:
            raise ValueError("History window capacity must be at least 1")
        self._readings = deque(readings, maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._readings.maxlen

    def append(self, reading: Reading):
        self._readings.append(reading)

    def snapshot(self) -> Tuple[Reading, ...]:
        return tuple(self._readings)

    def latest(self) -> Reading:
        return self._readings[-1]

    def resize(self, capacity: int):
        """Change capacity, keeping the newest readings."""
        if capacity != self.capacity:
            self._readings = deque(self._readings, maxlen=capacity)

    def __len__(self):
        return len(self._readings)

    def __iter__(self):
        return iter(self.snapshot())


def series(readings: Sequence[Reading], attribute: str) -> List[float]:
    """Extract one metric from a window snapshot, oldest first."""
    return [float(getattr(r, attribute) or 0.0) for r in readings]


def last_change(values: Sequence[float]) -> float:
    """Change between the two most recent values."""
    if len(values) < 2:
        return 0.0
    return values[-1] - values[-2]


# ============================================================================
# TREND CLASSIFICATION
# ============================================================================

class TrendLabel(Enum):
    RISING_RAPIDLY = "RISING_RAPIDLY"
    RISING = "RISING"
    STABLE = "STABLE"
    FALLING = "FALLING"
    FALLING_RAPIDLY = "FALLING_RAPIDLY"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"

    @property
    def is_rising(self) -> bool:
        return self in (TrendLabel.RISING, TrendLabel.RISING_RAPIDLY)

    @property
    def is_clear(self) -> bool:
        """A definite direction, neither stable nor undetermined."""
        return self not in (TrendLabel.STABLE, TrendLabel.INSUFFICIENT_DATA)


def estimate_slope(values: Sequence[float]) -> float:
    """Ordinary least-squares slope of value against sample index."""
    if len(values) < 2:
        return 0.0
    x = np.arange(len(values), dtype=float)
    slope, _intercept = np.polyfit(x, np.asarray(values, dtype=float), 1)
    return float(slope)


def half_mean_delta(values: Sequence[float]) -> float:
    """Mean of the second half minus mean of the first half."""
    if len(values) < 2:
        return 0.0
    middle = len(values) // 2
    return float(np.mean(values[middle:]) - np.mean(values[:middle]))


def label_for_slope(slope: float, settings: TrendDetectionSettings = TrendDetectionSettings()) -> TrendLabel:
    if slope > settings.rising_rapidly_threshold:
        return TrendLabel.RISING_RAPIDLY
    if slope > settings.rising_threshold:
        return TrendLabel.RISING
    if slope < settings.falling_rapidly_threshold:
        return TrendLabel.FALLING_RAPIDLY
    if slope < settings.falling_threshold:
        return TrendLabel.FALLING
    return TrendLabel.STABLE


def classify_trend(values: Sequence[float],
                   settings: TrendDetectionSettings = TrendDetectionSettings()) -> TrendLabel:
    """Label the direction of a series; short series are INSUFFICIENT_DATA."""
    if len(values) < settings.minimum_data_points:
        return TrendLabel.INSUFFICIENT_DATA
    return label_for_slope(estimate_slope(values), settings)


@dataclass(frozen=True)
class TrendResult:
    label: TrendLabel
    slope: float
    change: float
    explanation: str

    def to_dict(self):
        return {
            'value': self.label.value,
            'slope': round(self.slope, 3),
            'change': round(self.change, 3),
            'explanation': self.explanation,
        }


_DIRECTION = {
    TrendLabel.RISING_RAPIDLY: "rising rapidly",
    TrendLabel.RISING: "slowly rising",
    TrendLabel.FALLING_RAPIDLY: "falling rapidly",
    TrendLabel.FALLING: "slowly falling",
    TrendLabel.STABLE: "stable",
    TrendLabel.INSUFFICIENT_DATA: "undetermined",
}

_RISK_DIRECTION = {
    TrendLabel.RISING_RAPIDLY: "increasing rapidly",
    TrendLabel.RISING: "slowly increasing",
    TrendLabel.FALLING_RAPIDLY: "decreasing rapidly",
    TrendLabel.FALLING: "slowly decreasing",
    TrendLabel.STABLE: "stable",
    TrendLabel.INSUFFICIENT_DATA: "undetermined",
}

# A rising gas reading means the air is getting worse
_AIR_DIRECTION = {
    TrendLabel.RISING_RAPIDLY: "declining rapidly",
    TrendLabel.RISING: "slowly declining",
    TrendLabel.FALLING_RAPIDLY: "improving rapidly",
    TrendLabel.FALLING: "slowly improving",
    TrendLabel.STABLE: "stable",
    TrendLabel.INSUFFICIENT_DATA: "undetermined",
}


def _direction(subject: str, phrases: dict, label: TrendLabel, change: float, unit: str) -> str:
    text = f"{subject} {phrases[label]}"
    if label in (TrendLabel.RISING_RAPIDLY, TrendLabel.FALLING_RAPIDLY) and unit:
        text += f" ({change:+.1f}{unit} per reading)"
    return text + ". "


def explain_temperature(label: TrendLabel, change: float, current: float, thresholds: Thresholds) -> str:
    t = thresholds.temperature
    ideal = f"({t.ideal_min:g}-{t.ideal_max:g}°C)"
    text = _direction("Temperature", _DIRECTION, label, change, "°C")
    if current > t.warning_max:
        return text + f"Current {current:.1f}°C is ABOVE ideal storage range {ideal}."
    if current < t.ideal_min:
        return text + f"Current {current:.1f}°C is BELOW ideal storage range {ideal}."
    return text + f"Current {current:.1f}°C is within ideal storage range {ideal}."


def explain_humidity(label: TrendLabel, change: float, current: float, thresholds: Thresholds) -> str:
    h = thresholds.humidity
    ideal = f"({h.ideal_min:g}-{h.ideal_max:g}%)"
    text = _direction("Humidity", _DIRECTION, label, change, "%")
    if current < h.warning_min:
        return text + f"Current {current:.1f}% is BELOW ideal storage humidity {ideal}."
    if current > h.ideal_max:
        return text + f"Current {current:.1f}% is ABOVE ideal storage humidity {ideal}."
    return text + f"Current {current:.1f}% is within ideal storage humidity range."


def explain_risk(label: TrendLabel, change: float, current: float, thresholds: Thresholds) -> str:
    tiers = thresholds.spoilage_risk
    text = _direction("Risk", _RISK_DIRECTION, label, change, "%")
    if current > tiers.high:
        return text + f"Current risk {current:.1f}% is CRITICAL. Immediate action needed."
    if current > tiers.medium:
        return text + f"Current risk {current:.1f}% is ELEVATED. Monitor closely."
    return text + f"Current risk {current:.1f}% is ACCEPTABLE."


def explain_air_quality(label: TrendLabel, change: float, current: float, thresholds: Thresholds) -> str:
    aq = thresholds.air_quality
    text = _direction("Air quality", _AIR_DIRECTION, label, change, "")
    if current > aq.poor:
        quality = "VERY POOR"
    elif current > aq.moderate:
        quality = "POOR"
    elif current > aq.good:
        quality = "MODERATE"
    else:
        quality = "GOOD"
    return text + f"Gas reading {current:.0f} indicates {quality} air quality."


def analyze_trend(values: Sequence[float], explain, thresholds: Thresholds,
                  settings: TrendDetectionSettings = TrendDetectionSettings()) -> TrendResult:
    """Classify a series and explain it against the latest value."""
    label = classify_trend(values, settings)
    slope = estimate_slope(values)
    change = last_change(values)
    current = values[-1] if values else 0.0
    return TrendResult(label=label, slope=slope, change=change,
                       explanation=explain(label, change, current, thresholds))


# ============================================================================
# PATTERN DETECTION
# ============================================================================

@dataclass(frozen=True)
class PatternResult:
    detected: bool
    explanation: str

    def to_dict(self):
        return {'detected': self.detected, 'explanation': self.explanation}


def detect_spike(values: Sequence[float], threshold: float = 0.15) -> bool:
    """Mean of the last 3 samples moved by more than threshold x the 3 before."""
    if len(values) < 6:
        return False
    before = float(np.mean(values[-6:-3]))
    recent = float(np.mean(values[-3:]))
    return abs(recent - before) > threshold * before


def detect_accelerating_trend(values: Sequence[float], multiplier: float = 1.5) -> bool:
    """The second half of the series moves faster than the first half."""
    if len(values) < 4:
        return False
    middle = len(values) // 2
    first = half_mean_delta(values[:middle])
    second = half_mean_delta(values[middle:])
    return abs(second) > multiplier * abs(first)


def detect_gas_decline(values: Sequence[float], poor_threshold: float) -> bool:
    """Enough history and the latest gas reading is in the poor band."""
    return len(values) >= 4 and values[-1] > poor_threshold
