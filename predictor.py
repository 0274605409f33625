"""
Silo Monitor - Predictions & Recommendations
Risk extrapolation, confidence scoring, prioritized recommendations and the
per-device analytics document built from a window snapshot.
"""

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from risk_scorer import Reading, clamp
from silo_errors import InsufficientDataError
from thresholds import ConfidenceThresholds, Thresholds, ThresholdsConfiguration
from trend_analysis import (
    PatternResult,
    TrendLabel,
    TrendResult,
    analyze_trend,
    classify_trend,
    detect_accelerating_trend,
    detect_gas_decline,
    detect_spike,
    explain_air_quality,
    explain_humidity,
    explain_risk,
    explain_temperature,
    last_change,
    series,
)

MINIMUM_ANALYSIS_POINTS = 3
DEFAULT_HORIZON_SAMPLES = 6

# Per-reading change that counts as a contributing factor
TEMPERATURE_RATE_FACTOR = 0.5
HUMIDITY_RATE_FACTOR = 2.0
GAS_RATE_FACTOR = 50.0
GAS_INFLUENCE_RATE = 200.0


# ============================================================================
# PREDICTION
# ============================================================================

@dataclass(frozen=True)
class Prediction:
    predicted_risk: float
    time_to_critical: Optional[int]
    reasoning: List[str]
    factors: Dict[str, float]
    confidence: str = "low"

    def to_dict(self):
        return {
            'predictedRisk': round(self.predicted_risk, 1),
            'timeToCritical': self.time_to_critical,
            'confidence': self.confidence,
            'reasoning': list(self.reasoning),
            'factors': dict(self.factors),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def predict_risk(latest_risk: float, risk_change: float, horizon: int = DEFAULT_HORIZON_SAMPLES) -> float:
    """Linear extrapolation of risk over the horizon, clamped to [0, 100]."""
    return clamp(latest_risk + risk_change * horizon)


def time_to_critical(latest_risk: float, risk_change: float, critical_threshold: float) -> Optional[int]:
    """
    Samples until risk reaches the critical threshold at the current rate.
    Only defined while risk is increasing; never less than 1.
    """
    if risk_change <= 0:
        return None
    # Halves round up
    return max(1, math.floor((critical_threshold - latest_risk) / risk_change + 0.5))


def build_reasoning(latest: Reading, risk_change: float, temp_change: float,
                    hum_change: float, gas_change: float, dew_point_difference: float) -> List[str]:
    reasoning = []

    if risk_change > 0:
        reasoning.append(f"Risk increasing at {risk_change:.2f}% per reading")
    elif risk_change < 0:
        reasoning.append(f"Risk decreasing at {abs(risk_change):.2f}% per reading")

    if temp_change > TEMPERATURE_RATE_FACTOR:
        reasoning.append(f"Temperature rising ({temp_change:.1f}°C per reading) contributes to risk increase")

    if hum_change > HUMIDITY_RATE_FACTOR:
        reasoning.append(f"Humidity rising ({hum_change:.1f}% per reading) affects moisture content")

    if gas_change > GAS_RATE_FACTOR:
        reasoning.append("Air quality declining indicates potential spoilage gases")

    if latest.temperature - latest.dew_point < dew_point_difference:
        reasoning.append(
            f"Condensation risk (temp-dew point <{dew_point_difference:g}°C) increases spoilage probability"
        )

    return reasoning or ["Conditions relatively stable"]


def predict(latest: Reading, risk_change: float, temp_change: float, hum_change: float,
            gas_change: float, critical_threshold: float, dew_point_difference: float,
            horizon: int = DEFAULT_HORIZON_SAMPLES, confidence: str = "low",
            time_to_critical_enabled: bool = True) -> Prediction:
    ttc = time_to_critical(latest.spoilage_risk, risk_change, critical_threshold)
    return Prediction(
        predicted_risk=predict_risk(latest.spoilage_risk, risk_change, horizon),
        time_to_critical=ttc if time_to_critical_enabled else None,
        reasoning=build_reasoning(latest, risk_change, temp_change, hum_change,
                                  gas_change, dew_point_difference),
        factors={
            'temperatureInfluence': abs(temp_change) * 1.5,
            'humidityInfluence': abs(hum_change) * 0.8,
            'airQualityInfluence': 1.2 if gas_change > GAS_INFLUENCE_RATE else 0.5,
        },
        confidence=confidence,
    )


# ============================================================================
# CONFIDENCE
# ============================================================================

@dataclass(frozen=True)
class Confidence:
    score: int
    level: str
    factors: List[str]

    def to_dict(self):
        return {'level': self.level, 'score': self.score, 'factors': list(self.factors)}


def calculate_confidence(sample_count: int, trends: Dict[str, TrendResult],
                         patterns: Dict[str, PatternResult],
                         levels: ConfidenceThresholds = ConfidenceThresholds()) -> Confidence:
    """Additive confidence from data volume, trend clarity and patterns."""
    score = 0
    factors = []

    if sample_count > 20:
        score += 40
        factors.append("High data volume (20+ points)")
    elif sample_count > 10:
        score += 25
        factors.append("Moderate data volume (10-20 points)")
    else:
        score += 10
        factors.append("Low data volume (<10 points)")

    clear_trends = sum(1 for t in trends.values() if t.label.is_clear)
    if clear_trends >= 2:
        score += 30
        factors.append("Clear trends detected")
    elif clear_trends >= 1:
        score += 15
        factors.append("Some trends detected")

    if any(p.detected for p in patterns.values()):
        score += 20
        factors.append("Patterns detected in data")

    score += 10
    factors.append("Data appears consistent")

    if score >= levels.high:
        level = 'high'
    elif score >= levels.medium:
        level = 'medium'
    else:
        level = 'low'

    return Confidence(score=score, level=level, factors=factors)


# ============================================================================
# RECOMMENDATIONS
# ============================================================================

class Priority(Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


@dataclass(frozen=True)
class Recommendation:
    priority: Priority
    message: str
    action: str

    def to_dict(self):
        return {'priority': self.priority.value, 'message': self.message, 'action': self.action}


def sort_recommendations(recommendations: Sequence[Recommendation]) -> List[Recommendation]:
    """Stable sort by priority rank; equal priorities keep rule order."""
    return sorted(recommendations, key=lambda r: PRIORITY_RANK[r.priority])


def generate_recommendations(latest: Reading, trends: Dict[str, TrendResult],
                             patterns: Dict[str, PatternResult], predicted_risk: float,
                             thresholds: Thresholds) -> List[Recommendation]:
    """
    Evaluate every rule against the latest reading. All matching rules fire
    and no rule suppresses another.
    """
    t = thresholds.temperature
    h = thresholds.humidity
    tiers = thresholds.spoilage_risk
    temp = latest.temperature
    hum = latest.humidity
    risk = latest.spoilage_risk
    ideal_temp = f"{t.ideal_min:g}-{t.ideal_max:g}°C"
    ideal_hum = f"{h.ideal_min:g}-{h.ideal_max:g}%"
    recommendations = []

    # Critical
    if temp < t.warning_min:
        recommendations.append(Recommendation(
            Priority.CRITICAL,
            "🚨 FREEZING TEMPERATURE: Immediate action needed to prevent produce damage!",
            "Increase heating immediately",
        ))

    if risk > tiers.high:
        recommendations.append(Recommendation(
            Priority.CRITICAL,
            "🚨 CRITICAL SPOILAGE RISK: Immediate intervention required",
            "Check stored produce condition and adjust environment",
        ))

    # High
    if temp > t.ideal_max:
        recommendations.append(Recommendation(
            Priority.HIGH,
            "🌡️ Temperature too high for storage",
            f"Increase cooling/ventilation to reach {ideal_temp} range",
        ))

    if hum < h.warning_min:
        recommendations.append(Recommendation(
            Priority.HIGH,
            "💧 Humidity too low - risk of weight loss",
            f"Increase humidity to {ideal_hum} range",
        ))

    if hum > h.ideal_max:
        recommendations.append(Recommendation(
            Priority.HIGH,
            "💦 Humidity very high - condensation risk",
            "Reduce humidity and check for wet spots",
        ))

    # Medium
    if temp - latest.dew_point < thresholds.condensation.dew_point_difference:
        recommendations.append(Recommendation(
            Priority.MEDIUM,
            "⚠️ Condensation risk detected",
            "Monitor for moisture and improve air circulation",
        ))

    if latest.gas_level > thresholds.air_quality.poor:
        recommendations.append(Recommendation(
            Priority.MEDIUM,
            "☣️ Poor air quality detected",
            "Increase ventilation to reduce gas levels",
        ))

    risk_trend = trends.get('spoilageRisk')
    if risk_trend is not None and risk_trend.label.is_rising:
        accelerating = patterns.get('acceleratingRisk')
        if accelerating is not None and accelerating.detected:
            message = "📈 Spoilage risk is increasing at an accelerating rate"
        else:
            message = "📈 Spoilage risk is increasing"
        recommendations.append(Recommendation(
            Priority.MEDIUM,
            message,
            "Monitor closely and prepare to adjust conditions",
        ))

    if predicted_risk > tiers.high >= risk:
        recommendations.append(Recommendation(
            Priority.MEDIUM,
            f"🔮 Spoilage risk projected to reach {predicted_risk:.0f}%",
            "Act now to keep risk below the critical tier",
        ))

    # Low / informational
    if (t.ideal_min <= temp <= t.ideal_max and h.ideal_min <= hum <= h.ideal_max
            and risk < tiers.medium):
        recommendations.append(Recommendation(
            Priority.LOW,
            "✅ Conditions optimal for storage",
            f"Maintain current temperature ({ideal_temp}) and humidity ({ideal_hum})",
        ))

    return sort_recommendations(recommendations)


# ============================================================================
# SUMMARY
# ============================================================================

def generate_summary(latest: Reading, trends: Dict[str, TrendResult], thresholds: Thresholds) -> List[str]:
    """One line per noteworthy aspect of the latest reading."""
    t = thresholds.temperature
    h = thresholds.humidity
    aq = thresholds.air_quality
    tiers = thresholds.spoilage_risk
    risk = latest.spoilage_risk
    temp = latest.temperature
    hum = latest.humidity
    gas = latest.gas_level
    summaries = []

    if risk > tiers.high:
        summaries.append(f"🚨 CRITICAL RISK: {risk:.1f}% spoilage risk. Immediate action required.")
    elif risk > tiers.medium:
        summaries.append(f"⚠️ ELEVATED RISK: {risk:.1f}% spoilage risk. Monitor closely.")
    else:
        summaries.append(f"✓ ACCEPTABLE RISK: {risk:.1f}% spoilage risk. Conditions stable.")

    ideal_temp = f"({t.ideal_min:g}-{t.ideal_max:g}°C)"
    if temp > t.warning_max:
        summaries.append(f"🌡️ TEMPERATURE TOO HIGH: {temp:.1f}°C exceeds ideal storage range {ideal_temp}.")
    elif temp < t.ideal_min:
        summaries.append(f"❄️ TEMPERATURE TOO LOW: {temp:.1f}°C below ideal storage range. Risk of chilling injury.")
    else:
        summaries.append(f"✓ TEMPERATURE OPTIMAL: {temp:.1f}°C within ideal storage range {ideal_temp}.")

    ideal_hum = f"({h.ideal_min:g}-{h.ideal_max:g}%)"
    if hum < h.warning_min:
        summaries.append(f"💧 HUMIDITY TOO LOW: {hum:.1f}% below ideal storage range {ideal_hum}. Risk of weight loss.")
    elif hum > h.ideal_max:
        summaries.append(f"💦 HUMIDITY TOO HIGH: {hum:.1f}% above ideal storage range. Risk of condensation.")
    else:
        summaries.append(f"✓ HUMIDITY OPTIMAL: {hum:.1f}% within ideal storage range {ideal_hum}.")

    if gas > aq.poor:
        summaries.append(f"☣️ POOR AIR QUALITY: gas reading {gas:.0f} indicates high gas levels.")
    elif gas > aq.moderate:
        summaries.append(f"⚠️ MODERATE AIR QUALITY: gas reading {gas:.0f} indicates elevated gas levels.")

    dpd = thresholds.condensation.dew_point_difference
    spread = temp - latest.dew_point
    if spread < dpd:
        summaries.append(
            f"💧 CONDENSATION RISK: Temperature-dew point difference is {spread:.1f}°C (<{dpd:g}°C threshold)."
        )

    risk_trend = trends.get('spoilageRisk')
    if risk_trend is not None and risk_trend.label.is_rising:
        summaries.append(
            f"📈 RISK TRENDING UPWARD: Spoilage risk is {risk_trend.label.value.lower().replace('_', ' ')}."
        )

    return summaries


# ============================================================================
# WINDOW ANALYTICS
# ============================================================================

@dataclass(frozen=True)
class WindowAnalytics:
    """Everything the dashboard shows for one device."""
    summary: List[str]
    trends: Dict[str, TrendResult]
    patterns: Dict[str, PatternResult]
    prediction: Prediction
    recommendations: List[Recommendation]
    confidence: Confidence
    latest: Reading
    changes: Dict[str, float] = field(default_factory=dict)

    def to_dict(self):
        return {
            'summary': list(self.summary),
            'predictions': self.prediction.to_dict(),
            'trends': {name: t.to_dict() for name, t in self.trends.items()},
            'patterns': {name: p.to_dict() for name, p in self.patterns.items()},
            'recommendations': [r.to_dict() for r in self.recommendations],
            'confidence': self.confidence.to_dict(),
            'metrics': {
                'current': {
                    'temperature': self.latest.temperature,
                    'humidity': self.latest.humidity,
                    'gasLevel': self.latest.gas_level,
                    'spoilageRisk': self.latest.spoilage_risk,
                    'dewPoint': self.latest.dew_point,
                    'healthClass': self.latest.health_class.value,
                },
                'changes': dict(self.changes),
            },
        }


def analyze_window(readings: Sequence[Reading], config: ThresholdsConfiguration,
                   window_size: Optional[int] = None) -> WindowAnalytics:
    """
    Run trends, patterns, prediction, confidence and recommendations over a
    snapshot (oldest first).

    Args:
        readings: the snapshot
        config: configuration in effect for this evaluation
        window_size: evaluate only the newest window_size readings; None
            evaluates the whole snapshot

    Raises:
        InsufficientDataError: fewer than 3 readings are available.
    """
    recent = list(readings)
    if window_size is not None:
        recent = recent[-window_size:]
    if len(recent) < MINIMUM_ANALYSIS_POINTS:
        raise InsufficientDataError()

    thresholds = config.thresholds
    analytics = config.analytics
    latest = recent[-1]

    temps = series(recent, 'temperature')
    hums = series(recent, 'humidity')
    risks = series(recent, 'spoilage_risk')
    gases = series(recent, 'gas_level')

    settings = analytics.trend_detection
    trends = {
        'temperature': analyze_trend(temps, explain_temperature, thresholds, settings),
        'humidity': analyze_trend(hums, explain_humidity, thresholds, settings),
        'spoilageRisk': analyze_trend(risks, explain_risk, thresholds, settings),
        'airQuality': analyze_trend(gases, explain_air_quality, thresholds, settings),
    }

    spike_threshold = analytics.patterns.spike_threshold
    patterns = {
        'acceleratingRisk': PatternResult(
            detect_accelerating_trend(risks, analytics.patterns.acceleration_multiplier),
            "Risk is increasing at an accelerating rate"),
        'temperatureSpike': PatternResult(
            detect_spike(temps, spike_threshold),
            "Sudden temperature increase detected"),
        'humiditySurge': PatternResult(
            detect_spike(hums, spike_threshold),
            "Sudden humidity increase detected"),
        'airQualityDecline': PatternResult(
            detect_gas_decline(gases, thresholds.air_quality.poor),
            "Air quality sensor indicates elevated gas levels"),
    }

    changes = {
        'temperature': last_change(temps),
        'humidity': last_change(hums),
        'gasLevel': last_change(gases),
        'spoilageRisk': last_change(risks),
    }

    confidence = calculate_confidence(len(recent), trends, patterns,
                                      analytics.predictions.confidence_thresholds)

    prediction = predict(
        latest,
        risk_change=changes['spoilageRisk'],
        temp_change=changes['temperature'],
        hum_change=changes['humidity'],
        gas_change=changes['gasLevel'],
        critical_threshold=config.alerts.critical_risk_threshold,
        dew_point_difference=thresholds.condensation.dew_point_difference,
        horizon=analytics.predictions.horizon_samples,
        confidence=confidence.level,
        time_to_critical_enabled=analytics.predictions.time_to_critical_enabled,
    )

    return WindowAnalytics(
        summary=generate_summary(latest, trends, thresholds),
        trends=trends,
        patterns=patterns,
        prediction=prediction,
        recommendations=generate_recommendations(latest, trends, patterns,
                                                 prediction.predicted_risk, thresholds),
        confidence=confidence,
        latest=latest,
        changes=changes,
    )


def risk_trend_label(readings: Sequence[Reading], config: ThresholdsConfiguration) -> TrendLabel:
    """Trend label of the spoilage risk over a snapshot."""
    return classify_trend(series(readings, 'spoilage_risk'), config.analytics.trend_detection)
