"""
Silo Monitor - Spoilage Risk Scorer
Additive penalty model turning temperature and humidity into a 0-100 risk
score and a four-level health classification.

The penalty coefficients encode the storage risk weighting and are fixed.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from environment_metrics import derive_metrics, dew_point
from thresholds import RiskTiers, Thresholds


class HealthClass(Enum):
    """Health classification, ascending severity."""
    GOOD = "GOOD"
    CAUTION = "CAUTION"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


HEALTH_RANK = {
    HealthClass.GOOD: 0,
    HealthClass.CAUTION: 1,
    HealthClass.WARNING: 2,
    HealthClass.CRITICAL: 3,
}

CONDENSATION_PENALTY = 40.0
BELOW_IDEAL_PENALTY = 10.0


@dataclass(frozen=True)
class Sample:
    """One raw sensor sample."""
    temperature: float
    humidity: float
    gas_level: float = 0.0


@dataclass(frozen=True)
class Reading:
    """A sample plus everything derived from it. Immutable once built."""
    device_id: str
    timestamp: datetime
    temperature: float
    humidity: float
    gas_level: float
    spoilage_risk: float
    health_class: HealthClass
    dew_point: float
    absolute_humidity: float
    vapor_pressure_deficit: float
    equilibrium_moisture_content: float
    trend_analysis: str = "INSUFFICIENT_DATA"
    prediction: str = "NEED_MORE_DATA"
    rssi: Optional[int] = None
    ip: Optional[str] = None

    def to_dict(self):
        return {
            'deviceId': self.device_id,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'temperature': self.temperature,
            'humidity': self.humidity,
            'gasLevel': self.gas_level,
            'spoilageRisk': self.spoilage_risk,
            'healthClass': self.health_class.value,
            'dewPoint': self.dew_point,
            'absoluteHumidity': self.absolute_humidity,
            'vaporPressureDeficit': self.vapor_pressure_deficit,
            'equilibriumMoistureContent': self.equilibrium_moisture_content,
            'trendAnalysis': self.trend_analysis,
            'prediction': self.prediction,
            'rssi': self.rssi,
            'ip': self.ip,
        }


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def calculate_spoilage_risk(temperature: float, humidity: float, thresholds: Thresholds) -> float:
    """
    Sum the independent penalty terms and clamp to [0, 100].

    Temperature above the ideal range adds a sprouting term on top of the
    warning/critical terms.
    """
    t = thresholds.temperature
    h = thresholds.humidity
    risk = 0.0

    # Temperature
    if temperature > t.critical_max:
        risk += (temperature - t.critical_max) * 4
    elif temperature > t.warning_max:
        risk += (temperature - t.warning_max) * 2

    if temperature < t.critical_min:
        risk += (t.critical_min - temperature) * 3
    elif temperature < t.ideal_min:
        risk += BELOW_IDEAL_PENALTY

    if temperature > t.ideal_max:
        risk += (temperature - t.ideal_max) * 1.5

    # Humidity
    if humidity < h.warning_min:
        risk += (h.warning_min - humidity) * 2

    if humidity > h.critical_max:
        risk += (humidity - h.critical_max) * 5
    elif humidity > h.ideal_max:
        risk += (humidity - h.ideal_max) * 2

    # Condensation
    if dew_point(temperature, humidity) > temperature - thresholds.condensation.dew_point_difference:
        risk += CONDENSATION_PENALTY

    return clamp(risk)


def classify_health(risk: float, tiers: RiskTiers) -> HealthClass:
    """Map a risk score onto the ascending tier cut points."""
    if risk >= tiers.high:
        return HealthClass.CRITICAL
    if risk >= tiers.medium:
        return HealthClass.WARNING
    if risk >= tiers.low:
        return HealthClass.CAUTION
    return HealthClass.GOOD


def build_reading(device_id: str, sample: Sample, thresholds: Thresholds,
                  timestamp: Optional[datetime] = None, **audit) -> Reading:
    """
    Run the whole derivation pipeline for one sample.

    Extra keyword arguments (trend_analysis, prediction, rssi, ip) are carried
    on the reading unchanged.
    """
    metrics = derive_metrics(sample.temperature, sample.humidity)
    risk = calculate_spoilage_risk(sample.temperature, sample.humidity, thresholds)
    return Reading(
        device_id=device_id,
        timestamp=timestamp or datetime.now(timezone.utc),
        temperature=sample.temperature,
        humidity=sample.humidity,
        gas_level=sample.gas_level,
        spoilage_risk=risk,
        health_class=classify_health(risk, thresholds.spoilage_risk),
        dew_point=metrics.dew_point,
        absolute_humidity=metrics.absolute_humidity,
        vapor_pressure_deficit=metrics.vapor_pressure_deficit,
        equilibrium_moisture_content=metrics.equilibrium_moisture_content,
        **audit
    )
