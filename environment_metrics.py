"""
Silo Monitor - Derived Environmental Metrics
Physical quantities derived from temperature (°C) and relative humidity (%).

Inputs are expected to be range-checked by the caller.
"""

import math
from dataclasses import dataclass

# Magnus formula constants
MAGNUS_A = 17.27
MAGNUS_B = 237.7


@dataclass(frozen=True)
class DerivedMetrics:
    """All derived quantities for one temperature/humidity pair."""
    dew_point: float
    absolute_humidity: float
    vapor_pressure_deficit: float
    equilibrium_moisture_content: float


def dew_point(temperature: float, humidity: float) -> float:
    """Dew point (°C) via the Magnus approximation."""
    if humidity <= 0:
        # ln(RH) -> -inf, so the formula tends to -b
        return -MAGNUS_B
    alpha = (MAGNUS_A * temperature) / (MAGNUS_B + temperature) + math.log(humidity / 100.0)
    return (MAGNUS_B * alpha) / (MAGNUS_A - alpha)


def absolute_humidity(temperature: float, humidity: float) -> float:
    """Absolute humidity in g/m³."""
    saturation_hpa = 6.112 * math.exp((17.67 * temperature) / (temperature + 243.5))
    return (saturation_hpa * humidity) / (0.4615 * (temperature + 273.15))


def vapor_pressure_deficit(temperature: float, humidity: float) -> float:
    """Vapor pressure deficit in kPa (saturation minus actual)."""
    saturation_kpa = 0.6108 * math.exp((17.27 * temperature) / (temperature + 237.3))
    actual_kpa = saturation_kpa * (humidity / 100.0)
    return saturation_kpa - actual_kpa


def equilibrium_moisture_content(temperature: float, humidity: float) -> float:
    """Empirical equilibrium moisture content (%) for stored produce."""
    return 9.7 - 0.082 * temperature + 0.0025 * humidity * temperature


def derive_metrics(temperature: float, humidity: float) -> DerivedMetrics:
    return DerivedMetrics(
        dew_point=dew_point(temperature, humidity),
        absolute_humidity=absolute_humidity(temperature, humidity),
        vapor_pressure_deficit=vapor_pressure_deficit(temperature, humidity),
        equilibrium_moisture_content=equilibrium_moisture_content(temperature, humidity),
    )
