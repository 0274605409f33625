"""Tests for the derived environmental metrics."""

import pytest

from environment_metrics import (
    MAGNUS_B,
    absolute_humidity,
    derive_metrics,
    dew_point,
    equilibrium_moisture_content,
    vapor_pressure_deficit,
)


class TestDewPoint:

    @pytest.mark.parametrize("temperature", [-5.0, 0.0, 6.0, 21.5, 35.0])
    def test_saturated_air_dew_point_equals_temperature(self, temperature):
        assert dew_point(temperature, 100.0) == pytest.approx(temperature, abs=1e-9)

    def test_known_value(self):
        assert dew_point(20.0, 50.0) == pytest.approx(9.25, abs=0.01)

    def test_dew_point_below_temperature_when_unsaturated(self):
        assert dew_point(10.0, 80.0) < 10.0

    def test_dry_air_returns_formula_limit(self):
        assert dew_point(10.0, 0.0) == -MAGNUS_B


def test_absolute_humidity_known_value():
    assert absolute_humidity(20.0, 50.0) == pytest.approx(8.64, abs=0.01)


def test_absolute_humidity_scales_with_rh():
    assert absolute_humidity(10.0, 80.0) == pytest.approx(2 * absolute_humidity(10.0, 40.0))


def test_vapor_pressure_deficit():
    assert vapor_pressure_deficit(20.0, 50.0) == pytest.approx(1.169, abs=0.001)
    assert vapor_pressure_deficit(20.0, 100.0) == pytest.approx(0.0, abs=1e-12)


def test_equilibrium_moisture_content():
    assert equilibrium_moisture_content(10.0, 90.0) == pytest.approx(9.7 - 0.82 + 2.25)


def test_derive_metrics_bundles_all_values():
    metrics = derive_metrics(6.0, 92.0)
    assert metrics.dew_point == dew_point(6.0, 92.0)
    assert metrics.absolute_humidity == absolute_humidity(6.0, 92.0)
    assert metrics.vapor_pressure_deficit == vapor_pressure_deficit(6.0, 92.0)
    assert metrics.equilibrium_moisture_content == equilibrium_moisture_content(6.0, 92.0)
