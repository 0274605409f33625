"""Tests for the spoilage risk scorer and health classification."""

import dataclasses

import pytest

from environment_metrics import dew_point
from risk_scorer import (
    HEALTH_RANK,
    HealthClass,
    Sample,
    build_reading,
    calculate_spoilage_risk,
    classify_health,
)


def condensation_term(temperature, humidity, dew_point_difference=2.0):
    return 40.0 if dew_point(temperature, humidity) > temperature - dew_point_difference else 0.0


class TestSpoilageRisk:

    def test_nominal_conditions_score_zero(self, thresholds):
        # 86% RH keeps the dew point more than 2°C below 6°C
        assert condensation_term(6.0, 86.0) == 0.0
        assert calculate_spoilage_risk(6.0, 86.0, thresholds) == 0.0

    def test_warm_humid_scenario_matches_formula(self, thresholds):
        # Above warningMax (12) and idealMax (8), humidity inside ideal band
        expected = (14 - 12) * 2 + (14 - 8) * 1.5 + condensation_term(14.0, 92.0)
        risk = calculate_spoilage_risk(14.0, 92.0, thresholds)

        assert risk == pytest.approx(expected)
        # Dew point (~12.7°C) is within 2°C of 14°C, so condensation applies
        assert risk == pytest.approx(53.0)
        assert classify_health(risk, thresholds.spoilage_risk) == HealthClass.WARNING

    def test_above_critical_max_uses_critical_coefficient(self, thresholds):
        expected = (18 - 15) * 4 + (18 - 8) * 1.5 + condensation_term(18.0, 86.0)
        assert calculate_spoilage_risk(18.0, 86.0, thresholds) == pytest.approx(expected)

    def test_below_critical_min(self, thresholds):
        expected = (2 - 0) * 3 + condensation_term(0.0, 86.0)
        assert calculate_spoilage_risk(0.0, 86.0, thresholds) == pytest.approx(expected)

    def test_below_ideal_min_is_flat_penalty(self, thresholds):
        expected = 10 + condensation_term(3.0, 86.0)
        assert calculate_spoilage_risk(3.0, 86.0, thresholds) == pytest.approx(expected)

    def test_low_humidity(self, thresholds):
        expected = (85 - 70) * 2 + condensation_term(6.0, 70.0)
        assert calculate_spoilage_risk(6.0, 70.0, thresholds) == pytest.approx(expected)

    def test_humidity_above_critical_max(self, thresholds):
        expected = (105 - 100) * 5 + condensation_term(6.0, 105.0)
        assert calculate_spoilage_risk(6.0, 105.0, thresholds) == pytest.approx(expected)

    def test_humidity_above_ideal_max(self, thresholds):
        expected = (97 - 95) * 2 + condensation_term(6.0, 97.0)
        assert calculate_spoilage_risk(6.0, 97.0, thresholds) == pytest.approx(expected)

    @pytest.mark.parametrize("temperature,humidity", [
        (200.0, 200.0),
        (-100.0, 0.0),
        (60.0, 5.0),
        (-30.0, 150.0),
    ])
    def test_score_is_clamped(self, thresholds, temperature, humidity):
        risk = calculate_spoilage_risk(temperature, humidity, thresholds)
        assert 0.0 <= risk <= 100.0

    def test_extreme_inputs_saturate_at_100(self, thresholds):
        assert calculate_spoilage_risk(200.0, 200.0, thresholds) == 100.0


class TestHealthClassification:

    @pytest.mark.parametrize("risk,expected", [
        (0.0, HealthClass.GOOD),
        (19.9, HealthClass.GOOD),
        (20.0, HealthClass.CAUTION),
        (39.9, HealthClass.CAUTION),
        (40.0, HealthClass.WARNING),
        (69.9, HealthClass.WARNING),
        (70.0, HealthClass.CRITICAL),
        (100.0, HealthClass.CRITICAL),
    ])
    def test_tier_boundaries(self, thresholds, risk, expected):
        assert classify_health(risk, thresholds.spoilage_risk) == expected

    def test_classification_is_monotonic(self, thresholds):
        ranks = [HEALTH_RANK[classify_health(step / 2, thresholds.spoilage_risk)] for step in range(201)]
        assert ranks == sorted(ranks)


class TestBuildReading:

    def test_reading_carries_derived_fields(self, thresholds):
        reading = build_reading('SILO-9', Sample(14.0, 92.0, 220.0), thresholds)

        assert reading.device_id == 'SILO-9'
        assert reading.gas_level == 220.0
        assert reading.spoilage_risk == calculate_spoilage_risk(14.0, 92.0, thresholds)
        assert reading.health_class == classify_health(reading.spoilage_risk, thresholds.spoilage_risk)
        assert reading.dew_point == pytest.approx(dew_point(14.0, 92.0))
        assert reading.trend_analysis == 'INSUFFICIENT_DATA'
        assert reading.prediction == 'NEED_MORE_DATA'

    def test_audit_fields_pass_through(self, thresholds):
        reading = build_reading('SILO-9', Sample(6.0, 90.0), thresholds,
                                trend_analysis='RISING', rssi=-70, ip='10.0.0.2')
        assert reading.trend_analysis == 'RISING'
        assert reading.rssi == -70
        assert reading.ip == '10.0.0.2'

    def test_reading_is_immutable(self, make_reading):
        reading = make_reading(6.0, 90.0)
        with pytest.raises(dataclasses.FrozenInstanceError):
            reading.spoilage_risk = 0.0

    def test_to_dict_uses_wire_names(self, make_reading):
        data = make_reading(6.0, 90.0).to_dict()
        assert data['healthClass'] in {h.value for h in HealthClass}
        assert set(data) >= {'deviceId', 'gasLevel', 'spoilageRisk', 'dewPoint',
                             'absoluteHumidity', 'vaporPressureDeficit',
                             'equilibriumMoistureContent'}
