"""Tests for the correction fusion engine and area safety assessment."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import httpx
import pytest

from app.models.base import AlertDomainEnum, AlertSeverityEnum, DepthSourceEnum, ReliabilityEnum, TideMethodEnum
from app.modules.alert_hierarchy import SafetyAlertHierarchy, condition_from_processed_reading
from app.modules.environmental_correction import EnvironmentalFactors
from app.modules.marine_data import EnvironmentalSnapshot
from app.modules.quality_scorer import QualityScore
from app.modules.safety_validation import (
    SafetyValidationEngine,
    assess_area_safety,
    classify_reliability,
    combined_confidence,
)
from app.modules.tide_correction import TideCorrection

NOW = datetime(2024, 6, 1, 12, 0, 0)


def _engine(**kwargs):
    return SafetyValidationEngine(clock=lambda: NOW, **kwargs)


class TestFusion:
    def test_combined_confidence_weights(self):
        assert combined_confidence(0.8, 0.3, 1.0) == pytest.approx(0.69)
        assert combined_confidence(1.0, 1.0, 1.0) == 1.0

    @pytest.mark.parametrize(
        "corrected,final,confidence,quality,expected",
        [
            (10.0, 10.0, 0.9, 90, ReliabilityEnum.HIGH),
            (10.0, 10.0, 0.69, 75, ReliabilityEnum.MEDIUM),
            (10.0, 10.0, 0.5, 90, ReliabilityEnum.LOW),
            (10.0, 10.0, 0.2, 90, ReliabilityEnum.UNRELIABLE),
            (-0.5, -0.5, 0.9, 90, ReliabilityEnum.UNRELIABLE),
            (0.1, -0.1, 0.9, 90, ReliabilityEnum.UNRELIABLE),
        ],
    )
    def test_classify_reliability(self, corrected, final, confidence, quality, expected):
        assert classify_reliability(corrected, final, confidence, quality) is expected

    def test_validate_forces_unreliable_for_nonpositive_corrected_depth(self, make_reading):
        reading = make_reading(depth=2.0, timestamp=NOW)
        tide = TideCorrection(TideMethodEnum.OBSERVED, 2.5, -0.5, 1.0)
        env = EnvironmentalFactors(0, 0, 0, 0, 0, 0, 1.0)
        quality = QualityScore(overall=100.0, factors={})
        result = _engine().validate(reading, tide, env, quality)
        assert result.reliability is ReliabilityEnum.UNRELIABLE
        assert result.safety_margin < 0
        assert any("unreliable" in w for w in result.warnings)


class TestProcess:
    def test_golden_gate_reading_without_network(self, make_reading):
        reading = make_reading(depth=15.5, vessel_draft=1.8, timestamp=NOW - timedelta(minutes=5))
        result = _engine().process(reading)
        assert result.tide.method is TideMethodEnum.ESTIMATED
        assert result.corrected_depth == 15.5
        assert result.final_depth == pytest.approx(15.48)
        assert result.safety_margin == pytest.approx(15.48 - 2.3)
        assert result.reliability in (ReliabilityEnum.MEDIUM, ReliabilityEnum.HIGH)
        assert any("No tide data" in w for w in result.warnings)

    def test_malformed_reading_is_degraded_not_raised(self, make_reading):
        result = _engine().process(make_reading(depth=float("nan")))
        assert result.reliability is ReliabilityEnum.UNRELIABLE
        assert result.confidence == 0.0
        assert "not a number" in result.warnings[0]

    def test_nonpositive_depth_degraded(self, make_reading):
        result = _engine().process(make_reading(depth=-2.0))
        assert result.reliability is ReliabilityEnum.UNRELIABLE
        assert "not positive" in result.warnings[0]

    def test_weather_source_is_used(self, make_reading):
        weather = MagicMock()
        weather.snapshot.return_value = EnvironmentalSnapshot(pressure_hpa=1003.25)
        result = _engine(weather_source=weather).process(make_reading(timestamp=NOW))
        assert result.environmental.pressure == pytest.approx(0.1)
        weather.snapshot.assert_called_once()

    def test_weather_failure_is_tolerated(self, make_reading):
        weather = MagicMock()
        weather.snapshot.side_effect = httpx.ConnectError("down")
        result = _engine(weather_source=weather).process(make_reading(timestamp=NOW))
        assert result.environmental.total == -0.02

    def test_explicit_snapshot_skips_fetch(self, make_reading):
        weather = MagicMock()
        _engine(weather_source=weather).process(make_reading(timestamp=NOW), snapshot=EnvironmentalSnapshot())
        weather.snapshot.assert_not_called()

    def test_to_dict_shape(self, make_reading):
        data = _engine().process(make_reading(timestamp=NOW)).to_dict()
        assert data["tide_correction"]["method"] == "estimated"
        assert data["source"] == "crowdsource"
        assert set(data["environmental_factors"]) == {
            "wind", "current", "pressure", "temperature", "salinity", "total", "confidence",
        }


class TestEndToEnd:
    def test_deep_then_shallow_reading(self, make_reading):
        engine = _engine()
        hierarchy = SafetyAlertHierarchy(escalation_rules=[], clock=lambda: NOW)

        deep = engine.process(make_reading(depth=15.5, vessel_draft=1.8, timestamp=NOW))
        assert deep.reliability in (ReliabilityEnum.MEDIUM, ReliabilityEnum.HIGH)
        assert condition_from_processed_reading(deep) is None

        shallow = engine.process(make_reading(depth=1.0, vessel_draft=1.8, timestamp=NOW))
        assert shallow.safety_margin < 0
        condition = condition_from_processed_reading(shallow)
        assert condition is not None
        alert = hierarchy.raise_alert(condition)
        assert alert.domain is AlertDomainEnum.DEPTH
        assert alert.cause == "shallow_water"
        assert alert.severity is AlertSeverityEnum.WARNING
        assert [a.alert_id for a in hierarchy.active_alerts()] == [alert.alert_id]


class TestAreaSafety:
    def test_insufficient_data(self, make_reading):
        result = assess_area_safety([make_reading(), make_reading()], 37.8199, -122.4783, 1.8, now=NOW)
        assert not result.is_safe
        assert result.estimated_depth is None
        assert result.warnings == ["Insufficient depth data"]

    def test_uniform_depth(self, make_reading):
        readings = [make_reading(depth=10.0, lat=37.8199 + i * 0.0001, timestamp=NOW) for i in range(5)]
        result = assess_area_safety(readings, 37.8199, -122.4783, 1.8, now=NOW)
        assert result.is_safe
        assert result.estimated_depth == pytest.approx(10.0)
        assert result.clearance == pytest.approx(8.2)
        assert result.data_points == 5

    def test_outlier_excluded(self, make_reading):
        depths = [10.0, 10.2, 9.9, 10.1, 10.0, 80.0]
        readings = [make_reading(depth=d, lat=37.8199 + i * 0.0001, timestamp=NOW) for i, d in enumerate(depths)]
        result = assess_area_safety(readings, 37.8199, -122.4783, 1.8, now=NOW)
        assert result.outliers_removed == 1
        assert result.estimated_depth < 11

    def test_shallow_area_warns(self, make_reading):
        readings = [make_reading(depth=2.2, lat=37.8199 + i * 0.0001, timestamp=NOW) for i in range(4)]
        result = assess_area_safety(readings, 37.8199, -122.4783, 1.8, now=NOW)
        assert not result.is_safe
        assert "Shallow water - proceed with extreme caution" in result.warnings

    def test_far_readings_ignored(self, make_reading):
        readings = [make_reading(lat=38.5, timestamp=NOW) for _ in range(5)]
        assert assess_area_safety(readings, 37.8199, -122.4783, 1.8, now=NOW).data_points == 0

    def test_official_source_dominates(self, make_reading):
        readings = [
            make_reading(depth=12.0, source=DepthSourceEnum.OFFICIAL, lat=37.8200, timestamp=NOW),
            make_reading(depth=8.0, lat=37.8200, timestamp=NOW),
            make_reading(depth=8.0, lat=37.8200, timestamp=NOW, lon=-122.4784),
        ]
        result = assess_area_safety(readings, 37.8199, -122.4783, 1.8, now=NOW)
        assert result.estimated_depth > 9.0
