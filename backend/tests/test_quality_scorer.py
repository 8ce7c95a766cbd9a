"""Tests for the reading quality score and its warnings."""
import pytest

from app.models.base import DepthSourceEnum, TideMethodEnum
from app.modules.marine_data import EnvironmentalSnapshot, TideStation
from app.modules.quality_scorer import (
    QualityScorer,
    age_score,
    sea_state_stability,
    source_reliability_score,
    station_distance_score,
)
from app.modules.tide_correction import TideCorrection

HOUR_MS = 3_600_000


class TestSubScores:
    def test_age_decay(self):
        assert age_score(0) == 100.0
        assert age_score(HOUR_MS) == 100.0
        assert age_score(12.5 * HOUR_MS) == pytest.approx(52.5)
        assert age_score(48 * HOUR_MS) == 5.0

    def test_station_distance(self):
        assert station_distance_score(None) == 20.0
        assert station_distance_score(1.0) == 100.0
        assert station_distance_score(26.0) == pytest.approx(55.0)
        assert station_distance_score(80.0) == 10.0

    def test_sea_state(self):
        assert sea_state_stability(None) == 1.0
        assert sea_state_stability(EnvironmentalSnapshot(wind_speed_kn=25, wave_height_m=2.5)) == pytest.approx(0.42)
        worst = EnvironmentalSnapshot(wind_speed_kn=40, wave_height_m=4, visibility_nm=0.2)
        assert sea_state_stability(worst) == pytest.approx(0.1)

    def test_source_ranking(self):
        assert (
            source_reliability_score(DepthSourceEnum.OFFICIAL)
            > source_reliability_score(DepthSourceEnum.CROWDSOURCE)
            > source_reliability_score(DepthSourceEnum.PREDICTED)
        )


class TestQualityScorer:
    def _station_here(self, reading):
        return TideStation(station_id="here", name="Here", lat=reading.lat, lon=reading.lon)

    def test_ideal_reading(self, make_reading):
        reading = make_reading(source=DepthSourceEnum.OFFICIAL)
        score = QualityScorer().score(reading, self._station_here(reading), None, age_ms=0)
        assert score.overall == 100.0
        assert score.warnings == []

    def test_no_station_lowers_score_and_warns(self, make_reading):
        reading = make_reading()
        tide = TideCorrection(TideMethodEnum.ESTIMATED, 0.0, reading.depth, 0.3)
        score = QualityScorer().score(reading, None, None, age_ms=0, tide=tide)
        assert score.overall == pytest.approx((100 + 20 + 100 + 80) / 4)
        assert any("No tide data" in w for w in score.warnings)
        assert any("Low station distance" in w for w in score.warnings)

    def test_low_confidence_and_stale(self, make_reading):
        reading = make_reading(confidence=0.4)
        score = QualityScorer().score(reading, self._station_here(reading), None, age_ms=7 * HOUR_MS)
        assert any("Low confidence" in w for w in score.warnings)
        assert any("Stale data" in w for w in score.warnings)

    def test_negative_corrected_depth_warns(self, make_reading):
        reading = make_reading(depth=1.0)
        tide = TideCorrection(TideMethodEnum.OBSERVED, 1.5, -0.5, 0.9)
        score = QualityScorer().score(reading, self._station_here(reading), None, age_ms=0, tide=tide)
        assert any("Negative/invalid corrected depth" in w for w in score.warnings)

    def test_rough_weather_warnings(self, make_reading):
        reading = make_reading()
        snap = EnvironmentalSnapshot(wind_speed_kn=25, wave_height_m=2.5)
        score = QualityScorer().score(reading, self._station_here(reading), snap, age_ms=0)
        assert "High wind may affect depth accuracy" in score.warnings
        assert "Significant wave height may affect depth accuracy" in score.warnings

    def test_predicted_source_warns(self, make_reading):
        reading = make_reading(source=DepthSourceEnum.PREDICTED)
        score = QualityScorer().score(reading, self._station_here(reading), None, age_ms=0)
        assert "Depth is model-predicted, not measured" in score.warnings

    def test_negative_age_treated_as_fresh(self, make_reading):
        reading = make_reading()
        score = QualityScorer().score(reading, self._station_here(reading), None, age_ms=-5000)
        assert score.factors["data_age"] == 100.0

    def test_custom_weights(self, make_reading):
        reading = make_reading(source=DepthSourceEnum.PREDICTED)
        scorer = QualityScorer(weights={"source_reliability": 1.0})
        assert scorer.score(reading, self._station_here(reading), None, age_ms=0).overall == 60.0
