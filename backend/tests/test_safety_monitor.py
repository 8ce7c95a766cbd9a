"""Tests for the per-vessel safety monitoring loop."""
import time
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from app.models.base import AlertDomainEnum, VesselStatusEnum, WeatherConditionEnum
from app.modules.alert_hierarchy import SafetyAlertHierarchy
from app.modules.emergency_protocol import EmergencyProtocolManager
from app.modules.marine_data import EnvironmentalSnapshot, VesselState
from app.modules.safety_monitor import (
    EventFeed,
    RecommendationKind,
    RecommendationPriority,
    SafetyMetrics,
    SafetyMonitoringService,
    assess_weather,
    build_recommendations,
    classify_vessel_status,
    estimate_time_to_impact,
)
from app.modules.safety_validation import SafetyValidationEngine
from app.utils.geo import destination_point

from test_emergency_protocol import FakeTimerFactory, RecordingChannel

T0 = datetime(2024, 6, 1, 12, 0, 0)
HERE = (37.8199, -122.4783)


def _vessel(speed=10.0, heading=0.0, draft=1.8, lat=HERE[0], lon=HERE[1]):
    return VesselState("v1", lat, lon, speed, heading, draft, T0, vessel_name="Sea Breeze")


def _ahead(metres, bearing=0.0):
    return destination_point(HERE[0], HERE[1], bearing, metres)


@pytest.fixture
def engine():
    return SafetyValidationEngine(clock=lambda: T0)


@pytest.fixture
def channel():
    return RecordingChannel("VHF_16")


@pytest.fixture
def emergency(channel):
    mgr = EmergencyProtocolManager(channels=[channel], contacts=[], timer_factory=FakeTimerFactory(), clock=lambda: T0)
    yield mgr
    mgr.shutdown()


@pytest.fixture
def hierarchy(emergency):
    return SafetyAlertHierarchy(broadcast_sink=emergency, escalation_rules=[], clock=lambda: T0)


def _monitor(engine, hierarchy, emergency=None, vessel=None, readings=(), **kwargs):
    return SafetyMonitoringService(
        vessel_provider=lambda: vessel,
        depth_provider=lambda lat, lon, radius: list(readings),
        engine=engine,
        hierarchy=hierarchy,
        emergency=emergency,
        clock=lambda: T0,
        **kwargs,
    )


class TestClassifiers:
    @pytest.mark.parametrize(
        "speed,status",
        [
            (None, VesselStatusEnum.UNKNOWN),
            (-1.0, VesselStatusEnum.UNKNOWN),
            (float("nan"), VesselStatusEnum.UNKNOWN),
            (0.2, VesselStatusEnum.ANCHORED),
            (1.0, VesselStatusEnum.MOORED),
            (6.0, VesselStatusEnum.UNDERWAY),
        ],
    )
    def test_vessel_status(self, speed, status):
        assert classify_vessel_status(speed) is status

    def test_weather(self):
        assert assess_weather(None) is None
        assert assess_weather(EnvironmentalSnapshot()) is WeatherConditionEnum.GOOD
        assert assess_weather(EnvironmentalSnapshot(wind_speed_kn=20)) is WeatherConditionEnum.FAIR
        assert assess_weather(EnvironmentalSnapshot(visibility_nm=2.0)) is WeatherConditionEnum.POOR
        assert assess_weather(EnvironmentalSnapshot(wind_speed_kn=40)) is WeatherConditionEnum.DANGEROUS
        assert assess_weather(EnvironmentalSnapshot(sea_state=7)) is WeatherConditionEnum.DANGEROUS


class TestTimeToImpact:
    def test_shallow_reading_ahead(self, engine, make_reading):
        lat, lon = _ahead(100)
        processed = [engine.process(make_reading(lat=lat, lon=lon, depth=1.5, timestamp=T0))]
        seconds = estimate_time_to_impact(_vessel(speed=10.0), processed)
        assert seconds == pytest.approx(100 / (10 * 0.514444), rel=0.01)

    def test_shallow_reading_behind_ignored(self, engine, make_reading):
        lat, lon = _ahead(100, bearing=180.0)
        processed = [engine.process(make_reading(lat=lat, lon=lon, depth=1.5, timestamp=T0))]
        assert estimate_time_to_impact(_vessel(), processed) is None

    def test_deep_reading_ignored(self, engine, make_reading):
        lat, lon = _ahead(100)
        processed = [engine.process(make_reading(lat=lat, lon=lon, depth=20.0, timestamp=T0))]
        assert estimate_time_to_impact(_vessel(), processed) is None

    def test_stopped_vessel(self, engine, make_reading):
        processed = [engine.process(make_reading(depth=1.5, timestamp=T0))]
        assert estimate_time_to_impact(_vessel(speed=0.0), processed) is None


class TestRecommendations:
    def _metrics(self, **overrides):
        fields = dict(
            vessel_id="v1", timestamp=T0, lat=HERE[0], lon=HERE[1],
            vessel_status=VesselStatusEnum.UNDERWAY, safety_status="safe",
            current_depth=10.0, safety_margin=7.0, confidence=0.9,
        )
        fields.update(overrides)
        return SafetyMetrics(**fields)

    def test_nothing_to_recommend(self):
        assert build_recommendations(self._metrics(), T0) == []

    def test_ranked_by_priority(self):
        recs = build_recommendations(
            self._metrics(safety_margin=0.5, confidence=0.5, route_deviation_m=150,
                          weather=WeatherConditionEnum.POOR, compliance_issues=("No EPIRB registration",)),
            T0,
        )
        kinds = [r.kind for r in recs]
        assert kinds[0] is RecommendationKind.SPEED_REDUCTION
        assert recs[0].priority is RecommendationPriority.CRITICAL
        assert [r.priority.rank for r in recs] == sorted((r.priority.rank for r in recs), reverse=True)
        assert set(kinds) == set(RecommendationKind)

    def test_validity_windows(self):
        (rec,) = build_recommendations(self._metrics(safety_margin=1.5), T0)
        assert rec.priority is RecommendationPriority.HIGH
        assert rec.valid_until == T0 + timedelta(minutes=10)
        assert rec.is_valid(T0 + timedelta(minutes=9))
        assert not rec.is_valid(T0 + timedelta(minutes=10))

    def test_dangerous_weather_is_critical(self):
        (rec,) = build_recommendations(self._metrics(weather=WeatherConditionEnum.DANGEROUS), T0)
        assert rec.kind is RecommendationKind.WEATHER_DELAY
        assert rec.priority is RecommendationPriority.CRITICAL


class TestEventFeed:
    def test_full_queue_drops_oldest(self):
        feed = EventFeed("test", maxsize=2)
        q = feed.subscribe()
        for i in range(3):
            feed.publish(i)
        assert [q.get_nowait(), q.get_nowait()] == [1, 2]

    def test_unsubscribe(self):
        feed = EventFeed("test")
        q = feed.subscribe()
        feed.unsubscribe(q)
        feed.publish(1)
        assert q.empty()


class TestTick:
    def test_no_vessel(self, engine, hierarchy):
        assert _monitor(engine, hierarchy, vessel=None).tick() is None

    def test_safe_tick(self, engine, hierarchy, emergency, make_reading):
        readings = [make_reading(depth=20.0, timestamp=T0)]
        monitor = _monitor(engine, hierarchy, emergency, vessel=_vessel(speed=6.0), readings=readings)
        q = monitor.metrics_feed.subscribe()
        metrics = monitor.tick()
        assert metrics.safety_status == "safe"
        assert metrics.vessel_status is VesselStatusEnum.UNDERWAY
        assert metrics.current_depth == pytest.approx(19.98)
        assert metrics.triggers == ()
        assert q.get_nowait() is metrics
        assert monitor.last_metrics is metrics

    def test_readings_judged_against_own_draft(self, engine, hierarchy, make_reading):
        readings = [make_reading(depth=3.0, vessel_draft=0.5, timestamp=T0)]
        metrics = _monitor(engine, hierarchy, vessel=_vessel(speed=0.0, draft=2.0), readings=readings).tick()
        assert metrics.safety_margin == pytest.approx(2.98 - 2.5)

    def test_imminent_grounding_opens_mayday(self, engine, hierarchy, emergency, make_reading):
        lat, lon = _ahead(100)
        readings = [make_reading(lat=lat, lon=lon, depth=1.5, timestamp=T0)]
        monitor = _monitor(engine, hierarchy, emergency, vessel=_vessel(speed=10.0), readings=readings)
        metrics = monitor.tick()
        assert "imminent_grounding" in metrics.triggers
        assert metrics.time_to_impact_s < 30
        assert metrics.safety_status == "emergency"
        assert metrics.open_incidents == 1
        grounding = hierarchy.active_alerts(AlertDomainEnum.GROUNDING)
        assert grounding and grounding[0].cause == "imminent_grounding"

    def test_unexpected_deep_water(self, engine, hierarchy, make_reading):
        current = {"readings": [make_reading(depth=30.0, timestamp=T0)]}
        monitor = SafetyMonitoringService(
            vessel_provider=lambda: _vessel(speed=6.0),
            depth_provider=lambda lat, lon, radius: current["readings"],
            engine=engine, hierarchy=hierarchy, clock=lambda: T0,
        )
        assert monitor.tick().triggers == ()
        current["readings"] = [make_reading(depth=250.0, timestamp=T0)]
        assert "unexpected_deep_water" in monitor.tick().triggers

    def test_dangerous_weather(self, engine, hierarchy, emergency, channel, make_reading):
        weather = MagicMock()
        weather.snapshot.return_value = EnvironmentalSnapshot(wind_speed_kn=40)
        monitor = _monitor(
            engine, hierarchy, emergency, vessel=_vessel(speed=6.0),
            readings=[make_reading(depth=20.0, timestamp=T0)], weather_source=weather,
        )
        metrics = monitor.tick()
        assert metrics.weather is WeatherConditionEnum.DANGEROUS
        assert "dangerous_weather" in metrics.triggers
        assert metrics.safety_status == "critical"
        assert any(m.startswith("PAN PAN") for m in channel.messages)
        weather.snapshot.assert_called_once()

    def test_recommendations_published(self, engine, hierarchy, make_reading):
        readings = [make_reading(depth=3.0, timestamp=T0)]
        monitor = _monitor(engine, hierarchy, vessel=_vessel(speed=0.0), readings=readings)
        q = monitor.recommendations_feed.subscribe()
        monitor.tick()
        recs = q.get_nowait()
        assert recs[0].kind is RecommendationKind.SPEED_REDUCTION

    def test_position_report_sent(self, engine, hierarchy, emergency, channel):
        _monitor(engine, hierarchy, emergency, vessel=_vessel(speed=6.0)).tick()
        assert any(m.startswith("POSITION REPORT Sea Breeze") for m in channel.messages)

    def test_overlapping_tick_skipped(self, engine, hierarchy):
        monitor = _monitor(engine, hierarchy, vessel=_vessel())
        monitor._tick_lock.acquire()
        try:
            assert monitor.tick() is None
        finally:
            monitor._tick_lock.release()
        assert monitor.skipped_ticks == 1

    def test_background_loop(self, engine, hierarchy):
        monitor = _monitor(engine, hierarchy, vessel=_vessel(speed=6.0), interval_seconds=0.01)
        monitor.start()
        try:
            deadline = time.monotonic() + 5
            while monitor.last_metrics is None and time.monotonic() < deadline:
                time.sleep(0.01)
            assert monitor.running
        finally:
            monitor.stop(timeout=2)
        assert monitor.last_metrics is not None
        assert not monitor.running
