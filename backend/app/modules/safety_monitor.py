"""Safety monitoring service — the per-vessel orchestrator.

Each tick:
  1. fetch the current vessel state
  2. fetch nearby depth readings and process them with the vessel's draft
  3. assess the area and compare against the planned route (if any)
  4. raise alert conditions and automatic-emergency triggers:
       imminent grounding   low margin, making way, shallow water ahead
                            reached in under GROUNDING_TIME_THRESHOLD_S
       unexpected deep water  > 200 m right after < 50 m (verify position)
       dangerous weather
  5. publish SafetyMetrics, then ranked SafetyRecommendations

Ticks never overlap: a tick that starts while another is running is skipped.
"""
from __future__ import annotations

import enum
import logging
import math
import queue
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Generic, Optional, Sequence, TypeVar

import httpx

from app.config import settings
from app.models.base import (
    AlertDomainEnum,
    AlertSeverityEnum,
    VesselStatusEnum,
    WeatherConditionEnum,
)
from app.modules.alert_hierarchy import AlertCondition, SafetyAlertHierarchy, condition_from_processed_reading
from app.modules.emergency_protocol import EmergencyProtocolManager
from app.modules.environmental_correction import KNOTS_TO_MS
from app.modules.marine_data import DepthReadingData, EnvironmentalSnapshot, VesselState, WeatherSource, utcnow
from app.modules.route_navigation import NavigationObservation, SafeRouteNavigator
from app.modules.safety_validation import (
    AreaSafetyAssessment,
    ProcessedDepthReading,
    SafetyValidationEngine,
    assess_area_safety,
)
from app.utils.geo import haversine_meters, initial_bearing_deg

logger = logging.getLogger(__name__)

NEARBY_RADIUS_M = 2000.0
MAX_READINGS_PER_TICK = 50

GROUNDING_MARGIN_M = 0.5
GROUNDING_MIN_SPEED_KN = 2.0
GROUNDING_TIME_THRESHOLD_S = 30.0
AHEAD_HALF_ANGLE_DEG = 30.0
DEEP_WATER_THRESHOLD_M = 200.0
SHALLOW_HISTORY_M = 50.0
LOW_CONFIDENCE = 0.7
_DEPTH_HISTORY = 20

# (wind kn, visibility nm, sea state) limits, most severe first
_WEATHER_LIMITS: list[tuple[WeatherConditionEnum, float, float, int]] = [
    (WeatherConditionEnum.DANGEROUS, 35.0, 1.0, 6),
    (WeatherConditionEnum.POOR, 25.0, 3.0, 4),
    (WeatherConditionEnum.FAIR, 15.0, 5.0, 2),
]


class RecommendationKind(str, enum.Enum):
    SPEED_REDUCTION = "speed_reduction"
    EQUIPMENT_CHECK = "equipment_check"
    ROUTE_CORRECTION = "route_correction"
    WEATHER_DELAY = "weather_delay"
    COMPLIANCE_FIX = "compliance_fix"


class RecommendationPriority(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"critical": 4, "high": 3, "medium": 2, "low": 1}[self.value]


RECOMMENDATION_VALIDITY: dict[RecommendationKind, timedelta] = {
    RecommendationKind.SPEED_REDUCTION: timedelta(minutes=10),
    RecommendationKind.EQUIPMENT_CHECK: timedelta(minutes=30),
    RecommendationKind.ROUTE_CORRECTION: timedelta(minutes=15),
    RecommendationKind.WEATHER_DELAY: timedelta(hours=1),
    RecommendationKind.COMPLIANCE_FIX: timedelta(hours=24),
}


@dataclass(frozen=True)
class SafetyRecommendation:
    kind: RecommendationKind
    priority: RecommendationPriority
    title: str
    reasoning: str
    actions: tuple[str, ...]
    created_at: datetime
    valid_until: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.valid_until


@dataclass(frozen=True)
class SafetyMetrics:
    vessel_id: str
    timestamp: datetime
    lat: float
    lon: float
    vessel_status: VesselStatusEnum
    safety_status: str  # "safe" or the highest active alert severity
    current_depth: Optional[float] = None
    safety_margin: Optional[float] = None
    confidence: float = 0.0
    reliability: Optional[str] = None
    area: Optional[AreaSafetyAssessment] = None
    weather: Optional[WeatherConditionEnum] = None
    route_deviation_m: Optional[float] = None
    eta: Optional[datetime] = None
    time_to_impact_s: Optional[float] = None
    compliance_issues: tuple[str, ...] = ()
    alert_counts: dict[str, Any] = field(default_factory=dict)
    open_incidents: int = 0
    triggers: tuple[str, ...] = ()


T = TypeVar("T")


class EventFeed(Generic[T]):
    """Fan-out of immutable payloads to bounded per-subscriber queues.

    A full queue drops its oldest item so slow consumers see recent state.
    """

    def __init__(self, name: str, maxsize: int = settings.SUBSCRIBER_QUEUE_SIZE) -> None:
        self.name = name
        self.maxsize = maxsize
        self._lock = threading.Lock()
        self._queues: list[queue.Queue] = []

    def subscribe(self) -> "queue.Queue[T]":
        q: queue.Queue = queue.Queue(maxsize=self.maxsize)
        with self._lock:
            self._queues.append(q)
        return q

    def unsubscribe(self, q: "queue.Queue[T]") -> None:
        with self._lock:
            if q in self._queues:
                self._queues.remove(q)

    def publish(self, item: T) -> None:
        with self._lock:
            targets = list(self._queues)
        for q in targets:
            while True:
                try:
                    q.put_nowait(item)
                    break
                except queue.Full:
                    try:
                        q.get_nowait()
                        logger.warning("%s subscriber queue full; dropped oldest item", self.name)
                    except queue.Empty:
                        pass


def assess_weather(snapshot: Optional[EnvironmentalSnapshot]) -> Optional[WeatherConditionEnum]:
    """Classify sea conditions; None when there is no snapshot at all."""
    if snapshot is None:
        return None
    for condition, wind_limit, visibility_limit, sea_limit in _WEATHER_LIMITS:
        if (
            (snapshot.wind_speed_kn is not None and snapshot.wind_speed_kn > wind_limit)
            or (snapshot.visibility_nm is not None and snapshot.visibility_nm < visibility_limit)
            or (snapshot.sea_state is not None and snapshot.sea_state > sea_limit)
        ):
            return condition
    return WeatherConditionEnum.GOOD


def classify_vessel_status(speed_kn: Optional[float]) -> VesselStatusEnum:
    if speed_kn is None or not math.isfinite(speed_kn) or speed_kn < 0:
        return VesselStatusEnum.UNKNOWN
    if speed_kn < 0.5:
        return VesselStatusEnum.ANCHORED
    if speed_kn < 2.0:
        return VesselStatusEnum.MOORED
    return VesselStatusEnum.UNDERWAY


def _angle_diff(a: float, b: float) -> float:
    return abs((a - b + 180.0) % 360.0 - 180.0)


def estimate_time_to_impact(
    state: VesselState,
    processed: Sequence[ProcessedDepthReading],
    margin_threshold: float = GROUNDING_MARGIN_M,
    half_angle_deg: float = AHEAD_HALF_ANGLE_DEG,
) -> Optional[float]:
    """Seconds until the vessel reaches the nearest shallow reading ahead.

    Shallow means a safety margin below ``margin_threshold``; ahead means
    within ``half_angle_deg`` of the heading. None when stopped or nothing
    shallow lies ahead.
    """
    speed_ms = state.speed_kn * KNOTS_TO_MS
    if speed_ms <= 0:
        return None
    best: Optional[float] = None
    for p in processed:
        if not (p.safety_margin < margin_threshold):
            continue
        r = p.reading
        distance = haversine_meters(state.lat, state.lon, r.lat, r.lon)
        if distance > 1.0:
            bearing = initial_bearing_deg(state.lat, state.lon, r.lat, r.lon)
            if _angle_diff(bearing, state.heading_deg) > half_angle_deg:
                continue
        seconds = distance / speed_ms
        if best is None or seconds < best:
            best = seconds
    return best


def build_recommendations(metrics: SafetyMetrics, now: datetime) -> list[SafetyRecommendation]:
    """Recommendations for the current metrics, highest priority first."""
    recs: list[SafetyRecommendation] = []

    def add(kind: RecommendationKind, priority: RecommendationPriority, title: str, reasoning: str, *actions: str) -> None:
        recs.append(SafetyRecommendation(
            kind=kind,
            priority=priority,
            title=title,
            reasoning=reasoning,
            actions=actions,
            created_at=now,
            valid_until=now + RECOMMENDATION_VALIDITY[kind],
        ))

    if metrics.safety_margin is not None and metrics.safety_margin < 2.0:
        add(
            RecommendationKind.SPEED_REDUCTION,
            RecommendationPriority.CRITICAL if metrics.safety_margin < 1.0 else RecommendationPriority.HIGH,
            "Reduce speed in shallow water",
            f"Safety margin: {metrics.safety_margin:.1f} m",
            "Reduce speed to 3 knots", "Use the depth sounder", "Post a lookout",
        )
    if metrics.current_depth is not None and metrics.confidence < LOW_CONFIDENCE:
        add(
            RecommendationKind.EQUIPMENT_CHECK,
            RecommendationPriority.MEDIUM,
            "Verify depth readings",
            f"Data confidence: {metrics.confidence * 100:.0f}%",
            "Verify with the depth sounder", "Cross-check with charts", "Reduce speed until verified",
        )
    if metrics.route_deviation_m is not None and metrics.route_deviation_m > 100.0:
        add(
            RecommendationKind.ROUTE_CORRECTION,
            RecommendationPriority.MEDIUM,
            "Return to planned route",
            f"Route deviation: {metrics.route_deviation_m:.0f} m",
            "Adjust course to return to route", "Verify GPS accuracy",
        )
    if metrics.weather in (WeatherConditionEnum.POOR, WeatherConditionEnum.DANGEROUS):
        add(
            RecommendationKind.WEATHER_DELAY,
            RecommendationPriority.CRITICAL if metrics.weather is WeatherConditionEnum.DANGEROUS else RecommendationPriority.HIGH,
            "Weather safety measures",
            f"Weather: {metrics.weather.value}",
            "Consider seeking shelter", "Monitor weather updates", "Reduce speed and increase vigilance",
        )
    if metrics.compliance_issues:
        add(
            RecommendationKind.COMPLIANCE_FIX,
            RecommendationPriority.HIGH,
            "Address compliance issues",
            "Issues: " + ", ".join(metrics.compliance_issues),
            *(f"Resolve: {issue}" for issue in metrics.compliance_issues),
        )
    # stable sort keeps insertion order within a priority
    return sorted(recs, key=lambda r: -r.priority.rank)


class SafetyMonitoringService:
    """Fixed-interval safety loop for one vessel.

    Args:
        vessel_provider: Returns the current VesselState (None → tick skipped).
        depth_provider: ``(lat, lon, radius_m) -> readings`` near the vessel.
        engine: Runs the correction chain.
        hierarchy: Receives alert conditions.
        emergency: Optional; receives vessel state and position reports.
        navigator: Optional planned-route tracker.
        weather_source: Optional; one snapshot per tick shared by every reading.
        compliance_provider: Optional; returns outstanding compliance issues.
        interval_seconds: Tick period for the background thread.
    """

    def __init__(
        self,
        vessel_provider: Callable[[], Optional[VesselState]],
        depth_provider: Callable[[float, float, float], Sequence[DepthReadingData]],
        engine: SafetyValidationEngine,
        hierarchy: SafetyAlertHierarchy,
        emergency: Optional[EmergencyProtocolManager] = None,
        navigator: Optional[SafeRouteNavigator] = None,
        weather_source: Optional[WeatherSource] = None,
        compliance_provider: Optional[Callable[[], Sequence[str]]] = None,
        interval_seconds: float = settings.MONITOR_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.vessel_provider = vessel_provider
        self.depth_provider = depth_provider
        self.engine = engine
        self.hierarchy = hierarchy
        self.emergency = emergency
        self.navigator = navigator
        self.weather_source = weather_source
        self.compliance_provider = compliance_provider
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._depth_history: deque[float] = deque(maxlen=_DEPTH_HISTORY)
        self.metrics_feed: EventFeed[SafetyMetrics] = EventFeed("metrics")
        self.recommendations_feed: EventFeed[list[SafetyRecommendation]] = EventFeed("recommendations")
        self.last_metrics: Optional[SafetyMetrics] = None
        self.skipped_ticks = 0

    # ── Loop control ─────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="safety-monitor", daemon=True)
        self._thread.start()
        logger.info("Safety monitoring started (every %.0fs)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Safety monitoring stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Safety monitoring tick failed")
            self._stop.wait(self.interval_seconds)

    # ── Tick ─────────────────────────────────────────────────────────────────

    def tick(self) -> Optional[SafetyMetrics]:
        """Run one monitoring pass; returns None if skipped."""
        if not self._tick_lock.acquire(blocking=False):
            self.skipped_ticks += 1
            logger.warning("Safety monitoring tick skipped: previous tick still running")
            return None
        try:
            return self._run_tick()
        finally:
            self._tick_lock.release()

    def _fetch_snapshot(self, state: VesselState) -> Optional[EnvironmentalSnapshot]:
        if self.weather_source is None:
            return None
        try:
            return self.weather_source.snapshot(state.lat, state.lon)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Weather unavailable for vessel %s: %s", state.vessel_id, exc)
            return None

    def _run_tick(self) -> Optional[SafetyMetrics]:
        state = self.vessel_provider()
        if state is None:
            logger.debug("No vessel state; nothing to monitor")
            return None
        now = self._clock()
        status = classify_vessel_status(state.speed_kn)
        if self.emergency is not None:
            self.emergency.update_vessel_state(state)

        readings = sorted(
            self.depth_provider(state.lat, state.lon, NEARBY_RADIUS_M),
            key=lambda r: haversine_meters(state.lat, state.lon, r.lat, r.lon),
        )[:MAX_READINGS_PER_TICK]
        snapshot = self._fetch_snapshot(state)
        # Safety is judged against this vessel's draft, not the submitter's
        processed = [self.engine.process(replace(r, vessel_draft=state.draft_m), snapshot=snapshot) for r in readings]
        nearest = processed[0] if processed else None
        area = assess_area_safety(readings, state.lat, state.lon, state.draft_m, now=now) if readings else None

        conditions: list[AlertCondition] = []
        if nearest is not None:
            depth_condition = condition_from_processed_reading(nearest)
            if depth_condition is not None:
                conditions.append(depth_condition)

        observation: Optional[NavigationObservation] = None
        if self.navigator is not None:
            observation = self.navigator.observe(state, nearest)
            conditions.extend(observation.conditions)

        weather = assess_weather(snapshot)
        time_to_impact = estimate_time_to_impact(state, processed)
        triggers = self._emergency_triggers(state, nearest, weather, time_to_impact, conditions)

        for condition in conditions:
            self.hierarchy.raise_alert(condition)
        self.hierarchy.expire_stale()
        self.hierarchy.apply_escalation_rules()

        if nearest is not None:
            self._depth_history.append(nearest.final_depth)

        compliance = tuple(self.compliance_provider()) if self.compliance_provider else ()
        highest = self.hierarchy.highest_active_severity()
        open_incidents = len(self.emergency.open_incidents()) if self.emergency is not None else 0
        if open_incidents:
            safety_status = AlertSeverityEnum.EMERGENCY.value
        else:
            safety_status = highest.value if highest is not None else "safe"

        metrics = SafetyMetrics(
            vessel_id=state.vessel_id,
            timestamp=now,
            lat=state.lat,
            lon=state.lon,
            vessel_status=status,
            safety_status=safety_status,
            current_depth=nearest.final_depth if nearest else None,
            safety_margin=nearest.safety_margin if nearest else None,
            confidence=nearest.confidence if nearest else 0.0,
            reliability=nearest.reliability.value if nearest else None,
            area=area,
            weather=weather,
            route_deviation_m=observation.deviation_m if observation else None,
            eta=observation.eta if observation else None,
            time_to_impact_s=round(time_to_impact, 1) if time_to_impact is not None else None,
            compliance_issues=compliance,
            alert_counts=self.hierarchy.metrics(),
            open_incidents=open_incidents,
            triggers=tuple(triggers),
        )
        self.last_metrics = metrics
        self.metrics_feed.publish(metrics)

        recommendations = build_recommendations(metrics, now)
        if recommendations:
            self.recommendations_feed.publish(recommendations)

        if self.emergency is not None:
            self.emergency.maybe_send_position_report(state, status)
        return metrics

    def _emergency_triggers(
        self,
        state: VesselState,
        nearest: Optional[ProcessedDepthReading],
        weather: Optional[WeatherConditionEnum],
        time_to_impact: Optional[float],
        conditions: list[AlertCondition],
    ) -> list[str]:
        triggers: list[str] = []
        if (
            nearest is not None
            and nearest.safety_margin < GROUNDING_MARGIN_M
            and state.speed_kn > GROUNDING_MIN_SPEED_KN
            and time_to_impact is not None
            and time_to_impact < GROUNDING_TIME_THRESHOLD_S
        ):
            triggers.append("imminent_grounding")
            logger.error(
                "Imminent grounding for vessel %s: %.0fs to shallow water at %.1f kn",
                state.vessel_id, time_to_impact, state.speed_kn,
            )
            conditions.append(AlertCondition(
                domain=AlertDomainEnum.GROUNDING,
                cause="imminent_grounding",
                severity=AlertSeverityEnum.EMERGENCY,
                title="GROUNDING EMERGENCY",
                message=f"Shallow water {time_to_impact:.0f}s ahead at {state.speed_kn:.1f} kn",
                lat=state.lat,
                lon=state.lon,
                metadata={"automatic": True, "time_to_impact_s": round(time_to_impact, 1)},
            ))

        if (
            nearest is not None
            and nearest.final_depth > DEEP_WATER_THRESHOLD_M
            and self._depth_history
            and self._depth_history[-1] < SHALLOW_HISTORY_M
        ):
            triggers.append("unexpected_deep_water")
            conditions.append(AlertCondition(
                domain=AlertDomainEnum.NAVIGATION,
                cause="unexpected_deep_water",
                severity=AlertSeverityEnum.WARNING,
                title="Unexpected deep water",
                message="Depth increased significantly - verify position",
                lat=state.lat,
                lon=state.lon,
            ))

        if weather is WeatherConditionEnum.DANGEROUS:
            triggers.append("dangerous_weather")
            conditions.append(AlertCondition(
                domain=AlertDomainEnum.WEATHER,
                cause="dangerous_weather",
                severity=AlertSeverityEnum.CRITICAL,
                title="Dangerous weather conditions",
                message="Seek immediate shelter or safe harbor",
                lat=state.lat,
                lon=state.lon,
            ))
        elif weather is WeatherConditionEnum.POOR:
            conditions.append(AlertCondition(
                domain=AlertDomainEnum.WEATHER,
                cause="poor_weather",
                severity=AlertSeverityEnum.CAUTION,
                title="Poor weather",
                message="Reduced visibility or heavy seas - increase vigilance",
                lat=state.lat,
                lon=state.lon,
            ))
        return triggers
