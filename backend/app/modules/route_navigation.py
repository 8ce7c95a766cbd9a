"""Safe route navigation — compare the vessel against its planned route.

Per observation:
  deviation_m          perpendicular (cross-track) distance from the active leg
  distance/bearing     to the next waypoint
  speed_variance_kn    actual − planned speed
  eta                  remaining route distance / current speed

The active leg advances when the vessel comes within the arrival radius of
its next waypoint. Leg geometry is computed with shapely in a local
equirectangular frame (meters) centred on the vessel, which is accurate to
well under a meter over coastal leg lengths.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from shapely.geometry import LineString, Point

from app.models.base import AlertDomainEnum, AlertSeverityEnum
from app.modules.alert_hierarchy import AlertCondition
from app.modules.environmental_correction import KNOTS_TO_MS
from app.modules.marine_data import VesselState, to_naive_utc
from app.modules.safety_validation import ProcessedDepthReading
from app.utils.geo import METERS_PER_DEGREE_LAT, haversine_meters, initial_bearing_deg

logger = logging.getLogger(__name__)

DEVIATION_CAUTION_M = 50.0
DEVIATION_ALERT_M = 100.0
SPEED_VARIANCE_KN = 2.0
ARRIVAL_RADIUS_M = 50.0
# Under-keel clearance below this fraction of draft while underway → grounding risk
GROUNDING_CLEARANCE_RATIO = 0.5
_UNDERWAY_KN = 2.0


@dataclass(frozen=True)
class Waypoint:
    lat: float
    lon: float
    name: Optional[str] = None
    planned_speed_kn: Optional[float] = None


@dataclass
class PlannedRoute:
    route_id: str
    waypoints: list[Waypoint]
    planned_speed_kn: float = 6.0

    def __post_init__(self) -> None:
        if len(self.waypoints) < 2:
            raise ValueError("a route needs at least two waypoints")


@dataclass(frozen=True)
class NavigationObservation:
    route_id: str
    vessel_id: str
    timestamp: datetime
    deviation_m: float
    next_waypoint_index: int
    distance_to_next_m: float
    bearing_to_next_deg: float
    speed_variance_kn: float
    distance_remaining_m: float
    eta: Optional[datetime]
    arrived: bool = False
    conditions: list[AlertCondition] = field(default_factory=list)


def _local_xy(lat: float, lon: float, origin_lat: float, origin_lon: float) -> tuple[float, float]:
    x = (lon - origin_lon) * METERS_PER_DEGREE_LAT * math.cos(math.radians(origin_lat))
    y = (lat - origin_lat) * METERS_PER_DEGREE_LAT
    return x, y


def cross_track_distance_m(lat: float, lon: float, start: Waypoint, end: Waypoint) -> float:
    """Distance from (lat, lon) to the segment start→end, in meters."""
    leg = LineString([
        _local_xy(start.lat, start.lon, lat, lon),
        _local_xy(end.lat, end.lon, lat, lon),
    ])
    return leg.distance(Point(0.0, 0.0))


class SafeRouteNavigator:
    """Tracks one vessel along one planned route."""

    def __init__(
        self,
        route: PlannedRoute,
        deviation_alert_m: float = DEVIATION_ALERT_M,
        deviation_caution_m: float = DEVIATION_CAUTION_M,
        speed_variance_kn: float = SPEED_VARIANCE_KN,
        arrival_radius_m: float = ARRIVAL_RADIUS_M,
    ) -> None:
        self.route = route
        self.deviation_alert_m = deviation_alert_m
        self.deviation_caution_m = deviation_caution_m
        self.speed_variance_kn = speed_variance_kn
        self.arrival_radius_m = arrival_radius_m
        self.next_index = 1

    def _advance(self, state: VesselState) -> bool:
        """Move past every waypoint already within the arrival radius."""
        waypoints = self.route.waypoints
        while self.next_index < len(waypoints):
            wp = waypoints[self.next_index]
            if haversine_meters(state.lat, state.lon, wp.lat, wp.lon) > self.arrival_radius_m:
                return False
            logger.info("Vessel %s reached waypoint %d of route %s", state.vessel_id, self.next_index, self.route.route_id)
            self.next_index += 1
        return True

    def _remaining_distance(self, state: VesselState) -> float:
        waypoints = self.route.waypoints
        if self.next_index >= len(waypoints):
            return 0.0
        nxt = waypoints[self.next_index]
        total = haversine_meters(state.lat, state.lon, nxt.lat, nxt.lon)
        for a, b in zip(waypoints[self.next_index:], waypoints[self.next_index + 1:]):
            total += haversine_meters(a.lat, a.lon, b.lat, b.lon)
        return total

    def observe(
        self,
        state: VesselState,
        processed: Optional[ProcessedDepthReading] = None,
    ) -> NavigationObservation:
        """Compute deviation metrics for the current fix and derive alert conditions."""
        arrived = self._advance(state)
        waypoints = self.route.waypoints
        now = to_naive_utc(state.timestamp)

        if arrived:
            last = waypoints[-1]
            deviation = 0.0
            distance_next = haversine_meters(state.lat, state.lon, last.lat, last.lon)
            bearing_next = initial_bearing_deg(state.lat, state.lon, last.lat, last.lon)
            planned_speed = last.planned_speed_kn or self.route.planned_speed_kn
            next_index = len(waypoints) - 1
        else:
            prev_wp, next_wp = waypoints[self.next_index - 1], waypoints[self.next_index]
            deviation = cross_track_distance_m(state.lat, state.lon, prev_wp, next_wp)
            distance_next = haversine_meters(state.lat, state.lon, next_wp.lat, next_wp.lon)
            bearing_next = initial_bearing_deg(state.lat, state.lon, next_wp.lat, next_wp.lon)
            planned_speed = next_wp.planned_speed_kn or self.route.planned_speed_kn
            next_index = self.next_index

        speed_variance = state.speed_kn - planned_speed
        remaining = self._remaining_distance(state)
        eta = None
        if arrived:
            eta = now
        elif state.speed_kn > 0.1:
            eta = now + timedelta(seconds=remaining / (state.speed_kn * KNOTS_TO_MS))

        conditions = self._conditions(state, deviation, speed_variance, arrived, processed)
        return NavigationObservation(
            route_id=self.route.route_id,
            vessel_id=state.vessel_id,
            timestamp=now,
            deviation_m=round(deviation, 1),
            next_waypoint_index=next_index,
            distance_to_next_m=round(distance_next, 1),
            bearing_to_next_deg=round(bearing_next, 1),
            speed_variance_kn=round(speed_variance, 2),
            distance_remaining_m=round(remaining, 1),
            eta=eta,
            arrived=arrived,
            conditions=conditions,
        )

    def _conditions(
        self,
        state: VesselState,
        deviation: float,
        speed_variance: float,
        arrived: bool,
        processed: Optional[ProcessedDepthReading],
    ) -> list[AlertCondition]:
        conditions: list[AlertCondition] = []
        if not arrived and deviation > self.deviation_caution_m:
            severity = (
                AlertSeverityEnum.WARNING if deviation > self.deviation_alert_m else AlertSeverityEnum.CAUTION
            )
            conditions.append(AlertCondition(
                domain=AlertDomainEnum.NAVIGATION,
                cause="route_deviation",
                severity=severity,
                title="Off planned route",
                message=f"Vessel is {deviation:.0f} m off the planned route",
                lat=state.lat,
                lon=state.lon,
            ))
        if not arrived and abs(speed_variance) > self.speed_variance_kn:
            direction = "above" if speed_variance > 0 else "below"
            conditions.append(AlertCondition(
                domain=AlertDomainEnum.NAVIGATION,
                cause="speed_variance",
                severity=AlertSeverityEnum.CAUTION,
                title="Speed differs from plan",
                message=f"Speed is {abs(speed_variance):.1f} kn {direction} planned speed",
                lat=state.lat,
                lon=state.lon,
            ))
        if (
            processed is not None
            and state.speed_kn > _UNDERWAY_KN
            and state.draft_m > 0
            and processed.safety_margin / state.draft_m < GROUNDING_CLEARANCE_RATIO
        ):
            conditions.append(AlertCondition(
                domain=AlertDomainEnum.GROUNDING,
                cause="low_clearance_underway",
                severity=AlertSeverityEnum.CRITICAL,
                title="Grounding risk",
                message=(
                    f"Safety margin {processed.safety_margin:.1f} m is below half the draft "
                    f"while making {state.speed_kn:.1f} kn"
                ),
                lat=state.lat,
                lon=state.lon,
            ))
        return conditions
