"""Safety alert hierarchy — a severity-ranked, deduplicating alert bus.

Lifecycle per alert:

    active ──► acknowledged ──► expired | superseded | dismissed
       └──────────────────────► expired | superseded | dismissed

  * A condition matching a live alert (same domain and cause, within the
    dedup radius) refreshes it instead of creating a second one.
  * Severity only moves up in place. A lower-severity repeat just refreshes.
    Escalating an acknowledged alert makes it active again.
  * Clearing a condition marks its alert superseded. Critical and emergency
    alerts cannot be dismissed.
  * Alerts that become critical/emergency are handed to the broadcast sink
    (the emergency protocol manager in production wiring).
  * expire_stale also forgets alerts that finished more than the retention
    window ago, so the store only holds live and recently finished alerts.

Subscribers get an AlertEvent for every created or escalated alert through a
bounded per-subscriber queue. Events are published under the hierarchy lock,
so each subscriber sees them in creation order (FIFO within a domain).
When a queue is full its oldest event is dropped and logged.
"""
from __future__ import annotations

import enum
import itertools
import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from app.config import settings
from app.models.base import AlertDomainEnum, AlertSeverityEnum, AlertStatusEnum
from app.modules.marine_data import utcnow
from app.modules.protocol_config import load_safety_protocols
from app.modules.safety_validation import ProcessedDepthReading
from app.utils.geo import haversine_meters

logger = logging.getLogger(__name__)

# Depth condition thresholds (safety margin, meters)
LIMITED_CLEARANCE_MARGIN_M = 1.0

_TRANSITIONS: dict[AlertStatusEnum, frozenset[AlertStatusEnum]] = {
    AlertStatusEnum.ACTIVE: frozenset({
        AlertStatusEnum.ACKNOWLEDGED,
        AlertStatusEnum.EXPIRED,
        AlertStatusEnum.SUPERSEDED,
        AlertStatusEnum.DISMISSED,
    }),
    AlertStatusEnum.ACKNOWLEDGED: frozenset({
        AlertStatusEnum.ACTIVE,  # only through escalation
        AlertStatusEnum.EXPIRED,
        AlertStatusEnum.SUPERSEDED,
        AlertStatusEnum.DISMISSED,
    }),
    AlertStatusEnum.EXPIRED: frozenset(),
    AlertStatusEnum.SUPERSEDED: frozenset(),
    AlertStatusEnum.DISMISSED: frozenset(),
}

_LIVE = frozenset({AlertStatusEnum.ACTIVE, AlertStatusEnum.ACKNOWLEDGED})


class InvalidTransitionError(ValueError):
    """Raised for a state change the lifecycle does not allow."""


class AlertEventKind(str, enum.Enum):
    CREATED = "created"
    ESCALATED = "escalated"


@dataclass(frozen=True)
class AlertCondition:
    """An observation that something is unsafe; input to raise_alert()."""
    domain: AlertDomainEnum
    cause: str
    severity: AlertSeverityEnum
    title: str
    message: str
    lat: float
    lon: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SafetyAlert:
    alert_id: str
    domain: AlertDomainEnum
    cause: str
    severity: AlertSeverityEnum
    title: str
    message: str
    lat: float
    lon: float
    created_at: datetime
    updated_at: datetime
    severity_since: datetime
    expires_at: datetime
    status: AlertStatusEnum = AlertStatusEnum.ACTIVE
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    occurrence_count: int = 1
    escalation_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def broadcast_required(self) -> bool:
        return self.severity.broadcast_required

    @property
    def requires_acknowledgment(self) -> bool:
        return self.severity.broadcast_required

    @property
    def is_live(self) -> bool:
        return self.status in _LIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "domain": self.domain.value,
            "cause": self.cause,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "lat": self.lat,
            "lon": self.lon,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "broadcast_required": self.broadcast_required,
            "occurrence_count": self.occurrence_count,
        }


@dataclass(frozen=True)
class AlertEvent:
    kind: AlertEventKind
    alert: SafetyAlert


class AlertSink(ABC):
    """Receives alerts that require broadcast (critical / emergency)."""

    @abstractmethod
    def on_broadcast_alert(self, alert: SafetyAlert) -> None:
        ...


class Subscription:
    """A bounded FIFO of AlertEvents for one subscriber."""

    def __init__(
        self,
        hierarchy: "SafetyAlertHierarchy",
        domains: Optional[frozenset[AlertDomainEnum]],
        maxsize: int,
    ) -> None:
        self._hierarchy = hierarchy
        self.domains = domains
        self._queue: queue.Queue[AlertEvent] = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def wants(self, event: AlertEvent) -> bool:
        return not self.closed and (self.domains is None or event.alert.domain in self.domains)

    def deliver(self, event: AlertEvent) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    continue
                self.dropped += 1
                logger.warning("Alert subscriber queue full — dropped oldest event (%d dropped)", self.dropped)

    def get(self, timeout: Optional[float] = None) -> Optional[AlertEvent]:
        """Next event, or None if none arrives within timeout."""
        try:
            return self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self) -> list[AlertEvent]:
        events = []
        while True:
            event = self.get()
            if event is None:
                return events
            events.append(event)

    def unsubscribe(self) -> None:
        self._hierarchy.unsubscribe(self)


@dataclass(frozen=True)
class EscalationRule:
    domain: AlertDomainEnum
    from_severity: AlertSeverityEnum
    to_severity: AlertSeverityEnum
    after_seconds: float


def load_escalation_rules(raw: Optional[Iterable[dict[str, Any]]] = None) -> list[EscalationRule]:
    if raw is None:
        raw = load_safety_protocols().get("escalation_rules", [])
    rules = []
    for entry in raw:
        try:
            rules.append(EscalationRule(
                domain=AlertDomainEnum(entry["domain"]),
                from_severity=AlertSeverityEnum(entry["from"]),
                to_severity=AlertSeverityEnum(entry["to"]),
                after_seconds=float(entry["after_seconds"]),
            ))
        except (KeyError, ValueError) as exc:
            logger.warning("Ignoring malformed escalation rule %r: %s", entry, exc)
    return rules


def condition_from_processed_reading(processed: ProcessedDepthReading) -> Optional[AlertCondition]:
    """Shallow-water condition for a processed reading, or None when clearance is fine."""
    margin = processed.safety_margin
    reading = processed.reading
    if margin != margin:  # NaN: malformed input, nothing to locate an alert on
        return None
    if margin < 0:
        return AlertCondition(
            domain=AlertDomainEnum.DEPTH,
            cause="shallow_water",
            severity=AlertSeverityEnum.WARNING,
            title="Shallow water",
            message=(
                f"Depth {processed.final_depth:.1f} m leaves {margin:.1f} m below the "
                f"required clearance for a {reading.vessel_draft:.1f} m draft"
            ),
            lat=reading.lat,
            lon=reading.lon,
            metadata={"reading_id": reading.reading_id, "reliability": processed.reliability.value},
        )
    if margin < LIMITED_CLEARANCE_MARGIN_M:
        return AlertCondition(
            domain=AlertDomainEnum.DEPTH,
            cause="shallow_water",
            severity=AlertSeverityEnum.CAUTION,
            title="Limited under-keel clearance",
            message=f"Only {margin:.1f} m of clearance beyond the safety margin",
            lat=reading.lat,
            lon=reading.lon,
            metadata={"reading_id": reading.reading_id, "reliability": processed.reliability.value},
        )
    return None


class SafetyAlertHierarchy:
    """Thread-safe alert store with dedup, escalation and pub/sub.

    Args:
        broadcast_sink: Receives alerts that are or become critical/emergency.
        dedup_radius_m: Conditions closer than this share an alert.
        alert_ttl_seconds: Lifetime after the last refresh.
        retention_seconds: How long finished alerts stay retrievable.
        subscriber_queue_size: Per-subscriber bound.
        escalation_rules: Time-based rules; loaded from config when None.
        clock: Returns naive-UTC now; injectable for tests.
    """

    def __init__(
        self,
        broadcast_sink: Optional[AlertSink] = None,
        dedup_radius_m: float = settings.ALERT_DEDUP_RADIUS_M,
        alert_ttl_seconds: float = settings.ALERT_TTL_SECONDS,
        retention_seconds: float = settings.ALERT_RETENTION_SECONDS,
        subscriber_queue_size: int = settings.SUBSCRIBER_QUEUE_SIZE,
        escalation_rules: Optional[list[EscalationRule]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.broadcast_sink = broadcast_sink
        self.dedup_radius_m = dedup_radius_m
        self.alert_ttl = timedelta(seconds=alert_ttl_seconds)
        self.retention = timedelta(seconds=retention_seconds)
        self.subscriber_queue_size = subscriber_queue_size
        self.escalation_rules = escalation_rules if escalation_rules is not None else load_escalation_rules()
        self._clock = clock
        self._lock = threading.RLock()
        self._alerts: dict[str, SafetyAlert] = {}
        self._subscribers: list[Subscription] = []
        self._ids = itertools.count(1)

    # ── Subscriptions ────────────────────────────────────────────────────────

    def subscribe(self, domains: Optional[Iterable[AlertDomainEnum]] = None) -> Subscription:
        sub = Subscription(self, frozenset(domains) if domains else None, self.subscriber_queue_size)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscription.closed = True
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def _publish(self, event: AlertEvent) -> None:
        for sub in self._subscribers:
            if sub.wants(event):
                sub.deliver(event)

    # ── Core operations ──────────────────────────────────────────────────────

    def _find_live(self, condition: AlertCondition) -> Optional[SafetyAlert]:
        for alert in self._alerts.values():
            if (
                alert.is_live
                and alert.domain == condition.domain
                and alert.cause == condition.cause
                and haversine_meters(alert.lat, alert.lon, condition.lat, condition.lon) <= self.dedup_radius_m
            ):
                return alert
        return None

    def _transition(self, alert: SafetyAlert, target: AlertStatusEnum, **changes: Any) -> SafetyAlert:
        if target not in _TRANSITIONS[alert.status]:
            raise InvalidTransitionError(f"alert {alert.alert_id}: {alert.status.value} → {target.value} not allowed")
        updated = replace(alert, status=target, **changes)
        self._alerts[alert.alert_id] = updated
        return updated

    def _escalate(self, alert: SafetyAlert, severity: AlertSeverityEnum, now: datetime, **changes: Any) -> SafetyAlert:
        if alert.status is AlertStatusEnum.ACKNOWLEDGED:
            alert = self._transition(alert, AlertStatusEnum.ACTIVE, acknowledged_at=None, acknowledged_by=None)
        escalated = replace(
            alert,
            severity=severity,
            updated_at=now,
            severity_since=now,
            expires_at=now + self.alert_ttl,
            escalation_count=alert.escalation_count + 1,
            **changes,
        )
        self._alerts[alert.alert_id] = escalated
        logger.warning(
            "Alert %s escalated to %s (%s/%s)", escalated.alert_id, severity.value, escalated.domain.value, escalated.cause
        )
        self._publish(AlertEvent(AlertEventKind.ESCALATED, escalated))
        return escalated

    def raise_alert(self, condition: AlertCondition) -> SafetyAlert:
        """Create, refresh or escalate the alert for a condition.

        Returns:
            The alert as stored after this call.
        """
        needs_broadcast = False
        with self._lock:
            now = self._clock()
            existing = self._find_live(condition)
            if existing is None:
                alert = SafetyAlert(
                    alert_id=f"alert-{next(self._ids)}",
                    domain=condition.domain,
                    cause=condition.cause,
                    severity=condition.severity,
                    title=condition.title,
                    message=condition.message,
                    lat=condition.lat,
                    lon=condition.lon,
                    created_at=now,
                    updated_at=now,
                    severity_since=now,
                    expires_at=now + self.alert_ttl,
                    metadata=dict(condition.metadata),
                )
                self._alerts[alert.alert_id] = alert
                logger.info("Alert %s created: %s %s/%s", alert.alert_id, alert.severity.value, alert.domain.value, alert.cause)
                self._publish(AlertEvent(AlertEventKind.CREATED, alert))
                needs_broadcast = alert.broadcast_required
            elif condition.severity.rank > existing.severity.rank:
                alert = self._escalate(
                    existing,
                    condition.severity,
                    now,
                    title=condition.title,
                    message=condition.message,
                    occurrence_count=existing.occurrence_count + 1,
                )
                needs_broadcast = alert.broadcast_required
            else:
                alert = replace(
                    existing,
                    updated_at=now,
                    expires_at=now + self.alert_ttl,
                    occurrence_count=existing.occurrence_count + 1,
                )
                self._alerts[alert.alert_id] = alert
                logger.debug("Alert %s refreshed (%d occurrences)", alert.alert_id, alert.occurrence_count)

        if needs_broadcast and self.broadcast_sink is not None:
            self.broadcast_sink.on_broadcast_alert(alert)
        return alert

    def acknowledge(self, alert_id: str, acknowledged_by: Optional[str] = None) -> SafetyAlert:
        with self._lock:
            alert = self._require(alert_id)
            return self._transition(
                alert, AlertStatusEnum.ACKNOWLEDGED, acknowledged_at=self._clock(), acknowledged_by=acknowledged_by,
            )

    def dismiss(self, alert_id: str) -> SafetyAlert:
        with self._lock:
            alert = self._require(alert_id)
            if alert.severity.broadcast_required:
                raise InvalidTransitionError(f"{alert.severity.value} alerts cannot be dismissed")
            return self._transition(alert, AlertStatusEnum.DISMISSED, updated_at=self._clock())

    def clear_condition(self, domain: AlertDomainEnum, cause: str, lat: float, lon: float) -> Optional[SafetyAlert]:
        """Explicit clearing observation: the matching live alert becomes superseded."""
        match = AlertCondition(domain, cause, AlertSeverityEnum.CAUTION, "", "", lat, lon)
        with self._lock:
            alert = self._find_live(match)
            if alert is None:
                return None
            logger.info("Alert %s cleared", alert.alert_id)
            return self._transition(alert, AlertStatusEnum.SUPERSEDED, updated_at=self._clock())

    def expire_stale(self) -> list[SafetyAlert]:
        with self._lock:
            now = self._clock()
            stale = [a for a in self._alerts.values() if a.is_live and a.expires_at <= now]
            expired = [self._transition(a, AlertStatusEnum.EXPIRED, updated_at=now) for a in stale]
            cutoff = now - self.retention
            finished = [a.alert_id for a in self._alerts.values() if not a.is_live and a.updated_at <= cutoff]
            for alert_id in finished:
                del self._alerts[alert_id]
            if finished:
                logger.debug("Forgot %d finished alerts", len(finished))
            return expired

    def apply_escalation_rules(self) -> list[SafetyAlert]:
        """Escalate unacknowledged alerts that have sat at a severity too long."""
        to_broadcast: list[SafetyAlert] = []
        escalated: list[SafetyAlert] = []
        with self._lock:
            now = self._clock()
            for alert in list(self._alerts.values()):
                if alert.status is not AlertStatusEnum.ACTIVE:
                    continue
                for rule in self.escalation_rules:
                    if (
                        rule.domain == alert.domain
                        and rule.from_severity == alert.severity
                        and (now - alert.severity_since).total_seconds() >= rule.after_seconds
                    ):
                        updated = self._escalate(alert, rule.to_severity, now)
                        escalated.append(updated)
                        if updated.broadcast_required:
                            to_broadcast.append(updated)
                        break
        if self.broadcast_sink is not None:
            for alert in to_broadcast:
                self.broadcast_sink.on_broadcast_alert(alert)
        return escalated

    # ── Queries ──────────────────────────────────────────────────────────────

    def _require(self, alert_id: str) -> SafetyAlert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise KeyError(alert_id)
        return alert

    def get(self, alert_id: str) -> Optional[SafetyAlert]:
        with self._lock:
            return self._alerts.get(alert_id)

    def active_alerts(self, domain: Optional[AlertDomainEnum] = None) -> list[SafetyAlert]:
        """Live alerts, most severe first, then most recently updated."""
        with self._lock:
            live = [a for a in self._alerts.values() if a.is_live and (domain is None or a.domain == domain)]
        return sorted(live, key=lambda a: (-a.severity.rank, -a.updated_at.timestamp()))

    def highest_active_severity(self) -> Optional[AlertSeverityEnum]:
        alerts = self.active_alerts()
        return alerts[0].severity if alerts else None

    def metrics(self) -> dict[str, Any]:
        alerts = self.active_alerts()
        by_domain: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for a in alerts:
            by_domain[a.domain.value] = by_domain.get(a.domain.value, 0) + 1
            by_severity[a.severity.value] = by_severity.get(a.severity.value, 0) + 1
        return {
            "active": len(alerts),
            "unacknowledged": sum(1 for a in alerts if a.status is AlertStatusEnum.ACTIVE),
            "by_domain": by_domain,
            "by_severity": by_severity,
        }
