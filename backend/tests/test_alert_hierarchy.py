"""Tests for the deduplicating, escalating safety alert hierarchy."""
import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from app.models.base import AlertDomainEnum, AlertSeverityEnum, AlertStatusEnum
from app.modules.alert_hierarchy import (
    AlertCondition,
    AlertEventKind,
    EscalationRule,
    InvalidTransitionError,
    SafetyAlertHierarchy,
    load_escalation_rules,
)

T0 = datetime(2024, 6, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def _condition(severity=AlertSeverityEnum.WARNING, domain=AlertDomainEnum.DEPTH, cause="shallow_water",
               lat=37.8199, lon=-122.4783):
    return AlertCondition(domain, cause, severity, "Shallow water", "Depth below clearance", lat, lon)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return MagicMock()


@pytest.fixture
def hierarchy(clock, sink):
    return SafetyAlertHierarchy(broadcast_sink=sink, escalation_rules=[], alert_ttl_seconds=600, clock=clock)


class TestRaiseAlert:
    def test_creates_alert(self, hierarchy):
        alert = hierarchy.raise_alert(_condition())
        assert alert.status is AlertStatusEnum.ACTIVE
        assert alert.severity is AlertSeverityEnum.WARNING
        assert not alert.broadcast_required
        assert hierarchy.get(alert.alert_id) == alert

    def test_nearby_repeat_refreshes(self, hierarchy, clock):
        first = hierarchy.raise_alert(_condition())
        clock.advance(30)
        second = hierarchy.raise_alert(_condition(lat=37.8205))
        assert second.alert_id == first.alert_id
        assert second.occurrence_count == 2
        assert second.expires_at == clock.now + timedelta(seconds=600)
        assert len(hierarchy.active_alerts()) == 1

    def test_concurrent_repeats_share_one_alert(self, hierarchy):
        n = 16
        barrier = threading.Barrier(n)
        results = []
        errors = []

        def worker(i):
            try:
                barrier.wait()
                results.append(hierarchy.raise_alert(_condition(lat=37.8199 + i * 0.00001)))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({a.alert_id for a in results}) == 1
        (alert,) = hierarchy.active_alerts()
        assert alert.occurrence_count == n

    def test_distinct_cause_or_place_gets_new_alert(self, hierarchy):
        a = hierarchy.raise_alert(_condition())
        b = hierarchy.raise_alert(_condition(cause="limited_clearance"))
        c = hierarchy.raise_alert(_condition(lat=37.90))
        assert len({a.alert_id, b.alert_id, c.alert_id}) == 3

    def test_severity_never_decreases(self, hierarchy):
        hierarchy.raise_alert(_condition(AlertSeverityEnum.WARNING))
        alert = hierarchy.raise_alert(_condition(AlertSeverityEnum.CAUTION))
        assert alert.severity is AlertSeverityEnum.WARNING

    def test_escalation_to_critical_broadcasts(self, hierarchy, sink):
        hierarchy.raise_alert(_condition(AlertSeverityEnum.WARNING))
        sink.on_broadcast_alert.assert_not_called()
        alert = hierarchy.raise_alert(_condition(AlertSeverityEnum.CRITICAL))
        assert alert.severity is AlertSeverityEnum.CRITICAL
        assert alert.escalation_count == 1
        sink.on_broadcast_alert.assert_called_once_with(alert)

    def test_new_emergency_broadcasts(self, hierarchy, sink):
        alert = hierarchy.raise_alert(_condition(AlertSeverityEnum.EMERGENCY, domain=AlertDomainEnum.GROUNDING))
        assert alert.requires_acknowledgment
        sink.on_broadcast_alert.assert_called_once_with(alert)

    def test_escalating_acknowledged_alert_reactivates(self, hierarchy):
        alert = hierarchy.raise_alert(_condition(AlertSeverityEnum.WARNING))
        hierarchy.acknowledge(alert.alert_id, "skipper")
        escalated = hierarchy.raise_alert(_condition(AlertSeverityEnum.CRITICAL))
        assert escalated.status is AlertStatusEnum.ACTIVE
        assert escalated.acknowledged_by is None


class TestLifecycle:
    def test_acknowledge(self, hierarchy, clock):
        alert = hierarchy.raise_alert(_condition())
        acked = hierarchy.acknowledge(alert.alert_id, "skipper")
        assert acked.status is AlertStatusEnum.ACKNOWLEDGED
        assert acked.acknowledged_at == clock.now
        assert acked.is_live

    def test_double_acknowledge_rejected(self, hierarchy):
        alert = hierarchy.raise_alert(_condition())
        hierarchy.acknowledge(alert.alert_id)
        with pytest.raises(InvalidTransitionError):
            hierarchy.acknowledge(alert.alert_id)

    def test_unknown_alert(self, hierarchy):
        with pytest.raises(KeyError):
            hierarchy.acknowledge("alert-999")

    def test_dismiss(self, hierarchy):
        alert = hierarchy.raise_alert(_condition(AlertSeverityEnum.CAUTION))
        assert hierarchy.dismiss(alert.alert_id).status is AlertStatusEnum.DISMISSED
        assert hierarchy.active_alerts() == []

    def test_critical_cannot_be_dismissed(self, hierarchy):
        alert = hierarchy.raise_alert(_condition(AlertSeverityEnum.CRITICAL))
        with pytest.raises(InvalidTransitionError):
            hierarchy.dismiss(alert.alert_id)

    def test_clear_condition_supersedes(self, hierarchy):
        alert = hierarchy.raise_alert(_condition())
        cleared = hierarchy.clear_condition(AlertDomainEnum.DEPTH, "shallow_water", alert.lat, alert.lon)
        assert cleared.status is AlertStatusEnum.SUPERSEDED
        assert hierarchy.clear_condition(AlertDomainEnum.DEPTH, "shallow_water", alert.lat, alert.lon) is None

    def test_terminal_states_are_final(self, hierarchy):
        alert = hierarchy.raise_alert(_condition(AlertSeverityEnum.CAUTION))
        hierarchy.dismiss(alert.alert_id)
        with pytest.raises(InvalidTransitionError):
            hierarchy.acknowledge(alert.alert_id)

    def test_expire_stale(self, hierarchy, clock):
        alert = hierarchy.raise_alert(_condition())
        clock.advance(599)
        assert hierarchy.expire_stale() == []
        clock.advance(1)
        (expired,) = hierarchy.expire_stale()
        assert expired.alert_id == alert.alert_id
        assert expired.status is AlertStatusEnum.EXPIRED
        # a new observation after expiry starts a fresh alert
        assert hierarchy.raise_alert(_condition()).alert_id != alert.alert_id

    def test_finished_alerts_forgotten_after_retention(self, clock):
        hierarchy = SafetyAlertHierarchy(escalation_rules=[], alert_ttl_seconds=600, retention_seconds=3600, clock=clock)
        raised = [hierarchy.raise_alert(_condition(lat=37.0 + i * 0.01)) for i in range(50)]
        clock.advance(600)
        assert len(hierarchy.expire_stale()) == 50
        assert hierarchy.get(raised[0].alert_id).status is AlertStatusEnum.EXPIRED

        clock.advance(3599)
        hierarchy.expire_stale()
        assert len(hierarchy._alerts) == 50

        clock.advance(1)
        live = hierarchy.raise_alert(_condition())
        assert hierarchy.expire_stale() == []
        assert list(hierarchy._alerts) == [live.alert_id]
        assert hierarchy.get(raised[0].alert_id) is None


class TestEscalationRules:
    def test_time_based_escalation(self, clock, sink):
        rules = [EscalationRule(AlertDomainEnum.GROUNDING, AlertSeverityEnum.WARNING, AlertSeverityEnum.CRITICAL, 60)]
        hierarchy = SafetyAlertHierarchy(broadcast_sink=sink, escalation_rules=rules, clock=clock)
        alert = hierarchy.raise_alert(_condition(domain=AlertDomainEnum.GROUNDING, cause="low_clearance"))
        clock.advance(59)
        assert hierarchy.apply_escalation_rules() == []
        clock.advance(1)
        (escalated,) = hierarchy.apply_escalation_rules()
        assert escalated.alert_id == alert.alert_id
        assert escalated.severity is AlertSeverityEnum.CRITICAL
        sink.on_broadcast_alert.assert_called_once_with(escalated)

    def test_acknowledged_alert_not_escalated(self, clock):
        rules = [EscalationRule(AlertDomainEnum.DEPTH, AlertSeverityEnum.WARNING, AlertSeverityEnum.CRITICAL, 10)]
        hierarchy = SafetyAlertHierarchy(escalation_rules=rules, clock=clock)
        alert = hierarchy.raise_alert(_condition())
        hierarchy.acknowledge(alert.alert_id)
        clock.advance(60)
        assert hierarchy.apply_escalation_rules() == []

    def test_load_rules_skips_malformed(self):
        rules = load_escalation_rules([
            {"domain": "grounding", "from": "warning", "to": "critical", "after_seconds": 60},
            {"domain": "volcano", "from": "warning", "to": "critical", "after_seconds": 60},
            {"domain": "depth", "from": "warning"},
        ])
        assert len(rules) == 1
        assert rules[0].after_seconds == 60.0


class TestSubscriptions:
    def test_events_in_order(self, hierarchy):
        sub = hierarchy.subscribe()
        hierarchy.raise_alert(_condition())
        hierarchy.raise_alert(_condition(AlertSeverityEnum.CRITICAL))
        events = sub.drain()
        assert [e.kind for e in events] == [AlertEventKind.CREATED, AlertEventKind.ESCALATED]

    def test_refresh_publishes_nothing(self, hierarchy):
        hierarchy.raise_alert(_condition())
        sub = hierarchy.subscribe()
        hierarchy.raise_alert(_condition())
        assert sub.get() is None

    def test_domain_filter(self, hierarchy):
        sub = hierarchy.subscribe([AlertDomainEnum.WEATHER])
        hierarchy.raise_alert(_condition())
        hierarchy.raise_alert(_condition(domain=AlertDomainEnum.WEATHER, cause="poor_weather"))
        (event,) = sub.drain()
        assert event.alert.domain is AlertDomainEnum.WEATHER

    def test_full_queue_drops_oldest(self, clock):
        hierarchy = SafetyAlertHierarchy(escalation_rules=[], subscriber_queue_size=2, clock=clock)
        sub = hierarchy.subscribe()
        alerts = [hierarchy.raise_alert(_condition(lat=37.0 + i)) for i in range(3)]
        events = sub.drain()
        assert [e.alert.alert_id for e in events] == [a.alert_id for a in alerts[1:]]
        assert sub.dropped == 1

    def test_unsubscribe(self, hierarchy):
        sub = hierarchy.subscribe()
        sub.unsubscribe()
        hierarchy.raise_alert(_condition())
        assert sub.get() is None


class TestQueries:
    def test_active_alerts_ordered_by_severity(self, hierarchy):
        hierarchy.raise_alert(_condition(AlertSeverityEnum.CAUTION, lat=37.0))
        hierarchy.raise_alert(_condition(AlertSeverityEnum.CRITICAL, lat=38.0))
        hierarchy.raise_alert(_condition(AlertSeverityEnum.WARNING, lat=39.0))
        severities = [a.severity for a in hierarchy.active_alerts()]
        assert severities == [AlertSeverityEnum.CRITICAL, AlertSeverityEnum.WARNING, AlertSeverityEnum.CAUTION]
        assert hierarchy.highest_active_severity() is AlertSeverityEnum.CRITICAL

    def test_metrics(self, hierarchy):
        a = hierarchy.raise_alert(_condition())
        hierarchy.raise_alert(_condition(domain=AlertDomainEnum.WEATHER, cause="poor_weather"))
        hierarchy.acknowledge(a.alert_id)
        metrics = hierarchy.metrics()
        assert metrics["active"] == 2
        assert metrics["unacknowledged"] == 1
        assert metrics["by_domain"] == {"depth": 1, "weather": 1}

    def test_to_dict(self, hierarchy):
        data = hierarchy.raise_alert(_condition()).to_dict()
        assert data["severity"] == "warning"
        assert data["status"] == "active"
        assert data["broadcast_required"] is False
