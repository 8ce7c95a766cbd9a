"""Emergency protocol manager — incident lifecycle and distress broadcasting.

Incident state machine:

    reported ──► broadcasting ──► acknowledged ──► resolved
                     │   ▲
                     ▼   │ (retry budget left)
               timed_out_retry ──► failed  (manual escalation required)

  * Every broadcast goes out on all channels at once; one channel failing does
    not affect the others.
  * After each broadcast an acknowledgment timer starts (default 2 minutes).
    When it fires without an acknowledgment the incident moves to
    timed_out_retry and is re-broadcast while retries remain (default 3),
    otherwise it becomes failed and is logged for manual escalation.
  * Acknowledging or resolving an incident cancels its pending timer.
  * Position reports are independent of incident state: they go out every
    60 s while a mayday is open, otherwise every 300 s, whenever the vessel
    is underway, anchored or moored.

As an AlertSink the manager opens a MAYDAY incident for emergency alerts
and sends a one-shot PAN PAN advisory for critical alerts.
"""
from __future__ import annotations

import enum
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence

from sqlalchemy.orm import Session

from app.config import settings
from app.models.base import (
    AlertDomainEnum,
    AlertSeverityEnum,
    IncidentSeverityEnum,
    IncidentStatusEnum,
    IncidentTypeEnum,
    VesselStatusEnum,
)
from app.models.emergency_incident import EmergencyIncident
from app.modules.alert_hierarchy import AlertSink, InvalidTransitionError, SafetyAlert
from app.modules.marine_data import VesselState, utcnow
from app.modules.protocol_config import load_safety_protocols
from app.utils.geo import haversine_km

logger = logging.getLogger(__name__)

MAYDAY_POSITION_INTERVAL_S = 60
ROUTINE_POSITION_INTERVAL_S = 300

_REPORTABLE_STATUSES = frozenset({
    VesselStatusEnum.UNDERWAY, VesselStatusEnum.ANCHORED, VesselStatusEnum.MOORED,
})

_TRANSITIONS: dict[IncidentStatusEnum, frozenset[IncidentStatusEnum]] = {
    IncidentStatusEnum.REPORTED: frozenset({IncidentStatusEnum.BROADCASTING, IncidentStatusEnum.RESOLVED}),
    IncidentStatusEnum.BROADCASTING: frozenset({
        IncidentStatusEnum.ACKNOWLEDGED, IncidentStatusEnum.TIMED_OUT_RETRY, IncidentStatusEnum.RESOLVED,
    }),
    IncidentStatusEnum.TIMED_OUT_RETRY: frozenset({
        IncidentStatusEnum.BROADCASTING,
        IncidentStatusEnum.FAILED,
        IncidentStatusEnum.ACKNOWLEDGED,
        IncidentStatusEnum.RESOLVED,
    }),
    IncidentStatusEnum.ACKNOWLEDGED: frozenset({IncidentStatusEnum.RESOLVED}),
    # A late acknowledgment or a manual resolution can still close a failed incident
    IncidentStatusEnum.FAILED: frozenset({IncidentStatusEnum.ACKNOWLEDGED, IncidentStatusEnum.RESOLVED}),
    IncidentStatusEnum.RESOLVED: frozenset(),
}

_OPEN = frozenset(set(IncidentStatusEnum) - {IncidentStatusEnum.RESOLVED})

_DOMAIN_TO_INCIDENT: dict[AlertDomainEnum, IncidentTypeEnum] = {
    AlertDomainEnum.GROUNDING: IncidentTypeEnum.GROUNDING,
    AlertDomainEnum.DEPTH: IncidentTypeEnum.GROUNDING,
    AlertDomainEnum.COLLISION: IncidentTypeEnum.COLLISION,
    AlertDomainEnum.WEATHER: IncidentTypeEnum.WEATHER,
}


class DeliveryStatus(str, enum.Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


class BroadcastChannel(ABC):
    """One outbound distress channel (VHF_16, VHF_70, CELLULAR, SATELLITE, COAST_GUARD, ...)."""

    name: str = "UNNAMED"

    @abstractmethod
    def send(self, message: str) -> DeliveryStatus:
        ...


class LogBroadcastChannel(BroadcastChannel):
    """Channel that writes each message to the application log."""

    def __init__(self, name: str) -> None:
        self.name = name

    def send(self, message: str) -> DeliveryStatus:
        logger.warning("[%s] %s", self.name, message.replace("\n", " | "))
        return DeliveryStatus.DELIVERED


def default_channels() -> list[BroadcastChannel]:
    return [LogBroadcastChannel(name) for name in ("VHF_16", "VHF_70", "COAST_GUARD")]


@dataclass(frozen=True)
class EmergencyContact:
    contact_id: str
    name: str
    contact_type: str
    priority: int
    center_lat: float
    center_lon: float
    service_radius_km: float
    phone: Optional[str] = None
    vhf_channel: Optional[int] = None
    available_24h: bool = True


def load_contacts(raw: Optional[Sequence[dict[str, Any]]] = None) -> list[EmergencyContact]:
    if raw is None:
        raw = load_safety_protocols().get("emergency_contacts", [])
    contacts = []
    for entry in raw:
        try:
            contacts.append(EmergencyContact(
                contact_id=str(entry["contact_id"]),
                name=entry["name"],
                contact_type=entry.get("contact_type", "coast_guard"),
                priority=int(entry.get("priority", 9)),
                center_lat=float(entry["center_lat"]),
                center_lon=float(entry["center_lon"]),
                service_radius_km=float(entry["service_radius_km"]),
                phone=entry.get("phone"),
                vhf_channel=entry.get("vhf_channel"),
                available_24h=bool(entry.get("available_24h", True)),
            ))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed emergency contact %r: %s", entry, exc)
    return contacts


@dataclass(frozen=True)
class IncidentUpdate:
    timestamp: datetime
    status: IncidentStatusEnum
    message: str


@dataclass
class Incident:
    incident_id: str
    incident_type: IncidentTypeEnum
    severity: IncidentSeverityEnum
    lat: float
    lon: float
    vessel_profile: dict[str, Any]
    persons_on_board: int
    description: str
    reported_at: datetime
    requires_acknowledgment: bool = True
    status: IncidentStatusEnum = IncidentStatusEnum.REPORTED
    broadcast_attempts: int = 0
    retries: int = 0
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    manual_escalation_required: bool = False
    last_channel_results: dict[str, DeliveryStatus] = field(default_factory=dict)
    updates: list[IncidentUpdate] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status in _OPEN


def format_position(lat: float, lon: float) -> str:
    """Degrees and decimal minutes, e.g. 37°49.19'N 122°28.70'W."""
    def _dm(value: float, pos: str, neg: str) -> str:
        hemi = pos if value >= 0 else neg
        value = abs(value)
        degrees = int(value)
        minutes = (value - degrees) * 60
        return f"{degrees}°{minutes:05.2f}'{hemi}"
    return f"{_dm(lat, 'N', 'S')} {_dm(lon, 'E', 'W')}"


def format_distress_message(incident: Incident) -> str:
    """MAYDAY / PAN PAN voice-procedure text for an incident."""
    word = "MAYDAY" if incident.severity is IncidentSeverityEnum.MAYDAY else "PAN PAN"
    name = incident.vessel_profile.get("vessel_name") or incident.vessel_profile.get("vessel_id") or "UNKNOWN VESSEL"
    call_sign = incident.vessel_profile.get("call_sign")
    lines = [
        f"{word} {word} {word}",
        f"This is {name} {name} {name}" + (f", call sign {call_sign}" if call_sign else ""),
        f"{word} {name}",
        f"Position {format_position(incident.lat, incident.lon)}",
        f"Nature of distress: {incident.incident_type.value}",
    ]
    if incident.description:
        lines.append(incident.description)
    lines.append(f"{incident.persons_on_board} persons on board")
    lines.append("OVER")
    return "\n".join(lines)


class EmergencyProtocolManager(AlertSink):
    """Owns incidents, their broadcast/ack timers, and position reporting.

    Args:
        channels: Broadcast channels; sends run concurrently per attempt.
        contacts: Emergency contacts (loaded from config when None).
        ack_timeout_seconds: Acknowledgment window per broadcast attempt.
        max_retries: Re-broadcasts allowed after the first attempt.
        timer_factory: ``threading.Timer``-compatible factory; tests pass a
            fake whose timers fire on demand.
        session_factory: Optional; when given, incidents are persisted.
        on_manual_escalation: Called with the incident when retries run out.
        clock: Returns naive-UTC now.
    """

    def __init__(
        self,
        channels: Optional[Sequence[BroadcastChannel]] = None,
        contacts: Optional[Sequence[EmergencyContact]] = None,
        ack_timeout_seconds: float = settings.EMERGENCY_ACK_TIMEOUT_SECONDS,
        max_retries: int = settings.EMERGENCY_MAX_RETRIES,
        timer_factory: Callable[..., Any] = threading.Timer,
        session_factory: Optional[Callable[[], Session]] = None,
        on_manual_escalation: Optional[Callable[[Incident], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.channels = list(channels) if channels is not None else default_channels()
        self.contacts = list(contacts) if contacts is not None else load_contacts()
        self.ack_timeout_seconds = ack_timeout_seconds
        self.max_retries = max_retries
        self._timer_factory = timer_factory
        self._session_factory = session_factory
        self._on_manual_escalation = on_manual_escalation
        self._clock = clock
        self._lock = threading.RLock()
        self._incidents: dict[str, Incident] = {}
        self._timers: dict[str, Any] = {}
        self._ids = itertools.count(1)
        self._executor = ThreadPoolExecutor(max_workers=max(1, len(self.channels)), thread_name_prefix="broadcast")
        self._vessel_state: Optional[VesselState] = None
        self._last_position_report: Optional[datetime] = None

    # ── State helpers ────────────────────────────────────────────────────────

    def _transition(self, incident: Incident, target: IncidentStatusEnum, note: str) -> None:
        if target not in _TRANSITIONS[incident.status]:
            raise InvalidTransitionError(
                f"incident {incident.incident_id}: {incident.status.value} → {target.value} not allowed"
            )
        incident.status = target
        incident.updates.append(IncidentUpdate(self._clock(), target, note))
        logger.info("Incident %s → %s: %s", incident.incident_id, target.value, note)
        self._persist(incident)

    def _persist(self, incident: Incident) -> None:
        if self._session_factory is None:
            return
        session = self._session_factory()
        try:
            session.merge(EmergencyIncident(
                incident_id=incident.incident_id,
                incident_type=incident.incident_type.value,
                severity=incident.severity.value,
                status=incident.status.value,
                lat=incident.lat,
                lon=incident.lon,
                vessel_snapshot_json=incident.vessel_profile,
                persons_on_board=incident.persons_on_board,
                description=incident.description,
                broadcast_attempts=incident.broadcast_attempts,
                updates_json=[
                    {"timestamp": u.timestamp.isoformat(), "status": u.status.value, "message": u.message}
                    for u in incident.updates
                ],
                reported_at=incident.reported_at,
                acknowledged_at=incident.acknowledged_at,
                resolved_at=incident.resolved_at,
            ))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _cancel_timer(self, incident_id: str) -> None:
        timer = self._timers.pop(incident_id, None)
        if timer is not None:
            timer.cancel()

    def _schedule_timeout(self, incident: Incident) -> None:
        self._cancel_timer(incident.incident_id)
        timer = self._timer_factory(
            self.ack_timeout_seconds,
            self._on_ack_timeout,
            args=(incident.incident_id, incident.broadcast_attempts),
        )
        timer.daemon = True
        self._timers[incident.incident_id] = timer
        timer.start()

    # ── Broadcasting ─────────────────────────────────────────────────────────

    def _send_one(self, channel: BroadcastChannel, message: str) -> DeliveryStatus:
        try:
            return channel.send(message)
        except Exception:  # each channel fails independently
            logger.exception("Broadcast channel %s raised", channel.name)
            return DeliveryStatus.FAILED

    def broadcast(self, message: str) -> dict[str, DeliveryStatus]:
        """Send on every channel concurrently; returns per-channel status."""
        futures = {ch.name: self._executor.submit(self._send_one, ch, message) for ch in self.channels}
        results = {name: fut.result() for name, fut in futures.items()}
        failed = [name for name, status in results.items() if status is DeliveryStatus.FAILED]
        if failed and len(failed) == len(results):
            logger.error("Broadcast failed on every channel: %s", ", ".join(failed))
        elif failed:
            logger.warning("Broadcast failed on channels: %s", ", ".join(failed))
        return results

    @staticmethod
    def _needs_broadcast(incident: Incident) -> bool:
        return incident.is_open and incident.status is not IncidentStatusEnum.ACKNOWLEDGED

    def _broadcast_incident(self, incident: Incident) -> None:
        with self._lock:
            if not self._needs_broadcast(incident):
                logger.info("Incident %s is %s; broadcast skipped", incident.incident_id, incident.status.value)
                return
            message = format_distress_message(incident)
        results = self.broadcast(message)
        with self._lock:
            if not self._needs_broadcast(incident):
                return
            incident.broadcast_attempts += 1
            incident.last_channel_results = results
            delivered = sum(1 for s in results.values() if s is DeliveryStatus.DELIVERED)
            self._transition(
                incident,
                IncidentStatusEnum.BROADCASTING,
                f"broadcast attempt {incident.broadcast_attempts}: {delivered}/{len(results)} channels delivered",
            )
            if incident.requires_acknowledgment:
                self._schedule_timeout(incident)

    def _on_ack_timeout(self, incident_id: str, attempt: int) -> None:
        with self._lock:
            incident = self._incidents.get(incident_id)
            # Stale timer: the incident moved on since this timer was armed
            if (
                incident is None
                or incident.status is not IncidentStatusEnum.BROADCASTING
                or incident.broadcast_attempts != attempt
            ):
                return
            self._timers.pop(incident_id, None)
            self._transition(
                incident, IncidentStatusEnum.TIMED_OUT_RETRY,
                f"no acknowledgment within {self.ack_timeout_seconds:.0f}s",
            )
            if incident.retries >= self.max_retries:
                incident.manual_escalation_required = True
                self._transition(
                    incident, IncidentStatusEnum.FAILED,
                    f"no acknowledgment after {incident.broadcast_attempts} broadcasts — manual escalation required",
                )
                logger.error(
                    "Incident %s (%s) unacknowledged after %d attempts — MANUAL ESCALATION REQUIRED",
                    incident.incident_id, incident.incident_type.value, incident.broadcast_attempts,
                )
                callback = self._on_manual_escalation
            else:
                incident.retries += 1
                callback = None
        if callback is not None:
            callback(incident)
        elif incident.status is IncidentStatusEnum.TIMED_OUT_RETRY:
            self._broadcast_incident(incident)

    # ── Public operations ────────────────────────────────────────────────────

    def update_vessel_state(self, state: VesselState) -> None:
        with self._lock:
            self._vessel_state = state

    def report_incident(
        self,
        incident_type: IncidentTypeEnum,
        vessel: VesselState,
        severity: IncidentSeverityEnum = IncidentSeverityEnum.MAYDAY,
        description: str = "",
        persons_on_board: Optional[int] = None,
        requires_acknowledgment: bool = True,
    ) -> Incident:
        """Snapshot the vessel, open an incident and start broadcasting."""
        incident = self._open_incident(
            incident_type, vessel, severity, description, persons_on_board, requires_acknowledgment,
        )
        self._broadcast_incident(incident)
        return incident

    def _open_incident(
        self,
        incident_type: IncidentTypeEnum,
        vessel: VesselState,
        severity: IncidentSeverityEnum,
        description: str,
        persons_on_board: Optional[int],
        requires_acknowledgment: bool,
    ) -> Incident:
        with self._lock:
            incident = Incident(
                incident_id=f"inc-{next(self._ids)}",
                incident_type=IncidentTypeEnum(incident_type),
                severity=IncidentSeverityEnum(severity),
                lat=vessel.lat,
                lon=vessel.lon,
                vessel_profile=vessel.profile(),
                persons_on_board=persons_on_board if persons_on_board is not None else vessel.persons_on_board,
                description=description,
                reported_at=self._clock(),
                requires_acknowledgment=requires_acknowledgment,
            )
            incident.updates.append(IncidentUpdate(incident.reported_at, IncidentStatusEnum.REPORTED, "incident reported"))
            self._incidents[incident.incident_id] = incident
            self._persist(incident)
        logger.warning(
            "%s incident %s reported for %s at (%.5f, %.5f)",
            incident.severity.value.upper(), incident.incident_id, incident.incident_type.value, incident.lat, incident.lon,
        )
        return incident

    def acknowledge(self, incident_id: str, acknowledged_by: str = "authority") -> Incident:
        with self._lock:
            incident = self._require(incident_id)
            self._cancel_timer(incident_id)
            incident.acknowledged_at = self._clock()
            incident.acknowledged_by = acknowledged_by
            incident.manual_escalation_required = False
            self._transition(incident, IncidentStatusEnum.ACKNOWLEDGED, f"acknowledged by {acknowledged_by}")
            return incident

    def resolve(self, incident_id: str, notes: str = "") -> Incident:
        with self._lock:
            incident = self._require(incident_id)
            self._cancel_timer(incident_id)
            incident.resolved_at = self._clock()
            self._transition(incident, IncidentStatusEnum.RESOLVED, notes or "resolved")
            return incident

    def on_broadcast_alert(self, alert: SafetyAlert) -> None:
        if alert.severity is AlertSeverityEnum.EMERGENCY:
            incident_type = _DOMAIN_TO_INCIDENT.get(alert.domain, IncidentTypeEnum.MANUAL)
            # Check and open under one lock hold so simultaneous emergencies share an incident
            with self._lock:
                existing = self.open_incident_of_type(incident_type)
                if existing is not None:
                    logger.info("Emergency alert %s folded into open incident %s", alert.alert_id, existing.incident_id)
                    return
                vessel = self._vessel_state
                if vessel is None:
                    vessel = VesselState(
                        vessel_id="unknown", lat=alert.lat, lon=alert.lon, speed_kn=0.0,
                        heading_deg=0.0, draft_m=0.0, timestamp=alert.updated_at,
                    )
                incident = self._open_incident(
                    incident_type, vessel, IncidentSeverityEnum.MAYDAY, alert.message, None, True,
                )
            self._broadcast_incident(incident)
        else:
            self.broadcast(
                f"PAN PAN PAN PAN PAN PAN\n{alert.title}\n{alert.message}\n"
                f"Position {format_position(alert.lat, alert.lon)}\nOVER"
            )

    # ── Contacts and position reporting ──────────────────────────────────────

    def find_contacts(self, lat: float, lon: float, only_available: bool = False) -> list[tuple[EmergencyContact, float]]:
        """Contacts whose service area covers (lat, lon), by priority then distance."""
        matches = []
        for contact in self.contacts:
            if only_available and not contact.available_24h:
                continue
            distance = haversine_km(lat, lon, contact.center_lat, contact.center_lon)
            if distance <= contact.service_radius_km:
                matches.append((contact, round(distance, 1)))
        return sorted(matches, key=lambda m: (m[0].priority, m[1]))

    def position_report_interval(self) -> timedelta:
        if any(i.is_open and i.severity is IncidentSeverityEnum.MAYDAY for i in self.open_incidents()):
            return timedelta(seconds=MAYDAY_POSITION_INTERVAL_S)
        return timedelta(seconds=ROUTINE_POSITION_INTERVAL_S)

    def maybe_send_position_report(self, state: VesselState, status: VesselStatusEnum) -> bool:
        """Send a position report if the vessel is reportable and one is due."""
        if status not in _REPORTABLE_STATUSES:
            return False
        now = self._clock()
        with self._lock:
            last = self._last_position_report
            if last is not None and now - last < self.position_report_interval():
                return False
            self._last_position_report = now
        name = state.vessel_name or state.vessel_id
        self.broadcast(
            f"POSITION REPORT {name}: {format_position(state.lat, state.lon)} "
            f"{state.speed_kn:.1f} kn {state.heading_deg:03.0f}° ({status.value})"
        )
        return True

    # ── Queries / shutdown ───────────────────────────────────────────────────

    def _require(self, incident_id: str) -> Incident:
        incident = self._incidents.get(incident_id)
        if incident is None:
            raise KeyError(incident_id)
        return incident

    def get(self, incident_id: str) -> Optional[Incident]:
        with self._lock:
            return self._incidents.get(incident_id)

    def open_incidents(self) -> list[Incident]:
        with self._lock:
            return [i for i in self._incidents.values() if i.is_open]

    def open_incident_of_type(self, incident_type: IncidentTypeEnum) -> Optional[Incident]:
        for incident in self.open_incidents():
            if incident.incident_type is incident_type:
                return incident
        return None

    def shutdown(self) -> None:
        """Cancel every pending acknowledgment timer and stop the broadcast pool."""
        with self._lock:
            for incident_id in list(self._timers):
                self._cancel_timer(incident_id)
        self._executor.shutdown(wait=True)
