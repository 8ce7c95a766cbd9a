"""Safety protocol configuration (config/safety_protocols.yaml).

Two sections:
  escalation_rules    — time-based severity escalation for unacknowledged alerts
  emergency_contacts  — coast guard / harbour / towing contacts with service areas

Loaded once and cached. When the file is missing the built-in defaults below
are used so the pipeline still runs, with a warning in the log.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from app.config import settings

logger = logging.getLogger(__name__)

_PROTOCOLS: dict[str, Any] | None = None

_EXPECTED_SECTIONS = ["escalation_rules", "emergency_contacts"]

DEFAULT_PROTOCOLS: dict[str, Any] = {
    "escalation_rules": [
        {"domain": "grounding", "from": "warning", "to": "critical", "after_seconds": 60},
        {"domain": "grounding", "from": "critical", "to": "emergency", "after_seconds": 30},
        {"domain": "collision", "from": "warning", "to": "critical", "after_seconds": 45},
    ],
    "emergency_contacts": [
        {
            "contact_id": "uscg-national",
            "name": "US Coast Guard",
            "contact_type": "coast_guard",
            "phone": "+1-800-424-8802",
            "vhf_channel": 16,
            "priority": 1,
            "center_lat": 39.8283,
            "center_lon": -98.5795,
            "service_radius_km": 5000,
            "available_24h": True,
        },
    ],
}


def _config_path() -> Path:
    path = Path(settings.SAFETY_PROTOCOLS_CONFIG)
    if not path.is_absolute() and not path.exists():
        # config/ lives at the repo root, one level above backend/
        path = Path(__file__).resolve().parents[3] / settings.SAFETY_PROTOCOLS_CONFIG
    return path


def load_safety_protocols() -> dict[str, Any]:
    global _PROTOCOLS
    if _PROTOCOLS is None:
        path = _config_path()
        if not path.exists():
            logger.warning("safety_protocols.yaml not found at %s — using built-in defaults", path)
            _PROTOCOLS = dict(DEFAULT_PROTOCOLS)
        else:
            with open(path) as f:
                loaded = yaml.safe_load(f) or {}
            missing = [s for s in _EXPECTED_SECTIONS if s not in loaded]
            if missing:
                logger.warning("safety_protocols.yaml missing sections: %s — using defaults for them", ", ".join(missing))
            _PROTOCOLS = {s: loaded.get(s, DEFAULT_PROTOCOLS[s]) for s in _EXPECTED_SECTIONS}
    return _PROTOCOLS


def reset_protocol_cache() -> None:
    global _PROTOCOLS
    _PROTOCOLS = None
