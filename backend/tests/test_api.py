"""HTTP API tests against an in-memory database."""
import asyncio
import threading
from contextlib import suppress
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from app.api.routes import get_depth_service
from app.main import _alert_maintenance_loop, run_alert_maintenance
from app.modules.alert_hierarchy import SafetyAlertHierarchy
from app.modules.depth_service import DepthService
from app.modules.marine_data import utcnow
from test_alert_hierarchy import FakeClock

GG = {"lat": 37.8199, "lon": -122.4783}
AREA = {"south": 37.81, "west": -122.49, "north": 37.83, "east": -122.47}


def _body(reading_id="api-1", **overrides):
    body = {
        "id": reading_id,
        **GG,
        "depth": 15.5,
        "vessel_draft": 1.8,
        "timestamp": (utcnow() - timedelta(minutes=5)).isoformat(),
        "confidence": 0.8,
        "source": "crowdsource",
    }
    body.update(overrides)
    return body


class TestSubmit:
    def test_created(self, api_client):
        resp = api_client.post("/api/v1/depth-readings", json=_body())
        assert resp.status_code == 201
        data = resp.json()
        assert data["id"] == "api-1"
        assert data["duplicate"] is False
        assert data["alert_id"] is None

    def test_resubmission_reports_duplicate(self, api_client):
        api_client.post("/api/v1/depth-readings", json=_body())
        resp = api_client.post("/api/v1/depth-readings", json=_body())
        assert resp.status_code == 201
        assert resp.json()["duplicate"] is True

    def test_invalid_depth_is_422(self, api_client):
        resp = api_client.post("/api/v1/depth-readings", json=_body(depth=-2))
        assert resp.status_code == 422
        assert "depth" in resp.json()["detail"]

    def test_unknown_source_rejected_by_schema(self, api_client):
        resp = api_client.post("/api/v1/depth-readings", json=_body(source="rumour"))
        assert resp.status_code == 422


class TestQueries:
    def test_area(self, api_client):
        for i in range(3):
            api_client.post("/api/v1/depth-readings", json=_body(f"a-{i}", depth=2.0))
        resp = api_client.get("/api/v1/depth-readings/area", params={**AREA, "vessel_draft": 1.8})
        assert resp.status_code == 200
        data = resp.json()
        assert len(data["readings"]) == 3
        assert len(data["aggregated_data"]) == 1
        assert data["safety_warnings"][0]["alert_type"] == "shallow_water"

    def test_area_inverted_bounds(self, api_client):
        params = {**AREA, "north": 37.80}
        assert api_client.get("/api/v1/depth-readings/area", params=params).status_code == 422

    def test_area_bad_confidence_level(self, api_client):
        params = {**AREA, "confidence_level": "excellent"}
        assert api_client.get("/api/v1/depth-readings/area", params=params).status_code == 422

    def test_nearest(self, api_client):
        api_client.post("/api/v1/depth-readings", json=_body())
        resp = api_client.get("/api/v1/depth-readings/nearest", params={**GG, "radius_m": 500})
        assert resp.status_code == 200
        (item,) = resp.json()["items"]
        assert item["id"] == "api-1"
        assert item["distance_m"] == 0.0

    def test_nearest_radius_bounds(self, api_client):
        resp = api_client.get("/api/v1/depth-readings/nearest", params={**GG, "radius_m": 0})
        assert resp.status_code == 422

    def test_process_does_not_store(self, api_client):
        resp = api_client.post("/api/v1/depth-readings/process", json=_body())
        assert resp.status_code == 200
        data = resp.json()
        assert data["final_depth"] == pytest.approx(15.48)
        assert api_client.get("/api/v1/depth-readings/nearest", params=GG).json()["items"] == []


class TestAlerts:
    def _raise_shallow_alert(self, api_client):
        resp = api_client.post("/api/v1/depth-readings", json=_body("shallow", depth=1.0))
        return resp.json()["alert_id"]

    def test_list_active(self, api_client):
        alert_id = self._raise_shallow_alert(api_client)
        data = api_client.get("/api/v1/alerts").json()
        assert [a["alert_id"] for a in data["items"]] == [alert_id]
        assert data["metrics"]["active"] == 1

    def test_domain_filter(self, api_client):
        self._raise_shallow_alert(api_client)
        assert api_client.get("/api/v1/alerts", params={"domain": "weather"}).json()["items"] == []
        assert len(api_client.get("/api/v1/alerts", params={"domain": "depth"}).json()["items"]) == 1

    def test_acknowledge(self, api_client):
        alert_id = self._raise_shallow_alert(api_client)
        resp = api_client.post(f"/api/v1/alerts/{alert_id}/acknowledge", params={"acknowledged_by": "skipper"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "acknowledged"

    def test_acknowledge_twice_conflicts(self, api_client):
        alert_id = self._raise_shallow_alert(api_client)
        api_client.post(f"/api/v1/alerts/{alert_id}/acknowledge")
        assert api_client.post(f"/api/v1/alerts/{alert_id}/acknowledge").status_code == 409

    def test_acknowledge_unknown(self, api_client):
        assert api_client.post("/api/v1/alerts/nope/acknowledge").status_code == 404


class TestSystem:
    def test_health(self, api_client):
        data = api_client.get("/api/v1/health").json()
        assert data["status"] == "ok"
        assert data["database"]["status"] == "ok"

    def test_root_health(self, api_client):
        assert api_client.get("/health").json()["status"] == "ok"


class TestAlertMaintenance:
    def test_expires_stale_alerts(self, session_factory, make_reading):
        clock = FakeClock(utcnow())
        hierarchy = SafetyAlertHierarchy(escalation_rules=[], alert_ttl_seconds=600, clock=clock)
        service = DepthService(session_factory, hierarchy=hierarchy)
        db = session_factory()
        try:
            service.submit_depth_reading(db, make_reading(depth=1.0))
        finally:
            db.close()

        assert run_alert_maintenance(service) == {"expired": 0, "escalated": 0}
        clock.advance(601)
        assert run_alert_maintenance(service) == {"expired": 1, "escalated": 0}
        assert hierarchy.active_alerts() == []

    def test_without_hierarchy(self, session_factory):
        assert run_alert_maintenance(DepthService(session_factory)) == {"expired": 0, "escalated": 0}

    def test_loop_runs_maintenance_off_the_event_loop(self, session_factory):
        service = DepthService(session_factory)
        calls = []

        def record(svc):
            calls.append((threading.get_ident(), svc))
            return {"expired": 0, "escalated": 0}

        fake_app = MagicMock()
        fake_app.dependency_overrides = {get_depth_service: lambda: service}

        async def run_one_pass():
            task = asyncio.create_task(_alert_maintenance_loop(fake_app, 0.001))
            for _ in range(500):
                if calls:
                    break
                await asyncio.sleep(0.01)
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            return threading.get_ident()

        with patch("app.main.run_alert_maintenance", side_effect=record):
            loop_thread = asyncio.run(run_one_pass())

        assert calls
        thread_id, svc = calls[0]
        assert svc is service
        assert thread_id != loop_thread
