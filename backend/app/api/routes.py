from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal, get_db
from app.models.base import AlertDomainEnum
from app.modules.alert_hierarchy import InvalidTransitionError
from app.modules.depth_service import CONFIDENCE_LEVELS, DepthService, build_depth_service
from app.schemas.depth import AreaDepthResponse, DepthReadingSubmit, DepthReadingSubmitResponse

logger = logging.getLogger(__name__)

router = APIRouter()

_SERVICE: Optional[DepthService] = None


def get_depth_service() -> DepthService:
    """Process-wide service instance, built on first use."""
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = build_depth_service(SessionLocal, online=settings.ONLINE_DATA_SOURCES)
    return _SERVICE


# ---------------------------------------------------------------------------
# Depth readings
# ---------------------------------------------------------------------------

@router.post("/depth-readings", status_code=201, response_model=DepthReadingSubmitResponse, tags=["depth"])
def submit_depth_reading(
    body: DepthReadingSubmit,
    db: Session = Depends(get_db),
    service: DepthService = Depends(get_depth_service),
):
    """Submit one sounding. Resubmitting the same id is a no-op."""
    return service.submit_depth_reading(db, body.to_reading())


@router.get("/depth-readings/area", response_model=AreaDepthResponse, tags=["depth"])
def depth_data_for_area(
    south: float = Query(...),
    west: float = Query(...),
    north: float = Query(...),
    east: float = Query(...),
    vessel_draft: Optional[float] = Query(None),
    confidence_level: Optional[str] = Query(None, description=f"One of: {', '.join(CONFIDENCE_LEVELS)}"),
    max_age_hours: float = Query(720, gt=0),
    db: Session = Depends(get_db),
    service: DepthService = Depends(get_depth_service),
):
    return service.get_depth_data_for_area(
        db, south, west, north, east,
        vessel_draft=vessel_draft,
        confidence_level=confidence_level,
        max_age_hours=max_age_hours,
    )


@router.get("/depth-readings/nearest", tags=["depth"])
def nearest_depth_readings(
    lat: float = Query(...),
    lon: float = Query(...),
    radius_m: float = Query(1000.0, gt=0, le=50_000),
    max_results: int = Query(10, ge=1, le=settings.MAX_QUERY_LIMIT),
    db: Session = Depends(get_db),
    service: DepthService = Depends(get_depth_service),
):
    return {"items": service.get_nearest_depth_readings(db, lat, lon, radius_m, max_results)}


@router.post("/depth-readings/process", tags=["depth"])
def process_depth_reading(
    body: DepthReadingSubmit,
    service: DepthService = Depends(get_depth_service),
):
    """Run tide/environmental correction and fusion without storing the reading."""
    return service.process_reading(body.to_reading()).to_dict()


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

@router.get("/alerts", tags=["alerts"])
def list_active_alerts(
    domain: Optional[AlertDomainEnum] = Query(None),
    service: DepthService = Depends(get_depth_service),
):
    if service.hierarchy is None:
        return {"items": [], "metrics": {}}
    return {
        "items": [a.to_dict() for a in service.hierarchy.active_alerts(domain)],
        "metrics": service.hierarchy.metrics(),
    }


@router.post("/alerts/{alert_id}/acknowledge", tags=["alerts"])
def acknowledge_alert(
    alert_id: str,
    acknowledged_by: Optional[str] = Query(None, max_length=100),
    service: DepthService = Depends(get_depth_service),
):
    if service.hierarchy is None or service.hierarchy.get(alert_id) is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    try:
        return service.hierarchy.acknowledge(alert_id, acknowledged_by).to_dict()
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------

@router.get("/health", tags=["system"])
def health_check(db: Session = Depends(get_db)):
    """Health check with DB latency measurement."""
    t0 = time.time()
    try:
        db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as e:
        db_status = f"error: {e}"
    latency_ms = round((time.time() - t0) * 1000, 1)
    return {
        "status": "ok",
        "version": "0.1.0",
        "database": {"status": db_status, "latency_ms": latency_ms},
    }
