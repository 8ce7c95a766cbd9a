"""Shared test fixtures: in-memory SQLite sessions and an API client."""
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import Base  # noqa: F401 -- registers all models
from app.models.base import DepthSourceEnum
from app.modules.marine_data import DepthReadingData


@pytest.fixture
def engine():
    """One in-memory database shared by every session of a test."""
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_reading():
    """Factory for DepthReadingData with sensible Golden Gate defaults."""
    counter = {"n": 0}

    def _make(**overrides) -> DepthReadingData:
        counter["n"] += 1
        fields = dict(
            reading_id=f"r-{counter['n']}",
            lat=37.8199,
            lon=-122.4783,
            depth=15.5,
            vessel_draft=1.8,
            timestamp=datetime.utcnow() - timedelta(minutes=5),
            confidence=0.8,
            source=DepthSourceEnum.CROWDSOURCE,
        )
        fields.update(overrides)
        return DepthReadingData(**fields)

    return _make


@pytest.fixture
def depth_service(session_factory):
    """Offline DepthService (no tide/weather network) with an alert hierarchy."""
    from app.modules.alert_hierarchy import SafetyAlertHierarchy
    from app.modules.depth_service import DepthService

    return DepthService(session_factory, hierarchy=SafetyAlertHierarchy(escalation_rules=[]))


@pytest.fixture
def api_client(session_factory, depth_service):
    """TestClient whose DB and service dependencies use the in-memory database."""
    from app.api.routes import get_depth_service
    from app.database import get_db
    from app.main import app, limiter

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_depth_service] = lambda: depth_service
    limiter.enabled = False
    with TestClient(app) as client:
        yield client
    limiter.enabled = True
    app.dependency_overrides.clear()
