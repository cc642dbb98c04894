from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import issue_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.pipeline.models import PipelineUser


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    session.add(PipelineUser(id="staff-1", name="Staff", email="staff@example.com", role="STAFF"))
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _auth(sub: str, role: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(sub, [role])}"}


def test_metrics_endpoint_exposes_http_and_pipeline_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    lead = client.post(
        "/api/pipeline/leads",
        json={"party": {"name": "Metrics Party"}},
        headers=_auth("staff-1", "STAFF"),
    )
    assert lead.status_code == 201

    review = client.post(
        f"/api/pipeline/leads/{lead.json()['id']}/review",
        json={"decision": "APPROVED"},
        headers=_auth("admin-1", "ADMIN"),
    )
    assert review.status_code == 200

    metrics = client.get("/metrics", headers=_auth("admin-1", "ADMIN"))
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "pipeline_transitions_total" in body
    assert "sequence_numbers_allocated_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/pipeline/leads/{id}/review"' in body
    assert 'entity_type="lead",to_status="APPROVED"' in body
    assert 'prefix="LEAD"' in body


def test_metrics_require_permission(client: TestClient) -> None:
    assert client.get("/metrics").status_code == 403
    assert client.get("/metrics", headers=_auth("staff-1", "STAFF")).status_code == 403
    assert client.get("/metrics", headers=_auth("sub-1", "SUB_ADMIN")).status_code == 403


def test_metrics_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert client.get("/metrics", headers=_auth("admin-1", "ADMIN")).status_code == 404
