from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import issue_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.logging import JsonLogFormatter
from app.main import app


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
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
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


def _auth(sub: str, role: str, correlation_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(sub, [role])}", "X-Correlation-Id": correlation_id}


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/pipeline/leads/{uuid.uuid4()}"
    response = client.get(path, headers=_auth("admin-1", "ADMIN", "abc-123"))
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/pipeline/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_operation_and_actor(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    created = client.post(
        "/api/pipeline/leads",
        json={"party": {"name": "Log Party"}},
        headers=_auth("staff-1", "STAFF", "abc-456"),
    )
    assert created.status_code == 201

    rejected = client.post(
        f"/api/pipeline/leads/{created.json()['id']}/status",
        json={"status": "FOLLOW_UP"},
        headers=_auth("staff-1", "STAFF", "abc-456"),
    )
    assert rejected.status_code == 422

    service_records = [record for record in caplog.records if record.name == "app.pipeline.service"]
    assert any(
        record.getMessage() == "pipeline.lead.create"
        and getattr(record, "operation", None) == "lead.create"
        and getattr(record, "actor_id", None) == "staff-1"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in service_records
    )
    assert any(
        record.getMessage() == "pipeline.operation_failed"
        and getattr(record, "error_code", None) == "validation_failed"
        for record in service_records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.pipeline.service",
            "msg": "pipeline.lead.review",
            "levelname": "INFO",
            "operation": "lead.review",
            "entity_id": "lead-1",
            "secret": "hidden",
            "attempt": None,
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "pipeline.lead.review"
    assert payload["fields"] == {"operation": "lead.review", "entity_id": "lead-1"}
