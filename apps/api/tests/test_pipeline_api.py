from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.auth import issue_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.pipeline.models import PipelineItem, PipelineOrder, PipelineUser


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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def items(db_session: Session) -> dict[str, str]:
    widget = PipelineItem(name="Widget", base_price=Decimal("100"))
    gadget = PipelineItem(name="Gadget", base_price=Decimal("50"))
    db_session.add_all(
        [
            PipelineUser(id="admin-1", name="Admin", email="admin@example.com", role="ADMIN"),
            PipelineUser(id="staff-1", name="Staff One", email="staff1@example.com", role="STAFF"),
            widget,
            gadget,
        ]
    )
    db_session.commit()
    return {"widget": str(widget.id), "gadget": str(gadget.id)}


def _headers(sub: str, roles: list[str], correlation_id: str | None = None) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {issue_token(sub, roles)}"}
    if correlation_id:
        headers["X-Correlation-Id"] = correlation_id
    return headers


ADMIN_HEADERS = _headers("admin-1", ["ADMIN"])
STAFF_HEADERS = _headers("staff-1", ["STAFF"])


def _create_assigned_lead(client: TestClient, items: dict[str, str]) -> dict:
    created = client.post(
        "/api/pipeline/leads",
        json={
            "party": {"name": "Asha Rao", "email": "buyer@acme.example", "company_name": "Acme Traders"},
            "source": "Referral",
            "items": [{"item_id": items["widget"], "quantity": "2"}],
        },
        headers=STAFF_HEADERS,
    )
    assert created.status_code == 201
    lead = created.json()

    reviewed = client.post(f"/api/pipeline/leads/{lead['id']}/review", json={"decision": "APPROVED"}, headers=ADMIN_HEADERS)
    assert reviewed.status_code == 200

    assigned = client.post(
        f"/api/pipeline/leads/{lead['id']}/assign",
        json={"sales_person_id": "staff-1", "reason": "region"},
        headers=ADMIN_HEADERS,
    )
    assert assigned.status_code == 200
    return assigned.json()


def _create_quotation(client: TestClient, lead_id: str, items: dict[str, str]) -> dict:
    response = client.post(
        "/api/pipeline/quotations",
        json={
            "lead_id": lead_id,
            "items": [
                {"item_id": items["widget"], "quantity": "2"},
                {"item_id": items["gadget"], "quantity": "1"},
            ],
            "discount": {"kind": "PERCENTAGE", "value": "10"},
            "tax": {"kind": "GST", "percentage": "18"},
        },
        headers=STAFF_HEADERS,
    )
    assert response.status_code == 201
    return response.json()


def test_full_flow_over_http(client: TestClient, db_session: Session, items: dict[str, str]) -> None:
    lead = _create_assigned_lead(client, items)
    assert lead["status"] == "ASSIGNED"
    assert lead["assigned_to"] == "staff-1"
    assert len(lead["assignments"]) == 1

    quotation = _create_quotation(client, lead["id"], items)
    assert Decimal(quotation["total_amount"]) == Decimal("265.50")

    sent = client.post(
        f"/api/pipeline/quotations/{quotation['id']}/send",
        json={"cc_emails": ["manager@acme.example"]},
        headers=STAFF_HEADERS,
    )
    assert sent.status_code == 200
    assert sent.json()["status"] == "SENT"

    approved = client.post(
        f"/api/pipeline/quotations/{quotation['id']}/decision",
        json={"decision": "APPROVED"},
        headers=STAFF_HEADERS,
    )
    assert approved.status_code == 200

    converted = client.post(f"/api/pipeline/quotations/{quotation['id']}/convert", headers=STAFF_HEADERS)
    assert converted.status_code == 201
    order = converted.json()
    assert Decimal(order["total_amount"]) == Decimal("265.50")

    again = client.post(f"/api/pipeline/quotations/{quotation['id']}/convert", headers=STAFF_HEADERS)
    assert again.status_code == 409
    assert again.json()["code"] == "already_converted"
    assert db_session.scalar(select(func.count()).select_from(PipelineOrder)) == 1

    lead_after = client.get(f"/api/pipeline/leads/{lead['id']}", headers=STAFF_HEADERS)
    assert lead_after.json()["status"] == "CONVERTED_TO_ORDER"

    po = client.post(
        f"/api/pipeline/orders/{order['id']}/po",
        json={"po_number": "PO-100", "po_amount": "265.50"},
        headers=STAFF_HEADERS,
    )
    assert po.status_code == 200
    assert po.json()["status"] == "PO_RECEIVED"

    confirmed = client.post(f"/api/pipeline/orders/{order['id']}/status", json={"status": "CONFIRMED"}, headers=ADMIN_HEADERS)
    assert confirmed.status_code == 200
    assert client.get(f"/api/pipeline/orders/{order['id']}", headers=STAFF_HEADERS).json()["status"] == "CONFIRMED"


def test_invalid_transition_envelope(client: TestClient, items: dict[str, str]) -> None:
    created = client.post(
        "/api/pipeline/leads",
        json={"party": {"name": "Walk-in"}},
        headers=STAFF_HEADERS,
    )
    lead_id = created.json()["id"]

    response = client.post(
        f"/api/pipeline/leads/{lead_id}/assign",
        json={"sales_person_id": "staff-1"},
        headers={**ADMIN_HEADERS, "X-Correlation-Id": "corr-assign-1"},
    )

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "invalid_transition"
    assert body["details"]["current_status"] == "NEW"
    assert body["details"]["requested_status"] == "ASSIGNED"
    assert body["correlation_id"] == "corr-assign-1"
    assert response.headers["x-correlation-id"] == "corr-assign-1"


def test_pricing_error_envelope_names_the_field(client: TestClient, items: dict[str, str]) -> None:
    lead = _create_assigned_lead(client, items)

    response = client.post(
        "/api/pipeline/quotations",
        json={
            "lead_id": lead["id"],
            "items": [{"item_id": items["widget"], "quantity": "-1"}],
        },
        headers=STAFF_HEADERS,
    )

    assert response.status_code == 422
    assert response.json()["code"] == "invalid_quotation_input"
    assert response.json()["details"] == {"field": "items[0].quantity"}


def test_missing_or_invalid_token_is_forbidden(client: TestClient, items: dict[str, str]) -> None:
    anonymous = client.post("/api/pipeline/leads", json={"party": {"name": "No Token"}})
    assert anonymous.status_code == 403
    assert anonymous.json()["code"] == "forbidden"

    forged = client.post(
        "/api/pipeline/leads",
        json={"party": {"name": "Forged"}},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert forged.status_code == 403


def test_staff_cannot_review(client: TestClient, items: dict[str, str]) -> None:
    created = client.post("/api/pipeline/leads", json={"party": {"name": "Walk-in"}}, headers=STAFF_HEADERS)
    response = client.post(
        f"/api/pipeline/leads/{created.json()['id']}/review",
        json={"decision": "APPROVED"},
        headers=STAFF_HEADERS,
    )
    assert response.status_code == 403


def test_unknown_lead_is_not_found(client: TestClient) -> None:
    response = client.get(f"/api/pipeline/leads/{uuid.uuid4()}", headers=ADMIN_HEADERS)
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_delete_lead_returns_no_content(client: TestClient, items: dict[str, str]) -> None:
    created = client.post("/api/pipeline/leads", json={"party": {"name": "Walk-in"}}, headers=STAFF_HEADERS)
    lead_id = created.json()["id"]

    deleted = client.delete(f"/api/pipeline/leads/{lead_id}", headers=ADMIN_HEADERS)
    assert deleted.status_code == 204
    assert client.get(f"/api/pipeline/leads/{lead_id}", headers=ADMIN_HEADERS).status_code == 404


def test_lead_requires_a_party(client: TestClient) -> None:
    response = client.post("/api/pipeline/leads", json={"source": "web"}, headers=STAFF_HEADERS)
    assert response.status_code == 422


def test_me_reports_resolved_role(client: TestClient) -> None:
    response = client.get("/me", headers=_headers("admin-1", ["staff", "ADMIN"]))
    assert response.status_code == 200
    assert response.json()["role"] == "ADMIN"


def test_health_reports_policy(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["pipeline_policy"] == "canonical"


def test_lead_source_outside_the_list_is_rejected(client: TestClient, items: dict[str, str]) -> None:
    response = client.post(
        "/api/pipeline/leads",
        json={
            "party": {"name": "Walk-in"},
            "source": "CARRIER_PIGEON",
            "items": [{"item_id": items["widget"], "quantity": "1"}],
        },
        headers=STAFF_HEADERS,
    )
    assert response.status_code == 422


def test_followups_over_http(client: TestClient, items: dict[str, str]) -> None:
    lead = _create_assigned_lead(client, items)

    created = client.post(
        f"/api/pipeline/leads/{lead['id']}/followups",
        json={"remarks": "call back after budget review", "outcome": "preclosed"},
        headers=STAFF_HEADERS,
    )
    assert created.status_code == 201
    followup = created.json()
    assert followup["outcome"] == "PRECLOSED"
    assert client.get(f"/api/pipeline/leads/{lead['id']}", headers=STAFF_HEADERS).json()["status"] == "FOLLOW_UP"

    listed = client.get(f"/api/pipeline/leads/{lead['id']}/followups", headers=STAFF_HEADERS)
    assert [item["id"] for item in listed.json()] == [followup["id"]]

    patched = client.patch(f"/api/pipeline/followups/{followup['id']}", json={"outcome": "ORDER_LOSS"}, headers=STAFF_HEADERS)
    assert patched.status_code == 200
    assert patched.json()["outcome"] == "ORDER_LOSS"

    upcoming = client.get("/api/pipeline/followups/upcoming", params={"days": 7}, headers=STAFF_HEADERS)
    assert upcoming.status_code == 200
    assert upcoming.json() == []


def test_followup_on_unreviewed_lead_is_a_conflict(client: TestClient) -> None:
    created = client.post("/api/pipeline/leads", json={"party": {"name": "Walk-in"}}, headers=STAFF_HEADERS)

    response = client.post(f"/api/pipeline/leads/{created.json()['id']}/followups", json={}, headers=STAFF_HEADERS)

    assert response.status_code == 409
    assert response.json()["details"]["requested_status"] == "FOLLOW_UP"


def test_lead_item_quantity_must_be_a_positive_whole_number(client: TestClient, items: dict[str, str]) -> None:
    for quantity in ("0", "1.5"):
        response = client.post(
            "/api/pipeline/leads",
            json={"party": {"name": "Walk-in"}, "items": [{"item_id": items["widget"], "quantity": quantity}]},
            headers=STAFF_HEADERS,
        )
        assert response.status_code == 422
