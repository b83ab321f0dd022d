from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesops import events
from salesops.core.config import get_settings
from salesops.core.database import Base, get_db
from salesops.main import app
from salesops.middleware.rate_limit import reset_rate_limiter
from salesops.sales.api import get_current_user as sales_get_current_user
from salesops.sales.models import Team, TeamMember
from salesops.sales.team import ActorUser
from salesops.sales.undo import undo_ledger


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    undo_ledger.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    undo_ledger.clear()
    events.published_events.clear()


@pytest.fixture()
def team_id(db_session: Session) -> uuid.UUID:
    team = Team(name="API Team")
    db_session.add(team)
    db_session.flush()
    db_session.add_all(
        [
            TeamMember(team_id=team.id, user_id="owner-1", display_name="Olive Owner", role="offer_owner"),
            TeamMember(team_id=team.id, user_id="closer-1", display_name="Carl Closer", role="closer"),
            TeamMember(team_id=team.id, user_id="setter-1", display_name="Sam Setter", role="setter"),
        ]
    )
    db_session.commit()
    return team.id


@pytest.fixture()
def client(db_session: Session, team_id: uuid.UUID) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id=request.headers.get("x-user-id", "owner-1"),
            team_id=team_id,
            is_super_admin=request.headers.get("x-admin") == "true",
            session_key=request.headers.get("x-session-id"),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[sales_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_appointment(client: TestClient, team_id: uuid.UUID, **overrides) -> dict:
    payload = {
        "team_id": str(team_id),
        "lead_name": "Ava API",
        "lead_email": "ava@example.com",
        "start_at": "2026-03-10T15:00:00Z",
        "setter_id": "setter-1",
        "closer_id": "closer-1",
    }
    payload.update(overrides)
    response = client.post("/api/sales/appointments", json=payload)
    assert response.status_code == 201
    return response.json()


def test_health_reports_service(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["service"] == "SalesOps API"


def test_close_flow_through_api(client: TestClient, team_id: uuid.UUID) -> None:
    appointment = _create_appointment(client, team_id)
    assert appointment["pipeline_stage"] == "booked"
    assert appointment["setter_name"] == "Sam Setter"

    board = client.get("/api/sales/appointments/board")
    assert board.status_code == 200
    assert board.json()["groups"][0]["stage_id"] == "appointments_booked"
    assert [item["id"] for item in board.json()["groups"][0]["appointments"]] == [appointment["id"]]

    move = client.post(f"/api/sales/appointments/{appointment['id']}/move", json={"target_stage": "won"})
    assert move.status_code == 200
    assert move.json()["outcome"] == "needs_input"
    assert move.json()["input_kind"] == "deal_close"

    close = client.post(
        f"/api/sales/appointments/{appointment['id']}/close",
        json={"cc_amount": "1000", "mrr_amount": "200", "mrr_months": 3, "product_name": "Program"},
    )
    assert close.status_code == 200
    assert close.json()["status"] == "CLOSED"
    assert close.json()["revenue"] == "1600.00"

    schedules = client.get("/api/sales/mrr/schedules")
    assert schedules.status_code == 200
    assert len(schedules.json()) == 1
    schedule_id = schedules.json()[0]["id"]

    confirm = client.post(f"/api/sales/mrr/schedules/{schedule_id}/confirm")
    assert confirm.status_code == 200
    assert confirm.json()["progress"]["label"] == "1/3 months"

    progress = client.get(f"/api/sales/mrr/schedules/{schedule_id}/progress")
    assert progress.json()["confirmed_count"] == 1

    activity = client.get(f"/api/sales/appointments/{appointment['id']}/activity")
    assert activity.status_code == 200
    actions = [item["action_type"] for item in activity.json()]
    assert "Status Changed" in actions
    assert "MRR Payment Confirmed" in actions

    closed_again = client.post(
        f"/api/sales/appointments/{appointment['id']}/close",
        json={"cc_amount": "1000", "product_name": "Program"},
    )
    assert closed_again.status_code == 409
    assert closed_again.json()["code"] == "already_closed"


def test_domain_errors_use_error_envelope(client: TestClient, team_id: uuid.UUID) -> None:
    appointment = _create_appointment(client, team_id, closer_id=None)

    response = client.post(
        f"/api/sales/appointments/{appointment['id']}/move",
        json={"target_stage": "deposit"},
        headers={"X-Correlation-Id": "api-corr-1"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "missing_closer"
    assert body["message"] == "assign a closer before moving to a deposit or closing stage"
    assert body["correlation_id"] == "api-corr-1"
    assert response.headers.get("x-correlation-id") == "api-corr-1"

    revert = client.post(f"/api/sales/appointments/{appointment['id']}/revert", json={})
    assert revert.status_code == 422
    assert revert.json()["code"] == "confirmation_required"


def test_missing_appointment_uses_endpoint_fallback_code(client: TestClient) -> None:
    response = client.get(f"/api/sales/appointments/{uuid.uuid4()}")

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "sales_appointment_get_failed"
    assert body["message"] == "appointment not found"
    assert body["correlation_id"] == response.headers.get("x-correlation-id")


def test_undo_is_scoped_to_session_header(client: TestClient, team_id: uuid.UUID) -> None:
    appointment = _create_appointment(client, team_id)
    move = client.post(
        f"/api/sales/appointments/{appointment['id']}/move",
        json={"target_stage": "lost"},
        headers={"X-Session-Id": "tab-9"},
    )
    assert move.json()["appointment"]["pipeline_stage"] == "lost"

    other_tab = client.post("/api/sales/undo", headers={"X-Session-Id": "tab-1"})
    assert other_tab.json()["status"] == "empty"

    undo = client.post("/api/sales/undo", headers={"X-Session-Id": "tab-9"})
    assert undo.status_code == 200
    assert undo.json()["status"] == "applied"
    assert client.get(f"/api/sales/appointments/{appointment['id']}").json()["pipeline_stage"] == "booked"

    again = client.post("/api/sales/undo", headers={"X-Session-Id": "tab-9"})
    assert again.json()["status"] == "empty"


def test_task_endpoints(client: TestClient, team_id: uuid.UUID) -> None:
    appointment = _create_appointment(client, team_id)

    team_tasks = client.get("/api/sales/tasks", params={"scope": "team"})
    assert team_tasks.status_code == 200
    assert len(team_tasks.json()) == 1
    task = team_tasks.json()[0]
    assert task["assigned_to"] == "setter-1"

    setter_headers = {"X-User-Id": "setter-1"}
    mine = client.get("/api/sales/tasks", headers=setter_headers)
    assert [item["id"] for item in mine.json()] == [task["id"]]

    stolen = client.post(f"/api/sales/tasks/{task['id']}/claim", headers={"X-User-Id": "closer-1"})
    assert stolen.status_code == 409
    assert stolen.json()["code"] == "already_claimed"

    claim = client.post(f"/api/sales/tasks/{task['id']}/claim", headers=setter_headers)
    assert claim.status_code == 200
    assert claim.json()["status"] == "claimed"

    complete = client.post(
        f"/api/sales/tasks/{task['id']}/complete",
        json={"outcome": "confirmed"},
        headers=setter_headers,
    )
    assert complete.status_code == 200
    assert complete.json()["status"] == "completed"
    assert client.get(f"/api/sales/appointments/{appointment['id']}").json()["status"] == "CONFIRMED"

    created = client.post(
        "/api/sales/tasks",
        json={"appointment_id": appointment["id"], "task_type": "follow_up", "follow_up_reason": "Send recap"},
    )
    assert created.status_code == 201
    assert created.json()["task_type"] == "follow_up"


def test_stage_management_requires_manager(client: TestClient, team_id: uuid.UUID) -> None:
    stages = client.get(f"/api/sales/teams/{team_id}/stages")
    assert stages.status_code == 200
    assert [item["stage_id"] for item in stages.json()] == ["no_show", "canceled", "rescheduled", "deposit", "won", "lost"]

    denied = client.patch(
        f"/api/sales/teams/{team_id}/stages/won",
        json={"label": "Signed"},
        headers={"X-User-Id": "setter-1"},
    )
    assert denied.status_code == 403
    assert denied.json()["code"] == "sales_stage_update_failed"

    updated = client.patch(f"/api/sales/teams/{team_id}/stages/won", json={"label": "Signed", "color": "#000000"})
    assert updated.status_code == 200
    assert updated.json()["label"] == "Signed"
    assert updated.json()["color"] == "#000000"


def test_setter_pipeline_updates_are_forbidden_by_default(client: TestClient, team_id: uuid.UUID) -> None:
    appointment = _create_appointment(client, team_id)

    response = client.post(
        f"/api/sales/appointments/{appointment['id']}/move",
        json={"target_stage": "lost"},
        headers={"X-User-Id": "setter-1"},
    )

    assert response.status_code == 403
    assert response.json()["code"] == "sales_move_failed"


def test_delete_schedule_returns_no_content(client: TestClient, team_id: uuid.UUID) -> None:
    appointment = _create_appointment(client, team_id)
    client.post(
        f"/api/sales/appointments/{appointment['id']}/close",
        json={"cc_amount": "500", "mrr_amount": "50", "mrr_months": 2, "product_name": "Lite"},
    )
    schedule_id = client.get("/api/sales/mrr/schedules").json()[0]["id"]

    paused = client.post(f"/api/sales/mrr/schedules/{schedule_id}/pause")
    assert paused.json()["status"] == "paused"
    reactivated = client.post(f"/api/sales/mrr/schedules/{schedule_id}/reactivate", json={"new_next_date": "2026-06-01"})
    assert reactivated.json()["next_renewal_date"] == "2026-06-01"

    deleted = client.delete(f"/api/sales/mrr/schedules/{schedule_id}")
    assert deleted.status_code == 204
    missing = client.get(f"/api/sales/mrr/schedules/{schedule_id}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "sales_mrr_get_failed"


def test_jobs_require_admin(client: TestClient) -> None:
    denied = client.post("/api/sales/jobs/auto_return/run")
    assert denied.status_code == 403
    assert denied.json()["code"] == "sales_job_run_failed"

    unknown = client.post("/api/sales/jobs/nope/run", headers={"X-Admin": "true"})
    assert unknown.status_code == 422

    ran = client.post("/api/sales/jobs/auto_return/run", headers={"X-Admin": "true"})
    assert ran.status_code == 200
    assert ran.json() == {"job_type": "auto_return", "processed": 0, "changed": 0, "failed": 0}
