from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesops.core.config import get_settings
from salesops.core.database import Base, get_db
from salesops.main import app
from salesops.middleware.rate_limit import reset_rate_limiter
from salesops.sales.api import get_current_user as sales_get_current_user
from salesops.sales.models import Team, TeamMember
from salesops.sales.team import ActorUser


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_SALES_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def team_id(db_session: Session) -> uuid.UUID:
    team = Team(name="Limit Team")
    db_session.add(team)
    db_session.flush()
    db_session.add(TeamMember(team_id=team.id, user_id="user-1", display_name="Lee Limit", role="offer_owner"))
    db_session.commit()
    return team.id


@pytest.fixture()
def client(db_session: Session, team_id: uuid.UUID) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            team_id=team_id,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[sales_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _appointment_payload(team_id: uuid.UUID, index: int) -> dict:
    return {
        "team_id": str(team_id),
        "lead_name": f"Rate Limit Lead {index}",
        "lead_email": f"lead{index}@example.com",
        "start_at": "2026-03-10T15:00:00Z",
    }


def test_mutating_sales_endpoints_are_rate_limited(client: TestClient, team_id: uuid.UUID) -> None:
    responses = [client.post("/api/sales/appointments", json=_appointment_payload(team_id, index)) for index in range(5)]

    assert [response.status_code for response in responses[:3]] == [201, 201, 201]
    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "rate_limited"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_buckets_are_per_user(client: TestClient, team_id: uuid.UUID) -> None:
    for index in range(3):
        client.post("/api/sales/appointments", json=_appointment_payload(team_id, index), headers={"X-User-Id": "user-a"})

    blocked = client.post("/api/sales/appointments", json=_appointment_payload(team_id, 9), headers={"X-User-Id": "user-a"})
    other = client.post("/api/sales/appointments", json=_appointment_payload(team_id, 10), headers={"X-User-Id": "user-b"})

    assert blocked.status_code == 429
    assert other.status_code == 201


def test_get_endpoints_are_not_rate_limited(client: TestClient, team_id: uuid.UUID) -> None:
    create = client.post("/api/sales/appointments", json=_appointment_payload(team_id, 0))
    assert create.status_code == 201

    responses = [client.get("/api/sales/appointments/board") for _ in range(10)]
    assert all(response.status_code == 200 for response in responses)
