from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesops.context import reset_correlation_id, set_correlation_id
from salesops.core.config import get_settings
from salesops.core.database import Base, get_db
from salesops.logging import JsonLogFormatter
from salesops.main import app
from salesops.middleware.rate_limit import reset_rate_limiter
from salesops.sales.api import get_current_user as sales_get_current_user
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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="ops-admin",
            is_super_admin=True,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[sales_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/sales/appointments/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "salesops.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/sales/appointments/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_job_context_and_correlation_id(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.post("/api/sales/jobs/reschedule_reconcile/run", headers={"X-Correlation-Id": "job-corr-1"})
    assert response.status_code == 200

    job_records = [record for record in caplog.records if record.name == "salesops.jobs"]
    assert job_records
    assert [record.getMessage() for record in job_records] == ["job.started", "job.finished"]
    assert all(
        getattr(record, "job_type", None) == "reschedule_reconcile"
        and getattr(record, "correlation_id", None) == "job-corr-1"
        for record in job_records
    )
    assert getattr(job_records[-1], "status", None) == "Succeeded"


def test_json_formatter_keeps_known_fields_only() -> None:
    token = set_correlation_id("fmt-corr-1")
    try:
        record = logging.getLogger("salesops.test").makeRecord(
            "salesops.test",
            logging.INFO,
            __file__,
            1,
            "task.claimed",
            (),
            None,
            extra={"task_id": "t-1", "team_id": "team-1", "secret_token": "hidden", "error": "x" * 600},
        )
        record.correlation_id = "fmt-corr-1"
        payload = json.loads(JsonLogFormatter().format(record))
    finally:
        reset_correlation_id(token)

    assert payload["msg"] == "task.claimed"
    assert payload["logger"] == "salesops.test"
    assert payload["level"] == "INFO"
    assert payload["correlation_id"] == "fmt-corr-1"
    assert payload["fields"]["task_id"] == "t-1"
    assert payload["fields"]["team_id"] == "team-1"
    assert "secret_token" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500
