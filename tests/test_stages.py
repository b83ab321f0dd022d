from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesops.core.database import Base
from salesops.sales.models import Appointment, PipelineStage, Team
from salesops.sales.schemas import StageUpdate
from salesops.sales.stages import classify, is_booked, normalize_stage, stage_catalog


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


@pytest.fixture()
def team(db_session: Session) -> Team:
    row = Team(name="Stage Team")
    db_session.add(row)
    db_session.commit()
    return row


def _appointment(session: Session, team: Team, stage: str | None) -> Appointment:
    row = Appointment(
        team_id=team.id,
        lead_name="Lead",
        lead_email="lead@example.com",
        start_at=datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc),
        pipeline_stage=stage,
    )
    session.add(row)
    session.commit()
    return row


@pytest.mark.parametrize(
    ("stage_id", "label", "expected"),
    [
        ("won", "Closed Won", "close"),
        ("closed_deal", None, "close"),
        ("lost", "Closed Lost", "plain"),
        ("deposit", "Deposit Collected", "deposit"),
        ("rescheduled", "Rescheduled", "reschedule"),
        ("no_show", "No Show", "followup"),
        ("canceled", "Canceled", "followup"),
        ("custom_7", "No-Show (2nd)", "followup"),
        ("qualified_call", "Qualified", "plain"),
        ("appointments_booked", "Appointments Booked", "booked"),
        ("new", None, "booked"),
    ],
)
def test_classify_by_stage_id_and_label(stage_id: str, label: str | None, expected: str) -> None:
    assert classify(stage_id, label) == expected


def test_booked_aliases_normalize_to_single_value() -> None:
    assert is_booked(None)
    assert is_booked("")
    assert is_booked("Appointments_Booked")
    assert normalize_stage("new") == "booked"
    assert normalize_stage("won") == "won"


def test_ensure_stages_seeds_defaults_once(db_session: Session, team: Team) -> None:
    first = stage_catalog.ensure_stages(db_session, team.id)
    assert [row.stage_id for row in first] == ["no_show", "canceled", "rescheduled", "deposit", "won", "lost"]
    assert all(row.is_default for row in first)

    second = stage_catalog.ensure_stages(db_session, team.id)
    assert [row.id for row in second] == [row.id for row in first]
    count = len(db_session.scalars(select(PipelineStage).where(PipelineStage.team_id == team.id)).all())
    assert count == 6


def test_legacy_stage_rows_are_migrated_and_appointments_follow(db_session: Session, team: Team) -> None:
    db_session.add_all(
        [
            PipelineStage(team_id=team.id, stage_id="closed_won", label="Closed - Won", color="#10b981", order_index=0),
            PipelineStage(team_id=team.id, stage_id="cancelled", label="Cancelled", color="#ef4444", order_index=1),
            PipelineStage(team_id=team.id, stage_id="contacted", label="Contacted", color="#64748b", order_index=2),
            PipelineStage(team_id=team.id, stage_id="lost", label="Lost", color="#64748b", order_index=3),
        ]
    )
    db_session.commit()
    won_appointment = _appointment(db_session, team, "closed_won")
    contacted_appointment = _appointment(db_session, team, "contacted")
    canceled_appointment = _appointment(db_session, team, "cancelled")

    rows = stage_catalog.ensure_stages(db_session, team.id)

    by_id = {row.stage_id: row.label for row in rows}
    assert by_id == {"won": "Closed Won", "canceled": "Canceled", "lost": "Closed Lost"}

    db_session.expire_all()
    assert db_session.get(Appointment, won_appointment.id).pipeline_stage == "won"
    assert db_session.get(Appointment, contacted_appointment.id).pipeline_stage == "booked"
    assert db_session.get(Appointment, canceled_appointment.id).pipeline_stage == "canceled"


def test_duplicate_legacy_row_is_dropped_when_canonical_exists(db_session: Session, team: Team) -> None:
    db_session.add_all(
        [
            PipelineStage(team_id=team.id, stage_id="won", label="Closed Won", color="#10b981", order_index=0),
            PipelineStage(team_id=team.id, stage_id="closed", label="Closed", color="#10b981", order_index=1),
        ]
    )
    db_session.commit()
    legacy_appointment = _appointment(db_session, team, "closed")

    rows = stage_catalog.ensure_stages(db_session, team.id)

    assert [row.stage_id for row in rows] == ["won"]
    db_session.expire_all()
    assert db_session.get(Appointment, legacy_appointment.id).pipeline_stage == "won"


def test_find_stage_ignores_booked_aliases(db_session: Session, team: Team) -> None:
    assert stage_catalog.find_stage(db_session, team.id, "appointments_booked") is None
    assert stage_catalog.find_stage(db_session, team.id, "won") is not None
    assert stage_catalog.label_for(db_session, team.id, None) == "Appointments Booked"
    assert stage_catalog.first_stage_of_class(db_session, team.id, "close").stage_id == "won"


def test_update_stage_changes_label_and_order(db_session: Session, team: Team) -> None:
    updated = stage_catalog.update_stage(db_session, team.id, "lost", StageUpdate(label="Not a Fit", order_index=9))

    assert updated.label == "Not a Fit"
    assert updated.order_index == 9
    assert stage_catalog.list_stages(db_session, team.id)[-1].stage_id == "lost"


def test_update_unknown_stage_is_not_found(db_session: Session, team: Team) -> None:
    with pytest.raises(HTTPException) as exc_info:
        stage_catalog.update_stage(db_session, team.id, "missing", StageUpdate(label="X"))
    assert exc_info.value.status_code == 404
