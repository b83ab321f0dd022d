from __future__ import annotations

from collections.abc import Generator
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, delete, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesops.core.database import Base
from salesops.sales.activity import ActivityLogService
from salesops.sales.errors import ConsistencyViolationError, InvalidScheduleTransitionError, NoActiveTaskError
from salesops.sales.models import Appointment, MRRCommission, MRRFollowUpTask, MRRSchedule, Team, TeamMember
from salesops.sales.mrr import MRRScheduler
from salesops.sales.schemas import ConfirmPaymentRequest, ReactivateRequest
from salesops.sales.team import ActorUser


NOW = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)


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
    row = Team(name="Recurring")
    db_session.add(row)
    db_session.flush()
    db_session.add_all(
        [
            TeamMember(team_id=row.id, user_id="owner-1", display_name="Olive Owner", role="offer_owner"),
            TeamMember(team_id=row.id, user_id="closer-1", display_name="Carl Closer", role="closer"),
            TeamMember(team_id=row.id, user_id="setter-1", display_name="Sam Setter", role="setter"),
        ]
    )
    db_session.commit()
    return row


@pytest.fixture()
def scheduler() -> MRRScheduler:
    return MRRScheduler()


@pytest.fixture()
def closer(team: Team) -> ActorUser:
    return ActorUser(user_id="closer-1", team_id=team.id)


def _schedule(
    session: Session,
    scheduler: MRRScheduler,
    team: Team,
    *,
    months: int = 3,
    closer_id: str = "closer-1",
    first_charge: date = date(2026, 1, 31),
) -> MRRSchedule:
    appointment = Appointment(
        team_id=team.id,
        lead_name="Maya Monthly",
        lead_email="maya@example.com",
        start_at=datetime(2026, 1, 1, 15, 0, tzinfo=timezone.utc),
        setter_id="setter-1",
        setter_name="Sam Setter",
        closer_id=closer_id,
        pipeline_stage="won",
        status="CLOSED",
        cc_collected=Decimal("0"),
        mrr_amount=Decimal("100"),
        mrr_months=months,
        revenue=Decimal("100") * months,
    )
    session.add(appointment)
    session.flush()
    schedule = scheduler.create_schedule(
        session,
        appointment,
        mrr_amount=Decimal("100"),
        first_charge_date=first_charge,
        product_name="Retainer",
        actor_id="closer-1",
        actor_name="Carl Closer",
    )
    session.commit()
    return schedule


def _confirm(scheduler: MRRScheduler, session: Session, actor: ActorUser, schedule: MRRSchedule, **kwargs):
    return scheduler.confirm_payment(session, actor, schedule.id, ConfirmPaymentRequest(**kwargs), now=NOW)


def test_confirm_payment_books_commissions_and_opens_next_month(
    db_session: Session, scheduler: MRRScheduler, team: Team, closer: ActorUser
) -> None:
    schedule = _schedule(db_session, scheduler, team)

    result = _confirm(scheduler, db_session, closer, schedule, notes="Card charged")

    assert result.schedule.status == "active"
    assert result.schedule.next_renewal_date == date(2026, 2, 28)
    assert result.next_task_id is not None
    assert {(row.role, row.commission_amount) for row in result.commissions} == {
        ("setter", Decimal("5.00")),
        ("closer", Decimal("10.00")),
    }
    assert all(row.month_date == date(2026, 1, 31) for row in result.commissions)
    assert result.progress.confirmed_count == 1
    assert result.progress.total_months == 3
    assert result.progress.label == "1/3 months"

    appointment = db_session.get(Appointment, schedule.appointment_id)
    assert appointment.cc_collected == Decimal("100.00")
    due = db_session.scalars(
        select(MRRFollowUpTask).where(MRRFollowUpTask.mrr_schedule_id == schedule.id, MRRFollowUpTask.status == "due")
    ).all()
    assert [task.due_date for task in due] == [date(2026, 2, 28)]


def test_offer_owner_closing_their_own_deal_earns_no_closer_commission(
    db_session: Session, scheduler: MRRScheduler, team: Team, closer: ActorUser
) -> None:
    schedule = _schedule(db_session, scheduler, team, closer_id="owner-1")

    result = _confirm(scheduler, db_session, closer, schedule)

    assert [row.role for row in result.commissions] == ["setter"]


def test_schedule_completes_after_contracted_months(
    db_session: Session, scheduler: MRRScheduler, team: Team, closer: ActorUser
) -> None:
    schedule = _schedule(db_session, scheduler, team)

    results = [_confirm(scheduler, db_session, closer, schedule) for _ in range(3)]

    assert [item.progress.confirmed_count for item in results] == [1, 2, 3]
    assert results[-1].schedule.status == "completed"
    assert results[-1].next_task_id is None
    assert len(db_session.scalars(select(MRRCommission)).all()) == 6
    with pytest.raises(NoActiveTaskError):
        _confirm(scheduler, db_session, closer, schedule)


def test_confirming_a_confirmed_task_is_a_consistency_violation(
    db_session: Session, scheduler: MRRScheduler, team: Team, closer: ActorUser
) -> None:
    schedule = _schedule(db_session, scheduler, team)
    first = _confirm(scheduler, db_session, closer, schedule)

    with pytest.raises(ConsistencyViolationError) as exc_info:
        _confirm(scheduler, db_session, closer, schedule, task_id=first.confirmed_task_id)

    assert exc_info.value.kind == "double_confirm"
    assert len(db_session.scalars(select(MRRCommission)).all()) == 2


def test_confirming_past_contracted_months_is_a_consistency_violation(
    db_session: Session, scheduler: MRRScheduler, team: Team, closer: ActorUser
) -> None:
    schedule = _schedule(db_session, scheduler, team, months=2)
    _confirm(scheduler, db_session, closer, schedule)
    appointment = db_session.get(Appointment, schedule.appointment_id)
    appointment.mrr_months = 1
    db_session.commit()

    with pytest.raises(ConsistencyViolationError) as exc_info:
        _confirm(scheduler, db_session, closer, schedule)

    assert exc_info.value.kind == "months_exceeded"
    db_session.expire_all()
    assert db_session.get(Appointment, schedule.appointment_id).cc_collected == Decimal("100.00")


def test_pause_and_reactivate_moves_due_task(db_session: Session, scheduler: MRRScheduler, team: Team, closer: ActorUser) -> None:
    schedule = _schedule(db_session, scheduler, team)

    paused = scheduler.pause(db_session, closer, schedule.id)
    assert paused.status == "paused"
    assert [task.status for task in paused.tasks] == ["paused"]
    with pytest.raises(InvalidScheduleTransitionError):
        scheduler.pause(db_session, closer, schedule.id)

    resumed = scheduler.reactivate(db_session, closer, schedule.id, ReactivateRequest(new_next_date=date(2026, 4, 15)))
    assert resumed.status == "active"
    assert resumed.next_renewal_date == date(2026, 4, 15)
    assert [(task.status, task.due_date) for task in resumed.tasks] == [("due", date(2026, 4, 15))]


def test_cancel_then_reactivate_opens_fresh_due_task(db_session: Session, scheduler: MRRScheduler, team: Team, closer: ActorUser) -> None:
    schedule = _schedule(db_session, scheduler, team)

    canceled = scheduler.cancel(db_session, closer, schedule.id)
    assert canceled.status == "canceled"
    assert [task.status for task in canceled.tasks] == ["canceled"]

    resumed = scheduler.reactivate(db_session, closer, schedule.id, ReactivateRequest(new_next_date=date(2026, 5, 1)))
    statuses = sorted((task.status, task.due_date) for task in resumed.tasks)
    assert statuses == [("canceled", date(2026, 1, 31)), ("due", date(2026, 5, 1))]
    progress = scheduler.progress(db_session, closer, schedule.id)
    assert progress.due_count == 1
    assert progress.canceled_count == 1


def test_completed_schedule_cannot_be_paused(db_session: Session, scheduler: MRRScheduler, team: Team, closer: ActorUser) -> None:
    schedule = _schedule(db_session, scheduler, team, months=1)
    _confirm(scheduler, db_session, closer, schedule)

    with pytest.raises(InvalidScheduleTransitionError):
        scheduler.pause(db_session, closer, schedule.id)


def test_due_advancement_sweep_completes_and_repairs_schedules(
    db_session: Session, scheduler: MRRScheduler, team: Team, closer: ActorUser
) -> None:
    finished = _schedule(db_session, scheduler, team, months=2)
    _confirm(scheduler, db_session, closer, finished)
    finished_appointment = db_session.get(Appointment, finished.appointment_id)
    finished_appointment.mrr_months = 1
    missing = _schedule(db_session, scheduler, team, first_charge=date(2026, 3, 10))
    db_session.execute(delete(MRRFollowUpTask).where(MRRFollowUpTask.mrr_schedule_id == missing.id))
    healthy = _schedule(db_session, scheduler, team, first_charge=date(2026, 3, 20))
    db_session.commit()

    result = scheduler.run_due_advancement_sweep(db_session, today=date(2026, 3, 1))

    assert result.processed == 3
    assert result.changed == 2
    assert result.failed == 0
    assert scheduler.get_schedule(db_session, closer, finished.id).status == "completed"
    repaired = scheduler.get_schedule(db_session, closer, missing.id)
    assert [(task.status, task.due_date) for task in repaired.tasks] == [("due", date(2026, 3, 10))]
    assert scheduler.get_schedule(db_session, closer, healthy.id).status == "active"

    again = scheduler.run_due_advancement_sweep(db_session, today=date(2026, 3, 1))
    assert again.changed == 0


def test_due_advancement_sweep_keeps_going_after_a_failed_schedule(
    db_session: Session, scheduler: MRRScheduler, team: Team, closer: ActorUser, monkeypatch: pytest.MonkeyPatch
) -> None:
    broken = _schedule(db_session, scheduler, team, months=1)
    finished = _schedule(db_session, scheduler, team, months=1)
    for schedule in (broken, finished):
        db_session.execute(
            update(MRRFollowUpTask).where(MRRFollowUpTask.mrr_schedule_id == schedule.id).values(status="confirmed")
        )
    db_session.commit()
    broken_appointment_id = broken.appointment_id

    record = ActivityLogService.record

    def flaky_record(self, session: Session, **kwargs):
        if kwargs["appointment_id"] == broken_appointment_id:
            raise RuntimeError("activity insert failed")
        return record(self, session, **kwargs)

    monkeypatch.setattr(ActivityLogService, "record", flaky_record)
    result = scheduler.run_due_advancement_sweep(db_session, today=date(2026, 3, 1))

    assert result.processed == 2
    assert result.changed == 1
    assert result.failed == 1
    db_session.expire_all()
    assert db_session.get(MRRSchedule, broken.id).status == "active"
    assert db_session.get(MRRSchedule, finished.id).status == "completed"


def test_list_schedules_filters_by_status(db_session: Session, scheduler: MRRScheduler, team: Team, closer: ActorUser) -> None:
    active = _schedule(db_session, scheduler, team)
    paused = _schedule(db_session, scheduler, team)
    scheduler.pause(db_session, closer, paused.id)

    assert {row.id for row in scheduler.list_schedules(db_session, closer)} == {active.id, paused.id}
    assert [row.id for row in scheduler.list_schedules(db_session, closer, status_filter="paused")] == [paused.id]


def test_delete_schedule_requires_manager(db_session: Session, scheduler: MRRScheduler, team: Team) -> None:
    schedule = _schedule(db_session, scheduler, team)

    with pytest.raises(HTTPException) as exc_info:
        scheduler.delete_schedule(db_session, ActorUser(user_id="setter-1", team_id=team.id), schedule.id)
    assert exc_info.value.status_code == 403

    scheduler.delete_schedule(db_session, ActorUser(user_id="owner-1", team_id=team.id), schedule.id)
    assert db_session.scalar(select(MRRSchedule)) is None
    assert db_session.scalar(select(MRRFollowUpTask)) is None
