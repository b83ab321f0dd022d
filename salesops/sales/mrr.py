from __future__ import annotations

import calendar
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import NoReturn

from fastapi import HTTPException, status
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.orm import Session

from salesops import events
from salesops.metrics import observe_consistency_violation, observe_mrr_payment_confirmed
from salesops.sales.activity import SYSTEM_ACTOR, activity_log
from salesops.sales.errors import (
    ConsistencyViolationError,
    InvalidScheduleTransitionError,
    NoActiveTaskError,
)
from salesops.sales.models import Appointment, MRRCommission, MRRFollowUpTask, MRRSchedule
from salesops.sales.schemas import (
    CommissionRead,
    ConfirmPaymentRead,
    ConfirmPaymentRequest,
    ReactivateRequest,
    ScheduleProgressRead,
    ScheduleRead,
    SweepResultRead,
)
from salesops.sales.team import ActorUser, team_directory


logger = logging.getLogger("salesops.mrr")

VALID_SCHEDULE_TRANSITIONS: dict[str, set[str]] = {
    "active": {"paused", "canceled", "completed"},
    "paused": {"active", "canceled"},
    "canceled": {"active"},
    "completed": set(),
}

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _add_months(base_date: date, months: int) -> date:
    month_index = base_date.month - 1 + months
    year = base_date.year + (month_index // 12)
    month = month_index % 12 + 1
    day = min(base_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _money(value: Decimal) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(slots=True)
class MRRScheduler:
    """Monthly recurring-revenue follow-up.

    A schedule carries at most one ``due`` task at a time. Confirming it books
    the month's commissions and opens the next month until the contracted
    number of months has been collected.
    """

    def create_schedule(
        self,
        session: Session,
        appointment: Appointment,
        *,
        mrr_amount: Decimal,
        first_charge_date: date,
        product_name: str | None,
        actor_id: str,
        actor_name: str | None,
        notes: str | None = None,
    ) -> MRRSchedule:
        schedule = MRRSchedule(
            team_id=appointment.team_id,
            appointment_id=appointment.id,
            client_name=appointment.lead_name,
            client_email=appointment.lead_email,
            product_name=product_name,
            mrr_amount=_money(mrr_amount),
            first_charge_date=first_charge_date,
            next_renewal_date=first_charge_date,
            status="active",
            assigned_to=appointment.closer_id,
            notes=notes,
        )
        session.add(schedule)
        session.flush()
        session.add(self._due_task(schedule, first_charge_date))
        session.flush()

        activity_log.record(
            session,
            team_id=appointment.team_id,
            appointment_id=appointment.id,
            actor_id=actor_id,
            actor_name=actor_name,
            action_type="MRR Schedule Created",
            note=f"${_money(mrr_amount)}/month for {appointment.mrr_months} months starting {first_charge_date.isoformat()}",
        )
        logger.info(
            "mrr.schedule_created",
            extra={"schedule_id": str(schedule.id), "appointment_id": str(appointment.id), "team_id": str(appointment.team_id)},
        )
        return schedule

    def confirm_payment(
        self,
        session: Session,
        actor_user: ActorUser,
        schedule_id: uuid.UUID,
        dto: ConfirmPaymentRequest,
        *,
        now: datetime | None = None,
    ) -> ConfirmPaymentRead:
        schedule = self._get_schedule(session, schedule_id)
        team_directory.ensure_team_access(actor_user, schedule.team_id)
        appointment = self._get_appointment(session, schedule.appointment_id)

        if dto.task_id is not None:
            task = session.scalar(
                select(MRRFollowUpTask).where(
                    and_(MRRFollowUpTask.id == dto.task_id, MRRFollowUpTask.mrr_schedule_id == schedule.id)
                )
            )
            if task is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="mrr task not found")
            if task.status == "confirmed":
                self._violation(session, schedule, "double_confirm", "mrr task is already confirmed")
            if task.status != "due":
                raise NoActiveTaskError("mrr task is not due")
        else:
            task = self._current_due_task(session, schedule.id)
            if task is None:
                raise NoActiveTaskError("schedule has no due payment")

        confirmed_count = self._count(session, schedule.id, "confirmed")
        if confirmed_count + 1 > appointment.mrr_months:
            self._violation(
                session,
                schedule,
                "months_exceeded",
                f"confirming would exceed the contracted {appointment.mrr_months} months",
            )

        current = now or utcnow()
        result = session.execute(
            update(MRRFollowUpTask)
            .where(and_(MRRFollowUpTask.id == task.id, MRRFollowUpTask.status == "due"))
            .values(status="confirmed", completed_at=current, completed_by=actor_user.user_id, notes=dto.notes)
        )
        if result.rowcount == 0:
            self._violation(session, schedule, "double_confirm", "mrr task was confirmed concurrently")

        amount = _money(schedule.mrr_amount)
        appointment.cc_collected = _money(Decimal(str(appointment.cc_collected or 0)) + amount)
        session.add(appointment)

        commissions = self._book_commissions(session, schedule, appointment, task)

        actor_name = team_directory.actor_name(session, schedule.team_id, actor_user)
        activity_log.record(
            session,
            team_id=schedule.team_id,
            appointment_id=appointment.id,
            actor_id=actor_user.user_id,
            actor_name=actor_name,
            action_type="MRR Payment Confirmed",
            note=f"${amount} collected for {task.due_date.isoformat()}",
        )

        next_task: MRRFollowUpTask | None = None
        if confirmed_count + 1 >= appointment.mrr_months:
            self._transition(schedule, "completed")
        else:
            schedule.next_renewal_date = _add_months(schedule.next_renewal_date, 1)
            next_task = self._due_task(schedule, schedule.next_renewal_date)
            session.add(next_task)
        session.add(schedule)
        session.flush()

        confirmed_task_id = task.id
        next_task_id = next_task.id if next_task is not None else None
        commission_reads = [CommissionRead.model_validate(row) for row in commissions]
        events.publish(
            events.build_envelope(
                "sales.mrr.payment_confirmed",
                actor_user_id=actor_user.user_id,
                team_id=schedule.team_id,
                payload={
                    "schedule_id": str(schedule.id),
                    "appointment_id": str(appointment.id),
                    "task_id": str(confirmed_task_id),
                    "amount": str(amount),
                },
            )
        )
        session.commit()
        observe_mrr_payment_confirmed()
        logger.info(
            "mrr.payment_confirmed",
            extra={"schedule_id": str(schedule.id), "task_id": str(confirmed_task_id), "user_id": actor_user.user_id},
        )
        return ConfirmPaymentRead(
            schedule=self._to_read(session, schedule.id),
            confirmed_task_id=confirmed_task_id,
            next_task_id=next_task_id,
            commissions=commission_reads,
            progress=self._progress(session, schedule.id),
        )

    def pause(self, session: Session, actor_user: ActorUser, schedule_id: uuid.UUID) -> ScheduleRead:
        schedule = self._get_schedule(session, schedule_id)
        team_directory.ensure_team_access(actor_user, schedule.team_id)
        self._transition(schedule, "paused")
        session.execute(
            update(MRRFollowUpTask)
            .where(and_(MRRFollowUpTask.mrr_schedule_id == schedule.id, MRRFollowUpTask.status == "due"))
            .values(status="paused")
        )
        session.add(schedule)
        self._record(session, actor_user, schedule, "MRR Paused", "Recurring payments paused")
        session.commit()
        return self._to_read(session, schedule.id)

    def cancel(self, session: Session, actor_user: ActorUser, schedule_id: uuid.UUID) -> ScheduleRead:
        schedule = self._get_schedule(session, schedule_id)
        team_directory.ensure_team_access(actor_user, schedule.team_id)
        self._transition(schedule, "canceled")
        session.execute(
            update(MRRFollowUpTask)
            .where(
                and_(
                    MRRFollowUpTask.mrr_schedule_id == schedule.id,
                    MRRFollowUpTask.status.in_(("due", "paused")),
                )
            )
            .values(status="canceled")
        )
        session.add(schedule)
        self._record(session, actor_user, schedule, "MRR Canceled", "Recurring payments canceled")
        session.commit()
        return self._to_read(session, schedule.id)

    def reactivate(
        self,
        session: Session,
        actor_user: ActorUser,
        schedule_id: uuid.UUID,
        dto: ReactivateRequest,
    ) -> ScheduleRead:
        schedule = self._get_schedule(session, schedule_id)
        team_directory.ensure_team_access(actor_user, schedule.team_id)
        appointment = self._get_appointment(session, schedule.appointment_id)
        self._transition(schedule, "active")
        schedule.next_renewal_date = dto.new_next_date
        session.add(schedule)

        paused = session.scalar(
            select(MRRFollowUpTask)
            .where(and_(MRRFollowUpTask.mrr_schedule_id == schedule.id, MRRFollowUpTask.status == "paused"))
            .order_by(MRRFollowUpTask.due_date.asc(), MRRFollowUpTask.created_at.asc())
        )
        if paused is not None:
            paused.status = "due"
            paused.due_date = dto.new_next_date
            session.add(paused)
        elif (
            self._count(session, schedule.id, "confirmed") < appointment.mrr_months
            and self._current_due_task(session, schedule.id) is None
        ):
            session.add(self._due_task(schedule, dto.new_next_date))

        self._record(
            session,
            actor_user,
            schedule,
            "MRR Reactivated",
            f"Next renewal on {dto.new_next_date.isoformat()}",
        )
        session.commit()
        return self._to_read(session, schedule.id)

    def progress(self, session: Session, actor_user: ActorUser, schedule_id: uuid.UUID) -> ScheduleProgressRead:
        schedule = self._get_schedule(session, schedule_id)
        team_directory.ensure_team_access(actor_user, schedule.team_id)
        return self._progress(session, schedule.id)

    def get_schedule(self, session: Session, actor_user: ActorUser, schedule_id: uuid.UUID) -> ScheduleRead:
        schedule = self._get_schedule(session, schedule_id)
        team_directory.ensure_team_access(actor_user, schedule.team_id)
        return self._to_read(session, schedule.id)

    def list_schedules(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        team_id: uuid.UUID | None = None,
        status_filter: str | None = None,
    ) -> list[ScheduleRead]:
        resolved_team_id = team_id or actor_user.team_id
        if resolved_team_id is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="team_id is required")
        team_directory.ensure_team_access(actor_user, resolved_team_id)

        stmt = select(MRRSchedule).where(MRRSchedule.team_id == resolved_team_id)
        if status_filter:
            stmt = stmt.where(MRRSchedule.status == status_filter)
        rows = session.scalars(stmt.order_by(MRRSchedule.next_renewal_date.asc(), MRRSchedule.id.asc())).all()
        return [ScheduleRead.model_validate(row) for row in rows]

    def delete_schedule(self, session: Session, actor_user: ActorUser, schedule_id: uuid.UUID) -> None:
        schedule = self._get_schedule(session, schedule_id)
        team_directory.ensure_team_access(actor_user, schedule.team_id)
        team_directory.ensure_manager(session, actor_user, schedule.team_id)

        session.execute(delete(MRRCommission).where(MRRCommission.mrr_schedule_id == schedule.id))
        session.execute(delete(MRRFollowUpTask).where(MRRFollowUpTask.mrr_schedule_id == schedule.id))
        self._record(session, actor_user, schedule, "MRR Schedule Deleted", f"Deleted schedule for {schedule.client_name}")
        session.execute(delete(MRRSchedule).where(MRRSchedule.id == schedule.id))
        session.commit()
        logger.info("mrr.schedule_deleted", extra={"schedule_id": str(schedule_id), "user_id": actor_user.user_id})

    def purge_for_appointment(self, session: Session, appointment_id: uuid.UUID) -> None:
        """Drop every MRR row tied to ``appointment_id``. Joins the caller's transaction."""
        session.execute(delete(MRRCommission).where(MRRCommission.appointment_id == appointment_id))
        session.execute(delete(MRRFollowUpTask).where(MRRFollowUpTask.appointment_id == appointment_id))
        session.execute(delete(MRRSchedule).where(MRRSchedule.appointment_id == appointment_id))

    def run_due_advancement_sweep(self, session: Session, *, today: date | None = None) -> SweepResultRead:
        current_day = today or utcnow().date()
        schedule_ids = list(
            session.scalars(select(MRRSchedule.id).where(MRRSchedule.status == "active").order_by(MRRSchedule.id)).all()
        )
        changed = 0
        failed = 0
        overdue = 0
        for schedule_id in schedule_ids:
            try:
                schedule = self._get_schedule(session, schedule_id)
                appointment = self._get_appointment(session, schedule.appointment_id)
                confirmed = self._count(session, schedule.id, "confirmed")
                due_task = self._current_due_task(session, schedule.id)

                if confirmed >= appointment.mrr_months:
                    if due_task is not None:
                        due_task.status = "canceled"
                        session.add(due_task)
                    self._transition(schedule, "completed")
                    session.add(schedule)
                    activity_log.record(
                        session,
                        team_id=schedule.team_id,
                        appointment_id=schedule.appointment_id,
                        actor_id=SYSTEM_ACTOR,
                        actor_name=None,
                        action_type="MRR Completed",
                        note=f"{confirmed}/{appointment.mrr_months} months collected",
                    )
                    session.commit()
                    changed += 1
                    continue

                if due_task is None:
                    session.add(self._due_task(schedule, schedule.next_renewal_date))
                    session.commit()
                    changed += 1
                elif due_task.due_date < current_day:
                    overdue += 1
            except Exception as exc:
                session.rollback()
                failed += 1
                logger.exception("mrr.sweep_failed", extra={"schedule_id": str(schedule_id), "error": str(exc)[:500]})

        if overdue:
            logger.info("mrr.overdue", extra={"processed": overdue})
        return SweepResultRead(job_type="mrr_advance", processed=len(schedule_ids), changed=changed, failed=failed)

    def _book_commissions(
        self,
        session: Session,
        schedule: MRRSchedule,
        appointment: Appointment,
        task: MRRFollowUpTask,
    ) -> list[MRRCommission]:
        team = team_directory.get_team(session, schedule.team_id)
        setter_pct, closer_pct = team_directory.commission_pcts(team)
        amount = _money(schedule.mrr_amount)

        payees: list[tuple[str, str, Decimal]] = []
        if appointment.setter_id:
            payees.append(("setter", appointment.setter_id, setter_pct))
        if appointment.closer_id:
            closer_role = team_directory.member_role(session, schedule.team_id, appointment.closer_id)
            if closer_role != "offer_owner":
                payees.append(("closer", appointment.closer_id, closer_pct))

        rows: list[MRRCommission] = []
        for role, member_id, pct in payees:
            row = MRRCommission(
                team_id=schedule.team_id,
                appointment_id=appointment.id,
                mrr_schedule_id=schedule.id,
                mrr_task_id=task.id,
                team_member_id=member_id,
                team_member_name=team_directory.display_name(session, schedule.team_id, member_id)
                or (appointment.setter_name if role == "setter" else appointment.closer_name),
                role=role,
                prospect_name=appointment.lead_name,
                prospect_email=appointment.lead_email,
                month_date=task.due_date,
                mrr_amount=amount,
                commission_percentage=pct,
                commission_amount=_money(amount * pct / Decimal("100")),
            )
            session.add(row)
            rows.append(row)
        session.flush()
        return rows

    def _violation(self, session: Session, schedule: MRRSchedule, kind: str, message: str) -> NoReturn:
        session.rollback()
        observe_consistency_violation(kind)
        logger.error(
            "mrr.consistency_violation",
            extra={
                "schedule_id": str(schedule.id),
                "team_id": str(schedule.team_id),
                "error_code": ConsistencyViolationError.code,
                "error": f"{kind}: {message}",
            },
        )
        raise ConsistencyViolationError(message, kind=kind)

    def _transition(self, schedule: MRRSchedule, next_status: str) -> None:
        allowed = VALID_SCHEDULE_TRANSITIONS.get(schedule.status, set())
        if next_status not in allowed:
            raise InvalidScheduleTransitionError(f"cannot move schedule from {schedule.status} to {next_status}")
        schedule.status = next_status

    def _record(self, session: Session, actor_user: ActorUser, schedule: MRRSchedule, action_type: str, note: str) -> None:
        activity_log.record(
            session,
            team_id=schedule.team_id,
            appointment_id=schedule.appointment_id,
            actor_id=actor_user.user_id,
            actor_name=team_directory.actor_name(session, schedule.team_id, actor_user),
            action_type=action_type,
            note=note,
        )

    def _due_task(self, schedule: MRRSchedule, due_date: date) -> MRRFollowUpTask:
        return MRRFollowUpTask(
            team_id=schedule.team_id,
            mrr_schedule_id=schedule.id,
            appointment_id=schedule.appointment_id,
            due_date=due_date,
            status="due",
        )

    def _current_due_task(self, session: Session, schedule_id: uuid.UUID) -> MRRFollowUpTask | None:
        return session.scalar(
            select(MRRFollowUpTask).where(
                and_(MRRFollowUpTask.mrr_schedule_id == schedule_id, MRRFollowUpTask.status == "due")
            )
        )

    def _count(self, session: Session, schedule_id: uuid.UUID, task_status: str) -> int:
        return int(
            session.scalar(
                select(func.count(MRRFollowUpTask.id)).where(
                    and_(MRRFollowUpTask.mrr_schedule_id == schedule_id, MRRFollowUpTask.status == task_status)
                )
            )
            or 0
        )

    def _progress(self, session: Session, schedule_id: uuid.UUID) -> ScheduleProgressRead:
        schedule = self._get_schedule(session, schedule_id)
        appointment = self._get_appointment(session, schedule.appointment_id)
        confirmed = self._count(session, schedule.id, "confirmed")
        return ScheduleProgressRead(
            schedule_id=schedule.id,
            status=schedule.status,
            confirmed_count=confirmed,
            total_months=appointment.mrr_months,
            due_count=self._count(session, schedule.id, "due"),
            paused_count=self._count(session, schedule.id, "paused"),
            canceled_count=self._count(session, schedule.id, "canceled"),
            next_renewal_date=schedule.next_renewal_date,
            label=f"{confirmed}/{appointment.mrr_months} months",
        )

    def _to_read(self, session: Session, schedule_id: uuid.UUID) -> ScheduleRead:
        schedule = self._get_schedule(session, schedule_id)
        session.refresh(schedule)
        return ScheduleRead.model_validate(schedule)

    def _get_schedule(self, session: Session, schedule_id: uuid.UUID) -> MRRSchedule:
        schedule = session.scalar(select(MRRSchedule).where(MRRSchedule.id == schedule_id))
        if schedule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="mrr schedule not found")
        return schedule

    def _get_appointment(self, session: Session, appointment_id: uuid.UUID) -> Appointment:
        appointment = session.scalar(select(Appointment).where(Appointment.id == appointment_id))
        if appointment is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="appointment not found")
        return appointment


mrr_scheduler = MRRScheduler()
