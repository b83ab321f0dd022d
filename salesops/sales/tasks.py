from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Protocol

from fastapi import HTTPException, status
from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from salesops.core.config import get_settings
from salesops.metrics import observe_tasks_auto_returned
from salesops.sales.activity import SYSTEM_ACTOR, activity_log
from salesops.sales.errors import (
    AlreadyClaimedError,
    AlreadyClosedError,
    ConflictError,
    TaskAlreadyCompletedError,
    ValidationError,
)
from salesops.sales.models import Appointment, ConfirmationTask, TeamMember
from salesops.sales.schemas import (
    ReconcileRead,
    SweepResultRead,
    TaskCompleteRequest,
    TaskCreate,
    TaskRead,
)
from salesops.sales.stages import stage_catalog
from salesops.sales.team import ActorUser, team_directory


logger = logging.getLogger("salesops.tasks")

OPEN_TASK_STATUSES = ("pending", "claimed", "awaiting_reschedule")
WORKING_TASK_STATUSES = ("pending", "claimed")
RESCHEDULABLE_TASK_TYPES = {"call_confirmation", "reschedule"}
DEFAULT_ROUTING = {
    "call_confirmation": "setter",
    "follow_up": "setter",
    "reschedule": "setter",
}
OUTCOME_STATUS = {
    "confirmed": "CONFIRMED",
    "no_show": "NO_SHOW",
    "rescheduled": "RESCHEDULED",
}
NO_SHOW_RETARGET_DAYS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RotationPolicy(Protocol):
    def pick(self, session: Session, team_id: uuid.UUID, role: str, appointment: Appointment) -> TeamMember | None: ...


@dataclass(slots=True)
class LeastLoadedRotation:
    """Keep work with the appointment's current owner, else hand it to the least busy member."""

    def pick(self, session: Session, team_id: uuid.UUID, role: str, appointment: Appointment) -> TeamMember | None:
        members = team_directory.rotation_members(session, team_id, role)
        if not members:
            return None

        current = {"setter": appointment.setter_id, "closer": appointment.closer_id}.get(role)
        for member in members:
            if current and member.user_id == current:
                return member

        counts = dict(
            session.execute(
                select(ConfirmationTask.assigned_to, func.count(ConfirmationTask.id))
                .where(
                    and_(
                        ConfirmationTask.team_id == team_id,
                        ConfirmationTask.status.in_(OPEN_TASK_STATUSES),
                        ConfirmationTask.assigned_to.in_([member.user_id for member in members]),
                    )
                )
                .group_by(ConfirmationTask.assigned_to)
            ).all()
        )
        return min(members, key=lambda member: (counts.get(member.user_id, 0), member.user_id))


@dataclass(slots=True)
class TaskAssignmentEngine:
    rotation: RotationPolicy = field(default_factory=LeastLoadedRotation)
    routing: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ROUTING))

    def create_task(self, session: Session, actor_user: ActorUser, dto: TaskCreate, *, now: datetime | None = None) -> TaskRead:
        appointment = self._get_appointment(session, dto.appointment_id)
        team_directory.ensure_team_access(actor_user, appointment.team_id)
        task = self.spawn(
            session,
            appointment,
            dto.task_type,
            actor_id=actor_user.user_id,
            actor_name=team_directory.actor_name(session, appointment.team_id, actor_user),
            due_at=dto.due_at,
            follow_up_date=dto.follow_up_date,
            follow_up_reason=dto.follow_up_reason,
            now=now,
        )
        session.commit()
        session.refresh(task)
        return TaskRead.model_validate(task)

    def spawn(
        self,
        session: Session,
        appointment: Appointment,
        task_type: str,
        *,
        actor_id: str = SYSTEM_ACTOR,
        actor_name: str | None = None,
        due_at: datetime | None = None,
        follow_up_date: date | None = None,
        follow_up_reason: str | None = None,
        now: datetime | None = None,
    ) -> ConfirmationTask:
        """Create the open task for ``(appointment, task_type)`` unless one already exists.

        Joins the caller's transaction; nothing is committed here.
        """
        existing = self._open_task(session, appointment.id, task_type)
        if existing is not None:
            return existing

        current = now or utcnow()
        role = self.routing.get(task_type, "setter")
        member = self.rotation.pick(session, appointment.team_id, role, appointment)
        auto_return_at = None
        if member is not None:
            team = team_directory.get_team(session, appointment.team_id)
            auto_return_at = current + timedelta(minutes=team_directory.auto_return_minutes(team))

        task = ConfirmationTask(
            team_id=appointment.team_id,
            appointment_id=appointment.id,
            task_type=task_type,
            status="pending",
            assigned_to=member.user_id if member is not None else None,
            assigned_role=role,
            assigned_at=current if member is not None else None,
            auto_return_at=auto_return_at,
            claimed_manually=False,
            due_at=due_at or current,
            follow_up_date=follow_up_date,
            follow_up_reason=follow_up_reason,
        )
        session.add(task)
        session.flush()

        activity_log.record(
            session,
            team_id=appointment.team_id,
            appointment_id=appointment.id,
            actor_id=actor_id,
            actor_name=actor_name,
            action_type="Created",
            note="Task auto-assigned via round-robin" if member is not None else "Task created in queue",
        )
        logger.info(
            "task.created",
            extra={
                "task_id": str(task.id),
                "appointment_id": str(appointment.id),
                "team_id": str(appointment.team_id),
                "user_id": task.assigned_to,
            },
        )
        return task

    def claim(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID, *, now: datetime | None = None) -> TaskRead:
        task = self._get_task(session, task_id)
        team_directory.ensure_team_access(actor_user, task.team_id)
        if task.status == "completed":
            raise TaskAlreadyCompletedError("task is already completed")
        if task.assigned_to and task.assigned_to != actor_user.user_id:
            raise AlreadyClaimedError("task is already assigned to another team member")

        current = now or utcnow()
        team = team_directory.get_team(session, task.team_id)
        auto_return_at = current + timedelta(minutes=team_directory.auto_return_minutes(team))
        next_status = "awaiting_reschedule" if task.status == "awaiting_reschedule" else "claimed"

        result = session.execute(
            update(ConfirmationTask)
            .where(
                and_(
                    ConfirmationTask.id == task.id,
                    ConfirmationTask.status == task.status,
                    (ConfirmationTask.assigned_to.is_(None)) | (ConfirmationTask.assigned_to == actor_user.user_id),
                )
            )
            .values(
                status=next_status,
                assigned_to=actor_user.user_id,
                assigned_at=current,
                auto_return_at=auto_return_at,
                claimed_manually=True,
            )
        )
        if result.rowcount == 0:
            session.rollback()
            raise AlreadyClaimedError("task was claimed concurrently")

        actor_name = team_directory.actor_name(session, task.team_id, actor_user)
        appointment = self._get_appointment(session, task.appointment_id)
        if not appointment.setter_id:
            appointment.setter_id = actor_user.user_id
            appointment.setter_name = actor_name
            session.add(appointment)

        activity_log.record(
            session,
            team_id=task.team_id,
            appointment_id=task.appointment_id,
            actor_id=actor_user.user_id,
            actor_name=actor_name,
            action_type="Task Claimed & Assigned",
            note=f"Claimed {task.task_type.replace('_', ' ')} task",
        )
        session.commit()
        logger.info("task.claimed", extra={"task_id": str(task.id), "user_id": actor_user.user_id})
        return TaskRead.model_validate(self._get_task(session, task.id))

    def complete(
        self,
        session: Session,
        actor_user: ActorUser,
        task_id: uuid.UUID,
        dto: TaskCompleteRequest,
        *,
        now: datetime | None = None,
    ) -> TaskRead:
        task = self._get_task(session, task_id)
        team_directory.ensure_team_access(actor_user, task.team_id)
        if task.status == "completed":
            raise TaskAlreadyCompletedError("task is already completed")

        current = now or utcnow()
        appointment = self._get_appointment(session, task.appointment_id)
        if appointment.status == "CLOSED":
            raise AlreadyClosedError("deal is already closed")
        if appointment.rescheduled_to_id is not None:
            raise ConflictError("appointment was rebooked; work the follow-on appointment instead")
        target_stage = None
        if dto.outcome == "no_show":
            target_stage = stage_catalog.find_stage(session, appointment.team_id, "no_show")
        elif dto.outcome == "rescheduled":
            target_stage = stage_catalog.find_stage(session, appointment.team_id, "rescheduled")
        actor_name = team_directory.actor_name(session, task.team_id, actor_user)

        result = session.execute(
            update(ConfirmationTask)
            .where(and_(ConfirmationTask.id == task.id, ConfirmationTask.status != "completed"))
            .values(
                status="completed",
                completed_at=current,
                completed_by=actor_user.user_id,
                outcome=dto.outcome,
                reschedule_date=dto.reschedule_date if dto.outcome == "rescheduled" else None,
                reschedule_reason=dto.reschedule_reason if dto.outcome == "rescheduled" else None,
                reschedule_notes=dto.notes if dto.outcome == "rescheduled" else None,
            )
        )
        if result.rowcount == 0:
            session.rollback()
            raise TaskAlreadyCompletedError("task was completed concurrently")

        appointment.status = OUTCOME_STATUS[dto.outcome]
        if dto.outcome == "no_show":
            appointment.retarget_date = current.date() + timedelta(days=NO_SHOW_RETARGET_DAYS)
            appointment.retarget_reason = dto.notes or "No show"
        elif dto.outcome == "rescheduled":
            appointment.reschedule_count = (appointment.reschedule_count or 0) + 1
        if target_stage is not None and appointment.pipeline_stage != target_stage.stage_id:
            appointment.pipeline_stage = target_stage.stage_id
            activity_log.record(
                session,
                team_id=appointment.team_id,
                appointment_id=appointment.id,
                actor_id=actor_user.user_id,
                actor_name=actor_name,
                action_type="Moved",
                note=f"Moved {appointment.lead_name} to {target_stage.label}",
            )
        session.add(appointment)

        self.close_open_tasks(
            session,
            appointment.id,
            actor_id=actor_user.user_id,
            now=current,
            exclude_task_id=task.id,
        )
        activity_log.record(
            session,
            team_id=task.team_id,
            appointment_id=appointment.id,
            actor_id=actor_user.user_id,
            actor_name=actor_name,
            action_type="Task Completed",
            note=f"Outcome: {dto.outcome.replace('_', ' ')}" + (f" ({dto.notes})" if dto.notes else ""),
        )
        session.commit()
        logger.info(
            "task.completed",
            extra={"task_id": str(task.id), "appointment_id": str(appointment.id), "outcome": dto.outcome},
        )
        return TaskRead.model_validate(self._get_task(session, task.id))

    def close_open_tasks(
        self,
        session: Session,
        appointment_id: uuid.UUID,
        *,
        actor_id: str,
        now: datetime | None = None,
        exclude_task_id: uuid.UUID | None = None,
        statuses: tuple[str, ...] = OPEN_TASK_STATUSES,
    ) -> list[uuid.UUID]:
        conditions = [
            ConfirmationTask.appointment_id == appointment_id,
            ConfirmationTask.status.in_(statuses),
        ]
        if exclude_task_id is not None:
            conditions.append(ConfirmationTask.id != exclude_task_id)
        task_ids = list(session.scalars(select(ConfirmationTask.id).where(and_(*conditions))).all())
        if task_ids:
            session.execute(
                update(ConfirmationTask)
                .where(and_(ConfirmationTask.id.in_(task_ids), ConfirmationTask.status != "completed"))
                .values(status="completed", completed_at=now or utcnow(), completed_by=actor_id)
            )
        return task_ids

    def mark_awaiting_reschedule(self, session: Session, task: ConfirmationTask) -> ConfirmationTask:
        if task.task_type not in RESCHEDULABLE_TASK_TYPES:
            raise ValidationError("only confirmation and reschedule tasks can await a reschedule")
        if task.status == "completed":
            raise TaskAlreadyCompletedError("task is already completed")
        task.status = "awaiting_reschedule"
        session.add(task)
        return task

    def mark_awaiting_reschedule_by_id(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        task = self._get_task(session, task_id)
        team_directory.ensure_team_access(actor_user, task.team_id)
        self.mark_awaiting_reschedule(session, task)
        activity_log.record(
            session,
            team_id=task.team_id,
            appointment_id=task.appointment_id,
            actor_id=actor_user.user_id,
            actor_name=team_directory.actor_name(session, task.team_id, actor_user),
            action_type="Reschedule Link Sent",
            note="Waiting for the lead to pick a new time",
        )
        session.commit()
        return TaskRead.model_validate(self._get_task(session, task.id))

    def open_reschedulable_task(self, session: Session, appointment_id: uuid.UUID) -> ConfirmationTask | None:
        return session.scalar(
            select(ConfirmationTask)
            .where(
                and_(
                    ConfirmationTask.appointment_id == appointment_id,
                    ConfirmationTask.task_type.in_(sorted(RESCHEDULABLE_TASK_TYPES)),
                    ConfirmationTask.status.in_(OPEN_TASK_STATUSES),
                )
            )
            .order_by(ConfirmationTask.created_at.asc())
        )

    def run_auto_return_sweep(self, session: Session, *, now: datetime | None = None) -> SweepResultRead:
        current = now or utcnow()
        candidates = session.execute(
            select(
                ConfirmationTask.id,
                ConfirmationTask.team_id,
                ConfirmationTask.appointment_id,
                ConfirmationTask.assigned_to,
                ConfirmationTask.status,
            )
            .where(
                and_(
                    ConfirmationTask.status.in_(WORKING_TASK_STATUSES),
                    ConfirmationTask.assigned_to.is_not(None),
                    ConfirmationTask.auto_return_at.is_not(None),
                    ConfirmationTask.auto_return_at < current,
                )
            )
            .order_by(ConfirmationTask.auto_return_at.asc())
        ).all()

        changed = 0
        failed = 0
        for task_id, team_id, appointment_id, previous_assignee, previous_status in candidates:
            held_as = "claim" if previous_status == "claimed" else "assignment"
            try:
                result = session.execute(
                    update(ConfirmationTask)
                    .where(
                        and_(
                            ConfirmationTask.id == task_id,
                            ConfirmationTask.status.in_(WORKING_TASK_STATUSES),
                            ConfirmationTask.auto_return_at < current,
                        )
                    )
                    .values(
                        status="pending",
                        assigned_to=None,
                        assigned_at=None,
                        auto_return_at=None,
                        claimed_manually=False,
                    )
                    .execution_options(synchronize_session="fetch")
                )
                if result.rowcount == 0:
                    session.rollback()
                    continue
                activity_log.record(
                    session,
                    team_id=team_id,
                    appointment_id=appointment_id,
                    actor_id=SYSTEM_ACTOR,
                    actor_name=None,
                    action_type="Task Auto-Returned",
                    note=f"Returned to queue after {held_as} by {previous_assignee} expired",
                )
                session.commit()
                changed += 1
            except Exception as exc:
                session.rollback()
                failed += 1
                logger.exception("task.auto_return_failed", extra={"task_id": str(task_id), "error": str(exc)[:500]})

        observe_tasks_auto_returned(changed)
        return SweepResultRead(job_type="auto_return", processed=len(candidates), changed=changed, failed=failed)

    def reconcile_external_change(
        self,
        session: Session,
        appointment_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> ReconcileRead:
        """Re-derive task state from the appointment row.

        Safe to call any number of times for the same change.
        """
        appointment = session.scalar(
            select(Appointment).where(Appointment.id == appointment_id).execution_options(populate_existing=True)
        )
        if appointment is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="appointment not found")

        read = ReconcileRead(appointment_id=appointment.id, appointment_status=appointment.status)
        if appointment.status not in {"RESCHEDULED", "CANCELLED"}:
            return read

        awaiting = list(
            session.scalars(
                select(ConfirmationTask).where(
                    and_(
                        ConfirmationTask.appointment_id == appointment.id,
                        ConfirmationTask.status == "awaiting_reschedule",
                    )
                )
            ).all()
        )
        superseded = appointment.status == "CANCELLED" or appointment.rescheduled_to_id is not None
        if not awaiting and not superseded:
            return read

        current = now or utcnow()
        outcome = "rescheduled" if appointment.status == "RESCHEDULED" else None
        for task in awaiting:
            result = session.execute(
                update(ConfirmationTask)
                .where(and_(ConfirmationTask.id == task.id, ConfirmationTask.status == "awaiting_reschedule"))
                .values(status="completed", completed_at=current, completed_by=SYSTEM_ACTOR, outcome=outcome)
            )
            if result.rowcount:
                read.completed_task_ids.append(task.id)
        handed_off = bool(read.completed_task_ids)
        if superseded:
            read.completed_task_ids.extend(
                self.close_open_tasks(
                    session,
                    appointment.id,
                    actor_id=SYSTEM_ACTOR,
                    now=current,
                    statuses=WORKING_TASK_STATUSES,
                )
            )

        if not read.completed_task_ids:
            session.rollback()
            return read

        if appointment.status == "RESCHEDULED" and handed_off:
            follow_on = None
            if appointment.rescheduled_to_id is not None:
                follow_on = session.scalar(select(Appointment).where(Appointment.id == appointment.rescheduled_to_id))
            if follow_on is not None:
                lead = timedelta(hours=get_settings().confirmation_lead_hours)
                spawned = self.spawn(session, follow_on, "call_confirmation", due_at=follow_on.start_at - lead, now=current)
            else:
                spawned = self.spawn(session, appointment, "reschedule", now=current)
            read.spawned_task_ids.append(spawned.id)

        activity_log.record(
            session,
            team_id=appointment.team_id,
            appointment_id=appointment.id,
            actor_id=SYSTEM_ACTOR,
            actor_name=None,
            action_type="Reschedule Detected" if appointment.status == "RESCHEDULED" else "Cancellation Detected",
            note=f"Closed {len(read.completed_task_ids)} open task(s)",
        )
        session.commit()
        logger.info(
            "task.reconciled",
            extra={"appointment_id": str(appointment.id), "status": appointment.status, "changed": len(read.completed_task_ids)},
        )
        return read

    def run_reschedule_reconcile_sweep(self, session: Session, *, now: datetime | None = None) -> SweepResultRead:
        appointment_ids = list(
            session.scalars(
                select(ConfirmationTask.appointment_id)
                .where(ConfirmationTask.status == "awaiting_reschedule")
                .distinct()
            ).all()
        )
        changed = 0
        failed = 0
        for appointment_id in appointment_ids:
            try:
                read = self.reconcile_external_change(session, appointment_id, now=now)
                if read.completed_task_ids:
                    changed += 1
            except Exception as exc:
                session.rollback()
                failed += 1
                logger.exception(
                    "task.reconcile_failed",
                    extra={"appointment_id": str(appointment_id), "error": str(exc)[:500]},
                )
        return SweepResultRead(job_type="reschedule_reconcile", processed=len(appointment_ids), changed=changed, failed=failed)

    def list_tasks(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        scope: str = "mine",
        status_filter: str | None = None,
        team_id: uuid.UUID | None = None,
    ) -> list[TaskRead]:
        conditions = []
        if scope == "mine":
            conditions.append(ConfirmationTask.assigned_to == actor_user.user_id)
        else:
            resolved_team_id = team_id or actor_user.team_id
            if resolved_team_id is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="team_id is required for team scope")
            team_directory.ensure_team_access(actor_user, resolved_team_id)
            conditions.append(ConfirmationTask.team_id == resolved_team_id)
        if actor_user.team_id is not None and scope == "mine":
            conditions.append(ConfirmationTask.team_id == actor_user.team_id)

        if status_filter:
            conditions.append(ConfirmationTask.status == status_filter)
        else:
            conditions.append(ConfirmationTask.status.in_(OPEN_TASK_STATUSES))

        rows = session.scalars(
            select(ConfirmationTask).where(and_(*conditions)).order_by(ConfirmationTask.due_at.asc(), ConfirmationTask.id.asc())
        ).all()
        return [TaskRead.model_validate(row) for row in rows]

    def _open_task(self, session: Session, appointment_id: uuid.UUID, task_type: str) -> ConfirmationTask | None:
        return session.scalar(
            select(ConfirmationTask).where(
                and_(
                    ConfirmationTask.appointment_id == appointment_id,
                    ConfirmationTask.task_type == task_type,
                    ConfirmationTask.status.in_(OPEN_TASK_STATUSES),
                )
            )
        )

    def _get_task(self, session: Session, task_id: uuid.UUID) -> ConfirmationTask:
        task = session.scalar(select(ConfirmationTask).where(ConfirmationTask.id == task_id))
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="task not found")
        return task

    def _get_appointment(self, session: Session, appointment_id: uuid.UUID) -> Appointment:
        appointment = session.scalar(select(Appointment).where(Appointment.id == appointment_id))
        if appointment is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="appointment not found")
        return appointment


task_engine = TaskAssignmentEngine()
