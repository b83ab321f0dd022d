from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, delete, select, update
from sqlalchemy.orm import Session

from salesops import events
from salesops.core.config import get_settings
from salesops.metrics import observe_stage_move
from salesops.otel import sales_span
from salesops.sales.activity import activity_log
from salesops.sales.calendar import CalendarLinkProvider, calendar_client
from salesops.sales.errors import (
    AlreadyClosedError,
    ConfirmationRequiredError,
    LegacyImportError,
    MissingCloserError,
    SalesOpsError,
    ValidationError,
)
from salesops.sales.models import Appointment, PipelineStage, Sale, Team
from salesops.sales.mrr import MRRScheduler, mrr_scheduler
from salesops.sales.schemas import (
    AppointmentCreate,
    AppointmentRead,
    BoardRead,
    CloseDealRequest,
    DepositRequest,
    MoveRequest,
    MoveResult,
    RescheduleLinkRead,
    RevertRequest,
    StageClass,
    StageGroupRead,
)
from salesops.sales.stages import (
    BOOKED_BUCKET_ID,
    BOOKED_BUCKET_LABEL,
    BOOKED_STAGE_ID,
    classify,
    is_booked,
    normalize_stage,
    stage_catalog,
)
from salesops.sales.tasks import WORKING_TASK_STATUSES, TaskAssignmentEngine, task_engine
from salesops.sales.team import ActorUser, team_directory
from salesops.sales.undo import UndoAction, UndoLedger, undo_ledger


logger = logging.getLogger("salesops.pipeline")

UNDO_TRACKED_FIELDS = ("pipeline_stage", "status", "cc_collected", "mrr_amount", "mrr_months", "product_name")
FINANCIAL_STAGE_CLASSES = {"close", "deposit"}
FIRST_CHARGE_OFFSET_DAYS = 30
CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Decimal) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(slots=True)
class _Target:
    stage_id: str
    label: str
    stage_class: StageClass


@dataclass(slots=True)
class PipelineStateMachine:
    """Moves appointments between pipeline stages.

    Moves into stages that need extra data are two-phase: the first request
    answers ``needs_input`` naming what is missing, and the caller either
    resubmits with it or calls the dedicated operation (close, deposit,
    reschedule link fetch).
    """

    tasks: TaskAssignmentEngine = field(default_factory=lambda: task_engine)
    mrr: MRRScheduler = field(default_factory=lambda: mrr_scheduler)
    calendar: CalendarLinkProvider = field(default_factory=lambda: calendar_client)
    undo: UndoLedger = field(default_factory=lambda: undo_ledger)

    def create_appointment(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: AppointmentCreate,
        *,
        now: datetime | None = None,
    ) -> AppointmentRead:
        team_directory.ensure_team_access(actor_user, dto.team_id)
        team = team_directory.get_team(session, dto.team_id)
        stage_catalog.ensure_stages(session, team.id)
        current = now or utcnow()

        origin: Appointment | None = None
        if dto.rescheduled_from_id is not None:
            origin = self._get_appointment(session, dto.rescheduled_from_id)
            if origin.team_id != team.id:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="rescheduled_from must be in the same team")

        appointment = Appointment(
            team_id=team.id,
            lead_name=dto.lead_name,
            lead_email=dto.lead_email,
            start_at=dto.start_at,
            event_type_name=dto.event_type_name,
            setter_id=dto.setter_id,
            setter_name=team_directory.display_name(session, team.id, dto.setter_id),
            closer_id=dto.closer_id,
            closer_name=team_directory.display_name(session, team.id, dto.closer_id),
            pipeline_stage=BOOKED_STAGE_ID,
            status="NEW",
            calendar_invitee_ref=dto.calendar_invitee_ref,
            rescheduled_from_id=origin.id if origin is not None else None,
            reschedule_count=(origin.reschedule_count + 1) if origin is not None else 0,
        )
        session.add(appointment)
        session.flush()

        actor_name = team_directory.actor_name(session, team.id, actor_user)
        if origin is not None:
            origin.rescheduled_to_id = appointment.id
            origin.status = "RESCHEDULED"
            session.add(origin)
            # awaiting tasks stay open for the reconcile handoff
            self.tasks.close_open_tasks(
                session,
                origin.id,
                actor_id=actor_user.user_id,
                now=current,
                statuses=WORKING_TASK_STATUSES,
            )
            activity_log.record(
                session,
                team_id=team.id,
                appointment_id=origin.id,
                actor_id=actor_user.user_id,
                actor_name=actor_name,
                action_type="Rescheduled",
                note=f"Rebooked for {dto.start_at.isoformat()}",
            )

        activity_log.record(
            session,
            team_id=team.id,
            appointment_id=appointment.id,
            actor_id=actor_user.user_id,
            actor_name=actor_name,
            action_type="Created",
            note=f"Appointment booked for {dto.start_at.isoformat()}",
        )
        if team.auto_create_tasks:
            lead = timedelta(hours=get_settings().confirmation_lead_hours)
            self.tasks.spawn(
                session,
                appointment,
                "call_confirmation",
                actor_id=actor_user.user_id,
                actor_name=actor_name,
                due_at=dto.start_at - lead,
                now=current,
            )

        events.publish(
            events.build_envelope(
                "sales.appointment.created",
                actor_user_id=actor_user.user_id,
                team_id=team.id,
                payload={"appointment_id": str(appointment.id), "start_at": dto.start_at.isoformat()},
            )
        )
        session.commit()
        logger.info("appointment.created", extra={"appointment_id": str(appointment.id), "team_id": str(team.id)})
        return self._to_read(session, appointment.id)

    def get_appointment(self, session: Session, actor_user: ActorUser, appointment_id: uuid.UUID) -> AppointmentRead:
        appointment = self._get_appointment(session, appointment_id)
        team_directory.ensure_team_access(actor_user, appointment.team_id)
        return AppointmentRead.model_validate(appointment)

    def board(self, session: Session, actor_user: ActorUser, team_id: uuid.UUID) -> BoardRead:
        team_directory.ensure_team_access(actor_user, team_id)
        team_directory.get_team(session, team_id)
        stages = stage_catalog.ensure_stages(session, team_id)
        appointments = session.scalars(
            select(Appointment).where(Appointment.team_id == team_id).order_by(Appointment.start_at.asc(), Appointment.id.asc())
        ).all()

        known = {stage.stage_id for stage in stages}
        booked = StageGroupRead(stage_id=BOOKED_BUCKET_ID, label=BOOKED_BUCKET_LABEL, color="#3b82f6", stage_class="booked")
        groups = {
            stage.stage_id: StageGroupRead(
                stage_id=stage.stage_id,
                label=stage.label,
                color=stage.color,
                stage_class=classify(stage.stage_id, stage.label),
            )
            for stage in stages
        }
        for appointment in appointments:
            read = AppointmentRead.model_validate(appointment)
            stage_id = appointment.pipeline_stage
            if is_booked(stage_id) or stage_id not in known:
                booked.appointments.append(read)
                continue
            groups[stage_id].appointments.append(read)
            if stage_id == "rescheduled":
                booked.appointments.append(read)

        return BoardRead(team_id=team_id, groups=[booked, *groups.values()])

    def request_move(
        self,
        session: Session,
        actor_user: ActorUser,
        appointment_id: uuid.UUID,
        dto: MoveRequest,
        *,
        now: datetime | None = None,
    ) -> MoveResult:
        with sales_span(
            "sales.pipeline.move",
            correlation_id=actor_user.correlation_id,
            appointment_id=appointment_id,
            target_stage=dto.target_stage,
        ) as span:

            appointment = self._get_appointment(session, appointment_id)
            team_directory.ensure_team_access(actor_user, appointment.team_id)
            team = team_directory.get_team(session, appointment.team_id)
            self._ensure_can_move(session, actor_user, team)
            target = self._resolve_target(session, team.id, dto.target_stage)
            span.set_attribute("stage_class", target.stage_class)

            try:
                result = self._move(session, actor_user, appointment, target, dto, now or utcnow())
            except SalesOpsError as exc:
                observe_stage_move(target.stage_class, "rejected")
                span.set_attribute("error_code", exc.code)
                logger.info(
                    "pipeline.move_rejected",
                    extra={
                        "appointment_id": str(appointment_id),
                        "stage_id": target.stage_id,
                        "stage_class": target.stage_class,
                        "error_code": exc.code,
                    },
                )
                raise

            span.set_attribute("outcome", result.outcome)
            observe_stage_move(target.stage_class, result.outcome)
            return result

    def _move(
        self,
        session: Session,
        actor_user: ActorUser,
        appointment: Appointment,
        target: _Target,
        dto: MoveRequest,
        current: datetime,
    ) -> MoveResult:
        if normalize_stage(appointment.pipeline_stage) == target.stage_id:
            return self._result("noop", target, appointment)

        if target.stage_class in FINANCIAL_STAGE_CLASSES:
            if not appointment.closer_id:
                raise MissingCloserError("assign a closer before moving to a deposit or closing stage")
            self._commit_move(session, actor_user, appointment, target, {}, current)
            kind = "deal_close" if target.stage_class == "close" else "deposit"
            return self._result("needs_input", target, appointment, committed=True, input_kind=kind)

        if target.stage_class == "reschedule":
            if appointment.reschedule_url:
                task = self.tasks.open_reschedulable_task(session, appointment.id)
                if task is None:
                    task = self.tasks.spawn(session, appointment, "reschedule", actor_id=actor_user.user_id, now=current)
                self.tasks.mark_awaiting_reschedule(session, task)
                url = appointment.reschedule_url
                self._commit_move(session, actor_user, appointment, target, {}, current)
                return self._result(
                    "needs_input",
                    target,
                    appointment,
                    committed=True,
                    input_kind="reschedule_link",
                    reschedule_url=url,
                )
            if not appointment.calendar_invitee_ref:
                raise LegacyImportError("appointment has no calendar reference to reschedule from")
            return self._result("needs_input", target, appointment, input_kind="reschedule_link_fetch")

        if target.stage_class == "followup":
            if dto.follow_up is None and not dto.skip_follow_up:
                return self._result("needs_input", target, appointment, input_kind="follow_up")

            haystack = f"{target.stage_id} {target.label}".lower()
            updates: dict[str, Any] = {"status": "CANCELLED" if "cancel" in haystack else "NO_SHOW"}
            if dto.follow_up is not None:
                updates["retarget_date"] = dto.follow_up.follow_up_date
                updates["retarget_reason"] = dto.follow_up.reason
            self.tasks.close_open_tasks(session, appointment.id, actor_id=actor_user.user_id, now=current)

            follow_up_task_id: uuid.UUID | None = None
            if dto.follow_up is not None:
                task = self.tasks.spawn(
                    session,
                    appointment,
                    "follow_up",
                    actor_id=actor_user.user_id,
                    actor_name=team_directory.actor_name(session, appointment.team_id, actor_user),
                    due_at=datetime.combine(dto.follow_up.follow_up_date, datetime.min.time(), tzinfo=timezone.utc),
                    follow_up_date=dto.follow_up.follow_up_date,
                    follow_up_reason=dto.follow_up.reason,
                    now=current,
                )
                follow_up_task_id = task.id
            self._commit_move(session, actor_user, appointment, target, updates, current)
            return self._result(
                "committed",
                target,
                appointment,
                committed=True,
                follow_up_task_id=follow_up_task_id,
            )

        self._commit_move(session, actor_user, appointment, target, {}, current)
        return self._result("committed", target, appointment, committed=True)

    def close_deal_transaction(
        self,
        session: Session,
        actor_user: ActorUser,
        appointment_id: uuid.UUID,
        dto: CloseDealRequest,
        *,
        today: date | None = None,
    ) -> AppointmentRead:
        appointment = self._get_appointment(session, appointment_id)
        team_directory.ensure_team_access(actor_user, appointment.team_id)
        team = team_directory.get_team(session, appointment.team_id)
        if appointment.status == "CLOSED":
            raise AlreadyClosedError("deal is already closed")

        closer_id = dto.closer_id or appointment.closer_id
        if not closer_id:
            raise MissingCloserError("a closer is required to close a deal")
        close_stage = self._close_stage_for(session, team.id, appointment.pipeline_stage)

        cc_amount = _money(dto.cc_amount)
        mrr_amount = _money(dto.mrr_amount)
        revenue = _money(cc_amount + mrr_amount * dto.mrr_months)
        closer_name = team_directory.display_name(session, team.id, closer_id) or appointment.closer_name
        actor_name = team_directory.actor_name(session, team.id, actor_user)

        try:
            result = session.execute(
                update(Appointment)
                .where(and_(Appointment.id == appointment.id, Appointment.status != "CLOSED"))
                .values(
                    status="CLOSED",
                    pipeline_stage=close_stage.stage_id,
                    closer_id=closer_id,
                    closer_name=closer_name,
                    cc_collected=cc_amount,
                    mrr_amount=mrr_amount,
                    mrr_months=dto.mrr_months,
                    product_name=dto.product_name,
                    revenue=revenue,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount == 0:
                session.rollback()
                raise AlreadyClosedError("deal was closed concurrently")

            sale = self._upsert_sale(session, team, appointment, dto, cc_amount, revenue, closer_name, today)
            activity_log.record(
                session,
                team_id=team.id,
                appointment_id=appointment.id,
                actor_id=actor_user.user_id,
                actor_name=actor_name,
                action_type="Status Changed",
                note=(
                    f"Deal closed: ${cc_amount} collected"
                    + (f", ${mrr_amount}/month for {dto.mrr_months} months" if dto.mrr_months else "")
                    + (f". {dto.notes}" if dto.notes else "")
                ),
            )
            if dto.mrr_months > 0:
                first_charge = dto.first_charge_date or (today or utcnow().date()) + timedelta(days=FIRST_CHARGE_OFFSET_DAYS)
                self.mrr.create_schedule(
                    session,
                    appointment,
                    mrr_amount=mrr_amount,
                    first_charge_date=first_charge,
                    product_name=dto.product_name,
                    actor_id=actor_user.user_id,
                    actor_name=actor_name,
                    notes=dto.notes,
                )
            self.tasks.close_open_tasks(session, appointment.id, actor_id=actor_user.user_id)
            events.publish(
                events.build_envelope(
                    "sales.deal.closed",
                    actor_user_id=actor_user.user_id,
                    team_id=team.id,
                    payload={
                        "appointment_id": str(appointment.id),
                        "sale_id": str(sale.id),
                        "revenue": str(revenue),
                        "mrr_months": dto.mrr_months,
                    },
                )
            )
            session.commit()
        except AlreadyClosedError:
            raise
        except Exception:
            session.rollback()
            raise

        logger.info(
            "pipeline.deal_closed",
            extra={"appointment_id": str(appointment.id), "team_id": str(team.id), "stage_id": close_stage.stage_id},
        )
        return self._to_read(session, appointment.id)

    def record_deposit(
        self,
        session: Session,
        actor_user: ActorUser,
        appointment_id: uuid.UUID,
        dto: DepositRequest,
    ) -> AppointmentRead:
        appointment = self._get_appointment(session, appointment_id)
        team_directory.ensure_team_access(actor_user, appointment.team_id)
        if appointment.status == "CLOSED":
            raise AlreadyClosedError("deal is already closed")
        stage = stage_catalog.find_stage(session, appointment.team_id, appointment.pipeline_stage)
        if stage is None or classify(stage.stage_id, stage.label) != "deposit":
            raise ValidationError("appointment must be in a deposit stage to record a deposit")

        previous = self._snapshot(appointment)
        amount = _money(dto.amount)
        appointment.cc_collected = _money(Decimal(str(appointment.cc_collected or 0)) + amount)
        session.add(appointment)
        activity_log.record(
            session,
            team_id=appointment.team_id,
            appointment_id=appointment.id,
            actor_id=actor_user.user_id,
            actor_name=team_directory.actor_name(session, appointment.team_id, actor_user),
            action_type="Deposit Collected",
            note=f"${amount} deposit" + (f". {dto.notes}" if dto.notes else ""),
        )
        session.flush()
        applied = self._snapshot(appointment)
        session.commit()
        self.undo.track(
            actor_user.undo_key,
            UndoAction(
                table=Appointment.__tablename__,
                record_id=appointment.id,
                previous_field_values=previous,
                applied_field_values=applied,
                description=f"Deposit of ${amount} for {appointment.lead_name}",
            ),
        )
        return self._to_read(session, appointment.id)

    def fetch_reschedule_link(self, session: Session, actor_user: ActorUser, appointment_id: uuid.UUID) -> RescheduleLinkRead:
        appointment = self._get_appointment(session, appointment_id)
        team_directory.ensure_team_access(actor_user, appointment.team_id)
        if appointment.reschedule_url:
            return RescheduleLinkRead(appointment_id=appointment.id, reschedule_url=appointment.reschedule_url)
        if not appointment.calendar_invitee_ref:
            raise LegacyImportError("appointment has no calendar reference to reschedule from")

        team = team_directory.get_team(session, appointment.team_id)
        url = self.calendar.fetch_reschedule_link(appointment.calendar_invitee_ref, team.calendar_access_token)

        appointment.reschedule_url = url
        session.add(appointment)
        activity_log.record(
            session,
            team_id=appointment.team_id,
            appointment_id=appointment.id,
            actor_id=actor_user.user_id,
            actor_name=team_directory.actor_name(session, appointment.team_id, actor_user),
            action_type="Reschedule Link Fetched",
            note=None,
        )
        session.commit()
        return RescheduleLinkRead(appointment_id=appointment.id, reschedule_url=url)

    def revert(
        self,
        session: Session,
        actor_user: ActorUser,
        appointment_id: uuid.UUID,
        dto: RevertRequest,
    ) -> AppointmentRead:
        if not dto.confirm:
            raise ConfirmationRequiredError("reverting an appointment requires confirm=true")

        appointment = self._get_appointment(session, appointment_id)
        team_directory.ensure_team_access(actor_user, appointment.team_id)
        stage = stage_catalog.find_stage(session, appointment.team_id, appointment.pipeline_stage)
        stage_class = classify(stage.stage_id, stage.label) if stage is not None else classify(appointment.pipeline_stage)
        wide = stage_class in FINANCIAL_STAGE_CLASSES or appointment.status == "CLOSED"

        try:
            if wide:
                self.mrr.purge_for_appointment(session, appointment.id)
                session.execute(delete(Sale).where(Sale.appointment_id == appointment.id))
                appointment.cc_collected = Decimal("0")
                appointment.mrr_amount = Decimal("0")
                appointment.mrr_months = 0
                appointment.revenue = Decimal("0")
                appointment.product_name = None
                appointment.status = "NEW"
                note = "Deal reverted to booked; sale and recurring revenue records removed"
            else:
                appointment.cc_collected = Decimal("0")
                appointment.retarget_date = None
                appointment.retarget_reason = None
                note = "Returned to booked"
            appointment.pipeline_stage = BOOKED_STAGE_ID
            session.add(appointment)
            activity_log.record(
                session,
                team_id=appointment.team_id,
                appointment_id=appointment.id,
                actor_id=actor_user.user_id,
                actor_name=team_directory.actor_name(session, appointment.team_id, actor_user),
                action_type="Reverted",
                note=note,
            )
            events.publish(
                events.build_envelope(
                    "sales.appointment.reverted",
                    actor_user_id=actor_user.user_id,
                    team_id=appointment.team_id,
                    payload={"appointment_id": str(appointment.id), "wide": wide},
                )
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.info(
            "pipeline.reverted",
            extra={"appointment_id": str(appointment_id), "stage_class": stage_class, "status": "wide" if wide else "narrow"},
        )
        return self._to_read(session, appointment_id)

    def _commit_move(
        self,
        session: Session,
        actor_user: ActorUser,
        appointment: Appointment,
        target: _Target,
        updates: dict[str, Any],
        current: datetime,
    ) -> None:
        previous = self._snapshot(appointment)
        previous_stage = appointment.pipeline_stage
        appointment.pipeline_stage = target.stage_id
        for field_name, value in updates.items():
            setattr(appointment, field_name, value)
        appointment.updated_at = current
        session.add(appointment)

        activity_log.record(
            session,
            team_id=appointment.team_id,
            appointment_id=appointment.id,
            actor_id=actor_user.user_id,
            actor_name=team_directory.actor_name(session, appointment.team_id, actor_user),
            action_type="Moved",
            note=f"Moved {appointment.lead_name} to {target.label}",
        )
        events.publish(
            events.build_envelope(
                "sales.appointment.stage_changed",
                actor_user_id=actor_user.user_id,
                team_id=appointment.team_id,
                payload={
                    "appointment_id": str(appointment.id),
                    "from_stage": previous_stage,
                    "to_stage": target.stage_id,
                    "stage_class": target.stage_class,
                },
            )
        )
        session.flush()
        applied = self._snapshot(appointment)
        session.commit()

        self.undo.track(
            actor_user.undo_key,
            UndoAction(
                table=Appointment.__tablename__,
                record_id=appointment.id,
                previous_field_values=previous,
                applied_field_values=applied,
                description=f"Move {appointment.lead_name} to {target.label}",
            ),
        )
        logger.info(
            "pipeline.moved",
            extra={
                "appointment_id": str(appointment.id),
                "team_id": str(appointment.team_id),
                "stage_id": target.stage_id,
                "stage_class": target.stage_class,
                "user_id": actor_user.user_id,
            },
        )

    def _result(
        self,
        outcome: str,
        target: _Target,
        appointment: Appointment,
        *,
        committed: bool = False,
        input_kind: str | None = None,
        reschedule_url: str | None = None,
        follow_up_task_id: uuid.UUID | None = None,
    ) -> MoveResult:
        return MoveResult(
            outcome=outcome,
            stage_class=target.stage_class,
            committed=committed,
            input_kind=input_kind,
            reschedule_url=reschedule_url,
            follow_up_task_id=follow_up_task_id,
            appointment=AppointmentRead.model_validate(appointment),
        )

    def _ensure_can_move(self, session: Session, actor_user: ActorUser, team: Team) -> None:
        if actor_user.is_super_admin or team.allow_setter_pipeline_updates:
            return
        if team_directory.member_role(session, team.id, actor_user.user_id) == "setter":
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="setters cannot update the pipeline for this team")

    def _resolve_target(self, session: Session, team_id: uuid.UUID, target_stage: str) -> _Target:
        if is_booked(target_stage):
            stage_catalog.ensure_stages(session, team_id)
            return _Target(stage_id=BOOKED_STAGE_ID, label=BOOKED_BUCKET_LABEL, stage_class="booked")
        stage = stage_catalog.find_stage(session, team_id, target_stage)
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
        return _Target(stage_id=stage.stage_id, label=stage.label, stage_class=classify(stage.stage_id, stage.label))

    def _close_stage_for(self, session: Session, team_id: uuid.UUID, current_stage: str | None) -> PipelineStage:
        stage = stage_catalog.find_stage(session, team_id, current_stage)
        if stage is not None and classify(stage.stage_id, stage.label) == "close":
            return stage
        stage = stage_catalog.first_stage_of_class(session, team_id, "close")
        if stage is None:
            raise ValidationError("team has no closing stage configured")
        return stage

    def _upsert_sale(
        self,
        session: Session,
        team: Team,
        appointment: Appointment,
        dto: CloseDealRequest,
        cc_amount: Decimal,
        revenue: Decimal,
        closer_name: str | None,
        today: date | None,
    ) -> Sale:
        setter_pct, closer_pct = team_directory.commission_pcts(team)
        if dto.setter_commission_pct is not None:
            setter_pct = dto.setter_commission_pct
        if dto.closer_commission_pct is not None:
            closer_pct = dto.closer_commission_pct

        sale = session.scalar(select(Sale).where(Sale.appointment_id == appointment.id))
        if sale is None:
            sale = Sale(team_id=team.id, appointment_id=appointment.id)
        sale.customer_name = appointment.lead_name
        sale.sales_rep = closer_name
        sale.setter = appointment.setter_name
        sale.product_name = dto.product_name
        sale.sale_date = today or utcnow().date()
        sale.revenue = revenue
        sale.commission = _money(cc_amount * Decimal(str(closer_pct)) / Decimal("100"))
        sale.setter_commission = (
            _money(cc_amount * Decimal(str(setter_pct)) / Decimal("100")) if appointment.setter_id else Decimal("0")
        )
        sale.status = "Closed Won"
        session.add(sale)
        session.flush()
        return sale

    def _snapshot(self, appointment: Appointment) -> dict[str, Any]:
        return {field_name: getattr(appointment, field_name) for field_name in UNDO_TRACKED_FIELDS}

    def _to_read(self, session: Session, appointment_id: uuid.UUID) -> AppointmentRead:
        return AppointmentRead.model_validate(self._get_appointment(session, appointment_id))

    def _get_appointment(self, session: Session, appointment_id: uuid.UUID) -> Appointment:
        appointment = session.scalar(select(Appointment).where(Appointment.id == appointment_id))
        if appointment is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="appointment not found")
        return appointment


pipeline = PipelineStateMachine()
