from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


AppointmentStatus = Literal["NEW", "CONFIRMED", "SHOWED", "NO_SHOW", "CANCELLED", "RESCHEDULED", "CLOSED"]
StageClass = Literal["close", "deposit", "reschedule", "followup", "plain", "booked"]
MoveOutcome = Literal["committed", "needs_input", "noop"]
InputKind = Literal["deal_close", "deposit", "reschedule_link", "reschedule_link_fetch", "follow_up"]
TaskType = Literal["call_confirmation", "follow_up", "reschedule"]
TaskStatus = Literal["pending", "claimed", "awaiting_reschedule", "completed"]
TaskOutcome = Literal["confirmed", "no_show", "rescheduled"]
ScheduleStatus = Literal["active", "paused", "canceled", "completed"]
FollowUpTaskStatus = Literal["due", "confirmed", "paused", "canceled"]
UndoStatus = Literal["applied", "expired", "empty"]
JobType = Literal["auto_return", "mrr_advance", "reschedule_reconcile"]


class AppointmentCreate(BaseModel):
    team_id: UUID
    lead_name: str = Field(min_length=1, max_length=255)
    lead_email: str = Field(min_length=3, max_length=320)
    start_at: datetime
    event_type_name: str | None = None
    setter_id: str | None = None
    closer_id: str | None = None
    calendar_invitee_ref: str | None = None
    rescheduled_from_id: UUID | None = None


class AppointmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    team_id: UUID
    lead_name: str
    lead_email: str
    start_at: datetime
    event_type_name: str | None
    setter_id: str | None
    setter_name: str | None
    closer_id: str | None
    closer_name: str | None
    pipeline_stage: str | None
    status: AppointmentStatus | str
    cc_collected: Decimal
    mrr_amount: Decimal
    mrr_months: int
    product_name: str | None
    revenue: Decimal
    rescheduled_from_id: UUID | None
    rescheduled_to_id: UUID | None
    reschedule_count: int
    retarget_date: date | None
    retarget_reason: str | None
    calendar_invitee_ref: str | None
    reschedule_url: str | None
    created_at: datetime
    updated_at: datetime


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    team_id: UUID
    stage_id: str
    label: str
    color: str
    order_index: int
    is_default: bool


class StageUpdate(BaseModel):
    label: str | None = Field(default=None, min_length=1, max_length=255)
    color: str | None = Field(default=None, min_length=1, max_length=32)
    order_index: int | None = Field(default=None, ge=0)


class StageGroupRead(BaseModel):
    stage_id: str
    label: str
    color: str
    stage_class: StageClass
    appointments: list[AppointmentRead] = Field(default_factory=list)


class BoardRead(BaseModel):
    team_id: UUID
    groups: list[StageGroupRead] = Field(default_factory=list)


class FollowUpInput(BaseModel):
    follow_up_date: date
    reason: str = Field(min_length=1, max_length=2000)


class MoveRequest(BaseModel):
    target_stage: str = Field(min_length=1, max_length=64)
    follow_up: FollowUpInput | None = None
    skip_follow_up: bool = False


class MoveResult(BaseModel):
    outcome: MoveOutcome
    stage_class: StageClass
    committed: bool
    input_kind: InputKind | None = None
    reschedule_url: str | None = None
    follow_up_task_id: UUID | None = None
    appointment: AppointmentRead


class CloseDealRequest(BaseModel):
    closer_id: str | None = None
    cc_amount: Decimal = Field(gt=Decimal("0"), le=Decimal("1000000"))
    mrr_amount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    mrr_months: int = Field(default=0, ge=0, le=120)
    product_name: str = Field(min_length=1, max_length=255)
    notes: str | None = None
    closer_commission_pct: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("100"))
    setter_commission_pct: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("100"))
    first_charge_date: date | None = None

    @model_validator(mode="after")
    def _check_mrr_terms(self) -> CloseDealRequest:
        if self.mrr_amount > 0 and self.mrr_months < 1:
            raise ValueError("mrr_months must be at least 1 when mrr_amount is set")
        if self.mrr_months > 0 and self.mrr_amount <= 0:
            raise ValueError("mrr_amount must be positive when mrr_months is set")
        return self


class DepositRequest(BaseModel):
    amount: Decimal = Field(gt=Decimal("0"), le=Decimal("1000000"))
    notes: str | None = None


class RevertRequest(BaseModel):
    confirm: bool = False


class RescheduleLinkRead(BaseModel):
    appointment_id: UUID
    reschedule_url: str


class TaskCreate(BaseModel):
    appointment_id: UUID
    task_type: TaskType
    due_at: datetime | None = None
    follow_up_date: date | None = None
    follow_up_reason: str | None = None


class TaskCompleteRequest(BaseModel):
    outcome: TaskOutcome
    notes: str | None = None
    reschedule_date: date | None = None
    reschedule_reason: str | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    team_id: UUID
    appointment_id: UUID
    task_type: TaskType | str
    status: TaskStatus | str
    assigned_to: str | None
    assigned_role: str | None
    assigned_at: datetime | None
    claimed_manually: bool
    due_at: datetime
    auto_return_at: datetime | None
    completed_at: datetime | None
    completed_by: str | None
    outcome: str | None
    reschedule_date: date | None
    reschedule_reason: str | None
    reschedule_notes: str | None
    follow_up_date: date | None
    follow_up_reason: str | None
    created_at: datetime


class ReconcileRead(BaseModel):
    appointment_id: UUID
    appointment_status: str
    completed_task_ids: list[UUID] = Field(default_factory=list)
    spawned_task_ids: list[UUID] = Field(default_factory=list)


class FollowUpTaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    mrr_schedule_id: UUID
    appointment_id: UUID
    due_date: date
    status: FollowUpTaskStatus | str
    completed_at: datetime | None
    completed_by: str | None
    notes: str | None


class ScheduleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    team_id: UUID
    appointment_id: UUID
    client_name: str
    client_email: str
    product_name: str | None
    mrr_amount: Decimal
    first_charge_date: date
    next_renewal_date: date
    status: ScheduleStatus | str
    assigned_to: str | None
    notes: str | None
    created_at: datetime
    tasks: list[FollowUpTaskRead] = Field(default_factory=list)


class ScheduleProgressRead(BaseModel):
    schedule_id: UUID
    status: ScheduleStatus | str
    confirmed_count: int
    total_months: int
    due_count: int
    paused_count: int
    canceled_count: int
    next_renewal_date: date
    label: str


class ConfirmPaymentRequest(BaseModel):
    task_id: UUID | None = None
    notes: str | None = None


class ReactivateRequest(BaseModel):
    new_next_date: date


class CommissionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    team_member_id: str
    team_member_name: str | None
    role: str
    month_date: date
    mrr_amount: Decimal
    commission_percentage: Decimal
    commission_amount: Decimal


class ConfirmPaymentRead(BaseModel):
    schedule: ScheduleRead
    confirmed_task_id: UUID
    next_task_id: UUID | None
    commissions: list[CommissionRead] = Field(default_factory=list)
    progress: ScheduleProgressRead


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    team_id: UUID
    appointment_id: UUID | None
    actor_id: str
    actor_name: str | None
    action_type: str
    note: str | None
    created_at: datetime


class UndoResultRead(BaseModel):
    status: UndoStatus
    table: str | None = None
    record_id: UUID | None = None
    description: str | None = None


class SweepResultRead(BaseModel):
    job_type: JobType | str
    processed: int
    changed: int
    failed: int
