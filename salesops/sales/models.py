from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from salesops.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Team(Base):
    __tablename__ = "sales_team"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    setter_commission_pct: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    closer_commission_pct: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    allow_setter_pipeline_updates: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    auto_return_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    auto_create_tasks: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    calendar_access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    members: Mapped[list[TeamMember]] = relationship(
        "salesops.sales.models.TeamMember",
        back_populates="team",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TeamMember(Base):
    __tablename__ = "sales_team_member"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_team.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    in_rotation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    team: Mapped[Team] = relationship("salesops.sales.models.Team", back_populates="members")

    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_sales_team_member_user"),
        Index("ix_sales_team_member_rotation", "team_id", "role", "in_rotation"),
    )


class PipelineStage(Base):
    __tablename__ = "sales_pipeline_stage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_team.id", ondelete="CASCADE"), nullable=False)
    stage_id: Mapped[str] = mapped_column(String(64), nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    color: Mapped[str] = mapped_column(String(32), nullable=False, default="#64748b", server_default="#64748b")
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("team_id", "stage_id", name="uq_sales_pipeline_stage_team_stage"),
        Index("ix_sales_pipeline_stage_team_order", "team_id", "order_index"),
    )


class Appointment(Base):
    __tablename__ = "sales_appointment"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_team.id", ondelete="CASCADE"), nullable=False)
    lead_name: Mapped[str] = mapped_column(String(255), nullable=False)
    lead_email: Mapped[str] = mapped_column(String(320), nullable=False)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_type_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    setter_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    setter_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    closer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    closer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pipeline_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="NEW", server_default="NEW")
    cc_collected: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0")
    mrr_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0")
    mrr_months: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    product_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0")
    rescheduled_from_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_appointment.id", ondelete="SET NULL"),
        nullable=True,
    )
    rescheduled_to_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_appointment.id", ondelete="SET NULL"),
        nullable=True,
    )
    reschedule_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    retarget_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    retarget_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    calendar_invitee_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    reschedule_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_sales_appointment_team_stage", "team_id", "pipeline_stage"),
        Index("ix_sales_appointment_team_start", "team_id", "start_at"),
    )


class ConfirmationTask(Base):
    __tablename__ = "sales_confirmation_task"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_team.id", ondelete="CASCADE"), nullable=False)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_appointment.id", ondelete="CASCADE"),
        nullable=False,
    )
    task_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    assigned_to: Mapped[str | None] = mapped_column(String(128), nullable=True)
    assigned_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_manually: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    auto_return_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reschedule_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    reschedule_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reschedule_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    follow_up_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    follow_up_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_sales_confirmation_task_appointment", "appointment_id", "task_type", "status"),
        Index("ix_sales_confirmation_task_queue", "team_id", "status", "due_at"),
        Index("ix_sales_confirmation_task_auto_return", "status", "auto_return_at"),
    )


class MRRSchedule(Base):
    __tablename__ = "sales_mrr_schedule"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_team.id", ondelete="CASCADE"), nullable=False)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_appointment.id", ondelete="CASCADE"),
        nullable=False,
    )
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_email: Mapped[str] = mapped_column(String(320), nullable=False)
    product_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    mrr_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    first_charge_date: Mapped[date] = mapped_column(Date(), nullable=False)
    next_renewal_date: Mapped[date] = mapped_column(Date(), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active", server_default="active")
    assigned_to: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    tasks: Mapped[list[MRRFollowUpTask]] = relationship(
        "salesops.sales.models.MRRFollowUpTask",
        back_populates="schedule",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="MRRFollowUpTask.due_date",
    )

    __table_args__ = (
        Index("ix_sales_mrr_schedule_team_status", "team_id", "status"),
        Index("ix_sales_mrr_schedule_appointment", "appointment_id"),
    )


class MRRFollowUpTask(Base):
    __tablename__ = "sales_mrr_follow_up_task"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_team.id", ondelete="CASCADE"), nullable=False)
    mrr_schedule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_mrr_schedule.id", ondelete="CASCADE"),
        nullable=False,
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_appointment.id", ondelete="CASCADE"),
        nullable=False,
    )
    due_date: Mapped[date] = mapped_column(Date(), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="due", server_default="due")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    schedule: Mapped[MRRSchedule] = relationship("salesops.sales.models.MRRSchedule", back_populates="tasks")

    __table_args__ = (
        Index(
            "uq_sales_mrr_follow_up_task_one_due",
            "mrr_schedule_id",
            unique=True,
            postgresql_where=text("status = 'due'"),
            sqlite_where=text("status = 'due'"),
        ),
        Index("ix_sales_mrr_follow_up_task_team_due", "team_id", "status", "due_date"),
    )


class MRRCommission(Base):
    __tablename__ = "sales_mrr_commission"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_team.id", ondelete="CASCADE"), nullable=False)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_appointment.id", ondelete="CASCADE"),
        nullable=False,
    )
    mrr_schedule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_mrr_schedule.id", ondelete="CASCADE"),
        nullable=False,
    )
    mrr_task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_mrr_follow_up_task.id", ondelete="CASCADE"),
        nullable=False,
    )
    team_member_id: Mapped[str] = mapped_column(String(128), nullable=False)
    team_member_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    prospect_name: Mapped[str] = mapped_column(String(255), nullable=False)
    prospect_email: Mapped[str] = mapped_column(String(320), nullable=False)
    month_date: Mapped[date] = mapped_column(Date(), nullable=False)
    mrr_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    commission_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("mrr_task_id", "role", name="uq_sales_mrr_commission_task_role"),
        Index("ix_sales_mrr_commission_member", "team_id", "team_member_id", "month_date"),
    )


class Sale(Base):
    __tablename__ = "sales_sale"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_team.id", ondelete="CASCADE"), nullable=False)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_appointment.id", ondelete="CASCADE"),
        nullable=False,
    )
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sales_rep: Mapped[str | None] = mapped_column(String(255), nullable=True)
    setter: Mapped[str | None] = mapped_column(String(255), nullable=True)
    product_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sale_date: Mapped[date] = mapped_column(Date(), nullable=False)
    revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    commission: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    setter_commission: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Closed Won", server_default="Closed Won")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("appointment_id", name="uq_sales_sale_appointment"),)


class ActivityLog(Base):
    __tablename__ = "sales_activity_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_team.id", ondelete="CASCADE"), nullable=False)
    appointment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_appointment.id", ondelete="CASCADE"),
        nullable=True,
    )
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_sales_activity_log_appointment", "appointment_id", "created_at"),
        Index("ix_sales_activity_log_team", "team_id", "created_at"),
    )
