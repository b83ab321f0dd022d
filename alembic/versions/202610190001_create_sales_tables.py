"""create sales tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "sales_team",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("setter_commission_pct", sa.Numeric(5, 2), nullable=True),
        sa.Column("closer_commission_pct", sa.Numeric(5, 2), nullable=True),
        sa.Column("allow_setter_pipeline_updates", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("auto_return_minutes", sa.Integer(), nullable=True),
        sa.Column("auto_create_tasks", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("calendar_access_token", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "sales_team_member",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("in_rotation", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["sales_team.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("team_id", "user_id", name="uq_sales_team_member_user"),
    )
    op.create_index("ix_sales_team_member_rotation", "sales_team_member", ["team_id", "role", "in_rotation"], unique=False)

    op.create_table(
        "sales_pipeline_stage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.String(length=64), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("color", sa.String(length=32), nullable=False, server_default="#64748b"),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["sales_team.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("team_id", "stage_id", name="uq_sales_pipeline_stage_team_stage"),
    )
    op.create_index("ix_sales_pipeline_stage_team_order", "sales_pipeline_stage", ["team_id", "order_index"], unique=False)

    op.create_table(
        "sales_appointment",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("lead_name", sa.String(length=255), nullable=False),
        sa.Column("lead_email", sa.String(length=320), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type_name", sa.String(length=255), nullable=True),
        sa.Column("setter_id", sa.String(length=128), nullable=True),
        sa.Column("setter_name", sa.String(length=255), nullable=True),
        sa.Column("closer_id", sa.String(length=128), nullable=True),
        sa.Column("closer_name", sa.String(length=255), nullable=True),
        sa.Column("pipeline_stage", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="NEW"),
        sa.Column("cc_collected", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("mrr_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("mrr_months", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("product_name", sa.String(length=255), nullable=True),
        sa.Column("revenue", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("rescheduled_from_id", sa.Uuid(), nullable=True),
        sa.Column("rescheduled_to_id", sa.Uuid(), nullable=True),
        sa.Column("reschedule_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retarget_date", sa.Date(), nullable=True),
        sa.Column("retarget_reason", sa.Text(), nullable=True),
        sa.Column("calendar_invitee_ref", sa.Text(), nullable=True),
        sa.Column("reschedule_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["sales_team.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["rescheduled_from_id"], ["sales_appointment.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["rescheduled_to_id"], ["sales_appointment.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sales_appointment_team_stage", "sales_appointment", ["team_id", "pipeline_stage"], unique=False)
    op.create_index("ix_sales_appointment_team_start", "sales_appointment", ["team_id", "start_at"], unique=False)

    op.create_table(
        "sales_confirmation_task",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("appointment_id", sa.Uuid(), nullable=False),
        sa.Column("task_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("assigned_to", sa.String(length=128), nullable=True),
        sa.Column("assigned_role", sa.String(length=32), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_manually", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("auto_return_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(length=128), nullable=True),
        sa.Column("outcome", sa.String(length=32), nullable=True),
        sa.Column("reschedule_date", sa.Date(), nullable=True),
        sa.Column("reschedule_reason", sa.Text(), nullable=True),
        sa.Column("reschedule_notes", sa.Text(), nullable=True),
        sa.Column("follow_up_date", sa.Date(), nullable=True),
        sa.Column("follow_up_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["sales_team.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["appointment_id"], ["sales_appointment.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_sales_confirmation_task_appointment",
        "sales_confirmation_task",
        ["appointment_id", "task_type", "status"],
        unique=False,
    )
    op.create_index("ix_sales_confirmation_task_queue", "sales_confirmation_task", ["team_id", "status", "due_at"], unique=False)
    op.create_index(
        "ix_sales_confirmation_task_auto_return",
        "sales_confirmation_task",
        ["status", "auto_return_at"],
        unique=False,
    )

    op.create_table(
        "sales_mrr_schedule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("appointment_id", sa.Uuid(), nullable=False),
        sa.Column("client_name", sa.String(length=255), nullable=False),
        sa.Column("client_email", sa.String(length=320), nullable=False),
        sa.Column("product_name", sa.String(length=255), nullable=True),
        sa.Column("mrr_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("first_charge_date", sa.Date(), nullable=False),
        sa.Column("next_renewal_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("assigned_to", sa.String(length=128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["sales_team.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["appointment_id"], ["sales_appointment.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sales_mrr_schedule_team_status", "sales_mrr_schedule", ["team_id", "status"], unique=False)
    op.create_index("ix_sales_mrr_schedule_appointment", "sales_mrr_schedule", ["appointment_id"], unique=False)

    op.create_table(
        "sales_mrr_follow_up_task",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("mrr_schedule_id", sa.Uuid(), nullable=False),
        sa.Column("appointment_id", sa.Uuid(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="due"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(length=128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["sales_team.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["mrr_schedule_id"], ["sales_mrr_schedule.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["appointment_id"], ["sales_appointment.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_sales_mrr_follow_up_task_one_due",
        "sales_mrr_follow_up_task",
        ["mrr_schedule_id"],
        unique=True,
        postgresql_where=sa.text("status = 'due'"),
        sqlite_where=sa.text("status = 'due'"),
    )
    op.create_index(
        "ix_sales_mrr_follow_up_task_team_due",
        "sales_mrr_follow_up_task",
        ["team_id", "status", "due_date"],
        unique=False,
    )

    op.create_table(
        "sales_mrr_commission",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("appointment_id", sa.Uuid(), nullable=False),
        sa.Column("mrr_schedule_id", sa.Uuid(), nullable=False),
        sa.Column("mrr_task_id", sa.Uuid(), nullable=False),
        sa.Column("team_member_id", sa.String(length=128), nullable=False),
        sa.Column("team_member_name", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("prospect_name", sa.String(length=255), nullable=False),
        sa.Column("prospect_email", sa.String(length=320), nullable=False),
        sa.Column("month_date", sa.Date(), nullable=False),
        sa.Column("mrr_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("commission_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("commission_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["sales_team.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["appointment_id"], ["sales_appointment.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["mrr_schedule_id"], ["sales_mrr_schedule.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["mrr_task_id"], ["sales_mrr_follow_up_task.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("mrr_task_id", "role", name="uq_sales_mrr_commission_task_role"),
    )
    op.create_index(
        "ix_sales_mrr_commission_member",
        "sales_mrr_commission",
        ["team_id", "team_member_id", "month_date"],
        unique=False,
    )

    op.create_table(
        "sales_sale",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("appointment_id", sa.Uuid(), nullable=False),
        sa.Column("customer_name", sa.String(length=255), nullable=False),
        sa.Column("sales_rep", sa.String(length=255), nullable=True),
        sa.Column("setter", sa.String(length=255), nullable=True),
        sa.Column("product_name", sa.String(length=255), nullable=True),
        sa.Column("sale_date", sa.Date(), nullable=False),
        sa.Column("revenue", sa.Numeric(12, 2), nullable=False),
        sa.Column("commission", sa.Numeric(12, 2), nullable=False),
        sa.Column("setter_commission", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Closed Won"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["sales_team.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["appointment_id"], ["sales_appointment.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("appointment_id", name="uq_sales_sale_appointment"),
    )

    op.create_table(
        "sales_activity_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("appointment_id", sa.Uuid(), nullable=True),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("actor_name", sa.String(length=255), nullable=True),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["sales_team.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["appointment_id"], ["sales_appointment.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sales_activity_log_appointment", "sales_activity_log", ["appointment_id", "created_at"], unique=False)
    op.create_index("ix_sales_activity_log_team", "sales_activity_log", ["team_id", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_sales_activity_log_team", table_name="sales_activity_log")
    op.drop_index("ix_sales_activity_log_appointment", table_name="sales_activity_log")
    op.drop_table("sales_activity_log")
    op.drop_table("sales_sale")
    op.drop_index("ix_sales_mrr_commission_member", table_name="sales_mrr_commission")
    op.drop_table("sales_mrr_commission")
    op.drop_index("ix_sales_mrr_follow_up_task_team_due", table_name="sales_mrr_follow_up_task")
    op.drop_index("uq_sales_mrr_follow_up_task_one_due", table_name="sales_mrr_follow_up_task")
    op.drop_table("sales_mrr_follow_up_task")
    op.drop_index("ix_sales_mrr_schedule_appointment", table_name="sales_mrr_schedule")
    op.drop_index("ix_sales_mrr_schedule_team_status", table_name="sales_mrr_schedule")
    op.drop_table("sales_mrr_schedule")
    op.drop_index("ix_sales_confirmation_task_auto_return", table_name="sales_confirmation_task")
    op.drop_index("ix_sales_confirmation_task_queue", table_name="sales_confirmation_task")
    op.drop_index("ix_sales_confirmation_task_appointment", table_name="sales_confirmation_task")
    op.drop_table("sales_confirmation_task")
    op.drop_index("ix_sales_appointment_team_start", table_name="sales_appointment")
    op.drop_index("ix_sales_appointment_team_stage", table_name="sales_appointment")
    op.drop_table("sales_appointment")
    op.drop_index("ix_sales_pipeline_stage_team_order", table_name="sales_pipeline_stage")
    op.drop_table("sales_pipeline_stage")
    op.drop_index("ix_sales_team_member_rotation", table_name="sales_team_member")
    op.drop_table("sales_team_member")
    op.drop_table("sales_team")
