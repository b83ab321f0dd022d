from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from salesops.context import get_correlation_id
from salesops.core.auth import AuthUser, get_current_user as get_auth_user
from salesops.core.database import get_db
from salesops.sales.activity import activity_log
from salesops.sales.errors import SalesOpsError
from salesops.sales.jobs import sweep_runner
from salesops.sales.mrr import mrr_scheduler
from salesops.sales.pipeline import pipeline
from salesops.sales.schemas import (
    ActivityRead,
    AppointmentCreate,
    AppointmentRead,
    BoardRead,
    CloseDealRequest,
    ConfirmPaymentRead,
    ConfirmPaymentRequest,
    DepositRequest,
    MoveRequest,
    MoveResult,
    ReactivateRequest,
    ReconcileRead,
    RescheduleLinkRead,
    RevertRequest,
    ScheduleProgressRead,
    ScheduleRead,
    StageRead,
    StageUpdate,
    SweepResultRead,
    TaskCompleteRequest,
    TaskCreate,
    TaskRead,
    UndoResultRead,
)
from salesops.sales.stages import stage_catalog
from salesops.sales.tasks import task_engine
from salesops.sales.team import ActorUser, team_directory
from salesops.sales.undo import undo_ledger

appointments_router = APIRouter(prefix="/api/sales", tags=["sales.appointments"])
stages_router = APIRouter(prefix="/api/sales", tags=["sales.stages"])
tasks_router = APIRouter(prefix="/api/sales", tags=["sales.tasks"])
mrr_router = APIRouter(prefix="/api/sales", tags=["sales.mrr"])
undo_router = APIRouter(prefix="/api/sales", tags=["sales.undo"])
jobs_router = APIRouter(prefix="/api/sales", tags=["sales.jobs"])

SUPER_ADMIN_ROLES = {"admin", "system.admin"}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(request: Request, exc: HTTPException, *, fallback_code: str) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    if isinstance(exc, SalesOpsError):
        code, message = exc.code, exc.message
    else:
        code, message = fallback_code, str(exc.detail)
    payload = ErrorEnvelope(code=code, message=message, details=exc.detail, correlation_id=correlation_id)
    return JSONResponse(status_code=exc.status_code, content=payload.__dict__)


def _parse_team_id(raw: str | None) -> uuid.UUID | None:
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid x-team-id header") from exc


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    team_id = _parse_team_id(request.headers.get("x-team-id"))
    if team_id is None and len(auth_user.team_ids) == 1:
        team_id = _parse_team_id(auth_user.team_ids[0])

    session_key = request.headers.get("x-session-id") or None
    normalized_roles = {str(role).lower() for role in auth_user.roles}
    return ActorUser(
        user_id=auth_user.sub,
        display_name=request.headers.get("x-user-name") or auth_user.name,
        team_id=team_id,
        roles=normalized_roles,
        is_super_admin=bool(normalized_roles & SUPER_ADMIN_ROLES),
        session_key=session_key,
        correlation_id=correlation_id,
    )


@appointments_router.post("/appointments", response_model=AppointmentRead, status_code=status.HTTP_201_CREATED)
def create_appointment(
    request: Request,
    dto: AppointmentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AppointmentRead | JSONResponse:
    try:
        return pipeline.create_appointment(db, user, dto)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_appointment_create_failed")


@appointments_router.get("/appointments/board", response_model=BoardRead)
def get_board(
    request: Request,
    team_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BoardRead | JSONResponse:
    try:
        resolved_team_id = team_id or user.team_id
        if resolved_team_id is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="team_id is required")
        return pipeline.board(db, user, resolved_team_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_board_failed")


@appointments_router.get("/appointments/{appointment_id}", response_model=AppointmentRead)
def get_appointment(
    request: Request,
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AppointmentRead | JSONResponse:
    try:
        return pipeline.get_appointment(db, user, appointment_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_appointment_get_failed")


@appointments_router.post("/appointments/{appointment_id}/move", response_model=MoveResult)
def move_appointment(
    request: Request,
    appointment_id: uuid.UUID,
    dto: MoveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MoveResult | JSONResponse:
    try:
        return pipeline.request_move(db, user, appointment_id, dto)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_move_failed")


@appointments_router.post("/appointments/{appointment_id}/close", response_model=AppointmentRead)
def close_deal(
    request: Request,
    appointment_id: uuid.UUID,
    dto: CloseDealRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AppointmentRead | JSONResponse:
    try:
        return pipeline.close_deal_transaction(db, user, appointment_id, dto)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_close_failed")


@appointments_router.post("/appointments/{appointment_id}/deposit", response_model=AppointmentRead)
def record_deposit(
    request: Request,
    appointment_id: uuid.UUID,
    dto: DepositRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AppointmentRead | JSONResponse:
    try:
        return pipeline.record_deposit(db, user, appointment_id, dto)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_deposit_failed")


@appointments_router.post("/appointments/{appointment_id}/revert", response_model=AppointmentRead)
def revert_appointment(
    request: Request,
    appointment_id: uuid.UUID,
    dto: RevertRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AppointmentRead | JSONResponse:
    try:
        return pipeline.revert(db, user, appointment_id, dto)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_revert_failed")


@appointments_router.post("/appointments/{appointment_id}/reschedule-link", response_model=RescheduleLinkRead)
def fetch_reschedule_link(
    request: Request,
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RescheduleLinkRead | JSONResponse:
    try:
        return pipeline.fetch_reschedule_link(db, user, appointment_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_reschedule_link_failed")


@appointments_router.get("/appointments/{appointment_id}/activity", response_model=list[ActivityRead])
def list_appointment_activity(
    request: Request,
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        pipeline.get_appointment(db, user, appointment_id)
        return activity_log.list_for_appointment(db, appointment_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_activity_list_failed")


@stages_router.get("/teams/{team_id}/stages", response_model=list[StageRead])
def list_stages(
    request: Request,
    team_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageRead] | JSONResponse:
    try:
        team_directory.ensure_team_access(user, team_id)
        team_directory.get_team(db, team_id)
        return stage_catalog.list_stages(db, team_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_stages_list_failed")


@stages_router.patch("/teams/{team_id}/stages/{stage_id}", response_model=StageRead)
def update_stage(
    request: Request,
    team_id: uuid.UUID,
    stage_id: str,
    dto: StageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        team_directory.ensure_team_access(user, team_id)
        team_directory.get_team(db, team_id)
        team_directory.ensure_manager(db, user, team_id)
        return stage_catalog.update_stage(db, team_id, stage_id, dto)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_stage_update_failed")


@stages_router.get("/teams/{team_id}/activity", response_model=list[ActivityRead])
def list_team_activity(
    request: Request,
    team_id: uuid.UUID,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        team_directory.ensure_team_access(user, team_id)
        return activity_log.list_for_team(db, team_id, limit=limit)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_activity_list_failed")


@tasks_router.get("/tasks", response_model=list[TaskRead])
def list_tasks(
    request: Request,
    scope: Literal["mine", "team"] = Query(default="mine"),
    task_status: str | None = Query(default=None, alias="status"),
    team_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        return task_engine.list_tasks(db, user, scope=scope, status_filter=task_status, team_id=team_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_tasks_list_failed")


@tasks_router.post("/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_engine.create_task(db, user, dto)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_task_create_failed")


@tasks_router.post("/tasks/{task_id}/claim", response_model=TaskRead)
def claim_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_engine.claim(db, user, task_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_task_claim_failed")


@tasks_router.post("/tasks/{task_id}/complete", response_model=TaskRead)
def complete_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskCompleteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_engine.complete(db, user, task_id, dto)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_task_complete_failed")


@tasks_router.post("/tasks/{task_id}/awaiting-reschedule", response_model=TaskRead)
def mark_task_awaiting_reschedule(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_engine.mark_awaiting_reschedule_by_id(db, user, task_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_task_update_failed")


@tasks_router.post("/tasks/reconcile/{appointment_id}", response_model=ReconcileRead)
def reconcile_appointment_tasks(
    request: Request,
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ReconcileRead | JSONResponse:
    try:
        pipeline.get_appointment(db, user, appointment_id)
        return task_engine.reconcile_external_change(db, appointment_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_task_reconcile_failed")


@mrr_router.get("/mrr/schedules", response_model=list[ScheduleRead])
def list_schedules(
    request: Request,
    team_id: uuid.UUID | None = Query(default=None),
    schedule_status: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ScheduleRead] | JSONResponse:
    try:
        return mrr_scheduler.list_schedules(db, user, team_id=team_id, status_filter=schedule_status)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_mrr_list_failed")


@mrr_router.get("/mrr/schedules/{schedule_id}", response_model=ScheduleRead)
def get_schedule(
    request: Request,
    schedule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScheduleRead | JSONResponse:
    try:
        return mrr_scheduler.get_schedule(db, user, schedule_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_mrr_get_failed")


@mrr_router.get("/mrr/schedules/{schedule_id}/progress", response_model=ScheduleProgressRead)
def get_schedule_progress(
    request: Request,
    schedule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScheduleProgressRead | JSONResponse:
    try:
        return mrr_scheduler.progress(db, user, schedule_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_mrr_progress_failed")


@mrr_router.post("/mrr/schedules/{schedule_id}/confirm", response_model=ConfirmPaymentRead)
def confirm_payment(
    request: Request,
    schedule_id: uuid.UUID,
    dto: ConfirmPaymentRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ConfirmPaymentRead | JSONResponse:
    try:
        return mrr_scheduler.confirm_payment(db, user, schedule_id, dto or ConfirmPaymentRequest())
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_mrr_confirm_failed")


@mrr_router.post("/mrr/schedules/{schedule_id}/pause", response_model=ScheduleRead)
def pause_schedule(
    request: Request,
    schedule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScheduleRead | JSONResponse:
    try:
        return mrr_scheduler.pause(db, user, schedule_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_mrr_pause_failed")


@mrr_router.post("/mrr/schedules/{schedule_id}/cancel", response_model=ScheduleRead)
def cancel_schedule(
    request: Request,
    schedule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScheduleRead | JSONResponse:
    try:
        return mrr_scheduler.cancel(db, user, schedule_id)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_mrr_cancel_failed")


@mrr_router.post("/mrr/schedules/{schedule_id}/reactivate", response_model=ScheduleRead)
def reactivate_schedule(
    request: Request,
    schedule_id: uuid.UUID,
    dto: ReactivateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScheduleRead | JSONResponse:
    try:
        return mrr_scheduler.reactivate(db, user, schedule_id, dto)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_mrr_reactivate_failed")


@mrr_router.delete("/mrr/schedules/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_schedule(
    request: Request,
    schedule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        mrr_scheduler.delete_schedule(db, user, schedule_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_mrr_delete_failed")


@undo_router.post("/undo", response_model=UndoResultRead)
def undo_last_action(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UndoResultRead | JSONResponse:
    try:
        return undo_ledger.undo(db, user.undo_key, user)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_undo_failed")


@jobs_router.post("/jobs/{job_type}/run", response_model=SweepResultRead)
def run_job(
    request: Request,
    job_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SweepResultRead | JSONResponse:
    try:
        if not user.is_super_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required to run jobs")
        return sweep_runner.run(db, job_type)
    except HTTPException as exc:
        return error_response(request, exc, fallback_code="sales_job_run_failed")
