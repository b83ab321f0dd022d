from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from salesops.context import get_correlation_id
from salesops.sales.models import ActivityLog
from salesops.sales.schemas import ActivityRead


logger = logging.getLogger("salesops.activity")

SYSTEM_ACTOR = "system"


@dataclass(slots=True)
class ActivityLogService:
    """Append-only timeline of everything that happens to an appointment.

    Entries are added to the caller's session and committed with the caller's
    transaction, so a rolled-back mutation never leaves a dangling entry.
    """

    def record(
        self,
        session: Session,
        *,
        team_id: uuid.UUID,
        appointment_id: uuid.UUID | None,
        actor_id: str,
        actor_name: str | None,
        action_type: str,
        note: str | None = None,
    ) -> ActivityLog:
        entry = ActivityLog(
            team_id=team_id,
            appointment_id=appointment_id,
            actor_id=actor_id,
            actor_name=actor_name,
            action_type=action_type,
            note=note,
            correlation_id=get_correlation_id(),
        )
        session.add(entry)
        logger.debug(
            "activity.recorded",
            extra={"team_id": str(team_id), "appointment_id": str(appointment_id) if appointment_id else None},
        )
        return entry

    def list_for_appointment(self, session: Session, appointment_id: uuid.UUID) -> list[ActivityRead]:
        rows = session.scalars(
            select(ActivityLog)
            .where(ActivityLog.appointment_id == appointment_id)
            .order_by(ActivityLog.created_at.asc(), ActivityLog.id.asc())
        ).all()
        return [ActivityRead.model_validate(row) for row in rows]

    def list_for_team(self, session: Session, team_id: uuid.UUID, *, limit: int = 100) -> list[ActivityRead]:
        rows = session.scalars(
            select(ActivityLog)
            .where(ActivityLog.team_id == team_id)
            .order_by(ActivityLog.created_at.desc())
            .limit(limit)
        ).all()
        return [ActivityRead.model_validate(row) for row in rows]


activity_log = ActivityLogService()
