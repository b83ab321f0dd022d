from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from salesops.core.config import get_settings
from salesops.core.database import Base
from salesops.sales.activity import activity_log
from salesops.sales.errors import UndoConflictError
from salesops.sales.models import Appointment
from salesops.sales.schemas import UndoResultRead
from salesops.sales.team import ActorUser


logger = logging.getLogger("salesops.undo")

UNDOABLE_MODELS: dict[str, type[Base]] = {
    Appointment.__tablename__: Appointment,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class UndoAction:
    table: str
    record_id: uuid.UUID
    previous_field_values: dict[str, Any]
    applied_field_values: dict[str, Any]
    description: str
    created_at: datetime = field(default_factory=utcnow)


def _same(left: Any, right: Any) -> bool:
    if isinstance(left, (Decimal, int, float)) and isinstance(right, (Decimal, int, float)):
        return Decimal(str(left)) == Decimal(str(right))
    return left == right


class UndoLedger:
    """Single-slot, per-session record of the last undoable mutation.

    Tracking a new action replaces the previous one. An action can be replayed
    only within ``grace_seconds`` of being tracked.
    """

    def __init__(self, grace_seconds: int | None = None, clock: Callable[[], datetime] = utcnow) -> None:
        self._grace_seconds = grace_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._slots: dict[str, UndoAction] = {}

    @property
    def grace(self) -> timedelta:
        seconds = self._grace_seconds if self._grace_seconds is not None else get_settings().undo_grace_seconds
        return timedelta(seconds=seconds)

    def track(self, session_key: str, action: UndoAction) -> None:
        with self._lock:
            self._slots[session_key] = action

    def peek(self, session_key: str) -> UndoAction | None:
        with self._lock:
            action = self._slots.get(session_key)
        if action is None or self._is_expired(action):
            return None
        return action

    def discard(self, session_key: str) -> None:
        with self._lock:
            self._slots.pop(session_key, None)

    def clear(self) -> None:
        with self._lock:
            self._slots.clear()

    def undo(self, db: Session, session_key: str, actor: ActorUser) -> UndoResultRead:
        with self._lock:
            action = self._slots.get(session_key)
            if action is None:
                return UndoResultRead(status="empty")
            if self._is_expired(action):
                self._slots.pop(session_key, None)
                return UndoResultRead(
                    status="expired",
                    table=action.table,
                    record_id=action.record_id,
                    description=action.description,
                )
            self._slots.pop(session_key, None)

        model = UNDOABLE_MODELS.get(action.table)
        if model is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"table {action.table} is not undoable")

        record = db.scalar(select(model).where(model.id == action.record_id))  # type: ignore[attr-defined]
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="undo target not found")

        changed = [
            name
            for name, applied in action.applied_field_values.items()
            if not _same(getattr(record, name), applied)
        ]
        if changed:
            logger.warning(
                "undo.conflict",
                extra={"error_code": UndoConflictError.code, "error": f"fields changed since action: {', '.join(sorted(changed))}"},
            )
            raise UndoConflictError(f"record changed since the action was applied: {', '.join(sorted(changed))}")

        for name, value in action.previous_field_values.items():
            setattr(record, name, value)
        db.add(record)

        team_id = getattr(record, "team_id", None)
        if team_id is not None:
            activity_log.record(
                db,
                team_id=team_id,
                appointment_id=record.id if isinstance(record, Appointment) else None,
                actor_id=actor.user_id,
                actor_name=actor.display_name,
                action_type="Undo",
                note=f"Undid: {action.description}",
            )
        db.commit()
        return UndoResultRead(status="applied", table=action.table, record_id=action.record_id, description=action.description)

    def _is_expired(self, action: UndoAction) -> bool:
        return self._clock() - action.created_at > self.grace


undo_ledger = UndoLedger()
