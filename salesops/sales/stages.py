from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from fastapi import HTTPException, status
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from salesops.sales.models import Appointment, PipelineStage
from salesops.sales.schemas import StageClass, StageRead, StageUpdate


logger = logging.getLogger("salesops.stages")

BOOKED_STAGE_ID = "booked"
BOOKED_BUCKET_ID = "appointments_booked"
BOOKED_BUCKET_LABEL = "Appointments Booked"
BOOKED_ALIASES = {"", "new", BOOKED_STAGE_ID, BOOKED_BUCKET_ID}

DEFAULT_STAGES: tuple[tuple[str, str, str], ...] = (
    ("no_show", "No Show", "#f97316"),
    ("canceled", "Canceled", "#ef4444"),
    ("rescheduled", "Rescheduled", "#eab308"),
    ("deposit", "Deposit Collected", "#8b5cf6"),
    ("won", "Closed Won", "#10b981"),
    ("lost", "Closed Lost", "#64748b"),
)

# legacy id -> canonical id
LEGACY_STAGE_IDS = {
    "closed_won": "won",
    "closed": "won",
    "no-show": "no_show",
    "cancelled": "canceled",
}

DEPRECATED_STAGE_IDS = {"new", "booked", "appointments_booked", "contacted", "qualified"}

# stage id -> (labels written by older releases, current label)
LEGACY_LABELS = {
    "won": ({"Won", "Closed", "Closed - Won"}, "Closed Won"),
    "lost": ({"Lost", "Closed - Lost"}, "Closed Lost"),
    "no_show": ({"No-Show", "Noshow", "No Showed"}, "No Show"),
    "canceled": ({"Cancelled"}, "Canceled"),
    "deposit": ({"Deposit", "Deposits"}, "Deposit Collected"),
}


def is_booked(stage_id: str | None) -> bool:
    return stage_id is None or stage_id.strip().lower() in BOOKED_ALIASES


def normalize_stage(stage_id: str | None) -> str:
    """Collapse the booked-bucket aliases to the single value that is persisted."""
    if is_booked(stage_id):
        return BOOKED_STAGE_ID
    return stage_id  # type: ignore[return-value]


def classify(stage_id: str | None, label: str | None = None) -> StageClass:
    if is_booked(stage_id):
        return "booked"
    haystack = f"{stage_id or ''} {label or ''}".lower()
    if "lost" not in haystack and ("won" in haystack or "close" in haystack):
        return "close"
    if "deposit" in haystack:
        return "deposit"
    if "reschedul" in haystack:
        return "reschedule"
    if "cancel" in haystack or "no_show" in haystack or "no show" in haystack or "no-show" in haystack:
        return "followup"
    return "plain"


@dataclass(slots=True)
class StageCatalog:
    """Per-team pipeline stage lookup.

    Stages are seeded on first access and legacy rows are migrated on every
    access, so callers always classify against the current definitions.
    """

    def ensure_stages(self, session: Session, team_id: uuid.UUID) -> list[PipelineStage]:
        rows = self._load(session, team_id)
        if not rows:
            for index, (stage_id, label, color) in enumerate(DEFAULT_STAGES):
                session.add(
                    PipelineStage(
                        team_id=team_id,
                        stage_id=stage_id,
                        label=label,
                        color=color,
                        order_index=index,
                        is_default=True,
                    )
                )
            session.commit()
            logger.info("stages.seeded", extra={"team_id": str(team_id)})
            return self._load(session, team_id)

        if self._migrate(session, team_id, rows):
            session.commit()
            logger.info("stages.migrated", extra={"team_id": str(team_id)})
            return self._load(session, team_id)
        return rows

    def list_stages(self, session: Session, team_id: uuid.UUID) -> list[StageRead]:
        return [StageRead.model_validate(row) for row in self.ensure_stages(session, team_id)]

    def get_stage(self, session: Session, team_id: uuid.UUID, stage_id: str) -> PipelineStage:
        for row in self.ensure_stages(session, team_id):
            if row.stage_id == stage_id:
                return row
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")

    def find_stage(self, session: Session, team_id: uuid.UUID, stage_id: str | None) -> PipelineStage | None:
        if is_booked(stage_id):
            return None
        for row in self.ensure_stages(session, team_id):
            if row.stage_id == stage_id:
                return row
        return None

    def label_for(self, session: Session, team_id: uuid.UUID, stage_id: str | None) -> str:
        row = self.find_stage(session, team_id, stage_id)
        if row is None:
            return BOOKED_BUCKET_LABEL if is_booked(stage_id) else str(stage_id)
        return row.label

    def first_stage_of_class(self, session: Session, team_id: uuid.UUID, stage_class: StageClass) -> PipelineStage | None:
        for row in self.ensure_stages(session, team_id):
            if classify(row.stage_id, row.label) == stage_class:
                return row
        return None

    def update_stage(self, session: Session, team_id: uuid.UUID, stage_id: str, dto: StageUpdate) -> StageRead:
        row = self.get_stage(session, team_id, stage_id)
        changes = dto.model_dump(exclude_unset=True, exclude_none=True)
        for field_name, value in changes.items():
            setattr(row, field_name, value)
        session.add(row)
        session.commit()
        session.refresh(row)
        return StageRead.model_validate(row)

    def _load(self, session: Session, team_id: uuid.UUID) -> list[PipelineStage]:
        return list(
            session.scalars(
                select(PipelineStage)
                .where(PipelineStage.team_id == team_id)
                .order_by(PipelineStage.order_index.asc(), PipelineStage.stage_id.asc())
            ).all()
        )

    def _migrate(self, session: Session, team_id: uuid.UUID, rows: list[PipelineStage]) -> bool:
        changed = False
        present = {row.stage_id for row in rows}
        kept: list[PipelineStage] = []

        for row in rows:
            canonical = LEGACY_STAGE_IDS.get(row.stage_id)
            if canonical is None:
                kept.append(row)
                continue
            legacy_id = row.stage_id
            present.discard(legacy_id)
            if canonical in present:
                session.delete(row)
            else:
                row.stage_id = canonical
                session.add(row)
                present.add(canonical)
                kept.append(row)
            self._reassign(session, team_id, {legacy_id}, canonical)
            changed = True

        remaining: list[PipelineStage] = []
        for row in kept:
            if row.stage_id in DEPRECATED_STAGE_IDS:
                session.delete(row)
                changed = True
            else:
                remaining.append(row)

        reassigned = self._reassign(session, team_id, DEPRECATED_STAGE_IDS - {BOOKED_STAGE_ID}, BOOKED_STAGE_ID)
        changed = changed or reassigned > 0

        for row in remaining:
            legacy = LEGACY_LABELS.get(row.stage_id)
            if legacy is not None and row.label in legacy[0]:
                row.label = legacy[1]
                session.add(row)
                changed = True

        return changed

    def _reassign(self, session: Session, team_id: uuid.UUID, from_ids: set[str], to_id: str) -> int:
        result = session.execute(
            update(Appointment)
            .where(and_(Appointment.team_id == team_id, Appointment.pipeline_stage.in_(sorted(from_ids))))
            .values(pipeline_stage=to_id)
        )
        return result.rowcount or 0


stage_catalog = StageCatalog()
