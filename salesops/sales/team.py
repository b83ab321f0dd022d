from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from salesops.core.config import get_settings
from salesops.sales.models import Team, TeamMember


TEAM_ROLES = {"offer_owner", "admin", "closer", "setter"}
MANAGER_ROLES = {"offer_owner", "admin"}


@dataclass
class ActorUser:
    user_id: str
    display_name: str | None = None
    team_id: uuid.UUID | None = None
    roles: set[str] = field(default_factory=set)
    is_super_admin: bool = False
    session_key: str | None = None
    correlation_id: str | None = None

    @property
    def undo_key(self) -> str:
        return self.session_key or self.user_id


@dataclass(slots=True)
class TeamDirectory:
    """Read access to team configuration: membership, roles, commission rates and rotation."""

    def get_team(self, session: Session, team_id: uuid.UUID) -> Team:
        team = session.scalar(select(Team).where(Team.id == team_id))
        if team is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="team not found")
        return team

    def get_member(self, session: Session, team_id: uuid.UUID, user_id: str | None) -> TeamMember | None:
        if not user_id:
            return None
        return session.scalar(
            select(TeamMember).where(and_(TeamMember.team_id == team_id, TeamMember.user_id == user_id))
        )

    def member_role(self, session: Session, team_id: uuid.UUID, user_id: str | None) -> str | None:
        member = self.get_member(session, team_id, user_id)
        return member.role if member is not None else None

    def display_name(self, session: Session, team_id: uuid.UUID, user_id: str | None) -> str | None:
        member = self.get_member(session, team_id, user_id)
        return member.display_name if member is not None else None

    def actor_name(self, session: Session, team_id: uuid.UUID, actor: ActorUser) -> str:
        return self.display_name(session, team_id, actor.user_id) or actor.display_name or actor.user_id

    def ensure_team_access(self, actor: ActorUser, team_id: uuid.UUID) -> None:
        if actor.is_super_admin or actor.team_id is None:
            return
        if actor.team_id != team_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="team access denied")

    def ensure_manager(self, session: Session, actor: ActorUser, team_id: uuid.UUID) -> None:
        if actor.is_super_admin:
            return
        if self.member_role(session, team_id, actor.user_id) not in MANAGER_ROLES:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="offer owner or admin role required")

    def commission_pcts(self, team: Team) -> tuple[Decimal, Decimal]:
        settings = get_settings()
        setter_pct = team.setter_commission_pct
        closer_pct = team.closer_commission_pct
        return (
            Decimal(str(setter_pct if setter_pct is not None else settings.default_setter_commission_pct)),
            Decimal(str(closer_pct if closer_pct is not None else settings.default_closer_commission_pct)),
        )

    def auto_return_minutes(self, team: Team) -> int:
        if team.auto_return_minutes is not None and team.auto_return_minutes > 0:
            return team.auto_return_minutes
        return get_settings().default_auto_return_minutes

    def rotation_members(self, session: Session, team_id: uuid.UUID, role: str) -> list[TeamMember]:
        return list(
            session.scalars(
                select(TeamMember)
                .where(
                    and_(
                        TeamMember.team_id == team_id,
                        TeamMember.role == role,
                        TeamMember.is_active.is_(True),
                        TeamMember.in_rotation.is_(True),
                    )
                )
                .order_by(TeamMember.user_id.asc())
            ).all()
        )


team_directory = TeamDirectory()
