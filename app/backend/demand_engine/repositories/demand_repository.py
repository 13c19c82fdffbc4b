"""Repository helpers for the demand directories."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from demand_engine.models.entities import Client, RecurringTask, Skill, StaffMember


class DemandRepository:
    """Read-only queries backing the task, staff, skill and client directories."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---------- Recurring tasks ----------
    def list_recurring_tasks(self, *, include_inactive: bool = False) -> list[RecurringTask]:
        stmt = select(RecurringTask).order_by(RecurringTask.name.asc(), RecurringTask.id.asc())
        if not include_inactive:
            stmt = stmt.where(RecurringTask.is_active.is_(True))
        return self.db.scalars(stmt).all()

    # ---------- Directories ----------
    def list_staff(self) -> list[StaffMember]:
        return self.db.scalars(
            select(StaffMember)
            .where(StaffMember.active.is_(True))
            .order_by(StaffMember.full_name.asc())
        ).all()

    def list_skills(self) -> list[Skill]:
        return self.db.scalars(select(Skill).where(Skill.active.is_(True)).order_by(Skill.name.asc())).all()

    def list_clients(self) -> list[Client]:
        return self.db.scalars(
            select(Client)
            .where(Client.active.is_(True))
            .order_by(Client.legal_name.asc())
        ).all()
