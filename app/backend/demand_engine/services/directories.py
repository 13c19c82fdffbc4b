"""Read-only directories the engine loads its inputs from."""

from __future__ import annotations

import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Protocol, TypeVar

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from demand_engine.core.errors import LoadError
from demand_engine.models.entities import RecurringTask
from demand_engine.repositories.demand_repository import DemandRepository
from demand_engine.services.matrix_types import (
    ClientOption,
    RecurrenceRule,
    RecurringTaskSource,
    SkillOption,
    StaffOption,
    normalize_staff_id,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DemandDirectory(Protocol):
    """Async sources for tasks, staff, skills and clients; failures raise ``LoadError``."""

    async def list_recurring_tasks(self) -> list[RecurringTaskSource]: ...

    async def list_preferred_staff(self) -> list[StaffOption]: ...

    async def list_skills(self) -> list[SkillOption]: ...

    async def list_clients(self) -> list[ClientOption]: ...


def task_source_from_row(row: RecurringTask) -> RecurringTaskSource:
    return RecurringTaskSource(
        id=str(row.id),
        client_id=str(row.client_id),
        name=row.name,
        skill=row.required_skill,
        estimated_hours=Decimal(row.estimated_hours),
        recurrence=RecurrenceRule(
            recurrence_type=row.recurrence_type,
            interval=row.recurrence_interval,
            weekdays=tuple(row.weekdays or ()),
            day_of_month=row.day_of_month,
            month_of_year=row.month_of_year,
            anchor_date=row.due_date,
            end_date=row.end_date,
            custom_offset_days=row.custom_offset_days,
        ),
        preferred_staff_id=normalize_staff_id(row.preferred_staff_id) if row.preferred_staff_id else None,
        is_active=row.is_active,
    )


class SqlDemandDirectory:
    """Directory backed by the ORM tables; queries run in the threadpool."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def _run(self, source: str, query: Callable[[DemandRepository], T]) -> T:
        session: Session = self.session_factory()
        try:
            return query(DemandRepository(session))
        except SQLAlchemyError as exc:
            logger.warning("Directory query for %s failed: %s", source, exc)
            raise LoadError(source, str(exc)) from exc
        finally:
            session.close()

    async def list_recurring_tasks(self) -> list[RecurringTaskSource]:
        return await run_in_threadpool(
            self._run,
            "recurring tasks",
            lambda repo: [task_source_from_row(row) for row in repo.list_recurring_tasks()],
        )

    async def list_preferred_staff(self) -> list[StaffOption]:
        return await run_in_threadpool(
            self._run,
            "staff",
            lambda repo: [
                StaffOption(id=normalize_staff_id(row.id), name=row.full_name, role_title=row.role_title)
                for row in repo.list_staff()
            ],
        )

    async def list_skills(self) -> list[SkillOption]:
        return await run_in_threadpool(
            self._run,
            "skills",
            lambda repo: [
                SkillOption(
                    id=str(row.id),
                    name=row.name,
                    fee_rate=Decimal(row.fee_rate) if row.fee_rate is not None else None,
                )
                for row in repo.list_skills()
            ],
        )

    async def list_clients(self) -> list[ClientOption]:
        return await run_in_threadpool(
            self._run,
            "clients",
            lambda repo: [ClientOption(id=str(row.id), name=row.legal_name) for row in repo.list_clients()],
        )
