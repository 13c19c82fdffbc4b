"""Application service exposing the demand matrix engine over HTTP."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import date

from fastapi import HTTPException, Request, status
from sqlalchemy.orm import sessionmaker

from demand_engine.core.config import Settings, get_settings
from demand_engine.core.errors import AggregationConsistencyError, DemandMatrixError, LoadError
from demand_engine.core.observability import MatrixEventSink, default_sink
from demand_engine.services.directories import DemandDirectory, SqlDemandDirectory
from demand_engine.services.matrix_builder import find_cell, summarize_buckets
from demand_engine.services.matrix_cache import MatrixCacheController
from demand_engine.services.matrix_loader import DemandMatrixLoader
from demand_engine.services.matrix_types import (
    DemandMatrixData,
    FilterState,
    LoadedMatrix,
    MatrixGrouping,
    SkillDataPoint,
    StaffRef,
    TaskBreakdownEntry,
)

logger = logging.getLogger(__name__)


class MatrixViewRegistry:
    """One cache controller per matrix view, living on ``app.state``."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
        events: MatrixEventSink | None = None,
    ) -> None:
        self.events = events or default_sink()
        self.caches = {
            grouping: MatrixCacheController(
                cooldown_seconds=settings.demand_cache_cooldown_seconds,
                ttl_seconds=settings.demand_cache_ttl_seconds,
                max_entries=settings.demand_cache_max_entries,
                clock=clock,
                events=self.events,
                name=f"demand-matrix:{grouping.value}",
            )
            for grouping in MatrixGrouping
        }

    def cache_for(self, grouping: MatrixGrouping) -> MatrixCacheController:
        return self.caches[grouping]

    def reset(self) -> None:
        for cache in self.caches.values():
            cache.reset()


def get_matrix_registry(request: Request) -> MatrixViewRegistry:
    return request.app.state.matrix_views


def _entry_payload(entry: TaskBreakdownEntry) -> dict[str, object]:
    staff = entry.preferred_staff
    return {
        "client_id": entry.client_id,
        "client_name": entry.client_name,
        "recurring_task_id": entry.recurring_task_id,
        "task_name": entry.task_name,
        "skill_type": entry.skill_type,
        "estimated_hours": str(entry.estimated_hours),
        "monthly_hours": str(entry.monthly_hours),
        "recurrence_pattern": entry.recurrence_pattern,
        "month": entry.month,
        "fee_rate": str(entry.fee_rate),
        "suggested_revenue": str(entry.suggested_revenue),
        "preferred_staff": (
            {"kind": staff.kind, "staff_id": staff.staff_id, "staff_name": staff.staff_name}
            if isinstance(staff, StaffRef)
            else {"kind": staff.kind}
        ),
    }


def _point_payload(point: SkillDataPoint) -> dict[str, object]:
    return {
        "skill_type": point.skill_type,
        "month": point.month,
        "month_label": point.month_label,
        "demand_hours": str(point.demand_hours),
        "suggested_revenue": str(point.suggested_revenue),
        "task_count": point.task_count,
        "client_count": point.client_count,
        "is_staff_specific": point.is_staff_specific,
        "actual_staff_name": point.actual_staff_name,
        "actual_staff_id": point.actual_staff_id,
        "is_unassigned": point.is_unassigned,
        "task_breakdown": [_entry_payload(entry) for entry in point.task_breakdown],
    }


def matrix_payload(matrix: DemandMatrixData) -> dict[str, object]:
    return {
        "grouping": matrix.grouping.value,
        "aggregation_strategy": matrix.aggregation_strategy.value,
        "skills": list(matrix.skills),
        "months": [{"key": column.key, "label": column.label} for column in matrix.months],
        "data_points": [_point_payload(point) for point in matrix.data_points],
        "total_demand": str(matrix.total_demand),
        "total_tasks": matrix.total_tasks,
        "total_clients": matrix.total_clients,
        "total_suggested_revenue": str(matrix.total_suggested_revenue),
        "client_totals": {client_id: str(hours) for client_id, hours in matrix.client_totals},
        "client_suggested_revenue": {
            client_id: str(revenue) for client_id, revenue in matrix.client_suggested_revenue
        },
        "skill_fee_rates": {skill: str(rate) for skill, rate in matrix.skill_fee_rates},
        "summary": [
            {
                "label": summary.label,
                "total_hours": str(summary.total_hours),
                "task_count": summary.task_count,
                "client_count": summary.client_count,
                "suggested_revenue": str(summary.suggested_revenue),
            }
            for summary in summarize_buckets(matrix)
        ],
    }


class DemandMatrixService:
    """Runs loads for HTTP callers and maps engine errors to HTTP errors."""

    def __init__(
        self,
        registry: MatrixViewRegistry,
        directory: DemandDirectory,
        settings: Settings | None = None,
    ) -> None:
        self.registry = registry
        self.directory = directory
        self.settings = settings or get_settings()

    @classmethod
    def from_session_factory(cls, registry: MatrixViewRegistry, session_factory: sessionmaker) -> DemandMatrixService:
        return cls(registry, SqlDemandDirectory(session_factory))

    def _loader(self, grouping: MatrixGrouping) -> DemandMatrixLoader:
        return DemandMatrixLoader(
            self.directory,
            self.registry.cache_for(grouping),
            months=self.settings.demand_default_months,
            grouping=grouping,
            max_attempts=self.settings.demand_retry_max_attempts,
            backoff_base=self.settings.demand_retry_base_seconds,
            backoff_max=self.settings.demand_retry_max_seconds,
            default_fee_rate=self.settings.demand_default_fee_rate,
            events=self.registry.events,
        )

    async def _load(
        self,
        *,
        grouping: MatrixGrouping,
        filter_state: FilterState,
        start_month: date | None,
        months: int | None,
    ) -> LoadedMatrix:
        loader = self._loader(grouping)
        try:
            loaded = await loader.load(filter_state, start_month=start_month, months=months)
        except LoadError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc
        except AggregationConsistencyError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message) from exc
        except DemandMatrixError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.message) from exc
        if loaded is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Demand matrix request was superseded.")
        return loaded

    async def read_matrix(
        self,
        *,
        grouping: MatrixGrouping,
        filter_state: FilterState,
        start_month: date | None = None,
        months: int | None = None,
    ) -> dict[str, object]:
        loaded = await self._load(grouping=grouping, filter_state=filter_state, start_month=start_month, months=months)
        return {
            "strategy": loaded.strategy.value,
            "matrix": matrix_payload(loaded.view),
            "unfiltered_totals": {
                "total_demand": str(loaded.full.total_demand),
                "total_tasks": loaded.full.total_tasks,
                "total_clients": loaded.full.total_clients,
                "total_suggested_revenue": str(loaded.full.total_suggested_revenue),
            },
            "validation_issues": list(loaded.validation_issues),
        }

    async def read_cell(
        self,
        *,
        grouping: MatrixGrouping,
        filter_state: FilterState,
        key: str,
        month: str,
        start_month: date | None = None,
        months: int | None = None,
    ) -> dict[str, object]:
        loaded = await self._load(grouping=grouping, filter_state=filter_state, start_month=start_month, months=months)
        point = find_cell(loaded.view, key, month)
        if point is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Matrix cell not found.")
        return _point_payload(point)

    async def filter_options(self) -> dict[str, object]:
        try:
            skills = await self.directory.list_skills()
            clients = await self.directory.list_clients()
            staff = await self.directory.list_preferred_staff()
        except LoadError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc
        return {
            "skills": sorted((skill.name for skill in skills), key=str.casefold),
            "clients": [{"id": client.id, "name": client.name} for client in clients],
            "preferred_staff": [
                {"id": member.id, "name": member.name, "role_title": member.role_title} for member in staff
            ],
        }

    def reset_cache(self) -> dict[str, object]:
        self.registry.reset()
        logger.info("Demand matrix caches reset")
        return {"status": "reset", "views": [grouping.value for grouping in self.registry.caches]}

    def cache_stats(self) -> dict[str, object]:
        return {
            grouping.value: {
                "size": stats.size,
                "hits": stats.hits,
                "misses": stats.misses,
                "invalidations": stats.invalidations,
                "blocked_invalidations": stats.blocked_invalidations,
            }
            for grouping, stats in ((grouping, cache.stats()) for grouping, cache in self.registry.caches.items())
        }
