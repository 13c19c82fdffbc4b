"""Demand matrix read endpoints."""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import sessionmaker

from demand_engine.db.dependencies import get_session_factory
from demand_engine.services.demand_matrix_service import (
    DemandMatrixService,
    MatrixViewRegistry,
    get_matrix_registry,
)
from demand_engine.services.matrix_types import (
    UNFILTERED,
    FilterState,
    MatrixGrouping,
    MonthRange,
    PreferredStaffFilterMode,
)

router = APIRouter(prefix="/demand-matrix", tags=["demand-matrix"])


def get_demand_matrix_service(
    registry: MatrixViewRegistry = Depends(get_matrix_registry),
    session_factory: sessionmaker = Depends(get_session_factory),
) -> DemandMatrixService:
    return DemandMatrixService.from_session_factory(registry, session_factory)


def get_filter_state(
    skill: list[str] | None = Query(default=None),
    client: list[str] | None = Query(default=None),
    preferred_staff: list[str] | None = Query(default=None),
    staff_mode: PreferredStaffFilterMode = PreferredStaffFilterMode.ALL,
    month_start: int | None = Query(default=None, ge=0),
    month_end: int | None = Query(default=None, ge=0),
) -> FilterState:
    """Build the filter state from query parameters; an omitted list means unfiltered."""

    month_range = None
    if month_start is not None or month_end is not None:
        start = month_start or 0
        end = month_end if month_end is not None else start + 59
        if end < start:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="month_end must not be before month_start.",
            )
        month_range = MonthRange(start=start, end=end)

    return FilterState(
        selected_skills=frozenset(skill) if skill is not None else UNFILTERED,
        selected_clients=frozenset(client) if client is not None else UNFILTERED,
        selected_preferred_staff=frozenset(preferred_staff or ()),
        month_range=month_range,
        preferred_staff_filter_mode=staff_mode,
    )


@router.get("")
async def get_demand_matrix(
    grouping: MatrixGrouping = MatrixGrouping.SKILL,
    start_month: date | None = None,
    months: int | None = Query(default=None, ge=1, le=60),
    filter_state: FilterState = Depends(get_filter_state),
    service: DemandMatrixService = Depends(get_demand_matrix_service),
) -> dict[str, object]:
    return await service.read_matrix(
        grouping=grouping,
        filter_state=filter_state,
        start_month=start_month,
        months=months,
    )


@router.get("/cells")
async def get_demand_matrix_cell(
    key: str,
    month: str = Query(pattern=r"^\d{4}-\d{2}$"),
    grouping: MatrixGrouping = MatrixGrouping.SKILL,
    start_month: date | None = None,
    months: int | None = Query(default=None, ge=1, le=60),
    filter_state: FilterState = Depends(get_filter_state),
    service: DemandMatrixService = Depends(get_demand_matrix_service),
) -> dict[str, object]:
    return await service.read_cell(
        grouping=grouping,
        filter_state=filter_state,
        key=key,
        month=month,
        start_month=start_month,
        months=months,
    )


@router.get("/filter-options")
async def get_filter_options(
    service: DemandMatrixService = Depends(get_demand_matrix_service),
) -> dict[str, object]:
    return await service.filter_options()


@router.get("/cache/stats")
def get_cache_stats(service: DemandMatrixService = Depends(get_demand_matrix_service)) -> dict[str, object]:
    return service.cache_stats()


@router.post("/cache/reset")
def reset_cache(service: DemandMatrixService = Depends(get_demand_matrix_service)) -> dict[str, object]:
    return service.reset_cache()
