"""Filter pipeline narrowing a built matrix to the current selection.

Stages run in a fixed order: skill, client, preferred staff, month range.
Every stage filters breakdown entries, recomputes cell aggregates and drops
cells left empty. The input matrix is never modified.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace

from demand_engine.core.observability import FILTER_APPLIED, MatrixEventSink, default_sink
from demand_engine.services.matrix_builder import assemble_matrix
from demand_engine.services.matrix_types import (
    DemandMatrixData,
    FilterState,
    MonthRange,
    PreferredStaffFilterMode,
    TaskBreakdownEntry,
    Unfiltered,
)

logger = logging.getLogger(__name__)

EntryPredicate = Callable[[TaskBreakdownEntry], bool]


def _entry_count(matrix: DemandMatrixData) -> int:
    return sum(point.task_count for point in matrix.data_points)


def _filter_entries(matrix: DemandMatrixData, keep: EntryPredicate) -> DemandMatrixData:
    data_points = []
    for point in matrix.data_points:
        entries = tuple(entry for entry in point.task_breakdown if keep(entry))
        if entries:
            data_points.append(point if len(entries) == point.task_count else point.with_breakdown(entries))
    rows = {point.skill_type for point in data_points}
    return assemble_matrix(
        [label for label in matrix.skills if label in rows],
        matrix.months,
        data_points,
        matrix.aggregation_strategy,
        grouping=matrix.grouping,
    )


def clamp_month_range(month_range: MonthRange, month_count: int) -> MonthRange:
    """Clamp an index range into ``[0, month_count - 1]`` keeping ``start <= end``."""

    last = max(month_count - 1, 0)
    start = min(max(month_range.start, 0), last)
    end = min(max(month_range.end, start), last)
    return MonthRange(start=start, end=end)


def filter_by_skills(matrix: DemandMatrixData, filter_state: FilterState) -> DemandMatrixData:
    selected = filter_state.selected_skills
    if isinstance(selected, Unfiltered):
        return matrix
    return _filter_entries(matrix, lambda entry: entry.skill_type in selected)


def filter_by_clients(matrix: DemandMatrixData, filter_state: FilterState) -> DemandMatrixData:
    selected = filter_state.selected_clients
    if isinstance(selected, Unfiltered):
        return matrix
    return _filter_entries(matrix, lambda entry: entry.client_id in selected)


def filter_by_preferred_staff(matrix: DemandMatrixData, filter_state: FilterState) -> DemandMatrixData:
    mode = filter_state.preferred_staff_filter_mode
    if mode is PreferredStaffFilterMode.ALL:
        return matrix
    if mode is PreferredStaffFilterMode.NONE:
        return _filter_entries(matrix, lambda entry: entry.preferred_staff_id is None)
    selected = filter_state.selected_preferred_staff
    # Unassigned entries never match a specific selection.
    return _filter_entries(
        matrix,
        lambda entry: entry.preferred_staff_id is not None and entry.preferred_staff_id in selected,
    )


def filter_by_month_range(matrix: DemandMatrixData, filter_state: FilterState) -> DemandMatrixData:
    if filter_state.month_range is None or not matrix.months:
        return matrix
    month_range = clamp_month_range(filter_state.month_range, len(matrix.months))
    months = matrix.months[month_range.start : month_range.end + 1]
    keys = {column.key for column in months}
    data_points = [point for point in matrix.data_points if point.month in keys]
    rows = {point.skill_type for point in data_points}
    return assemble_matrix(
        [label for label in matrix.skills if label in rows],
        months,
        data_points,
        matrix.aggregation_strategy,
        grouping=matrix.grouping,
    )


FILTER_STAGES: tuple[tuple[str, Callable[[DemandMatrixData, FilterState], DemandMatrixData]], ...] = (
    ("skill", filter_by_skills),
    ("client", filter_by_clients),
    ("preferred_staff", filter_by_preferred_staff),
    ("month_range", filter_by_month_range),
)


def filter_matrix(
    matrix: DemandMatrixData,
    filter_state: FilterState,
    *,
    events: MatrixEventSink | None = None,
) -> DemandMatrixData:
    sink = events or default_sink()
    current = matrix
    for stage, apply_stage in FILTER_STAGES:
        before = _entry_count(current)
        current = apply_stage(current, filter_state)
        sink.emit(FILTER_APPLIED, stage=stage, before=before, after=_entry_count(current))
    logger.debug(
        "Filtered %s matrix: %d of %d data points kept",
        matrix.aggregation_strategy.value,
        len(current.data_points),
        len(matrix.data_points),
    )
    # Fresh object even when every stage was a no-op.
    return replace(current) if current is matrix else current
