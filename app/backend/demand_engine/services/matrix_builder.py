"""Group breakdown entries into matrix cells.

Two groupings are supported. Skill-based matrices bucket entries by
``(skill_type, month)``. Staff-based matrices bucket them by the resolved
preferred staff member, with everything unassigned collected in a separate
``Unassigned`` bucket that always sorts last.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal

from demand_engine.services.matrix_types import (
    UNASSIGNED_LABEL,
    ZERO,
    AggregationStrategy,
    BuildResult,
    DemandMatrixData,
    MatrixGrouping,
    MonthColumn,
    SkillDataPoint,
    StaffRef,
    TaskBreakdownEntry,
    q2,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _Bucket:
    label: str
    sort_key: tuple
    staff_id: str | None = None
    staff_name: str | None = None
    is_unassigned: bool = False


@dataclass(frozen=True, slots=True)
class BucketSummary:
    label: str
    total_hours: Decimal
    task_count: int
    client_count: int
    suggested_revenue: Decimal = ZERO


def _staff_buckets(entries: Iterable[TaskBreakdownEntry]) -> dict[str | None, _Bucket]:
    names: dict[str, str] = {}
    for entry in entries:
        ref = entry.preferred_staff
        if isinstance(ref, StaffRef):
            names.setdefault(ref.staff_id, ref.staff_name)

    by_name: dict[str, list[str]] = {}
    for staff_id, name in names.items():
        by_name.setdefault(name.casefold(), []).append(staff_id)

    buckets: dict[str | None, _Bucket] = {}
    for staff_id, name in names.items():
        clashes = len(by_name[name.casefold()]) > 1 or name.casefold() == UNASSIGNED_LABEL.casefold()
        label = f"{name} ({staff_id})" if clashes else name
        buckets[staff_id] = _Bucket(
            label=label,
            sort_key=(0, name.casefold(), staff_id),
            staff_id=staff_id,
            staff_name=name,
        )
    buckets[None] = _Bucket(label=UNASSIGNED_LABEL, sort_key=(1, "", ""), is_unassigned=True)
    return buckets


def _entry_bucket(
    entry: TaskBreakdownEntry,
    strategy: AggregationStrategy,
    staff_buckets: dict[str | None, _Bucket],
) -> _Bucket:
    if strategy is AggregationStrategy.STAFF_BASED:
        return staff_buckets[entry.preferred_staff_id]
    return _Bucket(label=entry.skill_type, sort_key=(0, entry.skill_type.casefold(), entry.skill_type))


def _point(
    bucket: _Bucket,
    column: MonthColumn,
    entries: tuple[TaskBreakdownEntry, ...],
    strategy: AggregationStrategy,
) -> SkillDataPoint:
    staff_based = strategy is AggregationStrategy.STAFF_BASED
    return SkillDataPoint(
        skill_type=bucket.label,
        month=column.key,
        month_label=column.label,
        demand_hours=ZERO,
        task_count=0,
        client_count=0,
        task_breakdown=(),
        is_staff_specific=staff_based and not bucket.is_unassigned,
        actual_staff_name=bucket.staff_name,
        actual_staff_id=bucket.staff_id,
        is_unassigned=staff_based and bucket.is_unassigned,
    ).with_breakdown(entries)


def assemble_matrix(
    skills: Sequence[str],
    months: Sequence[MonthColumn],
    data_points: Sequence[SkillDataPoint],
    strategy: AggregationStrategy,
    grouping: MatrixGrouping = MatrixGrouping.SKILL,
) -> DemandMatrixData:
    """Matrix with totals, client totals and fee rates recomputed from ``data_points``."""

    task_ids: set[str] = set()
    client_hours: dict[str, Decimal] = {}
    client_revenue: dict[str, Decimal] = {}
    fee_rates: dict[str, Decimal] = {}
    for point in data_points:
        for entry in point.task_breakdown:
            task_ids.add(entry.recurring_task_id)
            client_hours[entry.client_id] = client_hours.get(entry.client_id, ZERO) + entry.monthly_hours
            client_revenue[entry.client_id] = client_revenue.get(entry.client_id, ZERO) + entry.suggested_revenue
            fee_rates.setdefault(entry.skill_type, entry.fee_rate)
    return DemandMatrixData(
        skills=tuple(skills),
        months=tuple(months),
        data_points=tuple(data_points),
        aggregation_strategy=strategy,
        total_demand=q2(sum((point.demand_hours for point in data_points), ZERO)),
        total_tasks=len(task_ids),
        total_clients=len(client_hours),
        grouping=grouping,
        total_suggested_revenue=q2(sum((point.suggested_revenue for point in data_points), ZERO)),
        client_totals=tuple((client_id, q2(client_hours[client_id])) for client_id in sorted(client_hours)),
        client_suggested_revenue=tuple(
            (client_id, q2(client_revenue[client_id])) for client_id in sorted(client_revenue)
        ),
        skill_fee_rates=tuple(sorted(fee_rates.items(), key=lambda item: (item[0].casefold(), item[0]))),
    )


def build_matrix(
    breakdowns: Iterable[TaskBreakdownEntry],
    strategy: AggregationStrategy,
    months: Sequence[MonthColumn],
) -> BuildResult:
    """Aggregate ``breakdowns`` into a matrix over ``months``.

    Deterministic for identical inputs. Entries outside the month window are
    dropped and reported as validation issues.
    """

    entries = list(breakdowns)
    columns = {column.key: index for index, column in enumerate(months)}
    staff_buckets = _staff_buckets(entries) if strategy is AggregationStrategy.STAFF_BASED else {}

    issues: list[str] = []
    cells: dict[tuple[str, str], list[TaskBreakdownEntry]] = {}
    buckets: dict[str, _Bucket] = {}
    for entry in entries:
        if entry.month not in columns:
            issues.append(
                f"Recurring task {entry.recurring_task_id} allocates hours to {entry.month}, "
                "outside the matrix window."
            )
            continue
        bucket = _entry_bucket(entry, strategy, staff_buckets)
        buckets.setdefault(bucket.label, bucket)
        cells.setdefault((bucket.label, entry.month), []).append(entry)

    ordered = sorted(buckets.values(), key=lambda bucket: bucket.sort_key)
    data_points = [
        _point(bucket, column, tuple(cells[(bucket.label, column.key)]), strategy)
        for bucket in ordered
        for column in months
        if (bucket.label, column.key) in cells
    ]
    matrix = assemble_matrix([bucket.label for bucket in ordered], months, data_points, strategy)
    issues.extend(validate_matrix(matrix))
    if issues:
        logger.info("Built %s matrix with %d validation issue(s)", strategy.value, len(issues))
    return BuildResult(matrix=matrix, validation_issues=tuple(issues))


def validate_matrix(matrix: DemandMatrixData) -> list[str]:
    """Re-check cell and total invariants; never raises."""

    issues: list[str] = []
    month_keys = {column.key for column in matrix.months}
    skills = set(matrix.skills)
    task_ids: set[str] = set()
    client_ids: set[str] = set()
    total = ZERO
    revenue = ZERO

    for point in matrix.data_points:
        cell = f"{point.skill_type}/{point.month}"
        if point.month not in month_keys:
            issues.append(f"Data point {cell} is outside the matrix months.")
        if point.skill_type not in skills:
            issues.append(f"Data point {cell} is not listed in the matrix rows.")
        expected_hours = q2(sum((entry.monthly_hours for entry in point.task_breakdown), ZERO))
        if point.demand_hours != expected_hours:
            issues.append(f"Data point {cell} demand hours {point.demand_hours} != breakdown sum {expected_hours}.")
        expected_revenue = q2(sum((entry.suggested_revenue for entry in point.task_breakdown), ZERO))
        if point.suggested_revenue != expected_revenue:
            issues.append(
                f"Data point {cell} suggested revenue {point.suggested_revenue} != breakdown sum {expected_revenue}."
            )
        if point.task_count != len(point.task_breakdown):
            issues.append(f"Data point {cell} task count {point.task_count} != {len(point.task_breakdown)}.")
        unique_clients = {entry.client_id for entry in point.task_breakdown}
        if point.client_count != len(unique_clients):
            issues.append(f"Data point {cell} client count {point.client_count} != {len(unique_clients)}.")
        for entry in point.task_breakdown:
            if entry.monthly_hours < ZERO:
                issues.append(f"Recurring task {entry.recurring_task_id} has negative monthly hours in {cell}.")
            if entry.month != point.month:
                issues.append(f"Recurring task {entry.recurring_task_id} for {entry.month} is filed under {cell}.")
            task_ids.add(entry.recurring_task_id)
            client_ids.add(entry.client_id)
        total += point.demand_hours
        revenue += point.suggested_revenue

    if matrix.total_demand != q2(total):
        issues.append(f"Total demand {matrix.total_demand} != sum of cells {q2(total)}.")
    if matrix.total_suggested_revenue != q2(revenue):
        issues.append(f"Total suggested revenue {matrix.total_suggested_revenue} != sum of cells {q2(revenue)}.")
    if matrix.total_tasks != len(task_ids):
        issues.append(f"Total tasks {matrix.total_tasks} != {len(task_ids)} distinct tasks.")
    if matrix.total_clients != len(client_ids):
        issues.append(f"Total clients {matrix.total_clients} != {len(client_ids)} distinct clients.")
    return issues


def regroup_by_client(matrix: DemandMatrixData) -> DemandMatrixData:
    """Client × month view of ``matrix``; rows are client names."""

    names: dict[str, str] = {}
    cells: dict[tuple[str, str], list[TaskBreakdownEntry]] = {}
    for point in matrix.data_points:
        for entry in point.task_breakdown:
            names.setdefault(entry.client_id, entry.client_name)
            cells.setdefault((entry.client_id, entry.month), []).append(entry)

    name_counts: dict[str, int] = {}
    for name in names.values():
        name_counts[name] = name_counts.get(name, 0) + 1
    labels = {
        client_id: name if name_counts[name] == 1 else f"{name} ({client_id})"
        for client_id, name in names.items()
    }

    ordered = sorted(names, key=lambda client_id: (labels[client_id].casefold(), client_id))
    data_points = [
        SkillDataPoint(
            skill_type=labels[client_id],
            month=column.key,
            month_label=column.label,
            demand_hours=ZERO,
            task_count=0,
            client_count=0,
            task_breakdown=(),
        ).with_breakdown(tuple(cells[(client_id, column.key)]))
        for client_id in ordered
        for column in matrix.months
        if (client_id, column.key) in cells
    ]
    return assemble_matrix(
        [labels[client_id] for client_id in ordered],
        matrix.months,
        data_points,
        matrix.aggregation_strategy,
        grouping=MatrixGrouping.CLIENT,
    )


def summarize_buckets(matrix: DemandMatrixData) -> list[BucketSummary]:
    """Per-row totals across all months, in row order."""

    summaries: list[BucketSummary] = []
    for label in matrix.skills:
        points = [point for point in matrix.data_points if point.skill_type == label]
        entries = [entry for point in points for entry in point.task_breakdown]
        summaries.append(
            BucketSummary(
                label=label,
                total_hours=q2(sum((point.demand_hours for point in points), ZERO)),
                task_count=len({entry.recurring_task_id for entry in entries}),
                client_count=len({entry.client_id for entry in entries}),
                suggested_revenue=q2(sum((point.suggested_revenue for point in points), ZERO)),
            )
        )
    return summaries


def find_cell(matrix: DemandMatrixData, key: str, month_key: str) -> SkillDataPoint | None:
    """Cell for row ``key`` in ``month_key``; staff rows also match by staff id."""

    normalized = key.strip().lower()
    for point in matrix.data_points:
        if point.month != month_key:
            continue
        if point.skill_type == key or (point.actual_staff_id is not None and point.actual_staff_id == normalized):
            return point
    return None


def get_cell_detail(matrix: DemandMatrixData, key: str, month_key: str) -> tuple[TaskBreakdownEntry, ...]:
    """Breakdown entries behind one cell; empty when the cell does not exist."""

    point = find_cell(matrix, key, month_key)
    if point is None:
        return ()
    return point.task_breakdown
