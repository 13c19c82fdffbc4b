"""Turn recurring task definitions into per-month breakdown entries."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Literal

from demand_engine.core.errors import ExtractionError
from demand_engine.services.matrix_types import (
    DEFAULT_FEE_RATE,
    UNASSIGNED,
    ZERO,
    ClientOption,
    PreferredStaffRef,
    RecurringTaskSource,
    SkillOption,
    StaffOption,
    StaffRef,
    TaskBreakdownEntry,
    normalize_staff_id,
    q2,
)
from demand_engine.services.recurrence import describe_recurrence, monthly_occurrences

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    entries: tuple[TaskBreakdownEntry, ...]
    validation_issues: tuple[str, ...] = ()


def _skill_key(value: str) -> str:
    return value.strip().casefold()


class SkillIndex:
    """Resolves a task's skill reference given either the skill id or its name."""

    def __init__(self, skills: Iterable[SkillOption]) -> None:
        self.by_id: dict[str, SkillOption] = {}
        self.by_name: dict[str, SkillOption] = {}
        for skill in skills:
            self.by_id[_skill_key(skill.id)] = skill
            self.by_name.setdefault(_skill_key(skill.name), skill)

    def resolve(self, reference: str) -> SkillOption | None:
        key = _skill_key(reference)
        return self.by_id.get(key) or self.by_name.get(key)


def _validate_task(task: RecurringTaskSource) -> None:
    if task.estimated_hours < ZERO:
        raise ExtractionError(task.id, "estimated hours must be greater or equal zero")
    rule = task.recurrence
    if rule.interval < 1:
        raise ExtractionError(task.id, "recurrence interval must be at least 1")
    if rule.month_of_year is not None and not 1 <= rule.month_of_year <= 12:
        raise ExtractionError(task.id, "month_of_year must be between 1 and 12")


def resolve_preferred_staff(
    staff_id: str | None,
    staff_by_id: dict[str, StaffOption],
) -> tuple[PreferredStaffRef, str | None]:
    """Resolve a raw preferred staff id once; returns the reference and an optional issue."""

    if staff_id is None or not str(staff_id).strip():
        return UNASSIGNED, None
    normalized = normalize_staff_id(staff_id)
    staff = staff_by_id.get(normalized)
    if staff is None:
        return (
            StaffRef(staff_id=normalized, staff_name=f"Unknown staff ({normalized})"),
            f"Preferred staff {normalized} is not in the staff directory.",
        )
    return StaffRef(staff_id=normalized, staff_name=staff.name), None


def extract_task(
    task: RecurringTaskSource,
    months: Sequence[date],
    *,
    skill_index: SkillIndex,
    client_names: dict[str, str],
    staff_by_id: dict[str, StaffOption],
    default_fee_rate: Decimal = DEFAULT_FEE_RATE,
) -> tuple[list[TaskBreakdownEntry], str | None]:
    """Entries for one task across ``months``.

    Raises ``ExtractionError`` for malformed records and dangling skill or
    client references. Skills without a fee rate are priced at
    ``default_fee_rate``.
    """

    _validate_task(task)
    skill = skill_index.resolve(task.skill)
    if skill is None:
        raise ExtractionError(task.id, f"unknown skill '{task.skill}'")
    client_name = client_names.get(task.client_id)
    if client_name is None:
        raise ExtractionError(task.id, f"unknown client '{task.client_id}'")

    preferred_staff, staff_issue = resolve_preferred_staff(task.preferred_staff_id, staff_by_id)
    if not task.is_active:
        return [], staff_issue

    pattern = describe_recurrence(task.recurrence)
    fee_rate = skill.fee_rate if skill.fee_rate is not None else default_fee_rate
    entries: list[TaskBreakdownEntry] = []
    for month in months:
        occurrences = monthly_occurrences(task.recurrence, month)
        if occurrences <= ZERO:
            continue
        monthly_hours = q2(task.estimated_hours * occurrences)
        if monthly_hours <= ZERO:
            continue
        entries.append(
            TaskBreakdownEntry(
                client_id=task.client_id,
                client_name=client_name,
                recurring_task_id=task.id,
                task_name=task.name,
                skill_type=skill.name.strip(),
                estimated_hours=task.estimated_hours,
                monthly_hours=monthly_hours,
                recurrence_pattern=pattern,
                month=month.strftime("%Y-%m"),
                preferred_staff=preferred_staff,
                fee_rate=fee_rate,
                suggested_revenue=q2(monthly_hours * fee_rate),
            )
        )
    return entries, staff_issue


def extract_breakdowns(
    tasks: Iterable[RecurringTaskSource],
    months: Sequence[date],
    *,
    skills: Iterable[SkillOption],
    clients: Iterable[ClientOption],
    staff: Iterable[StaffOption],
    on_error: Literal["skip", "abort"] = "skip",
    default_fee_rate: Decimal = DEFAULT_FEE_RATE,
) -> ExtractionResult:
    skill_index = SkillIndex(skills)
    client_names = {client.id: client.name for client in clients}
    staff_by_id = {normalize_staff_id(member.id): member for member in staff}

    entries: list[TaskBreakdownEntry] = []
    issues: list[str] = []
    for task in tasks:
        try:
            task_entries, staff_issue = extract_task(
                task,
                months,
                skill_index=skill_index,
                client_names=client_names,
                staff_by_id=staff_by_id,
                default_fee_rate=default_fee_rate,
            )
        except ExtractionError as exc:
            if on_error == "abort":
                raise
            logger.warning("Skipping recurring task %s: %s", exc.task_id, exc.reason)
            issues.append(exc.message)
            continue
        if staff_issue:
            issues.append(f"Recurring task {task.id}: {staff_issue}")
        entries.extend(task_entries)

    return ExtractionResult(entries=tuple(entries), validation_issues=tuple(issues))
