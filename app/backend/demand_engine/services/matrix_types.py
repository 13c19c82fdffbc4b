"""Immutable data model shared by the demand matrix engine."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Literal

from demand_engine.models.entities import RecurrenceType

ZERO = Decimal("0.00")
Q2 = Decimal("0.01")
DEFAULT_FEE_RATE = Decimal("75.00")
UNASSIGNED_LABEL = "Unassigned"


def q2(value: Decimal) -> Decimal:
    return value.quantize(Q2)


def normalize_staff_id(value: object) -> str:
    """Canonical form used for every staff id comparison."""

    return str(value).strip().lower()


class AggregationStrategy(str, enum.Enum):
    SKILL_BASED = "skill-based"
    STAFF_BASED = "staff-based"


class PreferredStaffFilterMode(str, enum.Enum):
    ALL = "all"
    SPECIFIC = "specific"
    NONE = "none"


class MatrixGrouping(str, enum.Enum):
    SKILL = "skill"
    CLIENT = "client"


class Unfiltered:
    """Marker for a dimension with no active filter."""

    _instance: Unfiltered | None = None

    def __new__(cls) -> Unfiltered:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNFILTERED"


UNFILTERED = Unfiltered()

Selection = frozenset[str] | Unfiltered


# ---------- Preferred staff reference ----------
@dataclass(frozen=True, slots=True)
class StaffRef:
    staff_id: str
    staff_name: str
    kind: Literal["staff"] = "staff"


@dataclass(frozen=True, slots=True)
class Unassigned:
    kind: Literal["unassigned"] = "unassigned"


UNASSIGNED = Unassigned()

PreferredStaffRef = StaffRef | Unassigned


# ---------- Directory records ----------
@dataclass(frozen=True, slots=True)
class RecurrenceRule:
    recurrence_type: RecurrenceType
    interval: int = 1
    weekdays: tuple[int, ...] = ()
    day_of_month: int | None = None
    month_of_year: int | None = None
    anchor_date: date | None = None
    end_date: date | None = None
    custom_offset_days: int | None = None


@dataclass(frozen=True, slots=True)
class RecurringTaskSource:
    id: str
    client_id: str
    name: str
    skill: str
    estimated_hours: Decimal
    recurrence: RecurrenceRule
    preferred_staff_id: str | None = None
    is_active: bool = True


@dataclass(frozen=True, slots=True)
class StaffOption:
    id: str
    name: str
    role_title: str | None = None


@dataclass(frozen=True, slots=True)
class ClientOption:
    id: str
    name: str


@dataclass(frozen=True, slots=True)
class SkillOption:
    id: str
    name: str
    fee_rate: Decimal | None = None


# ---------- Matrix ----------
@dataclass(frozen=True, slots=True)
class MonthColumn:
    key: str
    label: str

    @classmethod
    def from_date(cls, month: date) -> MonthColumn:
        return cls(key=month.strftime("%Y-%m"), label=month.strftime("%b %Y"))


@dataclass(frozen=True, slots=True)
class TaskBreakdownEntry:
    client_id: str
    client_name: str
    recurring_task_id: str
    task_name: str
    skill_type: str
    estimated_hours: Decimal
    monthly_hours: Decimal
    recurrence_pattern: str
    month: str
    preferred_staff: PreferredStaffRef = UNASSIGNED
    fee_rate: Decimal = ZERO
    suggested_revenue: Decimal = ZERO

    @property
    def preferred_staff_id(self) -> str | None:
        if isinstance(self.preferred_staff, StaffRef):
            return self.preferred_staff.staff_id
        return None


@dataclass(frozen=True, slots=True)
class SkillDataPoint:
    skill_type: str
    month: str
    month_label: str
    demand_hours: Decimal
    task_count: int
    client_count: int
    task_breakdown: tuple[TaskBreakdownEntry, ...]
    is_staff_specific: bool = False
    actual_staff_name: str | None = None
    actual_staff_id: str | None = None
    is_unassigned: bool = False
    suggested_revenue: Decimal = ZERO

    def with_breakdown(self, entries: tuple[TaskBreakdownEntry, ...]) -> SkillDataPoint:
        """Copy of this cell carrying ``entries`` with aggregates recomputed."""

        return replace(
            self,
            task_breakdown=entries,
            demand_hours=q2(sum((entry.monthly_hours for entry in entries), ZERO)),
            suggested_revenue=q2(sum((entry.suggested_revenue for entry in entries), ZERO)),
            task_count=len(entries),
            client_count=len({entry.client_id for entry in entries}),
        )


@dataclass(frozen=True, slots=True)
class DemandMatrixData:
    skills: tuple[str, ...]
    months: tuple[MonthColumn, ...]
    data_points: tuple[SkillDataPoint, ...]
    aggregation_strategy: AggregationStrategy
    total_demand: Decimal
    total_tasks: int
    total_clients: int
    grouping: MatrixGrouping = MatrixGrouping.SKILL
    total_suggested_revenue: Decimal = ZERO
    # (client_id, value) pairs ordered by client id.
    client_totals: tuple[tuple[str, Decimal], ...] = ()
    client_suggested_revenue: tuple[tuple[str, Decimal], ...] = ()
    # (skill, hourly rate) pairs for the skills present in the matrix.
    skill_fee_rates: tuple[tuple[str, Decimal], ...] = ()

    def iter_entries(self):
        for point in self.data_points:
            yield from point.task_breakdown


@dataclass(frozen=True, slots=True)
class BuildResult:
    matrix: DemandMatrixData
    validation_issues: tuple[str, ...] = ()


# ---------- Filter state ----------
@dataclass(frozen=True, slots=True)
class MonthRange:
    start: int
    end: int


def _toggle(selection: Selection, value: str, available: frozenset[str]) -> frozenset[str]:
    current = available if isinstance(selection, Unfiltered) else selection
    if value in current:
        return current - {value}
    return current | {value}


@dataclass(frozen=True, slots=True)
class FilterState:
    """User selection; every change returns a new state."""

    selected_skills: Selection = UNFILTERED
    selected_clients: Selection = UNFILTERED
    selected_preferred_staff: frozenset[str] = field(default_factory=frozenset)
    month_range: MonthRange | None = None
    preferred_staff_filter_mode: PreferredStaffFilterMode = PreferredStaffFilterMode.ALL

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "selected_preferred_staff",
            frozenset(normalize_staff_id(value) for value in self.selected_preferred_staff),
        )

    def toggle_skill(self, skill: str, available: frozenset[str]) -> FilterState:
        return replace(self, selected_skills=_toggle(self.selected_skills, skill, available))

    def toggle_client(self, client_id: str, available: frozenset[str]) -> FilterState:
        return replace(self, selected_clients=_toggle(self.selected_clients, client_id, available))

    def toggle_preferred_staff(self, staff_id: str) -> FilterState:
        normalized = normalize_staff_id(staff_id)
        if normalized in self.selected_preferred_staff:
            selected = self.selected_preferred_staff - {normalized}
        else:
            selected = self.selected_preferred_staff | {normalized}
        return replace(self, selected_preferred_staff=selected)

    def select_all_skills(self) -> FilterState:
        return replace(self, selected_skills=UNFILTERED)

    def select_all_clients(self) -> FilterState:
        return replace(self, selected_clients=UNFILTERED)

    def with_staff_mode(self, mode: PreferredStaffFilterMode) -> FilterState:
        return replace(self, preferred_staff_filter_mode=mode)

    def with_month_range(self, start: int, end: int) -> FilterState:
        return replace(self, month_range=MonthRange(start=start, end=end))

    def reset(self) -> FilterState:
        return FilterState()


@dataclass(frozen=True, slots=True)
class LoadedMatrix:
    full: DemandMatrixData
    view: DemandMatrixData
    strategy: AggregationStrategy
    validation_issues: tuple[str, ...]
    token: int
