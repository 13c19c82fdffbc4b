"""Recurrence rules: which months a recurring task lands in, and how often."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

from demand_engine.models.entities import RecurrenceType
from demand_engine.services.matrix_types import ZERO, RecurrenceRule

ONE = Decimal("1")
DAILY_OCCURRENCES_PER_MONTH = Decimal("30")
AVERAGE_DAYS_PER_MONTH = Decimal("30.44")
LEGACY_WEEKS_PER_MONTH = Decimal("4.33")
DAYS_PER_WEEK = Decimal("7")

WEEKDAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


def first_of_month(value: date) -> date:
    return date(value.year, value.month, 1)


def months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def month_sequence(start_month: date, end_month: date) -> list[date]:
    current = first_of_month(start_month)
    end = first_of_month(end_month)
    months: list[date] = []
    while current <= end:
        months.append(current)
        if current.month == 12:
            current = date(current.year + 1, 1, 1)
        else:
            current = date(current.year, current.month + 1, 1)
    return months


def month_window(start_month: date, count: int) -> list[date]:
    """``count`` consecutive months starting at ``start_month``."""

    start = first_of_month(start_month)
    end_index = start.month - 1 + count - 1
    end = date(start.year + end_index // 12, end_index % 12 + 1, 1)
    return month_sequence(start, end)


def valid_weekdays(weekdays: tuple[int, ...]) -> tuple[int, ...]:
    unique = {day for day in weekdays if isinstance(day, int) and not isinstance(day, bool) and 0 <= day <= 6}
    return tuple(sorted(unique))


def _custom_anchor(rule: RecurrenceRule) -> date | None:
    if rule.anchor_date is None:
        return None
    return rule.anchor_date + timedelta(days=rule.custom_offset_days or 0)


def _quarter_anchor(rule: RecurrenceRule, month: date) -> date | None:
    """Quarter phase: ``month_of_year`` when set, otherwise the anchor date's month."""

    if rule.month_of_year is None:
        return rule.anchor_date
    year = rule.anchor_date.year if rule.anchor_date is not None else month.year
    return date(year, rule.month_of_year, 1)


def _due_every(anchor: date | None, month: date, period_months: int) -> Decimal:
    if anchor is None:
        return ZERO
    return ONE if months_between(first_of_month(anchor), month) % period_months == 0 else ZERO


def monthly_occurrences(rule: RecurrenceRule, month: date) -> Decimal:
    """Occurrences of ``rule`` in ``month``; zero when the task is not due."""

    month = first_of_month(month)
    if rule.end_date is not None and month > first_of_month(rule.end_date):
        return ZERO

    interval = Decimal(rule.interval)
    kind = rule.recurrence_type

    if kind is RecurrenceType.DAILY:
        return DAILY_OCCURRENCES_PER_MONTH / interval

    if kind is RecurrenceType.WEEKLY:
        weekdays = valid_weekdays(rule.weekdays)
        if weekdays:
            return Decimal(len(weekdays)) * AVERAGE_DAYS_PER_MONTH / DAYS_PER_WEEK / interval
        return LEGACY_WEEKS_PER_MONTH / interval

    if kind is RecurrenceType.MONTHLY:
        if rule.anchor_date is None:
            return ONE / interval
        return _due_every(rule.anchor_date, month, rule.interval)

    if kind is RecurrenceType.QUARTERLY:
        return _due_every(_quarter_anchor(rule, month), month, 3 * rule.interval)

    if kind is RecurrenceType.ANNUALLY:
        target_month = rule.month_of_year or (rule.anchor_date.month if rule.anchor_date else None)
        if target_month is None or month.month != target_month:
            return ZERO
        if rule.anchor_date is not None and (month.year - rule.anchor_date.year) % rule.interval != 0:
            return ZERO
        return ONE

    if kind is RecurrenceType.CUSTOM:
        return _due_every(_custom_anchor(rule), month, rule.interval)

    return ZERO


def describe_recurrence(rule: RecurrenceRule) -> str:
    interval = rule.interval
    kind = rule.recurrence_type

    if kind is RecurrenceType.DAILY:
        return "Every day" if interval == 1 else f"Every {interval} days"

    if kind is RecurrenceType.WEEKLY:
        cadence = "every week" if interval == 1 else f"every {interval} weeks"
        weekdays = valid_weekdays(rule.weekdays)
        if not weekdays:
            return cadence.capitalize()
        return f"{', '.join(WEEKDAY_NAMES[day] for day in weekdays)} {cadence}"

    if kind is RecurrenceType.MONTHLY:
        return "Every month" if interval == 1 else f"Every {interval} months"

    if kind is RecurrenceType.QUARTERLY:
        target_month = rule.month_of_year or (rule.anchor_date.month if rule.anchor_date else None)
        if target_month is None:
            return "Every quarter(s)"
        month_name = MONTH_NAMES[target_month - 1]
        if interval == 2:
            return f"Semi-annually in {month_name}"
        if interval == 4:
            return f"Annually in {month_name}"
        if interval == 1:
            return f"Quarterly in {month_name}"
        return f"Every {interval} quarters in {month_name}"

    if kind is RecurrenceType.ANNUALLY:
        target_month = rule.month_of_year or (rule.anchor_date.month if rule.anchor_date else None)
        suffix = f" in {MONTH_NAMES[target_month - 1]}" if target_month else ""
        cadence = "Annually" if interval == 1 else f"Every {interval} years"
        return f"{cadence}{suffix}"

    offset = rule.custom_offset_days or 0
    return f"Every {interval} month(s), offset {offset} day(s)"
