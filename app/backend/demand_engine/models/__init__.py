"""ORM model package."""

from demand_engine.models.entities import (
    Client,
    RecurrenceType,
    RecurringTask,
    Skill,
    StaffMember,
)

__all__ = [
    "Client",
    "RecurrenceType",
    "RecurringTask",
    "Skill",
    "StaffMember",
]
