"""Aggregation strategy selection."""

from __future__ import annotations

from demand_engine.services.matrix_types import (
    AggregationStrategy,
    FilterState,
    PreferredStaffFilterMode,
)


def select_strategy(filter_state: FilterState) -> AggregationStrategy:
    """Staff-based only for an explicit, non-empty ``specific`` staff selection."""

    if (
        filter_state.preferred_staff_filter_mode is PreferredStaffFilterMode.SPECIFIC
        and filter_state.selected_preferred_staff
    ):
        return AggregationStrategy.STAFF_BASED
    return AggregationStrategy.SKILL_BASED
