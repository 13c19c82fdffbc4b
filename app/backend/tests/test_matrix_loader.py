from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from demand_engine.core.errors import AggregationConsistencyError, LoadError
from demand_engine.core.observability import (
    CONSISTENCY_MISMATCH,
    INVALIDATION_BLOCKED,
    LOAD_RETRY_SCHEDULED,
    STALE_RESPONSE_DISCARDED,
)
from demand_engine.models.entities import RecurrenceType
from demand_engine.services.matrix_builder import build_matrix
from demand_engine.services.matrix_cache import MatrixCacheController
from demand_engine.services.matrix_loader import DebouncedLoadQueue, DemandMatrixLoader
from demand_engine.services.matrix_types import (
    AggregationStrategy,
    ClientOption,
    FilterState,
    LoadedMatrix,
    MatrixGrouping,
    PreferredStaffFilterMode,
    RecurrenceRule,
    RecurringTaskSource,
    SkillOption,
    StaffOption,
)

MONTHLY = RecurrenceRule(recurrence_type=RecurrenceType.MONTHLY, anchor_date=date(2026, 1, 1))
STAFF_SELECTION = FilterState(
    selected_preferred_staff=frozenset({"staff-a"}),
    preferred_staff_filter_mode=PreferredStaffFilterMode.SPECIFIC,
)


class FakeDirectory:
    """In-memory directory that can fail a given number of task fetches."""

    def __init__(self, *, failures: int = 0) -> None:
        self.failures = failures
        self.task_calls = 0
        self.tasks = [
            RecurringTaskSource(
                id="t-1",
                client_id="c-1",
                name="Monthly payroll",
                skill="Payroll",
                estimated_hours=Decimal("4"),
                recurrence=MONTHLY,
                preferred_staff_id="staff-a",
            ),
            RecurringTaskSource(
                id="t-2",
                client_id="c-2",
                name="Bookkeeping",
                skill="Bookkeeping",
                estimated_hours=Decimal("6"),
                recurrence=MONTHLY,
            ),
        ]

    async def list_recurring_tasks(self) -> list[RecurringTaskSource]:
        self.task_calls += 1
        if self.failures:
            self.failures -= 1
            raise LoadError("recurring tasks", "connection reset")
        return list(self.tasks)

    async def list_preferred_staff(self) -> list[StaffOption]:
        return [StaffOption(id="staff-a", name="Alice Smith")]

    async def list_skills(self) -> list[SkillOption]:
        return [SkillOption(id="s-1", name="Payroll"), SkillOption(id="s-2", name="Bookkeeping")]

    async def list_clients(self) -> list[ClientOption]:
        return [ClientOption(id="c-1", name="Acme Corp"), ClientOption(id="c-2", name="Beta LLC")]


def _loader(directory, clock, sleep, events, **kwargs) -> DemandMatrixLoader:
    cache = kwargs.pop("cache") if "cache" in kwargs else MatrixCacheController(clock=clock, events=events)
    return DemandMatrixLoader(
        directory,
        cache,
        months=2,
        sleep=sleep,
        today=lambda: date(2026, 1, 10),
        events=events,
        **kwargs,
    )


def test_single_failure_retries_once_after_one_second(clock, fake_sleep, events) -> None:
    directory = FakeDirectory(failures=1)
    loader = _loader(directory, clock, fake_sleep, events)

    loaded = asyncio.run(loader.load(FilterState()))

    assert loaded is not None
    assert fake_sleep.delays == [1.0]
    assert loader.retry_count == 0
    assert directory.task_calls == 2
    assert [event.fields["attempt"] for event in events.named(LOAD_RETRY_SCHEDULED)] == [1]


def test_backoff_delay_doubles_and_caps(clock, fake_sleep, events) -> None:
    loader = _loader(FakeDirectory(), clock, fake_sleep, events)

    assert [loader.backoff_delay(attempt) for attempt in range(7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_exhausted_retries_raise_last_load_error(clock, fake_sleep, events) -> None:
    directory = FakeDirectory(failures=5)
    loader = _loader(directory, clock, fake_sleep, events, max_attempts=3)

    with pytest.raises(LoadError):
        asyncio.run(loader.load(FilterState()))

    assert fake_sleep.delays == [1.0, 2.0]
    assert directory.task_calls == 3
    assert loader.retry_count == 0


def test_superseded_request_stops_retrying_quietly(clock, events) -> None:
    directory = FakeDirectory(failures=5)
    delays: list[float] = []
    loader = _loader(directory, clock, None, events, max_attempts=5)

    async def sleep_then_supersede(delay: float) -> None:
        delays.append(delay)
        loader.submit(FilterState())

    loader.sleep = sleep_then_supersede
    request = loader.submit(STAFF_SELECTION)

    result = asyncio.run(loader.load_with_retry(request))

    assert result is None
    assert delays == [1.0]
    assert directory.task_calls == 2
    assert len(events.named(STALE_RESPONSE_DISCARDED)) == 1


def test_superseded_request_does_not_raise_its_last_error(clock, fake_sleep, events) -> None:
    directory = FakeDirectory(failures=1)
    loader = _loader(directory, clock, fake_sleep, events, max_attempts=1)
    request = loader.submit(FilterState())
    loader.submit(STAFF_SELECTION)

    assert asyncio.run(loader.load_with_retry(request)) is None
    assert fake_sleep.delays == []


def test_load_builds_full_and_filtered_views(clock, fake_sleep, events) -> None:
    loader = _loader(FakeDirectory(), clock, fake_sleep, events)

    loaded = asyncio.run(loader.load(STAFF_SELECTION))

    assert loaded.strategy is AggregationStrategy.STAFF_BASED
    assert loaded.full.skills == ("Alice Smith", "Unassigned")
    assert loaded.full.total_demand == Decimal("20.00")
    assert loaded.view.skills == ("Alice Smith",)
    assert loaded.view.total_demand == Decimal("8.00")
    assert [column.key for column in loaded.view.months] == ["2026-01", "2026-02"]
    assert loaded.validation_issues == ()


def test_stale_response_is_discarded(clock, fake_sleep, events) -> None:
    loader = _loader(FakeDirectory(), clock, fake_sleep, events)
    first = loader.submit(FilterState())
    second = loader.submit(STAFF_SELECTION)

    async def run() -> tuple[LoadedMatrix | None, LoadedMatrix | None]:
        return await loader.load_with_retry(first), await loader.load_with_retry(second)

    stale, latest = asyncio.run(run())

    assert stale is None
    assert latest is not None
    assert latest.token == second.token == loader.latest_token
    assert latest.strategy is AggregationStrategy.STAFF_BASED
    assert len(events.named(STALE_RESPONSE_DISCARDED)) == 1


def test_persistent_strategy_mismatch_raises_without_retry(clock, fake_sleep, events) -> None:
    def skill_only_builder(entries, strategy, months):
        return build_matrix(entries, AggregationStrategy.SKILL_BASED, months)

    loader = _loader(FakeDirectory(), clock, fake_sleep, events, builder=skill_only_builder)

    with pytest.raises(AggregationConsistencyError) as exc_info:
        asyncio.run(loader.load(STAFF_SELECTION))

    assert exc_info.value.expected == "staff-based"
    assert fake_sleep.delays == []
    assert len(events.named(CONSISTENCY_MISMATCH)) == 1


def test_mismatched_cache_entry_is_rebuilt_once(clock, fake_sleep, events) -> None:
    cache = MatrixCacheController(clock=clock, events=events)
    loader = _loader(FakeDirectory(), clock, fake_sleep, events, cache=cache)
    warm = asyncio.run(loader.load(FilterState()))
    fingerprint = next(iter(cache._entries))[1]
    # Trip the breaker so the strategy change cannot clear the poisoned entry.
    cache.request_invalidation("manual refresh")
    cache.store(AggregationStrategy.STAFF_BASED, fingerprint, build_matrix([], AggregationStrategy.SKILL_BASED, []))

    loaded = asyncio.run(loader.load(STAFF_SELECTION))

    assert warm is not None
    assert loaded.full.aggregation_strategy is AggregationStrategy.STAFF_BASED
    assert len(events.named(CONSISTENCY_MISMATCH)) == 1
    assert len(events.named(INVALIDATION_BLOCKED)) == 2
    assert cache.get(AggregationStrategy.STAFF_BASED, fingerprint).matrix.aggregation_strategy is (
        AggregationStrategy.STAFF_BASED
    )


def test_client_grouping_regroups_rows(clock, fake_sleep, events) -> None:
    loader = _loader(FakeDirectory(), clock, fake_sleep, events, grouping=MatrixGrouping.CLIENT)

    loaded = asyncio.run(loader.load(FilterState(selected_clients=frozenset({"c-2"}))))

    assert loaded.full.grouping is MatrixGrouping.CLIENT
    assert loaded.full.skills == ("Acme Corp", "Beta LLC")
    assert loaded.view.skills == ("Beta LLC",)
    assert loaded.view.total_demand == Decimal("12.00")


def test_debounced_queue_delivers_only_latest_request(clock, fake_sleep, events) -> None:
    directory = FakeDirectory()
    loader = _loader(directory, clock, fake_sleep, events)
    results: list[LoadedMatrix] = []

    async def run() -> None:
        queue = DebouncedLoadQueue(loader, debounce_seconds=0.01, on_result=results.append)
        queue.request(FilterState())
        queue.request(FilterState(preferred_staff_filter_mode=PreferredStaffFilterMode.NONE))
        queue.request(STAFF_SELECTION)
        await queue.drain()

    asyncio.run(run())

    assert len(results) == 1
    assert results[0].strategy is AggregationStrategy.STAFF_BASED
    assert directory.task_calls == 1
