"""Load orchestration: directory fetch, build, consistency check and filtering.

``DemandMatrixLoader`` runs one load per request token, retrying transient
failures with exponential backoff. Responses whose token is no longer the
latest are discarded. ``DebouncedLoadQueue`` sits in front of a loader and
coalesces bursts of filter changes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Literal

from demand_engine.core.errors import (
    AggregationConsistencyError,
    DemandMatrixError,
    ExtractionError,
    LoadError,
)
from demand_engine.core.observability import (
    CONSISTENCY_MISMATCH,
    LOAD_RETRY_SCHEDULED,
    STALE_RESPONSE_DISCARDED,
    MatrixEventSink,
    default_sink,
)
from demand_engine.services.breakdown_extractor import extract_breakdowns
from demand_engine.services.directories import DemandDirectory
from demand_engine.services.matrix_builder import build_matrix, regroup_by_client
from demand_engine.services.matrix_cache import MatrixCacheController, fingerprint_sources
from demand_engine.services.matrix_filter import filter_matrix
from demand_engine.services.matrix_types import (
    DEFAULT_FEE_RATE,
    AggregationStrategy,
    BuildResult,
    FilterState,
    LoadedMatrix,
    MatrixGrouping,
    MonthColumn,
    TaskBreakdownEntry,
)
from demand_engine.services.recurrence import first_of_month, month_window
from demand_engine.services.strategy import select_strategy

logger = logging.getLogger(__name__)

Builder = Callable[[Sequence[TaskBreakdownEntry], AggregationStrategy, Sequence[MonthColumn]], BuildResult]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class LoadRequest:
    filter_state: FilterState
    token: int
    start_month: date | None = None
    months: int | None = None


class DemandMatrixLoader:
    def __init__(
        self,
        directory: DemandDirectory,
        cache: MatrixCacheController,
        *,
        months: int = 12,
        grouping: MatrixGrouping = MatrixGrouping.SKILL,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        sleep: Sleep = asyncio.sleep,
        today: Callable[[], date] = date.today,
        builder: Builder = build_matrix,
        on_error: Literal["skip", "abort"] = "skip",
        default_fee_rate: Decimal = DEFAULT_FEE_RATE,
        events: MatrixEventSink | None = None,
    ) -> None:
        self.directory = directory
        self.cache = cache
        self.months = months
        self.grouping = grouping
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.sleep = sleep
        self.today = today
        self.builder = builder
        self.on_error = on_error
        self.default_fee_rate = default_fee_rate
        self.events = events or default_sink()
        self.retry_count = 0
        self._latest_token = 0

    @property
    def latest_token(self) -> int:
        return self._latest_token

    def submit(
        self,
        filter_state: FilterState,
        *,
        start_month: date | None = None,
        months: int | None = None,
    ) -> LoadRequest:
        """Capture ``filter_state`` under a new token; older tokens become stale."""

        self._latest_token += 1
        return LoadRequest(filter_state=filter_state, token=self._latest_token, start_month=start_month, months=months)

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base * 2**attempt, self.backoff_max)

    def window(self, request: LoadRequest) -> list[date]:
        start = first_of_month(request.start_month or self.today())
        return month_window(start, request.months or self.months)

    async def load(self, filter_state: FilterState, **window: object) -> LoadedMatrix | None:
        return await self.load_with_retry(self.submit(filter_state, **window))

    async def load_with_retry(self, request: LoadRequest) -> LoadedMatrix | None:
        """Run the load, retrying ``LoadError`` and ``ExtractionError`` with backoff.

        Returns ``None`` when a newer request was submitted while this one was
        in flight; a superseded request stops retrying and never raises its
        ``LoadError``. ``AggregationConsistencyError`` is raised without retrying.
        """

        attempt = 0
        while True:
            try:
                loaded = await self._load_once(request)
            except (LoadError, ExtractionError) as exc:
                if self._is_stale(request):
                    return None
                if attempt + 1 >= self.max_attempts:
                    logger.error("Demand matrix load failed after %d attempt(s): %s", attempt + 1, exc.message)
                    self.retry_count = 0
                    raise
                delay = self.backoff_delay(attempt)
                attempt += 1
                self.retry_count = attempt
                logger.warning("Demand matrix load failed (%s); retry %d in %.1fs", exc.message, attempt, delay)
                self.events.emit(LOAD_RETRY_SCHEDULED, attempt=attempt, delay=delay, error=type(exc).__name__)
                await self.sleep(delay)
                continue
            self.retry_count = 0
            break

        if self._is_stale(request):
            return None
        return loaded

    def _is_stale(self, request: LoadRequest) -> bool:
        if request.token == self._latest_token:
            return False
        self.events.emit(STALE_RESPONSE_DISCARDED, token=request.token, latest=self._latest_token)
        logger.debug("Discarding demand matrix for stale token %d", request.token)
        return True

    async def _load_once(self, request: LoadRequest) -> LoadedMatrix:
        tasks = await self.directory.list_recurring_tasks()
        staff = await self.directory.list_preferred_staff()
        skills = await self.directory.list_skills()
        clients = await self.directory.list_clients()

        months = self.window(request)
        extraction = extract_breakdowns(
            tasks,
            months,
            skills=skills,
            clients=clients,
            staff=staff,
            on_error=self.on_error,
            default_fee_rate=self.default_fee_rate,
        )
        columns = [MonthColumn.from_date(month) for month in months]
        strategy = select_strategy(request.filter_state)
        self.cache.observe_strategy(strategy)
        fingerprint = fingerprint_sources(tasks, months, skills=skills, clients=clients, staff=staff)

        def build() -> BuildResult:
            return self.builder(extraction.entries, strategy, columns)

        result = self.cache.get_or_build(strategy, fingerprint, build)
        if result.matrix.aggregation_strategy is not strategy:
            actual = result.matrix.aggregation_strategy
            logger.warning("Built %s matrix while %s was selected; rebuilding", actual.value, strategy.value)
            self.events.emit(CONSISTENCY_MISMATCH, expected=strategy.value, actual=actual.value)
            self.cache.request_invalidation("aggregation strategy mismatch")
            result = build()
            if result.matrix.aggregation_strategy is not strategy:
                raise AggregationConsistencyError(strategy.value, result.matrix.aggregation_strategy.value)
            self.cache.store(strategy, fingerprint, result)

        full = result.matrix
        if self.grouping is MatrixGrouping.CLIENT:
            full = regroup_by_client(full)
        view = filter_matrix(full, request.filter_state, events=self.events)
        return LoadedMatrix(
            full=full,
            view=view,
            strategy=strategy,
            validation_issues=extraction.validation_issues + result.validation_issues,
            token=request.token,
        )


class DebouncedLoadQueue:
    """Coalesce rapid filter changes; only the latest result reaches ``on_result``.

    A request still waiting out the debounce is cancelled by the next one.
    Loads already in flight run to completion and are discarded by token.
    """

    def __init__(
        self,
        loader: DemandMatrixLoader,
        *,
        debounce_seconds: float = 0.8,
        on_result: Callable[[LoadedMatrix], None] | None = None,
        on_error: Callable[[DemandMatrixError], None] | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.loader = loader
        self.debounce_seconds = debounce_seconds
        self.on_result = on_result
        self.on_error = on_error
        self.sleep = sleep
        self._waiting: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()

    def request(self, filter_state: FilterState, **window: object) -> None:
        if self._waiting is not None and not self._waiting.done():
            self._waiting.cancel()
        task = asyncio.get_running_loop().create_task(self._run(filter_state, window))
        self._waiting = task
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run(self, filter_state: FilterState, window: dict[str, object]) -> None:
        await self.sleep(self.debounce_seconds)
        # Past the debounce; this load is no longer cancellable.
        if self._waiting is asyncio.current_task():
            self._waiting = None
        request = self.loader.submit(filter_state, **window)
        try:
            loaded = await self.loader.load_with_retry(request)
        except DemandMatrixError as exc:
            if self.on_error is None:
                raise
            self.on_error(exc)
            return
        if loaded is not None and self.on_result is not None:
            self.on_result(loaded)

    async def drain(self) -> None:
        """Wait for every pending and in-flight load."""

        while self._in_flight:
            results = await asyncio.gather(*list(self._in_flight), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                    raise result
