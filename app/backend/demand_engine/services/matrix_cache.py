"""Build cache with a rate-limited invalidation circuit breaker.

One ``MatrixCacheController`` belongs to one matrix view. It memoizes build
results by ``(strategy, source fingerprint)``, expires entries after a TTL,
evicts the least recently used entry when full, and allows at most one
invalidation per cooldown window.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import date

from demand_engine.core.observability import (
    CACHE_HIT,
    CACHE_INVALIDATED,
    CACHE_MISS,
    INVALIDATION_BLOCKED,
    STRATEGY_SELECTED,
    MatrixEventSink,
    default_sink,
)
from demand_engine.services.matrix_types import (
    AggregationStrategy,
    BuildResult,
    ClientOption,
    RecurringTaskSource,
    SkillOption,
    StaffOption,
)

logger = logging.getLogger(__name__)

CacheKey = tuple[AggregationStrategy, str]


class CacheState(str, enum.Enum):
    IDLE = "idle"
    INVALIDATING = "invalidating"


@dataclass(frozen=True, slots=True)
class Invalidated:
    reason: str
    cleared_entries: int
    at: float


@dataclass(frozen=True, slots=True)
class CircuitBreakerBlocked:
    """Invalidation was rate-limited; cached data keeps being served."""

    reason: str
    retry_after: float


InvalidationOutcome = Invalidated | CircuitBreakerBlocked


@dataclass(frozen=True, slots=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    invalidations: int
    blocked_invalidations: int


def fingerprint_sources(
    tasks: Iterable[RecurringTaskSource],
    months: Sequence[date],
    *,
    skills: Iterable[SkillOption] = (),
    clients: Iterable[ClientOption] = (),
    staff: Iterable[StaffOption] = (),
) -> str:
    """Stable SHA-256 over everything a build reads."""

    def _task(task: RecurringTaskSource) -> dict[str, object]:
        rule = task.recurrence
        return {
            "id": task.id,
            "client_id": task.client_id,
            "name": task.name,
            "skill": task.skill,
            "hours": str(task.estimated_hours),
            "staff": task.preferred_staff_id,
            "active": task.is_active,
            "type": rule.recurrence_type.value,
            "interval": rule.interval,
            "weekdays": list(rule.weekdays),
            "day_of_month": rule.day_of_month,
            "month_of_year": rule.month_of_year,
            "anchor": rule.anchor_date.isoformat() if rule.anchor_date else None,
            "end": rule.end_date.isoformat() if rule.end_date else None,
            "offset": rule.custom_offset_days,
        }

    payload = {
        "tasks": sorted((_task(task) for task in tasks), key=lambda item: str(item["id"])),
        "months": [month.isoformat() for month in months],
        "skills": sorted([skill.id, skill.name, str(skill.fee_rate)] for skill in skills),
        "clients": sorted([client.id, client.name] for client in clients),
        "staff": sorted([member.id, member.name] for member in staff),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class MatrixCacheController:
    """Owns the cached builds and the breaker timestamp for one matrix view."""

    def __init__(
        self,
        *,
        cooldown_seconds: float = 1.0,
        ttl_seconds: float = 300.0,
        max_entries: int = 10,
        clock: Callable[[], float] = time.monotonic,
        events: MatrixEventSink | None = None,
        name: str = "demand-matrix",
    ) -> None:
        self.cooldown_seconds = cooldown_seconds
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self.events = events or default_sink()
        self.name = name
        self._entries: OrderedDict[CacheKey, tuple[BuildResult, float]] = OrderedDict()
        self._last_strategy: AggregationStrategy | None = None
        self._last_invalidation: float | None = None
        self.state = CacheState.IDLE
        self._hits = 0
        self._misses = 0
        self._invalidations = 0
        self._blocked = 0

    @property
    def last_strategy(self) -> AggregationStrategy | None:
        return self._last_strategy

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        # Truthy even when empty; ``len()`` counts cached entries.
        return True

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, (_, stored_at) in self._entries.items() if now - stored_at > self.ttl_seconds]
        for key in expired:
            del self._entries[key]
            logger.debug("[%s] Expired cache entry %s/%s", self.name, key[0].value, key[1][:12])

    def get(self, strategy: AggregationStrategy, fingerprint: str) -> BuildResult | None:
        key = (strategy, fingerprint)
        cached = self._entries.get(key)
        if cached is None:
            return None
        result, stored_at = cached
        if self.clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return result

    def store(self, strategy: AggregationStrategy, fingerprint: str, result: BuildResult) -> None:
        now = self.clock()
        self._purge_expired(now)
        key = (strategy, fingerprint)
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = (result, now)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("[%s] Evicted least recently used entry %s", self.name, evicted[0].value)

    def get_or_build(
        self,
        strategy: AggregationStrategy,
        fingerprint: str,
        build: Callable[[], BuildResult],
    ) -> BuildResult:
        cached = self.get(strategy, fingerprint)
        if cached is not None:
            self._hits += 1
            self.events.emit(CACHE_HIT, cache=self.name, strategy=strategy.value)
            return cached
        self._misses += 1
        self.events.emit(CACHE_MISS, cache=self.name, strategy=strategy.value)
        result = build()
        self.store(strategy, fingerprint, result)
        return result

    def observe_strategy(self, strategy: AggregationStrategy) -> InvalidationOutcome | None:
        """Record the selected strategy; a change requests an invalidation."""

        previous = self._last_strategy
        self._last_strategy = strategy
        self.events.emit(
            STRATEGY_SELECTED,
            cache=self.name,
            strategy=strategy.value,
            previous=previous.value if previous else None,
        )
        if previous is None or previous is strategy:
            return None
        return self.request_invalidation(f"strategy changed from {previous.value} to {strategy.value}")

    def request_invalidation(self, reason: str) -> InvalidationOutcome:
        now = self.clock()
        if self._last_invalidation is not None:
            elapsed = now - self._last_invalidation
            if elapsed < self.cooldown_seconds:
                self._blocked += 1
                retry_after = self.cooldown_seconds - elapsed
                logger.info(
                    "[%s] Cache invalidation blocked (%s); retry in %.3fs",
                    self.name,
                    reason,
                    retry_after,
                )
                self.events.emit(INVALIDATION_BLOCKED, cache=self.name, reason=reason, retry_after=retry_after)
                return CircuitBreakerBlocked(reason=reason, retry_after=retry_after)

        self.state = CacheState.INVALIDATING
        try:
            cleared = len(self._entries)
            self._entries.clear()
            self._last_invalidation = now
            self._invalidations += 1
        finally:
            self.state = CacheState.IDLE
        logger.info("[%s] Cache invalidated (%s), %d entries cleared", self.name, reason, cleared)
        self.events.emit(CACHE_INVALIDATED, cache=self.name, reason=reason, cleared=cleared)
        return Invalidated(reason=reason, cleared_entries=cleared, at=now)

    def reset(self) -> None:
        self._entries.clear()
        self._last_strategy = None
        self._last_invalidation = None
        self.state = CacheState.IDLE
        logger.info("[%s] Cache controller reset", self.name)

    def stats(self) -> CacheStats:
        return CacheStats(
            size=len(self._entries),
            hits=self._hits,
            misses=self._misses,
            invalidations=self._invalidations,
            blocked_invalidations=self._blocked,
        )
