"""Structured engine events.

Every component reports through a single ``MatrixEventSink``. The default
sink writes to the ``demand_engine.events`` logger; hosts can plug in any
other collector with the same ``emit`` signature.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

STRATEGY_SELECTED = "strategy_selected"
CACHE_HIT = "cache_hit"
CACHE_MISS = "cache_miss"
CACHE_INVALIDATED = "cache_invalidated"
INVALIDATION_BLOCKED = "invalidation_blocked"
FILTER_APPLIED = "filter_applied"
CONSISTENCY_MISMATCH = "consistency_mismatch"
LOAD_RETRY_SCHEDULED = "load_retry_scheduled"
STALE_RESPONSE_DISCARDED = "stale_response_discarded"


class MatrixEventSink(Protocol):
    def emit(self, event: str, **fields: Any) -> None: ...


class LoggingEventSink:
    """Write events as single log lines with the fields attached as ``extra``."""

    def __init__(self, logger: logging.Logger | None = None, level: int = logging.DEBUG) -> None:
        self.logger = logger or logging.getLogger("demand_engine.events")
        self.level = level

    def emit(self, event: str, **fields: Any) -> None:
        if not self.logger.isEnabledFor(self.level):
            return
        rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        self.logger.log(self.level, "%s %s", event, rendered, extra={"event": event, "fields": fields})


@dataclass
class RecordedEvent:
    name: str
    fields: dict[str, Any]


@dataclass
class RecordingEventSink:
    """Keep events in memory; used by tests and diagnostics endpoints."""

    events: list[RecordedEvent] = field(default_factory=list)

    def emit(self, event: str, **fields: Any) -> None:
        self.events.append(RecordedEvent(name=event, fields=dict(fields)))

    def named(self, event: str) -> list[RecordedEvent]:
        return [recorded for recorded in self.events if recorded.name == event]

    def clear(self) -> None:
        self.events.clear()


def default_sink() -> MatrixEventSink:
    return LoggingEventSink()
