"""Error taxonomy for demand matrix loading.

Structural problems (``ExtractionError``) are absorbed into validation issues,
correctness problems (``AggregationConsistencyError``) abort a load, and
transient problems (``LoadError``) are retried with backoff before surfacing.
"""

from __future__ import annotations

from typing import Any


class DemandMatrixError(Exception):
    """Base exception for the demand matrix engine."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": type(self).__name__, "message": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


class ExtractionError(DemandMatrixError):
    """Raised for a malformed task record or one with a dangling reference."""

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(
            f"Recurring task {task_id} cannot be extracted: {reason}",
            context={"task_id": task_id, "reason": reason},
        )
        self.task_id = task_id
        self.reason = reason


class AggregationConsistencyError(DemandMatrixError):
    """Raised when the built matrix strategy disagrees with the selected one after a retry."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            f"Demand matrix was built {actual} but {expected} aggregation was expected.",
            context={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class LoadError(DemandMatrixError):
    """Raised when a directory collaborator cannot be reached or fails."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"Failed to load {source}: {reason}", context={"source": source, "reason": reason})
        self.source = source
        self.reason = reason
