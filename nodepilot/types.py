"""Type definitions for the project."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypedDict, TypeVar

T = TypeVar("T")


class ScoreBreakdown(TypedDict):
    """Sub-scores of a metrics sample."""
    latency_score: float
    jitter_score: float
    loss_score: float
    throughput_score: float
    metric_score: int


@dataclass
class TaskResult(Generic[T]):
    """One slot of a batch run: either a value or the error that task raised."""
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None
