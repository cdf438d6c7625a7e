"""Domain models for bulk task execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskState(str, Enum):
    """Lifecycle states of one execution attempt."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    HUNG = "hung"


class EngineState(str, Enum):
    """Engine lifecycle: INIT -> RUNNING -> DONE, or INIT -> ABORTED."""

    INIT = "init"
    RUNNING = "running"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(slots=True)
class NamedResult:
    """Work unit output persisted individually under an external name."""

    name: str
    value: Any


@dataclass(slots=True)
class TaskOutcome:
    """Terminal outcome reported by a task handle."""

    state: TaskState
    result: Any = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(slots=True)
class FailureRecord:
    """One observed work unit failure."""

    index: int
    record: Any
    error_code: str
    error_message: str
    timestamp: datetime


@dataclass(slots=True)
class HungRecord:
    """Record whose execution was force-terminated as hung."""

    index: int
    record: Any
    terminated_at: datetime


@dataclass(slots=True)
class RecoveredRecord:
    """Record that completed after one or more failures."""

    index: int
    record: Any
    failures: int


@dataclass(slots=True)
class SkippedRecord:
    """Record never dispatched because its target did not resolve."""

    index: int
    record: Any
    reason: str


@dataclass(slots=True)
class RunSummary:
    """Counts, timestamps and throughput of one run."""

    state: EngineState
    started_at: datetime
    finished_at: datetime
    total_records: int
    succeeded: int = 0
    permanent_failures: int = 0
    hung: int = 0
    skipped: int = 0
    recovered: int = 0
    failures_observed: int = 0
    settings: dict[str, Any] = field(default_factory=dict)
    error_code: int = 0
    error_message: str = ""

    @property
    def elapsed_seconds(self) -> float:
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    @property
    def throughput_per_minute(self) -> float:
        """Resolved records per minute of wall-clock time."""

        resolved = self.succeeded + self.permanent_failures + self.hung + self.skipped
        if self.elapsed_seconds <= 0:
            return 0.0
        return resolved / self.elapsed_seconds * 60.0


@dataclass(slots=True)
class RunResult:
    """Everything a run produced."""

    results: list[Any]
    permanent_failure: list[Any]
    permanent_hung: list[HungRecord]
    recovered_after_failure: list[RecoveredRecord]
    failure_log: list[FailureRecord]
    skipped: list[SkippedRecord]
    summary: RunSummary

    @property
    def ok(self) -> bool:
        return self.summary.error_code == 0

    def recovered_by_record(self) -> dict[Any, int]:
        """Map record -> prior failure count (records must be hashable)."""

        return {entry.record: entry.failures for entry in self.recovered_after_failure}
