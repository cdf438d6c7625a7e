"""Lifecycle tracking: classify outstanding tasks and keep failure state."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from bulkrun.context import utc_now
from bulkrun.errors import ResultPersistenceError, error_code_for
from bulkrun.models import (
    FailureRecord,
    HungRecord,
    RecoveredRecord,
    TaskOutcome,
    TaskState,
)
from bulkrun.results import ResultStore
from bulkrun.sessions import SessionPool
from bulkrun.tasks import Task

logger = logging.getLogger(__name__)


class FailureTracker:
    """RecordIndex -> consecutive failure count for records awaiting retry."""

    def __init__(self) -> None:
        self._counts: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._counts)

    def __contains__(self, index: object) -> bool:
        return index in self._counts

    def count(self, index: int) -> int:
        return self._counts.get(index, 0)

    def record_failure(self, index: int) -> int:
        self._counts[index] = self._counts.get(index, 0) + 1
        return self._counts[index]

    def clear(self, index: int) -> int | None:
        return self._counts.pop(index, None)

    def next_retry(self, running: set[int] | dict[int, Any]) -> int | None:
        """Lowest tracked index not currently running."""

        candidates = [index for index in self._counts if index not in running]
        return min(candidates) if candidates else None


@dataclass(slots=True)
class TickCounts:
    """How many tasks each classification bucket received in one pass."""

    completed: int = 0
    failed: int = 0
    hung: int = 0

    @property
    def total(self) -> int:
        return self.completed + self.failed + self.hung


class LifecycleTracker:
    """Classifies outstanding tasks as completed, failed, hung or running."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        records: Sequence[Any],
        failures: FailureTracker,
        results: ResultStore,
        pool: SessionPool,
        max_failures_per_record: int,
        hung_threshold_seconds: float,
        clock: Callable[[], float],
    ) -> None:
        self.records = records
        self.failures = failures
        self.results = results
        self.pool = pool
        self.max_failures_per_record = max_failures_per_record
        self.hung_threshold_seconds = hung_threshold_seconds
        self.clock = clock
        self.completed = 0
        self.permanent_failures: list[int] = []
        self.permanent_hung: list[HungRecord] = []
        self.recovered: list[RecoveredRecord] = []
        self.failure_log: list[FailureRecord] = []

    def classify(self, outstanding: dict[int, Task]) -> TickCounts:
        """Move every finished task out of ``outstanding`` into its bucket."""

        counts = TickCounts()
        now = self.clock()
        for index in sorted(outstanding):
            task = outstanding[index]
            outcome = task.poll()
            if outcome is None:
                if task.age(now) <= self.hung_threshold_seconds:
                    continue
                self._on_hung(task, age=task.age(now))
                counts.hung += 1
            elif outcome.state is TaskState.COMPLETED:
                try:
                    self.results.append(outcome.result)
                except ResultPersistenceError as error:
                    self._on_failed(task, _unsaved_outcome(error))
                    counts.failed += 1
                else:
                    self._on_completed(task)
                    counts.completed += 1
            else:
                self._on_failed(task, outcome)
                counts.failed += 1
            del outstanding[index]
        return counts

    def record_inline_failure(self, index: int, error_code: str, error_message: str) -> None:
        """Record a failure observed outside the pool; it is never retried."""

        self._log_failure(index, error_code, error_message)
        self.permanent_failures.append(index)

    def record_inline_success(self, index: int, result: Any) -> None:
        try:
            self.results.append(result)
        except ResultPersistenceError as error:
            logger.warning("Record %d produced a result that cannot be saved: %s", index, error)
            self.record_inline_failure(index, error_code_for(error), str(error))
            return
        self.completed += 1

    def _on_completed(self, task: Task) -> None:
        self.pool.release(task.info.session_id)
        self.completed += 1
        prior = self.failures.clear(task.index)
        if prior:
            self.recovered.append(
                RecoveredRecord(index=task.index, record=self.records[task.index], failures=prior),
            )
            logger.info("Record %d recovered after %d failures", task.index, prior)

    def _on_failed(self, task: Task, outcome: TaskOutcome) -> None:
        self.pool.release(task.info.session_id)
        error_code = outcome.error_code or "unknown"
        error_message = outcome.error_message or ""
        self._log_failure(task.index, error_code, error_message)
        attempts = self.failures.record_failure(task.index)
        if attempts >= self.max_failures_per_record:
            self.failures.clear(task.index)
            self.permanent_failures.append(task.index)
            logger.warning(
                "Record %d failed permanently after %d attempts: %s",
                task.index,
                attempts,
                error_message,
            )
            return
        logger.warning(
            "Record %d failed (attempt %d of %d), will retry: %s",
            task.index,
            attempts,
            self.max_failures_per_record,
            error_message,
        )

    def _on_hung(self, task: Task, *, age: float) -> None:
        task.terminate()
        self.pool.release(task.info.session_id, discard=self.pool.remote)
        self.failures.clear(task.index)
        terminated_at = utc_now()
        self.permanent_hung.append(
            HungRecord(index=task.index, record=self.records[task.index], terminated_at=terminated_at),
        )
        logger.warning(
            "Record %d hung after %.1fs (threshold %.1fs); terminated",
            task.index,
            age,
            self.hung_threshold_seconds,
        )

    def _log_failure(self, index: int, error_code: str, error_message: str) -> None:
        self.failure_log.append(
            FailureRecord(
                index=index,
                record=self.records[index],
                error_code=error_code,
                error_message=error_message,
                timestamp=utc_now(),
            ),
        )


def _unsaved_outcome(error: ResultPersistenceError) -> TaskOutcome:
    return TaskOutcome(
        state=TaskState.FAILED,
        error_code=error_code_for(error),
        error_message=str(error),
    )
