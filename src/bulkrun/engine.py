"""Bulk task execution engine.

One coordinating thread runs the scheduling loop: dispatch while capacity
and a selectable record exist, classify outstanding tasks, block on a
fixed-interval poll while at capacity, then flush result batches. Retries
always precede fresh records, fresh records go in ascending order, and
the result order reflects completion order.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from bulkrun.channels import ChannelFactory
from bulkrun.config import EngineSettings
from bulkrun.context import RunContext, utc_now
from bulkrun.dispatcher import TargetAccessor, TaskDispatcher, plain_target
from bulkrun.errors import PreconditionError, error_code_for
from bulkrun.models import EngineState, RunResult, RunSummary
from bulkrun.preconditions import (
    CredentialValidator,
    check_preconditions,
    is_privileged,
    raise_concurrency_limits,
)
from bulkrun.progress import ProgressReporter, render_failure_tally, render_summary_lines
from bulkrun.results import ResultStore, archive_previous_results, prune_archives
from bulkrun.sessions import SessionPool
from bulkrun.tasks import Task, WorkUnit
from bulkrun.tracker import FailureTracker, LifecycleTracker

logger = logging.getLogger(__name__)


class BulkEngine:
    """Runs a work unit against every record through a bounded session pool."""

    def __init__(  # noqa: PLR0913
        self,
        settings: EngineSettings,
        *,
        context: RunContext,
        channel_factory: ChannelFactory | None = None,
        target_of: TargetAccessor = plain_target,
        credential_validator: CredentialValidator | None = None,
        privilege_check: Callable[[], bool] = is_privileged,
        on_progress: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings.validate()
        if settings.run_remotely and channel_factory is None and not settings.inline_debug:
            raise ValueError("Remote runs require a channel factory.")
        self.settings = settings
        self.context = context
        self.channel_factory = channel_factory
        self.target_of = target_of
        self.credential_validator = credential_validator
        self.privilege_check = privilege_check
        self.on_progress = on_progress
        self.clock = clock
        self.sleep = sleep
        self.state = EngineState.INIT

    def run(
        self,
        records: Sequence[Any],
        work_unit: WorkUnit,
        *,
        extra_args: tuple[Any, ...] = (),
        credential: Any = None,
    ) -> RunResult:
        """Execute ``work_unit(record, *extra_args)`` for every record."""

        records = list(records)
        started_at = utc_now()
        self.state = EngineState.INIT
        progress = ProgressReporter(
            total=len(records),
            clock=self.clock,
            interval_seconds=self.settings.progress_interval_seconds,
            on_progress=self.on_progress,
        )
        progress.emit(
            f"Starting {self.context.script_name}: {len(records)} records, "
            f"max_concurrency={self.settings.max_concurrency}, "
            f"mode={self._mode_name()}",
        )

        try:
            check_preconditions(
                require_elevation=self.settings.require_elevation,
                credential=credential,
                credential_validator=self.credential_validator,
                privilege_check=self.privilege_check,
            )
        except PreconditionError as error:
            return self._aborted(records, started_at=started_at, error=error)

        if not self.settings.inline_debug and (
            self.settings.run_remotely or self.settings.executor == "process"
        ):
            raise_concurrency_limits(self.settings.max_concurrency)
        archive_previous_results(self.context.results_dir, now=started_at)
        prune_archives(
            self.context.results_dir,
            now=started_at,
            retention_days=self.settings.old_results_retention_days,
        )

        pool = SessionPool(
            max_concurrency=self.settings.max_concurrency,
            channel_factory=self.channel_factory if self.settings.run_remotely else None,
        )
        failures = FailureTracker()
        results = ResultStore(self.context.results_dir, batch_size=self.settings.batch_save_size)
        tracker = LifecycleTracker(
            records=records,
            failures=failures,
            results=results,
            pool=pool,
            max_failures_per_record=self.settings.max_failures_per_record,
            hung_threshold_seconds=self.settings.hung_threshold_seconds,
            clock=self.clock,
        )
        dispatcher = TaskDispatcher(
            records=records,
            pool=pool,
            failures=failures,
            work_unit=work_unit,
            extra_args=tuple(extra_args),
            executor=self.settings.executor,
            target_of=self.target_of,
            clock=self.clock,
        )
        outstanding: dict[int, Task] = {}

        self.state = EngineState.RUNNING
        try:
            if self.settings.inline_debug:
                self._run_inline(records, work_unit, tuple(extra_args), tracker, results)
            else:
                self._run_loop(dispatcher, tracker, results, outstanding, progress)
        finally:
            for task in outstanding.values():
                task.terminate()
            pool.close_all()

        self.state = EngineState.DONE
        final_results = results.finalize()
        progress.report(
            progress.snapshot(
                resolved=_resolved(tracker, dispatcher),
                running=0,
                retrying=0,
                failed=len(tracker.permanent_failures),
                hung=len(tracker.permanent_hung),
                skipped=len(dispatcher.skipped),
            ),
            force=True,
        )
        summary = RunSummary(
            state=self.state,
            started_at=started_at,
            finished_at=utc_now(),
            total_records=len(records),
            succeeded=tracker.completed,
            permanent_failures=len(tracker.permanent_failures),
            hung=len(tracker.permanent_hung),
            skipped=len(dispatcher.skipped),
            recovered=len(tracker.recovered),
            failures_observed=len(tracker.failure_log),
            settings=self.settings.to_summary(),
        )
        for line in [*render_summary_lines(summary), *render_failure_tally(tracker.failure_log)]:
            progress.emit(line)
        return RunResult(
            results=final_results,
            permanent_failure=[records[index] for index in tracker.permanent_failures],
            permanent_hung=list(tracker.permanent_hung),
            recovered_after_failure=list(tracker.recovered),
            failure_log=list(tracker.failure_log),
            skipped=list(dispatcher.skipped),
            summary=summary,
        )

    def _run_loop(
        self,
        dispatcher: TaskDispatcher,
        tracker: LifecycleTracker,
        results: ResultStore,
        outstanding: dict[int, Task],
        progress: ProgressReporter,
    ) -> None:
        while dispatcher.has_pending() or tracker.failures or outstanding:
            launched = dispatcher.dispatch(outstanding)
            classified = tracker.classify(outstanding).total
            if len(outstanding) >= self.settings.max_concurrency:
                classified += self._wait_for_capacity(tracker, outstanding)
            results.flush_ready()
            progress.report(
                progress.snapshot(
                    resolved=_resolved(tracker, dispatcher),
                    running=len(outstanding),
                    retrying=len(tracker.failures),
                    failed=len(tracker.permanent_failures),
                    hung=len(tracker.permanent_hung),
                    skipped=len(dispatcher.skipped),
                ),
            )
            idle_tick = launched == 0 and classified == 0
            if idle_tick and (outstanding or dispatcher.has_pending() or tracker.failures):
                self.sleep(self.settings.poll_interval_seconds)

    def _wait_for_capacity(
        self,
        tracker: LifecycleTracker,
        outstanding: dict[int, Task],
    ) -> int:
        classified = 0
        polls = 0
        while len(outstanding) >= self.settings.max_concurrency:
            self.sleep(self.settings.poll_interval_seconds)
            classified += tracker.classify(outstanding).total
            polls += 1
            if polls % self.settings.wait_notice_polls == 0:
                oldest = min(outstanding.values(), key=lambda task: task.info.started_monotonic)
                logger.warning(
                    "Still waiting for a free session after %d polls: "
                    "%d running, oldest is record %d (%.0fs)",
                    polls,
                    len(outstanding),
                    oldest.index,
                    oldest.age(self.clock()),
                )
        return classified

    def _run_inline(
        self,
        records: list[Any],
        work_unit: WorkUnit,
        extra_args: tuple[Any, ...],
        tracker: LifecycleTracker,
        results: ResultStore,
    ) -> None:
        logger.warning("Inline debug mode: records run one at a time on the calling thread")
        for index, record in enumerate(records):
            try:
                result = work_unit(record, *extra_args)
            except Exception as error:  # noqa: BLE001
                logger.exception("Record %d failed in inline mode", index)
                tracker.record_inline_failure(
                    index,
                    error_code_for(error),
                    str(error) or type(error).__name__,
                )
                continue
            tracker.record_inline_success(index, result)
            results.flush_ready()

    def _aborted(
        self,
        records: list[Any],
        *,
        started_at: datetime,
        error: PreconditionError,
    ) -> RunResult:
        self.state = EngineState.ABORTED
        logger.error("Run aborted before dispatch: %s", error)
        summary = RunSummary(
            state=self.state,
            started_at=started_at,
            finished_at=utc_now(),
            total_records=len(records),
            settings=self.settings.to_summary(),
            error_code=error.code,
            error_message=str(error),
        )
        return RunResult(
            results=[],
            permanent_failure=[],
            permanent_hung=[],
            recovered_after_failure=[],
            failure_log=[],
            skipped=[],
            summary=summary,
        )

    def _mode_name(self) -> str:
        if self.settings.inline_debug:
            return "inline-debug"
        if self.settings.run_remotely:
            return "remote"
        return f"local-{self.settings.executor}"


def run_bulk(
    records: Sequence[Any],
    work_unit: WorkUnit,
    *,
    settings: EngineSettings | None = None,
    context: RunContext | None = None,
    extra_args: tuple[Any, ...] = (),
    **engine_options: Any,
) -> RunResult:
    """Convenience wrapper building an engine for one run."""

    engine = BulkEngine(
        settings or EngineSettings(),
        context=context or RunContext.create(),
        **engine_options,
    )
    return engine.run(records, work_unit, extra_args=extra_args)


def _resolved(tracker: LifecycleTracker, dispatcher: TaskDispatcher) -> int:
    return (
        tracker.completed
        + len(tracker.permanent_failures)
        + len(tracker.permanent_hung)
        + len(dispatcher.skipped)
    )
