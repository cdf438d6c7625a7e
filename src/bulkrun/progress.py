"""Progress, throughput and run summary rendering."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass

from bulkrun.models import FailureRecord, RunSummary

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProgressSnapshot:
    """Point-in-time progress figures."""

    total: int
    resolved: int
    running: int
    retrying: int
    failed: int
    hung: int
    skipped: int
    elapsed_seconds: float

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 1.0
        return min(1.0, max(0.0, self.resolved / self.total))

    @property
    def rate_per_minute(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.resolved / self.elapsed_seconds * 60.0

    @property
    def eta_seconds(self) -> float | None:
        if self.resolved <= 0 or self.elapsed_seconds <= 0:
            return None
        remaining = max(0, self.total - self.resolved)
        return remaining * self.elapsed_seconds / self.resolved


class ProgressReporter:
    """Emits throttled status lines to the log and an optional callback."""

    def __init__(
        self,
        *,
        total: int,
        clock: Callable[[], float],
        interval_seconds: float = 10.0,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self.total = total
        self.clock = clock
        self.interval_seconds = interval_seconds
        self._on_progress = on_progress or (lambda _msg: None)
        self._started = clock()
        self._last_emit: float | None = None
        self._last_resolved = -1

    def snapshot(  # noqa: PLR0913
        self,
        *,
        resolved: int,
        running: int,
        retrying: int,
        failed: int,
        hung: int,
        skipped: int,
    ) -> ProgressSnapshot:
        return ProgressSnapshot(
            total=self.total,
            resolved=resolved,
            running=running,
            retrying=retrying,
            failed=failed,
            hung=hung,
            skipped=skipped,
            elapsed_seconds=self.clock() - self._started,
        )

    def report(self, snapshot: ProgressSnapshot, *, force: bool = False) -> bool:
        """Emit a progress line if due; return whether one was emitted."""

        now = self.clock()
        if not force:
            if snapshot.resolved == self._last_resolved:
                return False
            due = self._last_emit is None or now - self._last_emit >= self.interval_seconds
            if not due and snapshot.resolved < snapshot.total:
                return False
        self._last_emit = now
        self._last_resolved = snapshot.resolved
        self.emit(render_progress_line(snapshot))
        return True

    def emit(self, msg: str) -> None:
        """Log and notify progress callback."""

        logger.info(msg)
        self._on_progress(msg)


def render_progress_line(snapshot: ProgressSnapshot) -> str:
    eta = snapshot.eta_seconds
    return (
        f"Progress: {snapshot.resolved}/{snapshot.total} ({snapshot.fraction:.0%}) "
        f"running={snapshot.running} retrying={snapshot.retrying} "
        f"failed={snapshot.failed} hung={snapshot.hung} skipped={snapshot.skipped} "
        f"rate={snapshot.rate_per_minute:.1f}/min "
        f"eta={_fmt_duration(eta) if eta is not None else 'n/a'}"
    )


def render_failure_tally(failure_log: list[FailureRecord]) -> list[str]:
    """Frequency-grouped failure messages, most common first."""

    if not failure_log:
        return ["Failure tally: none"]
    tally = Counter(
        (entry.error_code, entry.error_message.strip() or "<no message>") for entry in failure_log
    )
    lines = [f"Failure tally ({len(failure_log)} failures):"]
    for (error_code, message), count in sorted(
        tally.items(),
        key=lambda item: (-item[1], item[0]),
    ):
        lines.append(f"  {count:>5}x [{error_code}] {message}")
    return lines


def render_summary_lines(summary: RunSummary) -> list[str]:
    """Render operator-facing run summary lines."""

    lines = [
        f"Run {summary.state.value}: records={summary.total_records}",
        (
            f"Started {summary.started_at.isoformat(timespec='seconds')} "
            f"finished {summary.finished_at.isoformat(timespec='seconds')} "
            f"elapsed={_fmt_duration(summary.elapsed_seconds)}"
        ),
        (
            f"Outcome: succeeded={summary.succeeded} "
            f"permanent_failures={summary.permanent_failures} hung={summary.hung} "
            f"skipped={summary.skipped} recovered={summary.recovered} "
            f"failures_observed={summary.failures_observed}"
        ),
        f"Throughput: {summary.throughput_per_minute:.1f} records/min",
        "Settings: " + _fmt_key_value(summary.settings),
    ]
    if summary.error_code:
        lines.append(f"Error {summary.error_code}: {summary.error_message}")
    return lines


def _fmt_duration(seconds: float) -> str:
    total = int(round(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


def _fmt_key_value(values: dict[str, object]) -> str:
    return " ".join(f"{key}={value}" for key, value in sorted(values.items()))
