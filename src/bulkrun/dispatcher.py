"""Record selection and task launch."""

from __future__ import annotations

import logging
import pickle
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from bulkrun.errors import ChannelCreationError, TargetResolutionError
from bulkrun.models import SkippedRecord
from bulkrun.sessions import Session, SessionPool
from bulkrun.tasks import FailedLaunch, Task, TaskInfo, WorkUnit, launch_local, launch_remote
from bulkrun.tracker import FailureTracker

logger = logging.getLogger(__name__)

TargetAccessor = Callable[[Any], str | None]

CONVENTIONAL_TARGET_FIELDS: tuple[str, ...] = ("name", "computer", "pc", "server", "host")


def plain_target(record: Any) -> str:
    """Use the record itself when it is a plain identifier."""

    if isinstance(record, str) and record.strip():
        return record.strip()
    raise TargetResolutionError(f"Record is not a plain identifier: {record!r}")


def conventional_target(record: Any) -> str:
    """Resolve a target from conventional identifying fields, first match wins."""

    if isinstance(record, str):
        return plain_target(record)
    if isinstance(record, Mapping):
        lowered = {str(key).lower(): value for key, value in record.items()}
        for field_name in CONVENTIONAL_TARGET_FIELDS:
            value = lowered.get(field_name)
            if isinstance(value, str) and value.strip():
                return value.strip()
    else:
        for field_name in CONVENTIONAL_TARGET_FIELDS:
            value = getattr(record, field_name, None)
            if isinstance(value, str) and value.strip():
                return value.strip()
    raise TargetResolutionError(
        f"No target field ({', '.join(CONVENTIONAL_TARGET_FIELDS)}) on record {record!r}",
    )


class TaskDispatcher:
    """Picks the next record (retries first) and launches it on a session."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        records: Sequence[Any],
        pool: SessionPool,
        failures: FailureTracker,
        work_unit: WorkUnit,
        extra_args: tuple[Any, ...] = (),
        executor: str = "thread",
        target_of: TargetAccessor = plain_target,
        clock: Callable[[], float],
    ) -> None:
        self.records = records
        self.pool = pool
        self.failures = failures
        self.work_unit = work_unit
        self.extra_args = extra_args
        self.executor = executor
        self.target_of = target_of
        self.clock = clock
        self.next_index = 0
        self.skipped: list[SkippedRecord] = []
        self._deferred: deque[int] = deque()

    def has_pending(self) -> bool:
        """True while fresh or deferred records are still to be dispatched."""

        return self.next_index < len(self.records) or bool(self._deferred)

    def select(
        self,
        outstanding: dict[int, Task],
        blocked: set[int] | frozenset[int] = frozenset(),
    ) -> tuple[int, str] | None:
        """Next (index, source) to run: retry, deferred, then fresh.

        Indexes in ``blocked`` could not get a session this tick and are
        passed over until the next one.
        """

        retry = self.failures.next_retry({*outstanding, *blocked})
        if retry is not None:
            return retry, "retry"
        for index in self._deferred:
            if index not in blocked:
                return index, "deferred"
        if self.next_index < len(self.records):
            return self.next_index, "fresh"
        return None

    def dispatch(self, outstanding: dict[int, Task]) -> int:
        """Launch tasks while the pool has capacity; return how many started."""

        launched = 0
        blocked: set[int] = set()
        while self.pool.has_capacity():
            selected = self.select(outstanding, blocked)
            if selected is None:
                break
            index, source = selected
            if source == "fresh":
                self.next_index += 1
            elif source == "deferred":
                self._deferred.remove(index)

            record = self.records[index]
            target: str | None = None
            if self.pool.remote:
                target = self._resolve_target(index, record)
                if target is None:
                    continue

            try:
                session = self.pool.acquire(target)
            except ChannelCreationError as error:
                logger.warning("Deferring record %d to the next tick: %s", index, error)
                blocked.add(index)
                if source != "retry":
                    self._deferred.append(index)
                continue

            outstanding[index] = self._launch(index, record, session)
            launched += 1
            if source == "retry":
                logger.info(
                    "Retrying record %d (previous failures: %d)",
                    index,
                    self.failures.count(index),
                )
        return launched

    def _resolve_target(self, index: int, record: Any) -> str | None:
        try:
            target = self.target_of(record)
        except (TargetResolutionError, LookupError, AttributeError, TypeError) as error:
            reason = str(error)
        else:
            if target:
                return target
            reason = f"No target resolved for record {record!r}"
        self.failures.clear(index)
        self.skipped.append(SkippedRecord(index=index, record=record, reason=reason))
        logger.warning("Skipping record %d: %s", index, reason)
        return None

    def _launch(self, index: int, record: Any, session: Session) -> Task:
        now = self.clock()
        try:
            if self.pool.remote:
                return launch_remote(
                    session=session,
                    index=index,
                    record=record,
                    work_unit=self.work_unit,
                    extra_args=self.extra_args,
                    now=now,
                )
            return launch_local(
                executor=self.executor,
                session=session,
                index=index,
                record=record,
                work_unit=self.work_unit,
                extra_args=self.extra_args,
                now=now,
            )
        except (pickle.PicklingError, TypeError, AttributeError, OSError, RuntimeError) as error:
            if self.executor == "process" and not self.pool.remote:
                logger.warning(
                    "Could not start record %d: %s (the process executor needs a "
                    "picklable work unit, record and extra arguments)",
                    index,
                    error,
                )
            else:
                logger.warning("Could not start record %d: %s", index, error)
            return FailedLaunch(
                TaskInfo(
                    index=index,
                    session_id=session.session_id,
                    target=session.target,
                    started_monotonic=now,
                ),
                error,
            )
