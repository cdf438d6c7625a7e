"""Task handles: one running attempt of the work unit against one record."""

from __future__ import annotations

import logging
import multiprocessing
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from multiprocessing.connection import Connection
from typing import Any

from bulkrun.context import utc_now
from bulkrun.errors import error_code_for
from bulkrun.models import TaskOutcome, TaskState
from bulkrun.sessions import Session

logger = logging.getLogger(__name__)

WorkUnit = Callable[..., Any]

_SPAWN = multiprocessing.get_context("spawn")


@dataclass(slots=True)
class TaskInfo:
    """Attribution data shared by every task handle."""

    index: int
    session_id: int
    target: str | None
    started_monotonic: float
    started_at: datetime = field(default_factory=utc_now)


class Task:
    """Base task handle polled by the lifecycle tracker."""

    def __init__(self, info: TaskInfo) -> None:
        self.info = info

    @property
    def index(self) -> int:
        return self.info.index

    def age(self, now: float) -> float:
        return now - self.info.started_monotonic

    def poll(self) -> TaskOutcome | None:
        """Return the terminal outcome, or None while still running."""

        raise NotImplementedError

    def terminate(self) -> None:
        """Force the execution to stop."""

        raise NotImplementedError


class ThreadTask(Task):
    """Runs the work unit on a daemon thread.

    Threads cannot be killed: terminate() sets ``cancel_event`` and the
    late outcome is discarded. Work units that set
    ``accepts_cancel_event = True`` receive the event as a ``cancel_event``
    keyword and are expected to stop once it is set.
    """

    def __init__(
        self,
        info: TaskInfo,
        call: Callable[[threading.Event], Any],
    ) -> None:
        super().__init__(info)
        self.cancel_event = threading.Event()
        self._call = call
        self._outcome: TaskOutcome | None = None
        self._done = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"bulkrun-task-{info.index}",
        )

    def start(self) -> ThreadTask:
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            result = self._call(self.cancel_event)
        except Exception as error:  # noqa: BLE001
            outcome = TaskOutcome(
                state=TaskState.FAILED,
                error_code=error_code_for(error),
                error_message=str(error) or type(error).__name__,
            )
        else:
            outcome = TaskOutcome(state=TaskState.COMPLETED, result=result)
        if not self.cancel_event.is_set():
            self._outcome = outcome
        self._done.set()

    def poll(self) -> TaskOutcome | None:
        if self.cancel_event.is_set() or not self._done.is_set():
            return None
        return self._outcome

    def terminate(self) -> None:
        self.cancel_event.set()


class FailedLaunch(Task):
    """Handle for an attempt that could not be started; it fails on first poll."""

    def __init__(self, info: TaskInfo, error: BaseException) -> None:
        super().__init__(info)
        self._outcome = TaskOutcome(
            state=TaskState.FAILED,
            error_code=error_code_for(error),
            error_message=f"Failed to start task: {error}",
        )

    def poll(self) -> TaskOutcome | None:
        return self._outcome

    def terminate(self) -> None:
        return


class ProcessTask(Task):
    """Runs the work unit in a spawned child process."""

    def __init__(
        self,
        info: TaskInfo,
        work_unit: WorkUnit,
        record: Any,
        extra_args: tuple[Any, ...],
    ) -> None:
        super().__init__(info)
        receiver, sender = _SPAWN.Pipe(duplex=False)
        self._receiver = receiver
        self._sender = sender
        self._process = _SPAWN.Process(
            target=_process_entry,
            args=(sender, work_unit, record, extra_args),
            daemon=True,
            name=f"bulkrun-task-{info.index}",
        )
        self._outcome: TaskOutcome | None = None

    def start(self) -> ProcessTask:
        try:
            self._process.start()
        except BaseException:
            self._receiver.close()
            raise
        finally:
            self._sender.close()
        return self

    def poll(self) -> TaskOutcome | None:
        if self._outcome is not None:
            return self._outcome
        if self._receive():
            return self._outcome
        if self._process.is_alive():
            return None
        # The child may have reported and exited after the first check.
        if self._receive():
            return self._outcome
        exit_code = self._process.exitcode
        self._receiver.close()
        self._outcome = TaskOutcome(
            state=TaskState.FAILED,
            error_code=f"exit_{exit_code}",
            error_message=f"Worker process exited with code {exit_code} without a result",
        )
        return self._outcome

    def _receive(self) -> bool:
        if not self._receiver.poll():
            return False
        try:
            message = self._receiver.recv()
        except (EOFError, OSError):
            return False
        self._outcome = _outcome_from_message(message)
        self._process.join(timeout=2)
        self._receiver.close()
        return True

    def terminate(self) -> None:
        if not self._process.is_alive():
            return
        self._process.terminate()
        self._process.join(timeout=2)
        if self._process.is_alive():
            self._process.kill()
            self._process.join(timeout=2)
        self._receiver.close()


def launch_local(  # noqa: PLR0913
    *,
    executor: str,
    session: Session,
    index: int,
    record: Any,
    work_unit: WorkUnit,
    extra_args: tuple[Any, ...],
    now: float,
) -> Task:
    """Start a local execution bound to a slot session."""

    info = TaskInfo(index=index, session_id=session.session_id, target=None, started_monotonic=now)
    if executor == "process":
        return ProcessTask(info, work_unit, record, extra_args).start()
    return ThreadTask(
        info,
        lambda cancel_event: _invoke(work_unit, record, extra_args, cancel_event),
    ).start()


def launch_remote(  # noqa: PLR0913
    *,
    session: Session,
    index: int,
    record: Any,
    work_unit: WorkUnit,
    extra_args: tuple[Any, ...],
    now: float,
) -> Task:
    """Start an execution over the session's persistent channel."""

    channel = session.channel
    if channel is None:
        raise RuntimeError(f"Session {session.session_id} has no open channel.")
    info = TaskInfo(
        index=index,
        session_id=session.session_id,
        target=session.target,
        started_monotonic=now,
    )
    return ThreadTask(
        info,
        lambda cancel_event: _invoke(
            work_unit,
            record,
            extra_args,
            cancel_event,
            channel=channel,
        ),
    ).start()


def _invoke(
    work_unit: WorkUnit,
    record: Any,
    extra_args: tuple[Any, ...],
    cancel_event: threading.Event,
    **options: Any,
) -> Any:
    if getattr(work_unit, "accepts_cancel_event", False):
        options["cancel_event"] = cancel_event
    return work_unit(record, *extra_args, **options)


def _process_entry(
    connection: Connection,
    work_unit: WorkUnit,
    record: Any,
    extra_args: tuple[Any, ...],
) -> None:
    try:
        result = work_unit(record, *extra_args)
    except Exception as error:  # noqa: BLE001
        message: tuple[Any, ...] = (
            "error",
            error_code_for(error),
            str(error) or type(error).__name__,
        )
    else:
        message = ("ok", result)
    connection.send(message)
    connection.close()


def _outcome_from_message(message: tuple[Any, ...]) -> TaskOutcome:
    if message[0] == "ok":
        return TaskOutcome(state=TaskState.COMPLETED, result=message[1])
    return TaskOutcome(
        state=TaskState.FAILED,
        error_code=str(message[1]),
        error_message=str(message[2]),
    )
