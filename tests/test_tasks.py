from __future__ import annotations

import shlex
import sys
import threading
import time

import allure

from bulkrun.commands import CommandWorkUnit
from bulkrun.models import TaskState
from bulkrun.sessions import Session
from bulkrun.tasks import FailedLaunch, ProcessTask, TaskInfo, launch_local

pytestmark = [
    allure.epic("Bulk Engine"),
    allure.feature("Task Handles"),
]

_PYTHON = shlex.quote(sys.executable)


class _LateReceiver:
    """Pipe end that reports nothing on its first poll."""

    def __init__(self, inner) -> None:
        self.inner = inner
        self.polls = 0

    def poll(self) -> bool:
        self.polls += 1
        return self.polls > 1 and self.inner.poll()

    def recv(self):
        return self.inner.recv()

    def close(self) -> None:
        self.inner.close()


class _CancelAware:
    accepts_cancel_event = True

    def __init__(self) -> None:
        self.received: list[threading.Event] = []

    def __call__(self, record: str, *, cancel_event: threading.Event) -> str:
        self.received.append(cancel_event)
        cancel_event.wait(10)
        return record


def _info(index: int = 0) -> TaskInfo:
    return TaskInfo(index=index, session_id=1, target=None, started_monotonic=0.0)


def test_process_result_sent_just_before_exit_is_not_lost() -> None:
    work = CommandWorkUnit(f"{_PYTHON} -c 'print(1)'")
    task = ProcessTask(_info(), work, "r1", ()).start()
    task._process.join(timeout=30)
    task._receiver = _LateReceiver(task._receiver)

    outcome = task.poll()

    assert outcome is not None
    assert outcome.state is TaskState.COMPLETED
    assert outcome.result["stdout"] == "1\n"


def test_thread_task_hands_cancel_event_to_aware_work_unit() -> None:
    work = _CancelAware()
    task = launch_local(
        executor="thread",
        session=Session(session_id=1),
        index=0,
        record="r1",
        work_unit=work,
        extra_args=(),
        now=0.0,
    )
    deadline = time.monotonic() + 5
    while not work.received and time.monotonic() < deadline:
        time.sleep(0.01)

    task.terminate()

    assert work.received == [task.cancel_event]
    assert work.received[0].is_set()
    assert task.poll() is None


def test_plain_work_unit_is_called_without_cancel_event() -> None:
    calls: list[tuple] = []
    task = launch_local(
        executor="thread",
        session=Session(session_id=1),
        index=0,
        record="r1",
        work_unit=lambda record, *args, **kwargs: calls.append((record, args, kwargs)) or record,
        extra_args=("x",),
        now=0.0,
    )
    deadline = time.monotonic() + 5
    while task.poll() is None and time.monotonic() < deadline:
        time.sleep(0.01)

    assert calls == [("r1", ("x",), {})]
    assert task.poll().result == "r1"


def test_failed_launch_reports_failure_on_first_poll() -> None:
    task = FailedLaunch(_info(3), TypeError("cannot pickle 'function' object"))

    outcome = task.poll()

    assert outcome.state is TaskState.FAILED
    assert outcome.error_code == "TypeError"
    assert "cannot pickle" in outcome.error_message
    task.terminate()
