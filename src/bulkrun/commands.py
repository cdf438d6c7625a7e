"""Shell-command work unit used by the CLI."""

from __future__ import annotations

import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Any, ClassVar

from bulkrun.channels import Channel, terminate_process
from bulkrun.dispatcher import CONVENTIONAL_TARGET_FIELDS
from bulkrun.errors import TransientExecutionError

_PREVIEW_CHARS = 400
_POLL_SECONDS = 0.1


@dataclass(slots=True)
class CommandWorkUnit:
    """Run a command template once per record.

    ``{record}`` and ``{target}`` placeholders are substituted with
    shell-quoted values. Locally the command runs as a subprocess that is
    terminated once ``cancel_event`` is set; in remote mode it runs over
    the session channel.
    """

    accepts_cancel_event: ClassVar[bool] = True

    template: str
    timeout_seconds: float | None = None

    def __call__(
        self,
        record: Any,
        *_: Any,
        channel: Channel | None = None,
        cancel_event: threading.Event | None = None,
    ) -> dict[str, Any]:
        target = channel.target if channel is not None else _record_target(record)
        argv = build_command(self.template, record=record, target=target)
        if channel is not None:
            outcome = channel.run(argv, timeout=self.timeout_seconds)
            exit_code, stdout, stderr = outcome.exit_code, outcome.stdout, outcome.stderr
            timed_out = outcome.timed_out
        else:
            exit_code, stdout, stderr, timed_out = _run_local(
                argv,
                self.timeout_seconds,
                cancel_event,
            )

        if timed_out:
            raise TransientExecutionError(
                f"Command timed out after {self.timeout_seconds}s: {argv[0]}",
                code="timeout",
            )
        if exit_code != 0:
            detail = (stderr.strip() or stdout.strip())[:_PREVIEW_CHARS]
            raise TransientExecutionError(
                f"Command exited with {exit_code}: {detail or argv[0]}",
                code=f"exit_{exit_code}",
            )
        return {
            "record": str(record),
            "target": target,
            "exit_code": exit_code,
            "stdout": stdout,
        }


def build_command(template: str, *, record: Any, target: str | None) -> list[str]:
    """Render the command template into argv."""

    stripped = template.strip()
    if not stripped:
        raise ValueError("Command template is empty.")
    try:
        rendered = stripped.format(
            record=shlex.quote(str(record)),
            target=shlex.quote(target or ""),
        )
    except (KeyError, IndexError) as error:
        raise ValueError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise ValueError("Command template rendered empty command.")
    return argv


def _run_local(
    argv: list[str],
    timeout: float | None,
    cancel_event: threading.Event | None,
) -> tuple[int, str, str, bool]:
    try:
        process = subprocess.Popen(  # noqa: S603
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except FileNotFoundError as error:
        raise TransientExecutionError(
            f"Command not found: {argv[0]}",
            code="command_not_found",
        ) from error
    start_monotonic = time.monotonic()

    while True:
        try:
            stdout, stderr = process.communicate(timeout=_POLL_SECONDS)
        except subprocess.TimeoutExpired:
            pass
        else:
            return process.returncode, stdout, stderr, False

        if cancel_event is not None and cancel_event.is_set():
            _stop(process)
            raise TransientExecutionError(f"Command cancelled: {argv[0]}", code="cancelled")
        if timeout is not None and time.monotonic() - start_monotonic >= timeout:
            stdout, stderr = _stop(process)
            return 124, stdout, stderr, True


def _stop(process: subprocess.Popen[str]) -> tuple[str, str]:
    terminate_process(process)
    try:
        stdout, stderr = process.communicate(timeout=2)
    except subprocess.TimeoutExpired:
        return "", ""
    return stdout or "", stderr or ""


def _record_target(record: Any) -> str | None:
    if isinstance(record, str):
        return record
    if isinstance(record, dict):
        for field_name in CONVENTIONAL_TARGET_FIELDS:
            value = record.get(field_name)
            if isinstance(value, str):
                return value
    return None
