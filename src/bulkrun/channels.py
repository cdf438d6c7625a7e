"""Persistent remote execution channels backed by OpenSSH control masters."""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from bulkrun.errors import ChannelCreationError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChannelResult:
    """Outcome of one command executed over a channel."""

    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False


class Channel(Protocol):
    """Protocol implemented by remote session channels."""

    target: str
    session_id: int

    def open(self) -> None:
        """Establish the connection; raise ChannelCreationError on failure."""

    def run(self, command: list[str], *, timeout: float | None = None) -> ChannelResult:
        """Execute a command on the target over the open connection."""

    def close(self) -> None:
        """Tear the connection down, interrupting anything still running."""


ChannelFactory = Callable[[str, int], Channel]


class SshChannel:
    """OpenSSH ControlMaster connection reused across tasks."""

    def __init__(  # noqa: PLR0913
        self,
        target: str,
        session_id: int,
        *,
        control_dir: Path,
        ssh_binary: str = "ssh",
        connect_timeout_seconds: int = 10,
        extra_options: tuple[str, ...] = (),
    ) -> None:
        self.target = target
        self.session_id = session_id
        self.control_path = control_dir / f"bulkrun-{session_id}.sock"
        self.ssh_binary = ssh_binary
        self.connect_timeout_seconds = connect_timeout_seconds
        self.extra_options = extra_options
        self._master: subprocess.Popen[bytes] | None = None

    def open(self) -> None:
        self.control_path.parent.mkdir(parents=True, exist_ok=True)
        if self.control_path.exists():
            self.control_path.unlink()
        try:
            self._master = subprocess.Popen(  # noqa: S603
                _master_args(
                    ssh_binary=self.ssh_binary,
                    control_path=self.control_path,
                    target=self.target,
                    connect_timeout_seconds=self.connect_timeout_seconds,
                    extra_options=self.extra_options,
                ),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as error:
            raise ChannelCreationError(
                f"Failed to start ssh for {self.target}: {error}",
                target=self.target,
            ) from error

        deadline = time.monotonic() + self.connect_timeout_seconds + 1
        while time.monotonic() < deadline:
            if self.control_path.exists():
                logger.debug("Session %d connected to %s", self.session_id, self.target)
                return
            if self._master.poll() is not None:
                stderr = self._master.stderr.read().decode(errors="replace").strip()
                self._master = None
                raise ChannelCreationError(
                    f"ssh to {self.target} exited: {stderr or 'no output'}",
                    target=self.target,
                )
            time.sleep(0.1)
        self.close()
        raise ChannelCreationError(
            f"Timed out connecting to {self.target}",
            target=self.target,
        )

    def run(self, command: list[str], *, timeout: float | None = None) -> ChannelResult:
        args = _client_args(
            ssh_binary=self.ssh_binary,
            control_path=self.control_path,
            target=self.target,
            command=command,
        )
        try:
            completed = subprocess.run(  # noqa: S603
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            return ChannelResult(
                exit_code=124,
                stdout=_as_text(error.stdout),
                stderr=_as_text(error.stderr),
                timed_out=True,
            )
        return ChannelResult(
            exit_code=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

    def close(self) -> None:
        if self._master is None:
            return
        if self._master.poll() is None:
            try:
                subprocess.run(  # noqa: S603
                    [self.ssh_binary, "-S", str(self.control_path), "-O", "exit", self.target],
                    capture_output=True,
                    check=False,
                    timeout=5,
                )
            except (OSError, subprocess.TimeoutExpired) as error:
                logger.debug("ssh -O exit failed for %s: %s", self.target, error)
            terminate_process(self._master)
        self._master = None
        logger.debug("Session %d to %s closed", self.session_id, self.target)


def ssh_channel_factory(
    control_dir: Path,
    *,
    ssh_binary: str = "ssh",
    connect_timeout_seconds: int = 10,
    extra_options: tuple[str, ...] = (),
) -> ChannelFactory:
    """Build a session-pool channel factory producing SshChannel objects."""

    def _factory(target: str, session_id: int) -> Channel:
        return SshChannel(
            target,
            session_id,
            control_dir=control_dir,
            ssh_binary=ssh_binary,
            connect_timeout_seconds=connect_timeout_seconds,
            extra_options=extra_options,
        )

    return _factory


def terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    """Terminate a child process, escalating to kill after two seconds."""

    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _master_args(
    *,
    ssh_binary: str,
    control_path: Path,
    target: str,
    connect_timeout_seconds: int,
    extra_options: tuple[str, ...],
) -> list[str]:
    args = [
        ssh_binary,
        "-M",
        "-N",
        "-S",
        str(control_path),
        "-o",
        "BatchMode=yes",
        "-o",
        "ControlPersist=no",
        "-o",
        f"ConnectTimeout={connect_timeout_seconds}",
    ]
    for option in extra_options:
        args.extend(["-o", option])
    args.append(target)
    return args


def _client_args(
    *,
    ssh_binary: str,
    control_path: Path,
    target: str,
    command: list[str],
) -> list[str]:
    return [
        ssh_binary,
        "-S",
        str(control_path),
        "-o",
        "BatchMode=yes",
        target,
        "--",
        shlex.join(command),
    ]


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value
