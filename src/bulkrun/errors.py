"""Error taxonomy for bulk runs."""

from __future__ import annotations

PRIVILEGE_REQUIRED = 1
CREDENTIAL_INVALID = 2


class BulkRunError(RuntimeError):
    """Base class for engine errors."""


class PreconditionError(BulkRunError):
    """Fatal INIT failure: the run aborts before any dispatch."""

    def __init__(self, message: str, *, code: int) -> None:
        super().__init__(message)
        self.code = code


class TargetResolutionError(BulkRunError):
    """Execution target could not be determined for a record."""


class TransientExecutionError(BulkRunError):
    """Work unit failure carrying an explicit error code."""

    def __init__(self, message: str, *, code: str = "transient") -> None:
        super().__init__(message)
        self.code = code


class HangTimeout(BulkRunError):
    """Execution stayed active past the hung threshold."""


class ResultPersistenceError(BulkRunError):
    """A work unit output could not be saved to the results directory."""


class ChannelCreationError(BulkRunError):
    """Session channel setup failed; the record is deferred."""

    def __init__(self, message: str, *, target: str | None = None) -> None:
        super().__init__(message)
        self.target = target


def error_code_for(error: BaseException) -> str:
    """Stable error code for a failed work unit."""

    if isinstance(error, TransientExecutionError):
        return error.code
    return type(error).__name__
