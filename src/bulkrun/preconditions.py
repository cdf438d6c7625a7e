"""INIT-time checks: elevation, credentials, and process limits."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from typing import Any

from bulkrun.errors import CREDENTIAL_INVALID, PRIVILEGE_REQUIRED, PreconditionError

logger = logging.getLogger(__name__)

CredentialValidator = Callable[[Any], bool]

# File descriptors budgeted per concurrent session (pipes, sockets, log handles).
_FDS_PER_SESSION = 8
_FDS_BASELINE = 256


def is_privileged() -> bool:
    """Return True when the current process runs elevated."""

    if os.name == "nt":
        import ctypes  # noqa: PLC0415

        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def check_preconditions(
    *,
    require_elevation: bool,
    credential: Any = None,
    credential_validator: CredentialValidator | None = None,
    privilege_check: Callable[[], bool] = is_privileged,
) -> None:
    """Raise PreconditionError when the run must not start."""

    if require_elevation and not privilege_check():
        raise PreconditionError(
            "Elevated privileges are required to run this job.",
            code=PRIVILEGE_REQUIRED,
        )
    if credential is None:
        return
    if credential_validator is None:
        raise PreconditionError(
            "A credential was supplied but no credential validator is configured.",
            code=CREDENTIAL_INVALID,
        )
    if not credential_validator(credential):
        raise PreconditionError("Supplied credential is not valid.", code=CREDENTIAL_INVALID)


def raise_concurrency_limits(max_concurrency: int) -> int | None:
    """Raise the soft open-file limit for the session pool; never lowers it.

    Returns the resulting soft limit, or None where the platform has no
    such limit.
    """

    if os.name == "nt":
        return None
    import resource  # noqa: PLC0415

    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    wanted = _FDS_BASELINE + _FDS_PER_SESSION * max_concurrency
    if hard != resource.RLIM_INFINITY:
        wanted = min(wanted, hard)
    if soft != resource.RLIM_INFINITY and soft < wanted:
        try:
            resource.setrlimit(resource.RLIMIT_NOFILE, (wanted, hard))
        except (OSError, ValueError) as error:
            logger.warning("Could not raise open-file limit to %d: %s", wanted, error)
            return soft
        logger.info("Raised open-file limit from %d to %d", soft, wanted)
        return wanted
    return soft
