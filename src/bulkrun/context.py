"""Per-run context: script identity, results directory and log sink."""

from __future__ import annotations

import dataclasses
import logging
import os
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

_PACKAGE_LOGGER = "bulkrun"
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


@dataclass(slots=True, frozen=True)
class RunContext:
    """Values derived once per run and passed explicitly to collaborators."""

    script_name: str
    script_dir: Path
    results_dir: Path
    log_path: Path
    started_at: datetime

    @classmethod
    def create(
        cls,
        *,
        script_path: Path | None = None,
        script_name: str | None = None,
        base_dir: Path | None = None,
        now: datetime | None = None,
    ) -> RunContext:
        """Derive context from the calling script location.

        ``script_name`` overrides the name taken from the script file; it
        selects the results/<name> folder and the log file prefix.
        """

        script = (script_path or Path(sys.argv[0] or "bulkrun")).resolve()
        script_name = script_name or script.stem or "bulkrun"
        root = base_dir or script.parent
        started_at = now or utc_now()
        return cls(
            script_name=script_name,
            script_dir=script.parent,
            results_dir=root / "results" / script_name,
            log_path=root / "logs" / f"{script_name}_{started_at:%Y%m%d}.log",
            started_at=started_at,
        )

    def with_overrides(self, **changes: object) -> RunContext:
        """Return a copy with selected fields replaced (test hook)."""

        return dataclasses.replace(self, **changes)

    def log(self, text: str) -> Path:
        """Write one status line to the run log and return its path."""

        logger.info(text)
        return self.log_path


def configure_logging(context: RunContext, *, level: int = logging.INFO) -> Path:
    """Attach a file handler for the run log to the package logger."""

    package_logger = logging.getLogger(_PACKAGE_LOGGER)
    package_logger.setLevel(level)
    target = os.path.abspath(context.log_path)
    for handler in package_logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return context.log_path

    context.log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(context.log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    package_logger.addHandler(handler)
    return context.log_path
