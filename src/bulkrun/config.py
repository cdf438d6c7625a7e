"""Runtime configuration for the bulk execution engine."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from typing import Any

SUPPORTED_EXECUTORS: tuple[str, ...] = ("thread", "process")


@dataclass(slots=True)
class EngineSettings:
    """Scheduling, retry, hang and persistence settings for one run."""

    max_concurrency: int = 10
    max_failures_per_record: int = 1
    hung_threshold_seconds: float = 600.0
    batch_save_size: int = 0
    old_results_retention_days: int = 30
    run_remotely: bool = False
    inline_debug: bool = False
    executor: str = "thread"
    poll_interval_seconds: float = 1.0
    wait_notice_polls: int = 60
    progress_interval_seconds: float = 10.0
    require_elevation: bool = False

    @classmethod
    def from_env(cls) -> EngineSettings:
        """Load settings from environment with the documented defaults."""

        return cls(
            max_concurrency=int(os.getenv("BULKRUN_MAX_CONCURRENCY", "10")),
            max_failures_per_record=int(os.getenv("BULKRUN_MAX_FAILURES_PER_RECORD", "1")),
            hung_threshold_seconds=float(os.getenv("BULKRUN_HUNG_THRESHOLD_SECONDS", "600")),
            batch_save_size=int(os.getenv("BULKRUN_BATCH_SAVE_SIZE", "0")),
            old_results_retention_days=int(
                os.getenv("BULKRUN_OLD_RESULTS_RETENTION_DAYS", "30"),
            ),
            run_remotely=_env_bool("BULKRUN_RUN_REMOTELY", default=False),
            inline_debug=_env_bool("BULKRUN_INLINE_DEBUG", default=False),
            executor=os.getenv("BULKRUN_EXECUTOR", "thread").strip().lower(),
            poll_interval_seconds=float(os.getenv("BULKRUN_POLL_INTERVAL_SECONDS", "1.0")),
            wait_notice_polls=int(os.getenv("BULKRUN_WAIT_NOTICE_POLLS", "60")),
            progress_interval_seconds=float(
                os.getenv("BULKRUN_PROGRESS_INTERVAL_SECONDS", "10.0"),
            ),
            require_elevation=_env_bool("BULKRUN_REQUIRE_ELEVATION", default=False),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.max_concurrency < 1:
            raise ValueError("BULKRUN_MAX_CONCURRENCY must be >= 1.")
        if self.max_failures_per_record < 1:
            raise ValueError("BULKRUN_MAX_FAILURES_PER_RECORD must be >= 1.")
        if self.hung_threshold_seconds <= 0:
            raise ValueError("BULKRUN_HUNG_THRESHOLD_SECONDS must be > 0.")
        if self.batch_save_size < 0:
            raise ValueError("BULKRUN_BATCH_SAVE_SIZE must be >= 0.")
        if self.old_results_retention_days < 0:
            raise ValueError("BULKRUN_OLD_RESULTS_RETENTION_DAYS must be >= 0.")
        if self.poll_interval_seconds <= 0:
            raise ValueError("BULKRUN_POLL_INTERVAL_SECONDS must be > 0.")
        if self.wait_notice_polls < 1:
            raise ValueError("BULKRUN_WAIT_NOTICE_POLLS must be >= 1.")
        if self.executor not in SUPPORTED_EXECUTORS:
            raise ValueError(
                f"Unsupported BULKRUN_EXECUTOR: {self.executor!r}. "
                f"Expected one of: {', '.join(SUPPORTED_EXECUTORS)}.",
            )

    def to_summary(self) -> dict[str, Any]:
        """Configuration echoed into the run summary."""

        return asdict(self)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
