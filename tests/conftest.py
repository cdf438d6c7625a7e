"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import pytest

from bulkrun.config import EngineSettings
from bulkrun.context import RunContext


@pytest.fixture()
def run_context(tmp_path: Path) -> RunContext:
    """Run context rooted in the test's temporary directory."""

    return RunContext.create(
        script_path=tmp_path / "job.py",
        base_dir=tmp_path,
        now=datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
    )


@pytest.fixture()
def fast_settings():
    """Factory for engine settings tuned for quick polling in tests."""

    base = EngineSettings(
        poll_interval_seconds=0.01,
        progress_interval_seconds=0.0,
        wait_notice_polls=5,
    )

    def _make(**changes) -> EngineSettings:
        return replace(base, **changes)

    return _make
