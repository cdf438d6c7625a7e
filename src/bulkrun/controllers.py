"""Controllers for bulkrun CLI commands."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from bulkrun.channels import ssh_channel_factory
from bulkrun.commands import CommandWorkUnit
from bulkrun.config import EngineSettings
from bulkrun.context import RunContext, configure_logging
from bulkrun.dispatcher import conventional_target
from bulkrun.engine import BulkEngine
from bulkrun.models import NamedResult, RunResult
from bulkrun.progress import render_failure_tally, render_summary_lines
from bulkrun.results import write_json

logger = logging.getLogger(__name__)

DEFAULT_RUN_NAME = "bulkrun"


@dataclass(slots=True)
class BulkRunCommand:
    """CLI input for one bulk run."""

    records_path: Path
    command_template: str
    run_name: str = DEFAULT_RUN_NAME
    base_dir: Path | None = None
    remote: bool | None = None
    max_concurrency: int | None = None
    max_failures: int | None = None
    hung_threshold_seconds: float | None = None
    batch_size: int | None = None
    retention_days: int | None = None
    executor: str | None = None
    inline_debug: bool | None = None
    command_timeout_seconds: float | None = None
    output_path: Path | None = None


@dataclass(slots=True)
class BulkRunCliResult:
    """Rendered run report for the CLI."""

    lines: list[str]
    success: bool


class BulkRunCliController:
    """Builds settings and context from CLI input and runs the engine."""

    def run(self, command: BulkRunCommand) -> BulkRunCliResult:
        settings = _settings_for(command)
        context = RunContext.create(
            script_path=command.records_path,
            script_name=command.run_name,
            base_dir=command.base_dir or command.records_path.parent,
        )
        configure_logging(context)
        records = load_records(command.records_path)
        engine = BulkEngine(
            settings,
            context=context,
            channel_factory=(
                ssh_channel_factory(context.results_dir.parent / ".control")
                if settings.run_remotely
                else None
            ),
            target_of=conventional_target,
        )
        result = engine.run(
            records,
            CommandWorkUnit(
                template=command.command_template,
                timeout_seconds=command.command_timeout_seconds,
            ),
        )
        if command.output_path is not None:
            write_json(command.output_path, _result_payload(result))
        lines = [
            *render_summary_lines(result.summary),
            *render_failure_tally(result.failure_log),
            f"Log: {context.log_path}",
        ]
        if command.output_path is not None:
            lines.append(f"Results written to {command.output_path}")
        return BulkRunCliResult(lines=lines, success=result.ok)


def load_records(path: Path) -> list[Any]:
    """Load records from a JSON list or a text file with one record per line."""

    text = path.read_text("utf-8")
    if path.suffix.lower() == ".json":
        payload = json.loads(text)
        if not isinstance(payload, list):
            raise TypeError(f"Expected JSON list of records in {path}")
        return payload
    return [line.strip() for line in text.splitlines() if line.strip()]


def _settings_for(command: BulkRunCommand) -> EngineSettings:
    settings = EngineSettings.from_env()
    overrides = {
        "run_remotely": command.remote,
        "max_concurrency": command.max_concurrency,
        "max_failures_per_record": command.max_failures,
        "hung_threshold_seconds": command.hung_threshold_seconds,
        "batch_save_size": command.batch_size,
        "old_results_retention_days": command.retention_days,
        "executor": command.executor,
        "inline_debug": command.inline_debug,
    }
    return replace(settings, **{key: value for key, value in overrides.items() if value is not None})


def _result_payload(result: RunResult) -> dict[str, Any]:
    return {
        "results": [
            {"name": item.name, "value": item.value} if isinstance(item, NamedResult) else item
            for item in result.results
        ],
        "permanent_failure": result.permanent_failure,
        "permanent_hung": [
            {"record": entry.record, "terminated_at": entry.terminated_at.isoformat()}
            for entry in result.permanent_hung
        ],
        "recovered_after_failure": [
            {"record": entry.record, "failures": entry.failures}
            for entry in result.recovered_after_failure
        ],
        "failure_log": [
            {
                "record": entry.record,
                "error_code": entry.error_code,
                "error_message": entry.error_message,
                "timestamp": entry.timestamp.isoformat(),
            }
            for entry in result.failure_log
        ],
        "skipped": [{"record": entry.record, "reason": entry.reason} for entry in result.skipped],
        "summary": {
            "state": result.summary.state.value,
            "started_at": result.summary.started_at.isoformat(),
            "finished_at": result.summary.finished_at.isoformat(),
            "elapsed_seconds": result.summary.elapsed_seconds,
            "throughput_per_minute": result.summary.throughput_per_minute,
            "error_code": result.summary.error_code,
            "error_message": result.summary.error_message,
            "settings": result.summary.settings,
        },
    }
