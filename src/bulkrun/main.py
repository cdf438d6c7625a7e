"""CLI entrypoint for bulkrun."""

from pathlib import Path

import rich_click as click

from bulkrun import __version__
from bulkrun.config import SUPPORTED_EXECUTORS
from bulkrun.controllers import DEFAULT_RUN_NAME, BulkRunCliController, BulkRunCommand

click.rich_click.USE_MARKDOWN = True
BULKRUN_CONTROLLER = BulkRunCliController()


@click.group()
@click.version_option(version=__version__, prog_name="bulkrun")
def bulkrun() -> None:
    """Bulk task execution CLI."""


@bulkrun.command("run")
@click.option(
    "--records",
    "records_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Records file: one record per line, or a JSON list (.json).",
)
@click.option(
    "--command",
    "command_template",
    required=True,
    help="Command template run per record. Supports {record} and {target}.",
)
@click.option(
    "--base-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for results/ and logs/. Defaults to the records file directory.",
)
@click.option(
    "--name",
    "run_name",
    default=DEFAULT_RUN_NAME,
    show_default=True,
    help="Run name used for the results/<name> folder and the log file name.",
)
@click.option(
    "--remote/--local",
    default=None,
    help="Run over persistent SSH sessions instead of local processes.",
)
@click.option("--max-concurrency", type=click.IntRange(min=1), default=None)
@click.option(
    "--max-failures",
    type=click.IntRange(min=1),
    default=None,
    help="Attempts per record before it is a permanent failure.",
)
@click.option(
    "--hung-threshold",
    "hung_threshold_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds after which a running task is killed as hung.",
)
@click.option(
    "--batch-size",
    type=click.IntRange(min=0),
    default=None,
    help="Save results to disk in batches of this size (0 disables).",
)
@click.option("--retention-days", type=click.IntRange(min=0), default=None)
@click.option(
    "--executor",
    type=click.Choice(list(SUPPORTED_EXECUTORS), case_sensitive=False),
    default=None,
    help="Local execution backend.",
)
@click.option(
    "--inline-debug/--no-inline-debug",
    default=None,
    help="Run records one at a time on the calling thread (no retries).",
)
@click.option(
    "--command-timeout",
    "command_timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-command subprocess timeout in seconds.",
)
@click.option(
    "--output",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the full run result as JSON.",
)
def bulkrun_run(  # noqa: PLR0913
    records_path: Path,
    command_template: str,
    base_dir: Path | None,
    run_name: str,
    remote: bool | None,
    max_concurrency: int | None,
    max_failures: int | None,
    hung_threshold_seconds: float | None,
    batch_size: int | None,
    retention_days: int | None,
    executor: str | None,
    inline_debug: bool | None,
    command_timeout_seconds: float | None,
    output_path: Path | None,
) -> None:
    """Run a command once per record across a bounded pool of sessions."""

    result = BULKRUN_CONTROLLER.run(
        BulkRunCommand(
            records_path=records_path,
            command_template=command_template,
            base_dir=base_dir,
            run_name=run_name,
            remote=remote,
            max_concurrency=max_concurrency,
            max_failures=max_failures,
            hung_threshold_seconds=hung_threshold_seconds,
            batch_size=batch_size,
            retention_days=retention_days,
            executor=executor.lower() if executor else None,
            inline_debug=inline_debug,
            command_timeout_seconds=command_timeout_seconds,
            output_path=output_path,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Run aborted before dispatch.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    bulkrun()
