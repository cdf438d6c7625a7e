from __future__ import annotations

import json
import os
import shlex
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from bulkrun.controllers import load_records
from bulkrun.main import bulkrun

pytestmark = [
    allure.epic("Bulk Engine"),
    allure.feature("CLI"),
]

_ECHO = f"{shlex.quote(sys.executable)} -c 'import sys; print(sys.argv[1])' {{record}}"


def test_run_command_executes_records_and_writes_output(tmp_path: Path) -> None:
    records = tmp_path / "hosts.txt"
    records.write_text("web1\n\nweb2\ndb1\n", "utf-8")
    output = tmp_path / "out.json"

    runner = CliRunner()
    result = runner.invoke(
        bulkrun,
        [
            "run",
            "--records",
            str(records),
            "--command",
            _ECHO,
            "--max-concurrency",
            "2",
            "--base-dir",
            str(tmp_path),
            "--output",
            str(output),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Run done: records=3" in result.output
    assert "Failure tally: none" in result.output
    payload = json.loads(output.read_text("utf-8"))
    assert sorted(item["stdout"].strip() for item in payload["results"]) == ["db1", "web1", "web2"]
    assert payload["summary"]["state"] == "done"
    assert (tmp_path / "results" / "bulkrun").is_dir()
    assert list((tmp_path / "logs").glob("bulkrun_*.log"))


def test_run_command_reports_failures_with_tally(tmp_path: Path) -> None:
    records = tmp_path / "hosts.json"
    records.write_text(json.dumps(["a", "b"]), "utf-8")
    failing = f"{shlex.quote(sys.executable)} -c 'import sys; sys.exit(2)'"

    runner = CliRunner()
    result = runner.invoke(
        bulkrun,
        [
            "run",
            "--records",
            str(records),
            "--command",
            failing,
            "--max-failures",
            "2",
            "--base-dir",
            str(tmp_path),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "permanent_failures=2" in result.output
    assert "4x [exit_2]" in result.output


def test_run_name_selects_results_and_log_paths(tmp_path: Path) -> None:
    records = tmp_path / "hosts.txt"
    records.write_text("web1\n", "utf-8")

    runner = CliRunner()
    result = runner.invoke(
        bulkrun,
        [
            "run",
            "--records",
            str(records),
            "--command",
            _ECHO,
            "--name",
            "nightly",
            "--base-dir",
            str(tmp_path),
        ],
    )

    assert result.exit_code == 0, result.output
    assert (tmp_path / "results" / "nightly").is_dir()
    logs = list((tmp_path / "logs").glob("nightly_*.log"))
    assert len(logs) == 1
    assert "Starting nightly" in logs[0].read_text("utf-8")


@pytest.mark.skipif(os.name == "nt", reason="POSIX euid")
def test_run_command_fails_when_elevation_missing(tmp_path: Path, monkeypatch) -> None:
    records = tmp_path / "hosts.txt"
    records.write_text("web1\n", "utf-8")
    monkeypatch.setenv("BULKRUN_REQUIRE_ELEVATION", "1")
    monkeypatch.setattr(os, "geteuid", lambda: 1000)

    runner = CliRunner()
    result = runner.invoke(
        bulkrun,
        ["run", "--records", str(records), "--command", _ECHO, "--base-dir", str(tmp_path)],
    )

    assert result.exit_code != 0
    assert "Run aborted: records=1" in result.output
    assert "Error 1:" in result.output


def test_load_records_supports_text_and_json(tmp_path: Path) -> None:
    text = tmp_path / "hosts.txt"
    text.write_text(" a \n\nb\n", "utf-8")
    listing = tmp_path / "hosts.json"
    listing.write_text(json.dumps([{"name": "a"}, "b"]), "utf-8")
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"name": "a"}), "utf-8")

    assert load_records(text) == ["a", "b"]
    assert load_records(listing) == [{"name": "a"}, "b"]
    with pytest.raises(TypeError, match="JSON list"):
        load_records(bad)
