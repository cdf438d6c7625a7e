from __future__ import annotations

import os
import pickle
import threading
import time
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from bulkrun.errors import ResultPersistenceError
from bulkrun.models import NamedResult
from bulkrun.results import (
    ResultStore,
    archive_previous_results,
    load_artifacts,
    prune_archives,
    safe_artifact_name,
)

pytestmark = [
    allure.epic("Bulk Engine"),
    allure.feature("Result Store"),
]

_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def test_store_without_batching_keeps_everything_in_memory(tmp_path: Path) -> None:
    store = ResultStore(tmp_path, batch_size=0)
    for value in range(5):
        store.append(value)

    assert store.flush_ready() == 0
    assert store.finalize() == [0, 1, 2, 3, 4]
    assert not store.persisted_any
    assert list(tmp_path.iterdir()) == []


def test_flush_writes_exact_batches_only_when_size_exceeded(tmp_path: Path) -> None:
    store = ResultStore(tmp_path, batch_size=3)
    for value in range(3):
        store.append(value)
    assert store.flush_ready() == 0

    store.append(3)
    assert store.flush_ready() == 3
    assert len(store) == 1

    assert pickle.loads((tmp_path / "batch-00001.pkl").read_bytes()) == [0, 1, 2]


def test_finalize_reloads_batches_and_remainder_in_order(tmp_path: Path) -> None:
    store = ResultStore(tmp_path, batch_size=2)
    for value in range(7):
        store.append({"n": value})
        store.flush_ready()

    assert store.finalize() == [{"n": value} for value in range(7)]
    assert [path.name for path in store.artifacts] == [
        "batch-00001.pkl",
        "batch-00002.pkl",
        "batch-00003.pkl",
        "batch-00004.pkl",
    ]


def test_named_results_persist_immediately(tmp_path: Path) -> None:
    store = ResultStore(tmp_path, batch_size=0)
    store.append("inline")
    store.append(NamedResult(name="srv:01", value=[1, 2]))

    assert (tmp_path / "srv_01.pkl").exists()
    assert store.total == 2
    assert store.finalize() == [NamedResult(name="srv:01", value=[1, 2]), "inline"]


def test_load_artifacts_reads_both_kinds(tmp_path: Path) -> None:
    (tmp_path / "batch-00001.pkl").write_bytes(pickle.dumps(["a", "b"]))
    (tmp_path / "x.pkl").write_bytes(pickle.dumps(NamedResult(name="x", value=3)))

    loaded = load_artifacts([tmp_path / "batch-00001.pkl", tmp_path / "x.pkl"])

    assert loaded == ["a", "b", NamedResult(name="x", value=3)]


def test_batched_results_reload_with_original_types(tmp_path: Path) -> None:
    values = [(1, 1), _NOW, {"a", "b"}, ("nested", [1, (2, 3)])]
    store = ResultStore(tmp_path, batch_size=1)
    for value in values:
        store.append(value)
        store.flush_ready()

    assert store.finalize() == values


def test_unsaveable_result_is_rejected_when_batching(tmp_path: Path) -> None:
    store = ResultStore(tmp_path, batch_size=1)

    with pytest.raises(ResultPersistenceError, match="lock"):
        store.append(threading.Lock())

    assert store.total == 0
    assert len(store) == 0


def test_unsaveable_result_stays_in_memory_without_batching(tmp_path: Path) -> None:
    lock = threading.Lock()
    store = ResultStore(tmp_path, batch_size=0)
    store.append(lock)
    store.append(NamedResult(name="srv", value=1))

    assert store.finalize() == [NamedResult(name="srv", value=1), lock]


def test_colliding_names_get_distinct_artifacts(tmp_path: Path) -> None:
    store = ResultStore(tmp_path, batch_size=0)
    store.append(NamedResult(name="x", value=1))
    store.append(NamedResult(name="x", value=2))
    store.append(NamedResult(name="x/", value=3))

    assert [path.name for path in store.artifacts] == ["x.pkl", "x-2.pkl", "x-3.pkl"]
    assert store.finalize() == [
        NamedResult(name="x", value=1),
        NamedResult(name="x", value=2),
        NamedResult(name="x/", value=3),
    ]


def test_failed_writes_keep_results_in_memory(tmp_path: Path) -> None:
    blocked = tmp_path / "not-a-directory"
    blocked.write_text("", "utf-8")
    store = ResultStore(blocked, batch_size=1)
    store.append(NamedResult(name="srv", value=0))
    for value in range(3):
        store.append(value)

    assert store.flush_ready() == 0
    assert not store.persisted_any
    assert store.finalize() == [NamedResult(name="srv", value=0), 0, 1, 2]



def test_safe_artifact_name() -> None:
    assert safe_artifact_name("host/one two") == "host_one_two"
    assert safe_artifact_name("../..") == "result"
    assert safe_artifact_name("ok-name.v1") == "ok-name.v1"


def test_archive_moves_only_top_level_files(tmp_path: Path) -> None:
    (tmp_path / "old.json").write_text("{}", "utf-8")
    (tmp_path / "keep").mkdir()

    destination = archive_previous_results(tmp_path, now=_NOW)

    assert destination == tmp_path / "archive" / "20260301-120000"
    assert (destination / "old.json").exists()
    assert not (tmp_path / "old.json").exists()
    assert (tmp_path / "keep").is_dir()


def test_archive_without_previous_files_is_noop(tmp_path: Path) -> None:
    results_dir = tmp_path / "results"

    assert archive_previous_results(results_dir, now=_NOW) is None
    assert results_dir.is_dir()


def test_archive_does_not_overwrite_same_second_folder(tmp_path: Path) -> None:
    (tmp_path / "a.json").write_text("{}", "utf-8")
    first = archive_previous_results(tmp_path, now=_NOW)
    (tmp_path / "b.json").write_text("{}", "utf-8")
    second = archive_previous_results(tmp_path, now=_NOW)

    assert first != second
    assert second is not None
    assert second.name == "20260301-120000-2"


def test_prune_removes_archives_past_retention(tmp_path: Path) -> None:
    archive_root = tmp_path / "archive"
    (archive_root / "20260101-000000").mkdir(parents=True)
    (archive_root / "20260225-000000").mkdir(parents=True)
    legacy = archive_root / "manual-copy"
    legacy.mkdir()
    old_mtime = time.mktime((2025, 1, 1, 0, 0, 0, 0, 0, -1))
    os.utime(legacy, (old_mtime, old_mtime))

    removed = prune_archives(tmp_path, now=_NOW, retention_days=30)

    assert sorted(path.name for path in removed) == ["20260101-000000", "manual-copy"]
    assert [path.name for path in archive_root.iterdir()] == ["20260225-000000"]
