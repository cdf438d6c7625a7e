"""Result accumulation with optional overflow-to-disk batching."""

from __future__ import annotations

import json
import logging
import pickle
import re
import shutil
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from bulkrun.errors import ResultPersistenceError
from bulkrun.models import NamedResult

logger = logging.getLogger(__name__)

ARCHIVE_DIR_NAME = "archive"
ARTIFACT_SUFFIX = ".pkl"
_ARCHIVE_STAMP_FORMAT = "%Y%m%d-%H%M%S"
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class ResultStore:
    """Ordered accumulator of task outputs.

    With ``batch_size`` > 0, once more than ``batch_size`` results are held
    in memory, exactly ``batch_size`` of them are written to one batch
    artifact and dropped. ``NamedResult`` outputs are always written to
    their own artifact immediately. Artifacts are pickled, so reloaded
    values equal the originals, and reload in write order.

    ``append`` raises ``ResultPersistenceError`` for an output that would
    have to be saved but cannot be pickled. A failed write keeps the
    results in memory instead.
    """

    def __init__(self, results_dir: Path, *, batch_size: int = 0) -> None:
        self.results_dir = results_dir
        self.batch_size = batch_size
        self._pending: list[Any] = []
        self._artifacts: list[Path] = []
        self._batch_no = 0
        self.total = 0

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def persisted_any(self) -> bool:
        return bool(self._artifacts)

    @property
    def artifacts(self) -> list[Path]:
        return list(self._artifacts)

    def append(self, result: Any) -> None:
        if isinstance(result, NamedResult):
            self._write_named(result)
        else:
            if self.batch_size > 0:
                encode_result(result)
            self._pending.append(result)
        self.total += 1

    def flush_ready(self) -> int:
        """Write full batches while the in-memory buffer exceeds batch size."""

        flushed = 0
        while self.batch_size > 0 and len(self._pending) > self.batch_size:
            batch = self._pending[: self.batch_size]
            if not self._write_batch(batch):
                break
            del self._pending[: self.batch_size]
            flushed += len(batch)
        return flushed

    def finalize(self) -> list[Any]:
        """Return the complete result set as one collection.

        If anything was persisted, the remainder is flushed and every
        artifact reloaded so the caller always gets one consistent view.
        Results that cannot be saved are appended from memory.
        """

        if not self.persisted_any:
            return list(self._pending)
        storable: list[Any] = []
        unsaved: list[Any] = []
        for result in self._pending:
            try:
                encode_result(result)
            except ResultPersistenceError:
                unsaved.append(result)
            else:
                storable.append(result)
        self._pending = []
        if storable and not self._write_batch(storable):
            unsaved = [*storable, *unsaved]
        if unsaved:
            logger.warning("Returning %d results that were not saved to disk", len(unsaved))
        return [*load_artifacts(self._artifacts), *unsaved]

    def _write_batch(self, batch: list[Any]) -> bool:
        path = self._unique_path(f"batch-{self._batch_no + 1:05d}")
        try:
            data = encode_result(batch)
        except ResultPersistenceError:
            logger.exception("Failed to encode batch of %d results", len(batch))
            return False
        if not self._save(path, data):
            return False
        self._batch_no += 1
        logger.info("Saved %d results to %s", len(batch), path.name)
        return True

    def _write_named(self, result: NamedResult) -> None:
        data = encode_result(result)
        path = self._unique_path(safe_artifact_name(result.name))
        if self._save(path, data):
            logger.debug("Saved result %r to %s", result.name, path.name)
        else:
            self._pending.append(result)

    def _save(self, path: Path, data: bytes) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError:
            logger.exception("Failed to write %s; keeping results in memory", path)
            return False
        self._artifacts.append(path)
        return True

    def _unique_path(self, stem: str) -> Path:
        taken = {path.name for path in self._artifacts}
        name = f"{stem}{ARTIFACT_SUFFIX}"
        counter = 1
        while name in taken or (self.results_dir / name).exists():
            counter += 1
            name = f"{stem}-{counter}{ARTIFACT_SUFFIX}"
        if counter > 1:
            logger.warning(
                "Artifact %s%s already exists; saving as %s",
                stem,
                ARTIFACT_SUFFIX,
                name,
            )
        return self.results_dir / name


def encode_result(value: Any) -> bytes:
    """Pickle a result, raising ResultPersistenceError when it cannot be saved."""

    try:
        return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
    except (pickle.PicklingError, TypeError, AttributeError) as error:
        raise ResultPersistenceError(
            f"Result of type {type(value).__name__} cannot be saved: {error}",
        ) from error


def load_artifacts(paths: list[Path]) -> list[Any]:
    """Reload batch and named artifacts into one ordered list."""

    loaded: list[Any] = []
    for path in paths:
        payload = pickle.loads(path.read_bytes())  # noqa: S301
        if isinstance(payload, NamedResult):
            loaded.append(payload)
        elif isinstance(payload, list):
            loaded.extend(payload)
        else:
            raise TypeError(f"Unexpected artifact content in {path}")
    return loaded


def safe_artifact_name(name: str) -> str:
    """File-system safe artifact stem for an external result name."""

    cleaned = _UNSAFE_NAME_CHARS.sub("_", name).strip("._")
    return cleaned or "result"


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def archive_previous_results(results_dir: Path, *, now: datetime) -> Path | None:
    """Move top-level artifacts from a prior run into a timestamped subfolder."""

    results_dir.mkdir(parents=True, exist_ok=True)
    previous = sorted(path for path in results_dir.iterdir() if path.is_file())
    if not previous:
        return None

    destination = results_dir / ARCHIVE_DIR_NAME / now.strftime(_ARCHIVE_STAMP_FORMAT)
    suffix = 1
    while destination.exists():
        suffix += 1
        destination = destination.with_name(f"{now.strftime(_ARCHIVE_STAMP_FORMAT)}-{suffix}")
    destination.mkdir(parents=True)
    for path in previous:
        shutil.move(str(path), destination / path.name)
    logger.info("Archived %d previous result files to %s", len(previous), destination)
    return destination


def prune_archives(results_dir: Path, *, now: datetime, retention_days: int) -> list[Path]:
    """Delete archive subfolders older than ``retention_days``."""

    archive_root = results_dir / ARCHIVE_DIR_NAME
    if not archive_root.is_dir():
        return []
    cutoff = now - timedelta(days=retention_days)
    removed: list[Path] = []
    for folder in sorted(archive_root.iterdir()):
        if not folder.is_dir():
            continue
        if _archive_timestamp(folder) >= cutoff:
            continue
        shutil.rmtree(folder)
        removed.append(folder)
    if removed:
        logger.info("Deleted %d archives older than %d days", len(removed), retention_days)
    return removed


def _archive_timestamp(folder: Path) -> datetime:
    stamp = folder.name[: len("YYYYmmdd-HHMMSS")]
    try:
        return datetime.strptime(stamp, _ARCHIVE_STAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return datetime.fromtimestamp(folder.stat().st_mtime, tz=UTC)
