from __future__ import annotations

import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import replace
from pathlib import Path
from typing import Any

import structlog

from ralph.checkpoint.models import Checkpoint, validate_checkpoint

DEFAULT_TASK_ID = "default"
CHECKPOINT_FILENAME = "checkpoint.json"

logger = structlog.get_logger(__name__)


class RalphStateError(RuntimeError):
    """Raised when persisted session state cannot be read or written."""


def _next_version(prior: Mapping[str, Any] | None) -> int:
    if prior is not None and validate_checkpoint(prior):
        return int(prior["version"]) + 1
    return 1


class CheckpointStore(ABC):
    """One checkpoint slot per session; every write replaces the whole record."""

    @abstractmethod
    def exists(self, task_id: str) -> bool:
        """Return whether a checkpoint record is present for the session."""

    @abstractmethod
    def read(self, task_id: str) -> dict[str, Any] | None:
        """Return the raw persisted record, or None when there is none."""

    @abstractmethod
    def write(self, task_id: str, checkpoint: Checkpoint) -> Checkpoint:
        """Replace the session's checkpoint and return what was persisted."""

    @abstractmethod
    def delete(self, task_id: str) -> None:
        """Remove the session's checkpoint if present."""


class FileCheckpointStore(CheckpointStore):
    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()

    def path_for(self, task_id: str) -> Path:
        if not task_id or task_id == DEFAULT_TASK_ID:
            return self.state_dir / CHECKPOINT_FILENAME
        return self.state_dir / "tasks" / task_id / CHECKPOINT_FILENAME

    def exists(self, task_id: str) -> bool:
        return self.path_for(task_id).is_file()

    def read(self, task_id: str) -> dict[str, Any] | None:
        path = self.path_for(task_id)
        if not path.is_file():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise RalphStateError(f"Checkpoint for '{task_id}' is unreadable: {exc}") from exc
        if not isinstance(payload, dict):
            raise RalphStateError(f"Checkpoint for '{task_id}' is not a JSON object.")
        return payload

    def _prior_record(self, task_id: str) -> dict[str, Any] | None:
        try:
            return self.read(task_id)
        except RalphStateError:
            return None

    def write(self, task_id: str, checkpoint: Checkpoint) -> Checkpoint:
        path = self.path_for(task_id)
        persisted = replace(checkpoint, version=_next_version(self._prior_record(task_id)))
        serialized = json.dumps(persisted.to_dict(), ensure_ascii=False, indent=2)

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=".checkpoint-", suffix=".json", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except OSError as exc:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise RalphStateError(f"Failed to write checkpoint for '{task_id}': {exc}") from exc

        logger.debug(
            "checkpoint_written",
            task_id=task_id,
            phase=persisted.phase.value,
            iteration=persisted.iteration,
            version=persisted.version,
        )
        return persisted

    def delete(self, task_id: str) -> None:
        try:
            self.path_for(task_id).unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise RalphStateError(f"Failed to delete checkpoint for '{task_id}': {exc}") from exc
        logger.debug("checkpoint_deleted", task_id=task_id)


class MemoryCheckpointStore(CheckpointStore):
    def __init__(self, records: Mapping[str, dict[str, Any]] | None = None) -> None:
        self._records: dict[str, dict[str, Any]] = copy.deepcopy(dict(records or {}))

    @classmethod
    def snapshot(cls, source: CheckpointStore, task_id: str) -> MemoryCheckpointStore:
        """Copy one session's record so later writes never reach ``source``."""
        try:
            record = source.read(task_id)
        except RalphStateError:
            # Keep the corruption visible to recovery: an empty object fails validation.
            record = {}
        return cls({task_id: record} if record is not None else None)

    def exists(self, task_id: str) -> bool:
        return task_id in self._records

    def read(self, task_id: str) -> dict[str, Any] | None:
        record = self._records.get(task_id)
        return copy.deepcopy(record) if record is not None else None

    def write(self, task_id: str, checkpoint: Checkpoint) -> Checkpoint:
        persisted = replace(checkpoint, version=_next_version(self._records.get(task_id)))
        self._records[task_id] = persisted.to_dict()
        return persisted

    def delete(self, task_id: str) -> None:
        self._records.pop(task_id, None)
