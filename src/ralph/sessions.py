from __future__ import annotations

import json
import re
import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import structlog

from ralph.checkpoint.store import DEFAULT_TASK_ID, RalphStateError
from ralph.plan import PROGRESS_TEMPLATE, task_stats

SpecsMode = Literal["isolated", "shared"]

logger = structlog.get_logger(__name__)


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "session"


@dataclass(frozen=True, slots=True)
class SessionHandle:
    id: str
    name: str
    directory: Path


@dataclass(frozen=True, slots=True)
class SessionPaths:
    directory: Path
    plan_file: Path
    progress_file: Path
    specs_dir: Path


@dataclass(slots=True)
class SessionRecord:
    id: str
    name: str
    description: str
    specs_mode: SpecsMode
    created: str
    status: str
    pending: int = 0
    completed: int = 0
    active: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "specs_mode": self.specs_mode,
            "created": self.created,
            "status": self.status,
            "pending": self.pending,
            "completed": self.completed,
            "active": self.active,
        }


class SessionManager:
    """Isolated session directories under ``<state_dir>/tasks/<id>/``.

    The default session has no directory of its own and keeps its plan and
    progress files directly in the state directory.
    """

    def __init__(self, state_dir: Path, shared_specs_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.tasks_root = self.state_dir / "tasks"
        self.active_file = self.state_dir / "active-task"
        self.shared_specs_dir = shared_specs_dir.resolve()

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def session_dir(self, session_id: str) -> Path:
        return self.tasks_root / session_id

    def exists(self, session_id: str) -> bool:
        if not session_id or session_id == DEFAULT_TASK_ID:
            return False
        return self.session_dir(session_id).is_dir()

    def _read_config(self, session_id: str) -> dict[str, Any]:
        config_file = self.session_dir(session_id) / "task.json"
        if not config_file.is_file():
            return {}
        try:
            payload = json.loads(config_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {}
        return payload if isinstance(payload, dict) else {}

    def active_id(self) -> str:
        if self.active_file.is_file():
            session_id = self.active_file.read_text(encoding="utf-8").strip()
            if self.exists(session_id):
                return session_id
        return DEFAULT_TASK_ID

    def paths(self, session_id: str | None = None) -> SessionPaths:
        session_id = session_id or self.active_id()
        if session_id == DEFAULT_TASK_ID:
            return SessionPaths(
                directory=self.state_dir,
                plan_file=self.state_dir / "IMPLEMENTATION_PLAN.md",
                progress_file=self.state_dir / "progress.txt",
                specs_dir=self.shared_specs_dir,
            )
        directory = self.session_dir(session_id)
        specs_dir = directory / "specs"
        if not specs_dir.is_dir() and self._read_config(session_id).get("specs_mode") == "shared":
            specs_dir = self.shared_specs_dir
        return SessionPaths(
            directory=directory,
            plan_file=directory / "IMPLEMENTATION_PLAN.md",
            progress_file=directory / "progress.txt",
            specs_dir=specs_dir,
        )

    def create(
        self,
        name: str,
        description: str = "",
        specs_mode: SpecsMode = "isolated",
    ) -> SessionHandle:
        session_id = f"{slugify(name)}-{datetime.now().strftime('%Y%m%d-%H%M%S')}"
        directory = self.session_dir(session_id)
        if directory.exists():
            raise RalphStateError(f"Session directory already exists: {directory}")
        directory.mkdir(parents=True)

        config = {
            "id": session_id,
            "name": name,
            "description": description,
            "specs_mode": specs_mode,
            "created": self._utcnow_iso(),
            "status": "active",
        }
        (directory / "task.json").write_text(
            json.dumps(config, ensure_ascii=False, indent=2), encoding="utf-8"
        )
        plan_lines = ["# Implementation Plan", "", f"## Task: {name}", ""]
        if description:
            plan_lines.extend([description, ""])
        plan_lines.extend(["## Tasks", "", "(Generated from specs)", ""])
        (directory / "IMPLEMENTATION_PLAN.md").write_text("\n".join(plan_lines), encoding="utf-8")
        (directory / "progress.txt").write_text(
            PROGRESS_TEMPLATE.replace("# Ralph Progress Log", f"# Ralph Progress Log - {name}")
            + f"Session created: {self._utcnow_iso()}\n",
            encoding="utf-8",
        )
        if specs_mode == "isolated":
            (directory / "specs").mkdir()

        logger.info("session_created", session_id=session_id, specs_mode=specs_mode)
        return SessionHandle(id=session_id, name=name, directory=directory)

    def activate(self, session_id: str) -> None:
        if session_id != DEFAULT_TASK_ID and not self.exists(session_id):
            raise RalphStateError(f"Session '{session_id}' does not exist")
        self.state_dir.mkdir(parents=True, exist_ok=True)
        if session_id == DEFAULT_TASK_ID:
            self.active_file.unlink(missing_ok=True)
        else:
            self.active_file.write_text(session_id, encoding="utf-8")
        logger.info("session_activated", session_id=session_id)

    def delete(self, session_id: str) -> None:
        if not self.exists(session_id):
            raise RalphStateError(f"Session '{session_id}' does not exist")
        was_active = self.active_id() == session_id
        shutil.rmtree(self.session_dir(session_id))
        if was_active:
            self.active_file.unlink(missing_ok=True)
        logger.info("session_deleted", session_id=session_id)

    def list_sessions(self) -> list[SessionRecord]:
        if not self.tasks_root.is_dir():
            return []
        active = self.active_id()
        records: list[SessionRecord] = []
        for directory in sorted(self.tasks_root.iterdir()):
            if not directory.is_dir():
                continue
            config = self._read_config(directory.name)
            stats = task_stats(directory / "IMPLEMENTATION_PLAN.md")
            specs_mode = config.get("specs_mode", "isolated")
            records.append(
                SessionRecord(
                    id=directory.name,
                    name=str(config.get("name") or directory.name),
                    description=str(config.get("description") or ""),
                    specs_mode="shared" if specs_mode == "shared" else "isolated",
                    created=str(config.get("created") or ""),
                    status=str(config.get("status") or "active"),
                    pending=stats.pending,
                    completed=stats.completed,
                    active=directory.name == active,
                )
            )
        return records
