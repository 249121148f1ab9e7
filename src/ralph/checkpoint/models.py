from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

REQUIRED_FIELDS = ("version", "phase", "timestamp")


class Phase(str, Enum):
    IDLE = "Idle"
    SPEC_CREATION = "SpecCreation"
    PLANNING = "Planning"
    BUILDING = "Building"
    COMPLETE = "Complete"
    ERROR = "Error"


RESUMABLE_PHASES = frozenset({Phase.SPEC_CREATION, Phase.PLANNING, Phase.BUILDING})


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


@dataclass(frozen=True, slots=True)
class ErrorDetail:
    kind: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "context": dict(self.context)}

    @classmethod
    def from_dict(cls, data: Any) -> ErrorDetail:
        if not isinstance(data, Mapping):
            raise ValueError("Checkpoint error must be an object.")
        message = data.get("message")
        if not isinstance(message, str):
            raise ValueError("Checkpoint error is missing a message.")
        kind = data.get("kind", "unknown")
        context = data.get("context", {})
        if not isinstance(kind, str) or not isinstance(context, Mapping):
            raise ValueError("Checkpoint error has malformed kind or context.")
        return cls(kind=kind, message=message, context=dict(context))


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Single-slot record of where a session stopped.

    ``interrupted_phase`` and ``can_resume`` only carry meaning when
    ``phase`` is ``Phase.ERROR``.
    """

    phase: Phase
    version: int = 1
    iteration: int = 0
    current_task: str | None = None
    completed_tasks: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=_utcnow)
    interrupted_phase: Phase | None = None
    error: ErrorDetail | None = None
    can_resume: bool = False

    @property
    def resume_phase(self) -> Phase:
        if self.phase is Phase.ERROR and self.interrupted_phase is not None:
            return self.interrupted_phase
        return self.phase

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "version": self.version,
            "phase": self.phase.value,
            "iteration": self.iteration,
            "current_task": self.current_task,
            "completed_tasks": list(self.completed_tasks),
            "timestamp": self.timestamp.isoformat(),
            "error": self.error.to_dict() if self.error else None,
            "can_resume": self.can_resume,
        }
        if self.phase is Phase.ERROR and self.interrupted_phase is not None:
            payload["interrupted_phase"] = self.interrupted_phase.value
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Checkpoint:
        if not validate_checkpoint(data):
            raise ValueError("Checkpoint record failed validation.")

        timestamp = datetime.fromisoformat(str(data["timestamp"]))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)

        iteration = data.get("iteration", 0)
        if isinstance(iteration, bool) or not isinstance(iteration, int) or iteration < 0:
            raise ValueError(f"Checkpoint iteration must be a non-negative integer: {iteration!r}")

        current_task = data.get("current_task")
        if current_task is not None and not isinstance(current_task, str):
            raise ValueError("Checkpoint current_task must be a string.")

        completed = data.get("completed_tasks") or []
        if not isinstance(completed, list) or not all(isinstance(item, str) for item in completed):
            raise ValueError("Checkpoint completed_tasks must be a list of strings.")

        phase = Phase(data["phase"])
        interrupted_phase: Phase | None = None
        raw_interrupted = data.get("interrupted_phase")
        if phase is Phase.ERROR and raw_interrupted is not None:
            interrupted_phase = Phase(raw_interrupted)

        raw_error = data.get("error")
        error = ErrorDetail.from_dict(raw_error) if raw_error is not None else None

        return cls(
            phase=phase,
            version=int(data["version"]),
            iteration=iteration,
            current_task=current_task,
            completed_tasks=tuple(completed),
            timestamp=timestamp,
            interrupted_phase=interrupted_phase,
            error=error,
            can_resume=data.get("can_resume") is True,
        )


def validate_checkpoint(record: Mapping[str, Any] | None) -> bool:
    """Gate a persisted checkpoint record before it is trusted.

    Fail-closed: a record missing ``version``, ``phase`` or ``timestamp``, with a
    version below 1, or with an unrecognised phase is rejected.
    """
    if not isinstance(record, Mapping):
        return False
    for key in REQUIRED_FIELDS:
        if record.get(key) is None:
            return False

    version = record["version"]
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        return False

    try:
        Phase(record["phase"])
    except ValueError:
        return False
    return True


@dataclass(frozen=True, slots=True)
class RecoveryInfo:
    can_resume: bool
    phase: Phase
    checkpoint_phase: Phase
    iteration: int
    completed_count: int
    last_task: str | None
    summary: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_resume": self.can_resume,
            "phase": self.phase.value,
            "checkpoint_phase": self.checkpoint_phase.value,
            "iteration": self.iteration,
            "completed_count": self.completed_count,
            "last_task": self.last_task,
            "summary": self.summary,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    phase: Phase
    iteration: int
    current_task: str | None
    completed_count: int
    completed_tasks: tuple[str, ...] = ()
