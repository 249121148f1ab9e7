"""Recovery protocol for resuming interrupted sessions.

The orchestrator reads the single checkpoint slot of a session and decides
whether resumption is offered:

- ``inspect(task_id)`` - read, validate and describe the checkpoint
- ``prompt(info, choose)`` - turn the user's answer into a ``RecoveryChoice``
- ``recover(task_id)`` - re-validate and build the ``ExecutionContext``
- ``clear(task_id, keep_checkpoint)`` - leave resume mode, optionally discard

Every failure comes back as a ``RecoveryFailure`` value. Callers route any
failure to the restart path; a partially trusted checkpoint is never resumed.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

import structlog

from ralph.checkpoint.models import (
    RESUMABLE_PHASES,
    Checkpoint,
    ExecutionContext,
    Phase,
    RecoveryInfo,
    validate_checkpoint,
)
from ralph.checkpoint.store import CheckpointStore, RalphStateError

logger = structlog.get_logger(__name__)


class RecoveryChoice(str, Enum):
    RESUME = "resume"
    RESTART = "restart"
    CANCEL = "cancel"


class FailureKind(str, Enum):
    NO_CHECKPOINT = "no_checkpoint"
    INVALID_CHECKPOINT = "invalid_checkpoint"
    UNRESUMABLE = "unresumable"


@dataclass(frozen=True)
class RecoveryFailure:
    """Why a session cannot be resumed.

    ``NO_CHECKPOINT`` is a no-op signal rather than an error.
    """

    kind: FailureKind
    reason: str

    def __post_init__(self) -> None:
        if not self.reason:
            raise ValueError("RecoveryFailure must have a reason explaining why")


@dataclass(frozen=True)
class ResumeState:
    task_id: str
    context: ExecutionContext


RecoveryChooser = Callable[[Sequence[RecoveryChoice]], RecoveryChoice]


def needs_recovery(checkpoint: Checkpoint | None) -> bool:
    if checkpoint is None:
        return False
    if checkpoint.phase in RESUMABLE_PHASES:
        return True
    return checkpoint.phase is Phase.ERROR and checkpoint.can_resume


def describe(checkpoint: Checkpoint) -> RecoveryInfo:
    if checkpoint.phase is Phase.ERROR:
        message = checkpoint.error.message if checkpoint.error else "unknown error"
        summary = f"Stopped due to: {message}"
    elif checkpoint.phase is Phase.BUILDING:
        summary = f"{checkpoint.iteration} iteration(s) completed"
        if checkpoint.current_task:
            summary += f" - Last: {checkpoint.current_task}"
    elif checkpoint.phase is Phase.PLANNING:
        summary = "Planning phase was interrupted"
    elif checkpoint.phase is Phase.SPEC_CREATION:
        summary = "Spec creation was interrupted"
    elif checkpoint.phase is Phase.COMPLETE:
        summary = "Session already complete"
    else:
        summary = "Session is idle"

    return RecoveryInfo(
        can_resume=needs_recovery(checkpoint),
        phase=checkpoint.resume_phase,
        checkpoint_phase=checkpoint.phase,
        iteration=checkpoint.iteration,
        completed_count=len(checkpoint.completed_tasks),
        last_task=checkpoint.current_task,
        summary=summary,
        timestamp=checkpoint.timestamp,
    )


class RecoveryOrchestrator:
    """Decides if and how a session resumes from its checkpoint.

    Usage:
        orchestrator = RecoveryOrchestrator(store)

        info = orchestrator.inspect(task_id)
        if isinstance(info, RecoveryInfo):
            choice = orchestrator.prompt(info, choose)
            if choice is RecoveryChoice.RESUME:
                context = orchestrator.recover(task_id)
    """

    def __init__(self, store: CheckpointStore) -> None:
        self._store = store
        self._resume_state: ResumeState | None = None

    @property
    def resume_state(self) -> ResumeState | None:
        return self._resume_state

    @property
    def is_resuming(self) -> bool:
        return self._resume_state is not None

    def _load(self, task_id: str) -> Checkpoint | RecoveryFailure:
        try:
            record = self._store.read(task_id)
        except RalphStateError as exc:
            return RecoveryFailure(FailureKind.INVALID_CHECKPOINT, str(exc))
        if record is None:
            return RecoveryFailure(FailureKind.NO_CHECKPOINT, f"No checkpoint for '{task_id}'")
        if not validate_checkpoint(record):
            return RecoveryFailure(
                FailureKind.INVALID_CHECKPOINT, f"Checkpoint for '{task_id}' failed validation"
            )
        try:
            return Checkpoint.from_dict(record)
        except ValueError as exc:
            return RecoveryFailure(
                FailureKind.INVALID_CHECKPOINT, f"Checkpoint for '{task_id}' is malformed: {exc}"
            )

    def inspect(self, task_id: str) -> RecoveryInfo | RecoveryFailure:
        loaded = self._load(task_id)
        if isinstance(loaded, RecoveryFailure):
            if loaded.kind is FailureKind.INVALID_CHECKPOINT:
                logger.warning("checkpoint_invalid", task_id=task_id, reason=loaded.reason)
            return loaded
        info = describe(loaded)
        logger.info(
            "checkpoint_found",
            task_id=task_id,
            phase=loaded.phase.value,
            can_resume=info.can_resume,
        )
        return info

    def needs_recovery(self, task_id: str) -> bool:
        loaded = self._load(task_id)
        if isinstance(loaded, RecoveryFailure):
            return False
        return needs_recovery(loaded)

    @staticmethod
    def prompt(info: RecoveryInfo, choose: RecoveryChooser) -> RecoveryChoice:
        if not info.can_resume:
            return RecoveryChoice.RESTART
        options = (RecoveryChoice.RESUME, RecoveryChoice.RESTART, RecoveryChoice.CANCEL)
        choice = choose(options)
        if choice not in options:
            raise ValueError(f"Unsupported recovery choice: {choice!r}")
        return choice

    def recover(self, task_id: str) -> ExecutionContext | RecoveryFailure:
        loaded = self._load(task_id)
        if isinstance(loaded, RecoveryFailure):
            logger.warning("recovery_refused", task_id=task_id, kind=loaded.kind.value)
            return loaded
        if not needs_recovery(loaded):
            if loaded.phase is Phase.ERROR:
                reason = "Checkpoint recorded an error that cannot be resumed"
            else:
                reason = f"Checkpoint phase {loaded.phase.value} is not resumable"
            logger.warning("recovery_refused", task_id=task_id, kind=FailureKind.UNRESUMABLE.value)
            return RecoveryFailure(FailureKind.UNRESUMABLE, reason)

        context = ExecutionContext(
            phase=loaded.resume_phase,
            iteration=loaded.iteration,
            current_task=loaded.current_task,
            completed_count=len(loaded.completed_tasks),
            completed_tasks=loaded.completed_tasks,
        )
        self._resume_state = ResumeState(task_id=task_id, context=context)
        logger.info(
            "session_resuming",
            task_id=task_id,
            phase=context.phase.value,
            iteration=context.iteration,
        )
        return context

    def clear(self, task_id: str, keep_checkpoint: bool = False) -> None:
        self._resume_state = None
        if not keep_checkpoint:
            self._store.delete(task_id)
            logger.info("checkpoint_discarded", task_id=task_id)
