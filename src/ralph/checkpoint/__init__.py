"""Checkpoint subsystem for crash recovery.

Provides:
- Checkpoint, validate_checkpoint: the persisted record and its gate
- FileCheckpointStore / MemoryCheckpointStore: single-slot persistence
- RecoveryOrchestrator: decide if and how an interrupted session resumes
"""

from ralph.checkpoint.models import (
    Checkpoint,
    ErrorDetail,
    ExecutionContext,
    Phase,
    RecoveryInfo,
    validate_checkpoint,
)
from ralph.checkpoint.recovery import (
    FailureKind,
    RecoveryChoice,
    RecoveryFailure,
    RecoveryOrchestrator,
    ResumeState,
    describe,
    needs_recovery,
)
from ralph.checkpoint.store import (
    DEFAULT_TASK_ID,
    CheckpointStore,
    FileCheckpointStore,
    MemoryCheckpointStore,
    RalphStateError,
)

__all__ = [
    "DEFAULT_TASK_ID",
    "Checkpoint",
    "CheckpointStore",
    "ErrorDetail",
    "ExecutionContext",
    "FailureKind",
    "FileCheckpointStore",
    "MemoryCheckpointStore",
    "Phase",
    "RalphStateError",
    "RecoveryChoice",
    "RecoveryFailure",
    "RecoveryInfo",
    "RecoveryOrchestrator",
    "ResumeState",
    "describe",
    "needs_recovery",
    "validate_checkpoint",
]
