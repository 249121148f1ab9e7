from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog

from ralph.effects.action_log import ActionEntry, ActionLog, ActionType, DryRunReport
from ralph.effects.base import (
    AssistantOptions,
    AssistantResult,
    EffectProvider,
    ExecutionMode,
)
from ralph.plan import PlanTask, has_pending_tasks
from ralph.sessions import SessionHandle, SpecsMode, slugify

SIMULATED_OUTPUT = "[DRY RUN] Simulated assistant response."

logger = structlog.get_logger(__name__)


class SimulatedEffectProvider(EffectProvider):
    """Records every operation instead of performing it.

    Results mirror the real provider's success case so the driver takes the
    same branches it would on an optimistic real run. Only ``read_next_task``
    looks at real state, and it only reads.
    """

    mode = ExecutionMode.SIMULATED

    def __init__(self, state_dir: Path, action_log: ActionLog | None = None) -> None:
        self.state_dir = state_dir.resolve()
        self.action_log = action_log if action_log is not None else ActionLog()
        self._fabricated_tasks = 0
        self._session_counter = 0

    def _record(self, action_type: ActionType, description: str, **details: Any) -> None:
        entry = self.action_log.record(ActionEntry(action_type, description, details))
        logger.info("dry_run_action", type=entry.type.value, description=description)

    def begin(self) -> None:
        self.action_log.clear()
        self._fabricated_tasks = 0
        self._session_counter = 0

    def end(self) -> DryRunReport:
        report = self.action_log.summarize()
        self.action_log.clear()
        return report

    async def invoke_assistant(self, prompt: str, options: AssistantOptions) -> AssistantResult:
        self._record(
            ActionType.AI_CALL,
            f"Invoke assistant ({options.phase.value})",
            phase=options.phase.value,
            model=options.model,
            prompt_length=len(prompt),
        )
        return AssistantResult(
            success=True,
            output=SIMULATED_OUTPUT,
            duration_seconds=0.0,
            exit_code=0,
        )

    def write_file(self, path: Path, content: str) -> None:
        self._record(
            ActionType.FILE_WRITE,
            f"Write {path.name}",
            path=str(path),
            bytes=len(content.encode("utf-8")),
        )

    def create_session(
        self, name: str, description: str = "", specs_mode: SpecsMode = "isolated"
    ) -> SessionHandle:
        self._session_counter += 1
        session_id = f"{slugify(name)}-dryrun-{self._session_counter}"
        self._record(
            ActionType.TASK,
            f"Create session '{name}'",
            session_id=session_id,
            has_description=bool(description),
            specs_mode=specs_mode,
        )
        return SessionHandle(
            id=session_id,
            name=name,
            directory=self.state_dir / "tasks" / session_id,
        )

    def activate_session(self, session_id: str) -> None:
        self._record(ActionType.TASK, f"Activate session '{session_id}'", session_id=session_id)

    def delete_session(self, session_id: str) -> None:
        self._record(
            ActionType.FILE_DELETE, f"Delete session '{session_id}'", session_id=session_id
        )

    def read_next_task(self, plan_path: Path) -> PlanTask | None:
        pending = has_pending_tasks(plan_path)
        self._record(
            ActionType.FILE_READ,
            f"Read next task from {plan_path.name}",
            path=str(plan_path),
            plan_exists=plan_path.is_file(),
            pending=pending,
        )
        if not pending:
            return None
        self._fabricated_tasks += 1
        return PlanTask(description=f"Simulated task {self._fabricated_tasks}", line_number=0)

    def check_tool_available(self) -> bool:
        self._record(ActionType.COMMAND, "Check assistant CLI availability")
        return True
