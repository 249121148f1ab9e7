from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import structlog

from ralph.checkpoint.models import Checkpoint, ErrorDetail, ExecutionContext, Phase
from ralph.checkpoint.recovery import needs_recovery
from ralph.checkpoint.store import CheckpointStore
from ralph.config import RalphConfig, RunMode
from ralph.effects.base import (
    AssistantCancelledError,
    AssistantOptions,
    AssistantResult,
    EffectProvider,
    ProviderError,
)
from ralph.plan import PLAN_TEMPLATE, PROGRESS_TEMPLATE, PlanTask
from ralph.prompts import (
    COMPLETE_SIGNAL,
    PLAN_SIGNAL,
    SPEC_CREATED_SIGNAL,
    BuilderPrompt,
    PlannerPrompt,
    SpecCreatorPrompt,
)
from ralph.sessions import SessionPaths

CallOutcome = Literal["success", "failed", "cancelled"]

logger = structlog.get_logger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class SessionOutcome(str, Enum):
    COMPLETE = "complete"
    PLANNED = "planned"
    SPEC_CREATED = "spec_created"
    NO_TASKS = "no_tasks"
    STOPPED = "stopped"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Outcomes after which the checkpoint is dropped.
_FINISHED = frozenset(
    {SessionOutcome.COMPLETE, SessionOutcome.PLANNED, SessionOutcome.SPEC_CREATED}
)


@dataclass(slots=True)
class PhaseStats:
    calls: int = 0
    duration_seconds: float = 0.0


@dataclass(slots=True)
class SessionStats:
    calls_total: int = 0
    calls_successful: int = 0
    calls_failed: int = 0
    calls_cancelled: int = 0
    total_duration_seconds: float = 0.0
    phases: dict[str, PhaseStats] = field(default_factory=dict)

    def record(self, phase: Phase, duration_seconds: float, outcome: CallOutcome) -> None:
        self.calls_total += 1
        if outcome == "success":
            self.calls_successful += 1
        elif outcome == "failed":
            self.calls_failed += 1
        else:
            self.calls_cancelled += 1
        self.total_duration_seconds += duration_seconds
        bucket = self.phases.setdefault(phase.value, PhaseStats())
        bucket.calls += 1
        bucket.duration_seconds += duration_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls_total": self.calls_total,
            "calls_successful": self.calls_successful,
            "calls_failed": self.calls_failed,
            "calls_cancelled": self.calls_cancelled,
            "total_duration_seconds": round(self.total_duration_seconds, 1),
            "phases": {
                name: {"calls": item.calls, "duration_seconds": round(item.duration_seconds, 1)}
                for name, item in self.phases.items()
            },
        }


@dataclass(slots=True)
class SessionSummary:
    task_id: str
    outcome: SessionOutcome
    iterations: int
    completed_tasks: list[str]
    stats: SessionStats
    started_at: str
    ended_at: str
    error: str | None = None
    can_resume: bool = False


@dataclass(slots=True)
class DriverSettings:
    model: str | None = None
    timeout_seconds: float = 1800.0
    allow_all_tools: bool = True
    max_iterations: int = 0
    iteration_delay_seconds: float = 2.0
    max_consecutive_failures: int = 3

    @classmethod
    def from_config(
        cls,
        config: RalphConfig,
        *,
        model: str | None = None,
        max_iterations: int | None = None,
        dry_run: bool = False,
    ) -> DriverSettings:
        limit = config.loop.max_iterations if max_iterations is None else max_iterations
        if dry_run and limit <= 0:
            limit = max(1, config.loop.dry_run_iterations)
        delay = 0.0 if dry_run else max(0.0, config.loop.iteration_delay_seconds)
        return cls(
            model=model or config.assistant.model or None,
            timeout_seconds=max(1.0, float(config.assistant.timeout_seconds)),
            allow_all_tools=config.assistant.allow_all_tools,
            max_iterations=max(0, int(limit)),
            iteration_delay_seconds=delay,
            max_consecutive_failures=max(1, int(config.loop.max_consecutive_failures)),
        )


class SessionDriver:
    """Runs the spec -> plan -> build loop for one session.

    The driver only touches the outside world through ``provider`` and records
    progress in ``checkpoints`` at every phase and iteration boundary, so the
    same code path serves real runs and dry runs.
    """

    def __init__(
        self,
        provider: EffectProvider,
        checkpoints: CheckpointStore,
        task_id: str,
        paths: SessionPaths,
        settings: DriverSettings,
        agents_dir: Path | None = None,
    ) -> None:
        self.provider = provider
        self.checkpoints = checkpoints
        self.task_id = task_id
        self.paths = paths
        self.settings = settings
        self.agents_dir = agents_dir
        self.stats = SessionStats()
        self.iteration = 0
        self.completed_tasks: list[str] = []
        self._phase = Phase.IDLE
        self._current_task: str | None = None
        self._last_checkpoint: Checkpoint | None = None
        self._run_start = 0
        self._started_at = _utcnow_iso()

    def _begin(self, context: ExecutionContext | None) -> None:
        self.stats = SessionStats()
        self._started_at = _utcnow_iso()
        self._phase = Phase.IDLE
        self._current_task = None
        self._last_checkpoint = None
        if context is None:
            self.iteration = 0
            self.completed_tasks = []
            self._run_start = 0
            return
        self.iteration = context.iteration
        self.completed_tasks = list(context.completed_tasks)
        self._current_task = context.current_task
        self._run_start = self.iteration

    def _options(self, phase: Phase) -> AssistantOptions:
        return AssistantOptions(
            model=self.settings.model,
            phase=phase,
            timeout_seconds=self.settings.timeout_seconds,
            allow_all_tools=self.settings.allow_all_tools,
        )

    def _checkpoint(self, phase: Phase, current_task: str | None = None) -> Checkpoint:
        self._phase = phase
        self._current_task = current_task
        self._last_checkpoint = self.checkpoints.write(
            self.task_id,
            Checkpoint(
                phase=phase,
                iteration=self.iteration,
                current_task=current_task,
                completed_tasks=tuple(self.completed_tasks),
            ),
        )
        return self._last_checkpoint

    def _fail(
        self,
        kind: str,
        message: str,
        *,
        can_resume: bool,
        context: dict[str, Any] | None = None,
    ) -> Checkpoint:
        interrupted = self._phase
        if interrupted in {Phase.IDLE, Phase.COMPLETE, Phase.ERROR}:
            can_resume = False
        checkpoint = self.checkpoints.write(
            self.task_id,
            Checkpoint(
                phase=Phase.ERROR,
                interrupted_phase=interrupted,
                iteration=self.iteration,
                current_task=self._current_task,
                completed_tasks=tuple(self.completed_tasks),
                error=ErrorDetail(kind=kind, message=message, context=context or {}),
                can_resume=can_resume,
            ),
        )
        self._phase = Phase.ERROR
        self._last_checkpoint = checkpoint
        logger.warning(
            "session_error_checkpoint",
            task_id=self.task_id,
            kind=kind,
            interrupted_phase=interrupted.value,
            can_resume=can_resume,
        )
        return checkpoint

    def _complete(self) -> None:
        self.checkpoints.delete(self.task_id)
        self._phase = Phase.COMPLETE
        self._last_checkpoint = None
        logger.info("session_complete", task_id=self.task_id, iterations=self.iteration)

    def _summary(self, outcome: SessionOutcome, *, error: str | None = None) -> SessionSummary:
        return SessionSummary(
            task_id=self.task_id,
            outcome=outcome,
            iterations=self.iteration,
            completed_tasks=list(self.completed_tasks),
            stats=self.stats,
            started_at=self._started_at,
            ended_at=_utcnow_iso(),
            error=error,
            can_resume=needs_recovery(self._last_checkpoint),
        )

    def _ensure_files(self) -> None:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        if not self.paths.plan_file.exists():
            self.provider.write_file(self.paths.plan_file, f"{PLAN_TEMPLATE}Created: {stamp}\n")
        if not self.paths.progress_file.exists():
            self.provider.write_file(
                self.paths.progress_file, f"{PROGRESS_TEMPLATE}Started: {stamp}\n"
            )

    def _require_tool(self) -> None:
        if not self.provider.check_tool_available():
            raise ProviderError(
                "Assistant CLI is not available.",
                operation="check_tool_available",
                retriable=False,
            )

    async def _invoke(self, prompt: str, phase: Phase) -> AssistantResult:
        try:
            result = await self.provider.invoke_assistant(prompt, self._options(phase))
        except AssistantCancelledError:
            self.stats.record(phase, 0.0, "cancelled")
            raise
        self.stats.record(phase, result.duration_seconds, "success" if result.success else "failed")
        return result

    async def _spec_creation(self, description: str) -> SessionOutcome:
        self._checkpoint(Phase.SPEC_CREATION, current_task=description)
        logger.info("phase_started", phase=Phase.SPEC_CREATION.value, task_id=self.task_id)
        prompt = SpecCreatorPrompt(self.agents_dir).render(description, self.paths.specs_dir)
        result = await self._invoke(prompt, Phase.SPEC_CREATION)
        if not result.success:
            self._fail(
                "assistant_failed",
                "Spec creation call failed",
                can_resume=True,
                context={"exit_code": result.exit_code},
            )
            return SessionOutcome.FAILED
        if SPEC_CREATED_SIGNAL in result.output:
            logger.info("spec_created", task_id=self.task_id)
        return SessionOutcome.SPEC_CREATED

    async def _planning(self) -> tuple[SessionOutcome, PlanTask | None]:
        self._checkpoint(Phase.PLANNING)
        logger.info("phase_started", phase=Phase.PLANNING.value, task_id=self.task_id)
        prompt = PlannerPrompt(self.agents_dir).render(self.paths.plan_file, self.paths.specs_dir)
        result = await self._invoke(prompt, Phase.PLANNING)
        if not result.success:
            self._fail(
                "assistant_failed",
                "Planning call failed",
                can_resume=True,
                context={"exit_code": result.exit_code},
            )
            return SessionOutcome.FAILED, None
        if PLAN_SIGNAL in result.output:
            logger.info("planning_signal_received", task_id=self.task_id)

        task = self.provider.read_next_task(self.paths.plan_file)
        if task is None:
            logger.warning("planning_created_no_tasks", task_id=self.task_id)
            self._checkpoint(Phase.IDLE)
            return SessionOutcome.NO_TASKS, None
        return SessionOutcome.PLANNED, task

    async def _building(self, first_task: PlanTask | None) -> SessionOutcome:
        logger.info("phase_started", phase=Phase.BUILDING.value, task_id=self.task_id)
        failures = 0
        task = first_task
        while True:
            max_iterations = self.settings.max_iterations
            if max_iterations > 0 and self.iteration - self._run_start >= max_iterations:
                logger.warning("max_iterations_reached", max_iterations=max_iterations)
                self._checkpoint(Phase.BUILDING, current_task=self._current_task)
                return SessionOutcome.STOPPED

            if task is None:
                task = self.provider.read_next_task(self.paths.plan_file)
            if task is None:
                logger.info("all_tasks_completed", task_id=self.task_id)
                return SessionOutcome.COMPLETE

            self._checkpoint(Phase.BUILDING, current_task=task.description)
            logger.info(
                "build_iteration",
                iteration=self.iteration + 1,
                task=task.description,
                line=task.line_number,
            )
            result = await self._invoke(
                BuilderPrompt(self.agents_dir).render(task.description), Phase.BUILDING
            )
            self.iteration += 1

            if result.success:
                failures = 0
                if not self.completed_tasks or self.completed_tasks[-1] != task.description:
                    self.completed_tasks.append(task.description)
                self._checkpoint(Phase.BUILDING, current_task=task.description)
                if COMPLETE_SIGNAL in result.output:
                    logger.info("completion_signal_received", task_id=self.task_id)
                    return SessionOutcome.COMPLETE
            else:
                failures += 1
                logger.warning(
                    "build_iteration_failed",
                    iteration=self.iteration,
                    exit_code=result.exit_code,
                    consecutive_failures=failures,
                )
                if failures >= self.settings.max_consecutive_failures:
                    self._fail(
                        "assistant_failed",
                        f"{failures} consecutive assistant calls failed",
                        can_resume=True,
                        context={"exit_code": result.exit_code},
                    )
                    return SessionOutcome.FAILED
                self._checkpoint(Phase.BUILDING, current_task=task.description)

            task = None
            if self.settings.iteration_delay_seconds > 0:
                await asyncio.sleep(self.settings.iteration_delay_seconds)

    def _starting_phase(
        self, mode: RunMode, context: ExecutionContext | None
    ) -> tuple[Phase, PlanTask | None]:
        if context is not None and context.phase in {
            Phase.SPEC_CREATION,
            Phase.PLANNING,
            Phase.BUILDING,
        }:
            return context.phase, None
        if mode == "plan":
            return Phase.PLANNING, None
        if mode == "build":
            return Phase.BUILDING, None
        task = self.provider.read_next_task(self.paths.plan_file)
        if task is None:
            return Phase.PLANNING, None
        return Phase.BUILDING, task

    async def _guarded(self, body: Awaitable[SessionOutcome]) -> SessionSummary:
        try:
            outcome = await body
        except AssistantCancelledError as exc:
            self._fail("cancelled", "Cancelled by user", can_resume=not exc.partial)
            return self._summary(SessionOutcome.CANCELLED, error=str(exc))
        except ProviderError as exc:
            self._fail(
                "provider_failure",
                str(exc),
                can_resume=exc.retriable,
                context={"operation": exc.operation},
            )
            return self._summary(SessionOutcome.FAILED, error=str(exc))
        except asyncio.CancelledError:
            # Interrupted between assistant calls: nothing external was in flight.
            self._fail("cancelled", "Interrupted by user", can_resume=True)
            raise

        if outcome in _FINISHED:
            self._complete()
        return self._summary(outcome)

    async def run(
        self,
        mode: RunMode = "auto",
        context: ExecutionContext | None = None,
    ) -> SessionSummary:
        self._begin(context)
        self._require_tool()
        self._ensure_files()
        logger.info(
            "session_started",
            task_id=self.task_id,
            mode=mode,
            provider=self.provider.mode.value,
            resumed=context is not None,
        )

        async def _body() -> SessionOutcome:
            phase, first_task = self._starting_phase(mode, context)
            if phase is Phase.SPEC_CREATION:
                description = context.current_task if context else None
                if description:
                    outcome = await self._spec_creation(description)
                    if outcome is not SessionOutcome.SPEC_CREATED:
                        return outcome
                phase = Phase.PLANNING
            if phase is Phase.PLANNING:
                outcome, first_task = await self._planning()
                if outcome is not SessionOutcome.PLANNED or mode == "plan":
                    return outcome
            return await self._building(first_task)

        return await self._guarded(_body())

    async def create_spec(self, description: str) -> SessionSummary:
        self._begin(None)
        self._require_tool()
        return await self._guarded(self._spec_creation(description))
