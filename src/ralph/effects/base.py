from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ralph.checkpoint.models import Phase
from ralph.plan import PlanTask
from ralph.sessions import SessionHandle, SpecsMode


class ProviderError(RuntimeError):
    """Raised when a real side-effecting operation fails."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.retriable = retriable


class AssistantCancelledError(ProviderError):
    """Raised when an assistant call is interrupted by the user.

    ``partial`` is set when the assistant had already produced output, so it
    may have changed files before it was stopped.
    """

    def __init__(self, message: str, *, partial: bool = False) -> None:
        super().__init__(message, operation="invoke_assistant", retriable=not partial)
        self.partial = partial


class ExecutionMode(str, Enum):
    REAL = "real"
    SIMULATED = "simulated"


@dataclass(frozen=True, slots=True)
class AssistantOptions:
    model: str | None = None
    phase: Phase = Phase.BUILDING
    timeout_seconds: float = 1800.0
    allow_all_tools: bool = True


@dataclass(frozen=True, slots=True)
class AssistantResult:
    success: bool
    output: str
    duration_seconds: float
    exit_code: int | None = None


class EffectProvider(ABC):
    """Every side effect the session driver performs goes through one of these."""

    mode: ExecutionMode

    @abstractmethod
    async def invoke_assistant(self, prompt: str, options: AssistantOptions) -> AssistantResult:
        """Run the assistant CLI on a prompt and return its outcome."""

    @abstractmethod
    def write_file(self, path: Path, content: str) -> None:
        """Create or replace a file."""

    @abstractmethod
    def create_session(
        self, name: str, description: str = "", specs_mode: SpecsMode = "isolated"
    ) -> SessionHandle:
        """Create a session directory; ``shared`` sessions read the project specs."""

    @abstractmethod
    def activate_session(self, session_id: str) -> None:
        """Make a session the active one."""

    @abstractmethod
    def delete_session(self, session_id: str) -> None:
        """Remove a session and its artifacts."""

    @abstractmethod
    def read_next_task(self, plan_path: Path) -> PlanTask | None:
        """Return the next unchecked plan item, or None when planning is needed."""

    @abstractmethod
    def check_tool_available(self) -> bool:
        """Return whether the assistant CLI can be invoked."""
