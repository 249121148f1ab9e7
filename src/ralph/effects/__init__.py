from __future__ import annotations

from pathlib import Path

from ralph.effects.action_log import ActionEntry, ActionLog, ActionType, DryRunReport
from ralph.effects.base import (
    AssistantCancelledError,
    AssistantOptions,
    AssistantResult,
    EffectProvider,
    ExecutionMode,
    ProviderError,
)
from ralph.effects.real import RealEffectProvider
from ralph.effects.simulated import SimulatedEffectProvider
from ralph.sessions import SessionManager


def build_provider(
    mode: ExecutionMode,
    sessions: SessionManager,
    *,
    binary: str = "copilot",
    working_directory: Path | None = None,
) -> EffectProvider:
    if mode is ExecutionMode.SIMULATED:
        return SimulatedEffectProvider(sessions.state_dir)
    return RealEffectProvider(sessions, binary=binary, working_directory=working_directory)


__all__ = [
    "ActionEntry",
    "ActionLog",
    "ActionType",
    "AssistantCancelledError",
    "AssistantOptions",
    "AssistantResult",
    "DryRunReport",
    "EffectProvider",
    "ExecutionMode",
    "ProviderError",
    "RealEffectProvider",
    "SimulatedEffectProvider",
    "build_provider",
]
