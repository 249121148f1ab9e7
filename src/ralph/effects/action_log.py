from __future__ import annotations

from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any


class ActionType(str, Enum):
    AI_CALL = "AICall"
    FILE_WRITE = "FileWrite"
    FILE_DELETE = "FileDelete"
    FILE_READ = "FileRead"
    COMMAND = "Command"
    MENU = "Menu"
    TASK = "Task"
    OTHER = "Other"


# Rough "would have" wording per action type, used by the summary report.
_WOULD_HAVE = {
    ActionType.AI_CALL: "assistant call(s)",
    ActionType.FILE_WRITE: "file write(s)",
    ActionType.FILE_DELETE: "deletion(s)",
    ActionType.FILE_READ: "read(s)",
    ActionType.COMMAND: "command(s)",
    ActionType.MENU: "menu interaction(s)",
    ActionType.TASK: "session operation(s)",
    ActionType.OTHER: "other operation(s)",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class ActionEntry:
    type: ActionType
    description: str
    details: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))


@dataclass(frozen=True, slots=True)
class DryRunReport:
    total: int
    counts: tuple[tuple[ActionType, int], ...]
    descriptions: tuple[str, ...]

    def count(self, action_type: ActionType) -> int:
        return dict(self.counts).get(action_type, 0)

    def render(self) -> str:
        lines = [
            "DRY-RUN SUMMARY",
            f"Total Actions: {self.total}",
        ]
        for action_type, count in self.counts:
            lines.append(f"  {action_type.value}: {count}")
        lines.append("Cost: 0 tokens spent")
        lines.append("Changes: 0 files modified")
        if self.counts:
            would = ", ".join(
                f"{count} {_WOULD_HAVE[action_type]}" for action_type, count in self.counts
            )
            lines.append(f"Would have performed: {would}")
        else:
            lines.append("Would have performed: nothing")
        if self.descriptions:
            lines.append("Actions:")
            for index, description in enumerate(self.descriptions, start=1):
                lines.append(f"  {index}. {description}")
        return "\n".join(lines) + "\n"


class ActionLog:
    """Append-only record of the operations a dry run would have performed."""

    def __init__(self) -> None:
        self._entries: list[ActionEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[ActionEntry, ...]:
        return tuple(self._entries)

    def record(self, entry: ActionEntry) -> ActionEntry:
        self._entries.append(entry)
        return entry

    def clear(self) -> None:
        self._entries = []

    def summarize(self) -> DryRunReport:
        tally = Counter(entry.type for entry in self._entries)
        counts = tuple(
            (action_type, tally[action_type]) for action_type in ActionType if tally[action_type]
        )
        return DryRunReport(
            total=len(self._entries),
            counts=counts,
            descriptions=tuple(entry.description for entry in self._entries),
        )
