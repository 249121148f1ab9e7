from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

PENDING_PATTERN = re.compile(r"^\s*-\s*\[\s*\]\s*(.*)$")
COMPLETED_PATTERN = re.compile(r"^\s*-\s*\[[xX]\]\s*(.*)$")

PLAN_TEMPLATE = """# Implementation Plan

## Tasks

(No tasks yet - planning phase will populate this)

---
"""

PROGRESS_TEMPLATE = """# Ralph Progress Log

## Codebase Patterns
(Add reusable patterns here)

---
"""


@dataclass(frozen=True, slots=True)
class PlanTask:
    description: str
    line_number: int


@dataclass(frozen=True, slots=True)
class TaskStats:
    total: int
    completed: int
    pending: int


def _read_lines(plan_path: Path) -> list[str]:
    if not plan_path.is_file():
        return []
    return plan_path.read_text(encoding="utf-8").splitlines()


def task_stats(plan_path: Path) -> TaskStats:
    pending = 0
    completed = 0
    for line in _read_lines(plan_path):
        if PENDING_PATTERN.match(line):
            pending += 1
        elif COMPLETED_PATTERN.match(line):
            completed += 1
    return TaskStats(total=pending + completed, completed=completed, pending=pending)


def next_task(plan_path: Path) -> PlanTask | None:
    for index, line in enumerate(_read_lines(plan_path), start=1):
        match = PENDING_PATTERN.match(line)
        if match and match.group(1).strip():
            return PlanTask(description=match.group(1).strip(), line_number=index)
    return None


def has_pending_tasks(plan_path: Path) -> bool:
    return next_task(plan_path) is not None
