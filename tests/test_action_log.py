import dataclasses

import pytest

from ralph.effects import ActionEntry, ActionLog, ActionType


def _log_with(*types: ActionType) -> ActionLog:
    log = ActionLog()
    for index, action_type in enumerate(types, start=1):
        log.record(ActionEntry(action_type, f"{action_type.value} #{index}", {"index": index}))
    return log


def test_summary_groups_and_counts_by_type() -> None:
    log = _log_with(
        ActionType.AI_CALL,
        ActionType.FILE_WRITE,
        ActionType.AI_CALL,
        ActionType.FILE_WRITE,
        ActionType.AI_CALL,
    )

    report = log.summarize()
    rendered = report.render()

    assert report.total == 5
    assert report.counts == ((ActionType.AI_CALL, 3), (ActionType.FILE_WRITE, 2))
    assert report.count(ActionType.AI_CALL) == 3
    assert report.count(ActionType.COMMAND) == 0
    assert "Total Actions: 5" in rendered
    assert "  AICall: 3" in rendered
    assert "  FileWrite: 2" in rendered
    assert "0 tokens spent" in rendered
    assert "0 files modified" in rendered
    assert "Would have performed: 3 assistant call(s), 2 file write(s)" in rendered


def test_summary_is_idempotent() -> None:
    log = _log_with(ActionType.FILE_READ, ActionType.TASK, ActionType.OTHER)

    first = log.summarize()
    second = log.summarize()

    assert first == second
    assert first.render() == second.render()
    assert len(log) == 3


def test_empty_summary() -> None:
    report = ActionLog().summarize()

    assert report.total == 0
    assert report.counts == ()
    assert "Would have performed: nothing" in report.render()


def test_entries_are_append_only_and_immutable() -> None:
    log = _log_with(ActionType.COMMAND)
    entry = log.entries[0]

    with pytest.raises(dataclasses.FrozenInstanceError):
        entry.description = "changed"  # type: ignore[misc]
    with pytest.raises(TypeError):
        entry.details["index"] = 99  # type: ignore[index]

    snapshot = log.entries
    log.record(ActionEntry(ActionType.MENU, "Show menu"))

    assert len(snapshot) == 1
    assert [item.type for item in log.entries] == [ActionType.COMMAND, ActionType.MENU]


def test_details_are_copied_on_record() -> None:
    details = {"path": "plan.md"}
    entry = ActionEntry(ActionType.FILE_WRITE, "Write plan.md", details)
    details["path"] = "other.md"

    assert entry.details["path"] == "plan.md"


def test_clear_empties_log() -> None:
    log = _log_with(ActionType.AI_CALL, ActionType.AI_CALL)

    log.clear()

    assert len(log) == 0
    assert log.summarize().total == 0


def test_render_lists_actions_in_order() -> None:
    rendered = _log_with(ActionType.FILE_READ, ActionType.AI_CALL).summarize().render()

    lines = rendered.splitlines()
    assert lines[0] == "DRY-RUN SUMMARY"
    assert lines[-2:] == ["  1. FileRead #1", "  2. AICall #2"]
