import json
from pathlib import Path

import pytest

from ralph.checkpoint import RalphStateError
from ralph.sessions import SessionManager, slugify


def _manager(tmp_path: Path) -> SessionManager:
    return SessionManager(tmp_path / ".ralph", tmp_path / "specs")


def test_slugify() -> None:
    assert slugify("User Auth: OAuth2!") == "user-auth-oauth2"
    assert slugify("***") == "session"


def test_default_session_lives_in_state_dir(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    paths = manager.paths()

    assert manager.active_id() == "default"
    assert paths.directory == manager.state_dir
    assert paths.plan_file == manager.state_dir / "IMPLEMENTATION_PLAN.md"
    assert paths.specs_dir == manager.shared_specs_dir
    assert manager.exists("default") is False


def test_create_writes_session_layout(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    handle = manager.create("User Auth", "OAuth login")

    assert handle.id.startswith("user-auth-")
    assert manager.exists(handle.id) is True
    config = json.loads((handle.directory / "task.json").read_text(encoding="utf-8"))
    assert config["name"] == "User Auth"
    assert config["specs_mode"] == "isolated"
    plan = (handle.directory / "IMPLEMENTATION_PLAN.md").read_text(encoding="utf-8")
    assert "## Task: User Auth" in plan
    assert "OAuth login" in plan
    assert (handle.directory / "progress.txt").is_file()
    assert manager.paths(handle.id).specs_dir == handle.directory / "specs"


def test_shared_specs_mode_uses_project_specs(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    handle = manager.create("Refactor", specs_mode="shared")

    assert not (handle.directory / "specs").exists()
    assert manager.paths(handle.id).specs_dir == manager.shared_specs_dir


def test_activate_switch_and_delete(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    first = manager.create("First")
    second = manager.create("Second")

    manager.activate(first.id)
    assert manager.active_id() == first.id
    assert manager.paths().directory == first.directory

    records = {record.id: record for record in manager.list_sessions()}
    assert set(records) == {first.id, second.id}
    assert records[first.id].active is True
    assert records[second.id].active is False

    manager.delete(first.id)

    assert manager.active_id() == "default"
    assert not first.directory.exists()

    manager.activate(second.id)
    manager.activate("default")

    assert manager.active_id() == "default"
    assert not manager.active_file.exists()


def test_unknown_session_is_rejected(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    with pytest.raises(RalphStateError):
        manager.activate("ghost")
    with pytest.raises(RalphStateError):
        manager.delete("ghost")


def test_stale_active_file_falls_back_to_default(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.state_dir.mkdir(parents=True)
    manager.active_file.write_text("removed-session", encoding="utf-8")

    assert manager.active_id() == "default"


def test_list_reports_plan_progress(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    handle = manager.create("Stats")
    (handle.directory / "IMPLEMENTATION_PLAN.md").write_text(
        "- [x] One\n- [ ] Two\n- [ ] Three\n", encoding="utf-8"
    )

    (record,) = manager.list_sessions()

    assert (record.completed, record.pending) == (1, 2)
    assert record.to_dict()["name"] == "Stats"
