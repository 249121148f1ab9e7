import asyncio
import subprocess
from pathlib import Path
from typing import Any

import pytest

from ralph.checkpoint.models import Phase
from ralph.effects import (
    ActionType,
    AssistantCancelledError,
    AssistantOptions,
    EffectProvider,
    ExecutionMode,
    ProviderError,
    RealEffectProvider,
    SimulatedEffectProvider,
    build_provider,
)
from ralph.effects import real as real_module
from ralph.sessions import SessionManager


class FakeStdout:
    def __init__(self, lines: list[bytes], hang: bool = False) -> None:
        self._lines = lines
        self._index = 0
        self._hang = hang

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            if self._hang:
                await asyncio.sleep(3600)
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeProcess:
    def __init__(self, lines: list[bytes], returncode: int = 0, hang: bool = False) -> None:
        self.stdout = FakeStdout(lines, hang=hang)
        self.returncode = returncode
        self.killed = False

    async def wait(self) -> int:
        return self.returncode

    def kill(self) -> None:
        self.killed = True


def _tree(root: Path) -> dict[str, bytes]:
    return {
        str(path.relative_to(root)): path.read_bytes() for path in root.rglob("*") if path.is_file()
    }


def _sessions(tmp_path: Path) -> SessionManager:
    return SessionManager(tmp_path / ".ralph", tmp_path / "specs")


async def _drive(provider: EffectProvider, root: Path) -> list[Any]:
    results: list[Any] = [
        provider.check_tool_available(),
        await provider.invoke_assistant("plan it", AssistantOptions(phase=Phase.PLANNING)),
        provider.write_file(root / "notes" / "a.md", "hello"),
        provider.read_next_task(root / ".ralph" / "IMPLEMENTATION_PLAN.md"),
    ]
    handle = provider.create_session("Feature X", "desc")
    results.append(handle)
    provider.activate_session(handle.id)
    provider.delete_session(handle.id)
    return results


def test_simulated_provider_records_every_call_and_mutates_nothing(tmp_path: Path) -> None:
    state_dir = tmp_path / ".ralph"
    state_dir.mkdir()
    (state_dir / "IMPLEMENTATION_PLAN.md").write_text("- [ ] Build API\n", encoding="utf-8")
    before = _tree(tmp_path)
    provider = SimulatedEffectProvider(state_dir)
    provider.begin()

    results = asyncio.run(_drive(provider, tmp_path))

    assert _tree(tmp_path) == before
    assert len(provider.action_log) == 7
    assert [entry.type for entry in provider.action_log.entries] == [
        ActionType.COMMAND,
        ActionType.AI_CALL,
        ActionType.FILE_WRITE,
        ActionType.FILE_READ,
        ActionType.TASK,
        ActionType.TASK,
        ActionType.FILE_DELETE,
    ]
    assert results[0] is True
    assert results[1].success is True
    assert results[1].exit_code == 0
    assert results[3] is not None
    assert results[3].description == "Simulated task 1"
    assert results[4].id == "feature-x-dryrun-1"

    write_entry = provider.action_log.entries[2]
    assert write_entry.details["bytes"] == 5
    assert "content" not in write_entry.details

    ai_entry = provider.action_log.entries[1]
    assert ai_entry.details["prompt_length"] == len("plan it")
    assert "plan it" not in ai_entry.description


def test_simulated_read_next_task_reports_planning_needed(tmp_path: Path) -> None:
    provider = SimulatedEffectProvider(tmp_path)

    assert provider.read_next_task(tmp_path / "missing.md") is None

    plan = tmp_path / "plan.md"
    plan.write_text("- [x] Done already\n", encoding="utf-8")

    assert provider.read_next_task(plan) is None
    assert [entry.details["pending"] for entry in provider.action_log.entries] == [False, False]


def test_simulated_begin_and_end_clear_the_log(tmp_path: Path) -> None:
    provider = SimulatedEffectProvider(tmp_path)
    provider.write_file(tmp_path / "x.md", "x")
    provider.begin()

    assert len(provider.action_log) == 0

    provider.write_file(tmp_path / "y.md", "y")
    report = provider.end()

    assert report.total == 1
    assert report.count(ActionType.FILE_WRITE) == 1
    assert len(provider.action_log) == 0
    assert not (tmp_path / "y.md").exists()


def test_real_provider_performs_the_same_calls(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    launched: list[tuple[Any, ...]] = []

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        launched.append(args)
        return FakeProcess([b"working\n", b"done\n"])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    monkeypatch.setattr(real_module.shutil, "which", lambda binary: f"/usr/bin/{binary}")
    monkeypatch.setattr(
        real_module.subprocess,
        "run",
        lambda *args, **kwargs: subprocess.CompletedProcess(args, 0, stdout="1.0.0\n"),
    )
    plan = tmp_path / ".ralph" / "IMPLEMENTATION_PLAN.md"
    plan.parent.mkdir(parents=True)
    plan.write_text("# Plan\n- [x] Old\n- [ ] Build API\n", encoding="utf-8")
    sessions = _sessions(tmp_path)
    provider = RealEffectProvider(sessions, binary="copilot", working_directory=tmp_path)

    results = asyncio.run(_drive(provider, tmp_path))

    assert results[0] is True
    assert results[1].success is True
    assert results[1].output == "working\ndone"
    assert (tmp_path / "notes" / "a.md").read_text(encoding="utf-8") == "hello"
    assert results[3].description == "Build API"
    assert results[3].line_number == 3
    assert results[4].id.startswith("feature-x-")
    assert not results[4].directory.exists()
    assert sessions.active_id() == "default"
    assert len(launched) == 1
    assert launched[0][:3] == ("copilot", "-p", "plan it")


def test_build_command_shape(tmp_path: Path) -> None:
    provider = RealEffectProvider(_sessions(tmp_path), binary="copilot")

    full = provider.build_command("go", AssistantOptions(model="claude-sonnet-4.5"))
    bare = provider.build_command("go", AssistantOptions(model=None, allow_all_tools=False))

    assert full == ["copilot", "-p", "go", "--allow-all-tools", "--model", "claude-sonnet-4.5"]
    assert bare == ["copilot", "-p", "go"]


def test_real_provider_reports_nonzero_exit_as_failure(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        return FakeProcess([b"rate limited\n"], returncode=2)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    provider = RealEffectProvider(_sessions(tmp_path))

    result = asyncio.run(provider.invoke_assistant("go", AssistantOptions()))

    assert result.success is False
    assert result.exit_code == 2
    assert result.output == "rate limited"


def test_real_provider_times_out(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([], hang=True)

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    provider = RealEffectProvider(_sessions(tmp_path))

    result = asyncio.run(provider.invoke_assistant("go", AssistantOptions(timeout_seconds=0.05)))

    assert result.success is False
    assert result.exit_code is None
    assert process.killed is True


@pytest.mark.parametrize(("lines", "partial"), [([], False), ([b"editing files\n"], True)])
def test_real_provider_cancellation_is_distinct(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, lines: list[bytes], partial: bool
) -> None:
    process = FakeProcess(lines, hang=True)

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    provider = RealEffectProvider(_sessions(tmp_path))

    async def _run() -> None:
        task = asyncio.create_task(provider.invoke_assistant("go", AssistantOptions()))
        await asyncio.sleep(0.05)
        task.cancel()
        await task

    with pytest.raises(AssistantCancelledError) as excinfo:
        asyncio.run(_run())

    assert excinfo.value.partial is partial
    assert excinfo.value.retriable is (not partial)
    assert process.killed is True


def test_real_provider_missing_binary(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    monkeypatch.setattr(real_module.shutil, "which", lambda binary: None)
    provider = RealEffectProvider(_sessions(tmp_path), binary="nope")

    assert provider.check_tool_available() is False
    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(provider.invoke_assistant("go", AssistantOptions()))
    assert excinfo.value.retriable is False
    assert excinfo.value.operation == "invoke_assistant"


def test_real_provider_wraps_session_errors(tmp_path: Path) -> None:
    provider = RealEffectProvider(_sessions(tmp_path))

    with pytest.raises(ProviderError, match="does not exist"):
        provider.activate_session("ghost")
    with pytest.raises(ProviderError, match="does not exist"):
        provider.delete_session("ghost")


def test_build_provider_selects_implementation(tmp_path: Path) -> None:
    sessions = _sessions(tmp_path)

    real = build_provider(ExecutionMode.REAL, sessions, binary="copilot")
    simulated = build_provider(ExecutionMode.SIMULATED, sessions)

    assert isinstance(real, RealEffectProvider)
    assert real.mode is ExecutionMode.REAL
    assert isinstance(simulated, SimulatedEffectProvider)
    assert simulated.mode is ExecutionMode.SIMULATED
    assert simulated.state_dir == sessions.state_dir
