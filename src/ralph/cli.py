from __future__ import annotations

import asyncio
import json
from collections.abc import Coroutine, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from ralph.checkpoint import (
    DEFAULT_TASK_ID,
    CheckpointStore,
    ExecutionContext,
    FailureKind,
    FileCheckpointStore,
    MemoryCheckpointStore,
    Phase,
    RalphStateError,
    RecoveryChoice,
    RecoveryFailure,
    RecoveryOrchestrator,
    validate_checkpoint,
)
from ralph.checkpoint.recovery import RecoveryChooser
from ralph.config import RalphConfig, load_config, save_config
from ralph.driver import DriverSettings, SessionDriver, SessionOutcome, SessionSummary
from ralph.effects import (
    EffectProvider,
    ExecutionMode,
    ProviderError,
    SimulatedEffectProvider,
    build_provider,
)
from ralph.log import configure_logging
from ralph.plan import PLAN_TEMPLATE, PROGRESS_TEMPLATE, task_stats
from ralph.sessions import SessionManager

INTERRUPTED_EXIT_CODE = 130


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: RalphConfig
    sessions: SessionManager
    checkpoints: FileCheckpointStore

    def provider(self) -> EffectProvider:
        return build_provider(
            ExecutionMode.REAL,
            self.sessions,
            binary=self.config.assistant.binary,
            working_directory=self.repo_root,
        )


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    state_dir = config.state_path(repo_root)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        sessions=SessionManager(state_dir, config.specs_path(repo_root)),
        checkpoints=FileCheckpointStore(state_dir),
    )


def _resolve_session(runtime: Runtime, session_id: str | None) -> str:
    if session_id is None:
        return runtime.sessions.active_id()
    if session_id != DEFAULT_TASK_ID and not runtime.sessions.exists(session_id):
        raise click.ClickException(f"Session '{session_id}' does not exist.")
    return session_id


def _chooser(preset: str) -> RecoveryChooser:
    def choose(options: Sequence[RecoveryChoice]) -> RecoveryChoice:
        if preset != "ask":
            return RecoveryChoice(preset)
        value = click.prompt(
            "Resume, restart or cancel?",
            type=click.Choice([option.value for option in options]),
            default=RecoveryChoice.RESUME.value,
        )
        return RecoveryChoice(value)

    return choose


def _recover(
    store: CheckpointStore, task_id: str, preset: str
) -> tuple[bool, ExecutionContext | None]:
    """Return ``(proceed, context)`` for the session's checkpoint."""
    orchestrator = RecoveryOrchestrator(store)
    info = orchestrator.inspect(task_id)
    if isinstance(info, RecoveryFailure):
        if info.kind is FailureKind.INVALID_CHECKPOINT:
            click.echo(f"Ignoring unusable checkpoint: {info.reason}")
            orchestrator.clear(task_id)
        return True, None

    if info.can_resume:
        click.echo(f"Found interrupted session '{task_id}'")
        click.echo(f"  Phase: {info.phase.value}")
        click.echo(f"  Status: {info.summary}")
        click.echo(f"  Saved: {info.timestamp.isoformat()}")
    elif info.checkpoint_phase is Phase.ERROR:
        click.echo(f"Previous run cannot be resumed ({info.summary}); starting fresh.")

    choice = orchestrator.prompt(info, _chooser(preset))
    if choice is RecoveryChoice.CANCEL:
        return False, None
    if choice is RecoveryChoice.RESTART:
        orchestrator.clear(task_id)
        return True, None

    recovered = orchestrator.recover(task_id)
    if isinstance(recovered, RecoveryFailure):
        click.echo(f"Cannot resume: {recovered.reason}; starting fresh.")
        orchestrator.clear(task_id)
        return True, None
    click.echo(f"Resuming from {recovered.phase.value} (iteration {recovered.iteration})")
    orchestrator.clear(task_id, keep_checkpoint=True)
    return True, recovered


def _discard_checkpoint(store: CheckpointStore, task_id: str, yes: bool) -> None:
    """Clear the session's checkpoint before a new spec, asking first if it is resumable."""
    orchestrator = RecoveryOrchestrator(store)
    info = orchestrator.inspect(task_id)
    if isinstance(info, RecoveryFailure):
        if info.kind is FailureKind.INVALID_CHECKPOINT:
            click.echo(f"Ignoring unusable checkpoint: {info.reason}")
            orchestrator.clear(task_id)
        return
    if info.can_resume:
        click.echo(f"Session '{task_id}' has an interrupted run: {info.summary}")
        click.echo("Resume it with 'ralph run', or discard it to create a new spec.")
        if not yes:
            click.confirm("Discard the checkpoint?", abort=True)
    orchestrator.clear(task_id)


def _execute(coro: Coroutine[Any, Any, SessionSummary]) -> SessionSummary:
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        click.echo("Interrupted; checkpoint saved.", err=True)
        raise click.exceptions.Exit(INTERRUPTED_EXIT_CODE) from None
    except (ProviderError, RalphStateError) as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_summary(summary: SessionSummary) -> None:
    stats = summary.stats
    click.echo(f"Session: {summary.task_id}")
    click.echo(f"Outcome: {summary.outcome.value}")
    click.echo(f"Iterations: {summary.iterations}")
    click.echo(f"Completed tasks: {len(summary.completed_tasks)}")
    click.echo(
        f"Assistant calls: {stats.calls_total} "
        f"({stats.calls_successful} ok, {stats.calls_failed} failed, "
        f"{stats.calls_cancelled} cancelled)"
    )
    for name, phase in stats.phases.items():
        click.echo(f"  {name}: {phase.calls} call(s), {phase.duration_seconds:.1f}s")
    if summary.error:
        click.echo(f"Error: {summary.error}")
    if summary.can_resume:
        click.echo("Checkpoint saved; run again to resume.")


def _finish(summary: SessionSummary, provider: EffectProvider) -> None:
    _echo_summary(summary)
    if isinstance(provider, SimulatedEffectProvider):
        click.echo(provider.end().render(), nl=False)
    if summary.outcome is SessionOutcome.CANCELLED:
        raise click.exceptions.Exit(INTERRUPTED_EXIT_CODE)
    if summary.outcome is SessionOutcome.FAILED:
        raise click.ClickException(summary.error or "Session failed.")


def _session_effects(
    runtime: Runtime, task_id: str, dry_run: bool
) -> tuple[EffectProvider, CheckpointStore]:
    if not dry_run:
        return runtime.provider(), runtime.checkpoints
    provider = SimulatedEffectProvider(runtime.sessions.state_dir)
    provider.begin()
    click.echo("DRY RUN: no assistant calls, file writes or checkpoints will be made.")
    return provider, MemoryCheckpointStore.snapshot(runtime.checkpoints, task_id)


def _driver(
    runtime: Runtime,
    provider: EffectProvider,
    store: CheckpointStore,
    task_id: str,
    settings: DriverSettings,
) -> SessionDriver:
    return SessionDriver(
        provider,
        store,
        task_id,
        runtime.sessions.paths(task_id),
        settings,
        agents_dir=runtime.config.agents_path(runtime.repo_root),
    )


@click.group()
@click.version_option(package_name="ralph-loop")
def cli() -> None:
    """Ralph autonomous coding loop."""
    configure_logging()


@cli.command("init")
@click.option("--name", default=None, help="Project name stored in the config.")
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def init_command(name: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    config.project.name = name or (
        config.project.name if config_path.exists() else repo_root.name
    )
    save_config(config_path, config)

    runtime = _load_runtime(repo_root, config_path)
    runtime.config.specs_path(repo_root).mkdir(parents=True, exist_ok=True)
    provider = runtime.provider()
    paths = runtime.sessions.paths(DEFAULT_TASK_ID)
    try:
        if not paths.plan_file.exists():
            provider.write_file(paths.plan_file, PLAN_TEMPLATE)
        if not paths.progress_file.exists():
            provider.write_file(paths.progress_file, PROGRESS_TEMPLATE)
    except ProviderError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized Ralph in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {runtime.sessions.state_dir}")
    click.echo(f"Assistant: {config.assistant.binary} ({config.assistant.model})")


@cli.command("run")
@click.option(
    "--mode", type=click.Choice(["auto", "plan", "build"]), default="auto", show_default=True
)
@click.option("--model", default=None, help="Override the configured model.")
@click.option("--max", "max_iterations", type=click.IntRange(min=0), default=None)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--session", "session_id", default=None)
@click.option(
    "--recovery",
    type=click.Choice(["ask", "resume", "restart"]),
    default="ask",
    show_default=True,
    help="What to do with an interrupted session.",
)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def run_command(
    mode: str,
    model: str | None,
    max_iterations: int | None,
    dry_run: bool,
    session_id: str | None,
    recovery: str,
    verbose: bool,
    config_value: str,
) -> None:
    configure_logging(verbose)
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    task_id = _resolve_session(runtime, session_id)
    provider, store = _session_effects(runtime, task_id, dry_run)

    proceed, context = _recover(store, task_id, recovery)
    if not proceed:
        click.echo("Cancelled.")
        return

    settings = DriverSettings.from_config(
        runtime.config, model=model, max_iterations=max_iterations, dry_run=dry_run
    )
    driver = _driver(runtime, provider, store, task_id, settings)
    summary = _execute(driver.run(mode, context))  # type: ignore[arg-type]
    _finish(summary, provider)


@cli.command("spec")
@click.argument("description")
@click.option("--model", default=None, help="Override the configured model.")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--session", "session_id", default=None)
@click.option(
    "--yes", is_flag=True, default=False, help="Discard an interrupted run without asking."
)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def spec_command(
    description: str,
    model: str | None,
    dry_run: bool,
    session_id: str | None,
    yes: bool,
    verbose: bool,
    config_value: str,
) -> None:
    if not description.strip():
        raise click.BadParameter("Description must not be empty.", param_hint="DESCRIPTION")
    configure_logging(verbose)
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    task_id = _resolve_session(runtime, session_id)
    provider, store = _session_effects(runtime, task_id, dry_run)
    _discard_checkpoint(store, task_id, yes)

    settings = DriverSettings.from_config(runtime.config, model=model, dry_run=dry_run)
    driver = _driver(runtime, provider, store, task_id, settings)
    summary = _execute(driver.create_spec(description))
    _finish(summary, provider)


@cli.command("status")
@click.option("--session", "session_id", default=None)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def status_command(session_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    task_id = _resolve_session(runtime, session_id)
    paths = runtime.sessions.paths(task_id)
    stats = task_stats(paths.plan_file)

    info = RecoveryOrchestrator(runtime.checkpoints).inspect(task_id)
    if isinstance(info, RecoveryFailure):
        checkpoint: dict[str, Any] | None = (
            None
            if info.kind is FailureKind.NO_CHECKPOINT
            else {"valid": False, "reason": info.reason}
        )
    else:
        checkpoint = {"valid": True, **info.to_dict()}

    payload = {
        "project": runtime.config.project.name,
        "session": task_id,
        "plan_file": str(paths.plan_file),
        "specs_dir": str(paths.specs_dir),
        "tasks": {"total": stats.total, "completed": stats.completed, "pending": stats.pending},
        "checkpoint": checkpoint,
        "sessions": len(runtime.sessions.list_sessions()),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.group("checkpoint")
def checkpoint_group() -> None:
    """Inspect or discard a session checkpoint."""


@checkpoint_group.command("show")
@click.option("--session", "session_id", default=None)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def checkpoint_show_command(session_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    task_id = _resolve_session(runtime, session_id)
    try:
        record = runtime.checkpoints.read(task_id)
    except RalphStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if record is None:
        click.echo(f"No checkpoint for session '{task_id}'.")
        return
    payload = {"valid": validate_checkpoint(record), "record": record}
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@checkpoint_group.command("clear")
@click.option("--session", "session_id", default=None)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def checkpoint_clear_command(session_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    task_id = _resolve_session(runtime, session_id)
    if not runtime.checkpoints.exists(task_id):
        click.echo(f"No checkpoint for session '{task_id}'.")
        return
    try:
        RecoveryOrchestrator(runtime.checkpoints).clear(task_id)
    except RalphStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Cleared checkpoint for session '{task_id}'.")


@cli.group("session")
def session_group() -> None:
    """Manage isolated sessions."""


@session_group.command("new")
@click.argument("name")
@click.option("--description", default="", help="Stored in the session's plan header.")
@click.option("--switch/--no-switch", default=True, show_default=True)
@click.option(
    "--shared-specs", is_flag=True, default=False, help="Read specs from the project specs dir."
)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def session_new_command(
    name: str, description: str, switch: bool, shared_specs: bool, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    provider = runtime.provider()
    try:
        handle = provider.create_session(
            name, description, "shared" if shared_specs else "isolated"
        )
        if switch:
            provider.activate_session(handle.id)
    except ProviderError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created session {handle.id}")
    if switch:
        click.echo(f"Active session: {handle.id}")


@session_group.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def session_list_command(as_json: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    records = runtime.sessions.list_sessions()
    if as_json:
        payload = [record.to_dict() for record in records]
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    if not records:
        click.echo("No sessions found.")
        return
    for record in records:
        marker = "*" if record.active else " "
        click.echo(
            f"{marker} {record.id} {record.completed}/{record.completed + record.pending} "
            f"{record.name}"
        )


@session_group.command("switch")
@click.argument("session_id")
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def session_switch_command(session_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        runtime.provider().activate_session(session_id)
    except ProviderError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Active session: {session_id}")


@session_group.command("delete")
@click.argument("session_id")
@click.option("--yes", is_flag=True, default=False, help="Skip the confirmation prompt.")
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def session_delete_command(session_id: str, yes: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    if not yes:
        click.confirm(f"Delete session '{session_id}' and all of its files?", abort=True)
    try:
        runtime.provider().delete_session(session_id)
    except ProviderError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Deleted session {session_id}")
