from __future__ import annotations

import asyncio
import shutil
import subprocess
import time
from pathlib import Path

import structlog

from ralph.checkpoint.store import RalphStateError
from ralph.effects.base import (
    AssistantCancelledError,
    AssistantOptions,
    AssistantResult,
    EffectProvider,
    ExecutionMode,
    ProviderError,
)
from ralph.plan import PlanTask, next_task
from ralph.sessions import SessionHandle, SessionManager, SpecsMode

logger = structlog.get_logger(__name__)


class RealEffectProvider(EffectProvider):
    mode = ExecutionMode.REAL

    def __init__(
        self,
        sessions: SessionManager,
        binary: str = "copilot",
        working_directory: Path | None = None,
    ) -> None:
        self.sessions = sessions
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, prompt: str, options: AssistantOptions) -> list[str]:
        command = [self.binary, "-p", prompt]
        if options.allow_all_tools:
            command.append("--allow-all-tools")
        if options.model:
            command.extend(["--model", options.model])
        return command

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def invoke_assistant(self, prompt: str, options: AssistantOptions) -> AssistantResult:
        command = self.build_command(prompt, options)
        logger.info(
            "assistant_invoke",
            binary=self.binary,
            model=options.model,
            phase=options.phase.value,
            prompt_length=len(prompt),
        )
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as exc:
            raise ProviderError(
                f"Assistant binary not found: {self.binary}",
                operation="invoke_assistant",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise ProviderError(
                "Assistant process did not expose stdout.",
                operation="invoke_assistant",
                retriable=False,
            )

        lines: list[str] = []

        async def _consume() -> int:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                lines.append(line)
                logger.debug("assistant_output", line=line)
            return await process.wait()

        try:
            exit_code = await asyncio.wait_for(_consume(), timeout=options.timeout_seconds)
        except TimeoutError:
            await self._terminate(process)
            duration = time.monotonic() - started
            logger.warning(
                "assistant_timeout",
                timeout_seconds=options.timeout_seconds,
                phase=options.phase.value,
            )
            return AssistantResult(
                success=False,
                output="\n".join(lines),
                duration_seconds=duration,
                exit_code=None,
            )
        except asyncio.CancelledError as exc:
            await self._terminate(process)
            logger.warning("assistant_cancelled", phase=options.phase.value, partial=bool(lines))
            raise AssistantCancelledError(
                "Assistant call was cancelled.", partial=bool(lines)
            ) from exc

        duration = time.monotonic() - started
        logger.info(
            "assistant_finished",
            exit_code=exit_code,
            duration_seconds=round(duration, 1),
            output_length=sum(len(line) for line in lines),
        )
        return AssistantResult(
            success=exit_code == 0,
            output="\n".join(lines),
            duration_seconds=duration,
            exit_code=exit_code,
        )

    def write_file(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise ProviderError(
                f"Failed to write {path}: {exc}", operation="write_file", retriable=False
            ) from exc
        logger.debug("file_written", path=str(path), bytes=len(content.encode("utf-8")))

    def create_session(
        self, name: str, description: str = "", specs_mode: SpecsMode = "isolated"
    ) -> SessionHandle:
        try:
            return self.sessions.create(name, description, specs_mode)
        except (OSError, RalphStateError) as exc:
            raise ProviderError(str(exc), operation="create_session", retriable=False) from exc

    def activate_session(self, session_id: str) -> None:
        try:
            self.sessions.activate(session_id)
        except (OSError, RalphStateError) as exc:
            raise ProviderError(str(exc), operation="activate_session", retriable=False) from exc

    def delete_session(self, session_id: str) -> None:
        try:
            self.sessions.delete(session_id)
        except (OSError, RalphStateError) as exc:
            raise ProviderError(str(exc), operation="delete_session", retriable=False) from exc

    def read_next_task(self, plan_path: Path) -> PlanTask | None:
        return next_task(plan_path)

    def check_tool_available(self) -> bool:
        if shutil.which(self.binary) is None:
            logger.error("assistant_missing", binary=self.binary)
            return False
        try:
            proc = subprocess.run(
                [self.binary, "--version"],
                text=True,
                capture_output=True,
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.error("assistant_probe_failed", binary=self.binary, error=str(exc))
            return False
        version = proc.stdout.strip() or "unknown"
        logger.info("assistant_available", binary=self.binary, version=version)
        return proc.returncode == 0
