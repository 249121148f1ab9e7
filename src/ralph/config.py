from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

RunMode = Literal["auto", "plan", "build"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    specs_dir: str = "specs"
    agents_dir: str = ".github/agents"
    state_dir: str = ".ralph"


@dataclass(slots=True)
class AssistantConfig:
    binary: str = "copilot"
    model: str = "claude-sonnet-4.5"
    timeout_seconds: float = 1800.0
    allow_all_tools: bool = True


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 0
    iteration_delay_seconds: float = 2.0
    max_consecutive_failures: int = 3
    dry_run_iterations: int = 3


@dataclass(slots=True)
class RalphConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    assistant: AssistantConfig = field(default_factory=AssistantConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)

    @classmethod
    def default(cls) -> RalphConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RalphConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            assistant=AssistantConfig(**data.get("assistant", {})),
            loop=LoopConfig(**data.get("loop", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "specs_dir": self.project.specs_dir,
                "agents_dir": self.project.agents_dir,
                "state_dir": self.project.state_dir,
            },
            "assistant": {
                "binary": self.assistant.binary,
                "model": self.assistant.model,
                "timeout_seconds": self.assistant.timeout_seconds,
                "allow_all_tools": self.assistant.allow_all_tools,
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "iteration_delay_seconds": self.loop.iteration_delay_seconds,
                "max_consecutive_failures": self.loop.max_consecutive_failures,
                "dry_run_iterations": self.loop.dry_run_iterations,
            },
        }

    def state_path(self, repo_root: Path) -> Path:
        return (repo_root / self.project.state_dir).resolve()

    def specs_path(self, repo_root: Path) -> Path:
        return (repo_root / self.project.specs_dir).resolve()

    def agents_path(self, repo_root: Path) -> Path:
        return (repo_root / self.project.agents_dir).resolve()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RalphConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "assistant", "loop"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RalphConfig:
    if not path.exists():
        return RalphConfig.default()
    return RalphConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: RalphConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
