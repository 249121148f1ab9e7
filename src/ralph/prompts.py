from __future__ import annotations

from pathlib import Path

import structlog

COMPLETE_SIGNAL = "<promise>COMPLETE</promise>"
PLAN_SIGNAL = "<promise>PLANNING_COMPLETE</promise>"
SPEC_CREATED_SIGNAL = "<promise>SPEC_CREATED</promise>"

logger = structlog.get_logger(__name__)


def strip_frontmatter(content: str) -> str:
    lines = content.splitlines()
    if not lines or lines[0].strip() != "---":
        return content.strip()
    for index, line in enumerate(lines[1:], start=1):
        if line.strip() == "---":
            return "\n".join(lines[index + 1 :]).strip()
    return content.strip()


class AgentPrompt:
    role: str = "agent"
    prompt_file: str | None = None
    fallback_prompt: str = "You are an autonomous software engineering agent."

    def __init__(self, agents_dir: Path | None = None) -> None:
        self.agents_dir = agents_dir
        self.text = self._load_prompt()

    def _load_prompt(self) -> str:
        if not self.agents_dir or not self.prompt_file:
            return self.fallback_prompt.strip()
        path = self.agents_dir / self.prompt_file
        try:
            content = strip_frontmatter(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return self.fallback_prompt.strip()
        if not content:
            return self.fallback_prompt.strip()
        logger.debug("agent_prompt_loaded", role=self.role, path=str(path), length=len(content))
        return content


class PlannerPrompt(AgentPrompt):
    role = "planner"
    prompt_file = "ralph-planner.agent.md"
    fallback_prompt = f"""
You are the planning agent.
Read the specifications, compare them with the codebase and write a prioritised
checklist of tasks (`- [ ] Task`) into the implementation plan.
Reply with {PLAN_SIGNAL} when the plan is written.
""".strip()

    def render(self, plan_file: Path, specs_dir: Path) -> str:
        return (
            f"{self.text}\n\n"
            f"Specifications: {specs_dir}\n"
            f"Implementation plan: {plan_file}"
        )


class BuilderPrompt(AgentPrompt):
    role = "builder"
    prompt_file = "ralph.agent.md"
    fallback_prompt = f"""
You are the build agent.
Implement one task from the implementation plan, run the checks, mark the task
done (`- [x]`) and append what you learned to the progress log.
Reply with {COMPLETE_SIGNAL} once every task in the plan is done.
""".strip()

    def render(self, task: str) -> str:
        if not task.strip():
            raise ValueError("Build prompt requires a task.")
        return (
            f"{self.text}\n\n"
            "## YOUR ASSIGNED TASK FOR THIS ITERATION\n\n"
            "Your task has already been selected from the implementation plan:\n\n"
            f"```\n{task}\n```\n\n"
            "Focus only on this task. When complete, mark it as done in the plan "
            "and update the progress log."
        )


class SpecCreatorPrompt(AgentPrompt):
    role = "spec_creator"
    prompt_file = "ralph-spec-creator.agent.md"
    fallback_prompt = f"""
You are the specification agent.
Turn the user's request into a markdown specification in the specs directory.
Reply with {SPEC_CREATED_SIGNAL} once the file is written.
""".strip()

    def render(self, description: str, specs_dir: Path) -> str:
        if not description.strip():
            raise ValueError("Spec creation requires a description.")
        return (
            f"{self.text}\n\n"
            "## User Request\n\n"
            f"{description}\n\n"
            f"Write the specification into {specs_dir} without asking questions."
        )
