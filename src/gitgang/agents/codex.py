"""Codex CLI launcher, used both as a coding agent and as the reviewer."""

from __future__ import annotations

from gitgang.agents.base import LaunchRequest
from gitgang.agents.prompts import agent_prompt


def codex_exec_command(prompt: str, model: str, yolo: bool) -> list[str]:
    """Build a `codex exec` invocation."""
    return [
        "codex",
        "exec",
        prompt,
        "--model",
        model,
        "--config",
        'model_reasoning_effort="high"',
        "--yolo" if yolo else "--full-auto",
    ]


class CodexLauncher:
    """Runs `codex exec` as a coding agent."""

    name = "codex"

    def build_command(self, request: LaunchRequest) -> list[str]:
        prompt = agent_prompt(request.agent, request.base_branch, request.task)
        return codex_exec_command(prompt, request.model, request.yolo)
