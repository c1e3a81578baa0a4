"""Gemini CLI launcher."""

from __future__ import annotations

from gitgang.agents.base import LaunchRequest
from gitgang.agents.prompts import agent_prompt


class GeminiLauncher:
    """Runs `gemini` non-interactively with JSON output."""

    name = "gemini"

    def build_command(self, request: LaunchRequest) -> list[str]:
        prompt = agent_prompt(request.agent, request.base_branch, request.task)
        argv = ["gemini", "--prompt", prompt, "-m", request.model, "--output-format", "json"]
        if request.yolo:
            argv.append("--yolo")
        return argv
