"""Claude CLI launcher."""

from __future__ import annotations

from gitgang.agents.base import LaunchRequest
from gitgang.agents.prompts import agent_prompt


class ClaudeLauncher:
    """Runs `claude -p` with a line-delimited JSON event stream."""

    name = "claude"

    def build_command(self, request: LaunchRequest) -> list[str]:
        prompt = agent_prompt(request.agent, request.base_branch, request.task)
        argv = [
            "claude",
            "-p",
            prompt,
            "--model",
            request.model,
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if request.yolo:
            argv.append("--dangerously-skip-permissions")
        return argv
