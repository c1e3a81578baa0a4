"""Launcher protocol shared by all agent kinds."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from gitgang.schemas.status import AgentId


@dataclass(frozen=True)
class LaunchRequest:
    """Everything a launcher needs to build an agent command line."""

    agent: AgentId
    workspace: Path
    base_branch: str
    task: str
    model: str
    yolo: bool = True


@runtime_checkable
class AgentLauncher(Protocol):
    """Builds the command line that starts one agent kind.

    The supervisor owns process creation, I/O and lifecycle; a launcher only
    knows the CLI's flags.
    """

    @property
    def name(self) -> str:
        """Agent identifier (e.g., 'claude')."""
        ...

    def build_command(self, request: LaunchRequest) -> list[str]:
        """Return argv for the agent process.

        Args:
            request: Task, workspace and mode for this launch

        Returns:
            Program and arguments, run with the workspace as cwd
        """
        ...


def get_launcher(agent: AgentId) -> AgentLauncher:
    """Look up the launcher for an agent kind.

    Raises:
        KeyError: If no launcher is registered for the agent
    """
    from gitgang.agents.claude import ClaudeLauncher
    from gitgang.agents.codex import CodexLauncher
    from gitgang.agents.gemini import GeminiLauncher

    launchers: dict[AgentId, AgentLauncher] = {
        AgentId.GEMINI: GeminiLauncher(),
        AgentId.CLAUDE: ClaudeLauncher(),
        AgentId.CODEX: CodexLauncher(),
    }
    return launchers[agent]
