"""Tests for agent launchers and prompts."""

from pathlib import Path

import pytest

from gitgang.agents.base import AgentLauncher, LaunchRequest, get_launcher
from gitgang.agents.codex import codex_exec_command
from gitgang.agents.prompts import (
    SYSTEM_CONSTRAINTS,
    agent_prompt,
    reviewer_prompt,
    revision_task,
)
from gitgang.schemas.status import AgentId


def request(agent: AgentId, yolo: bool = True) -> LaunchRequest:
    return LaunchRequest(
        agent=agent,
        workspace=Path("/tmp/ws"),
        base_branch="main",
        task="add caching",
        model="some-model",
        yolo=yolo,
    )


class TestLaunchers:
    """Tests for the per-agent command lines."""

    @pytest.mark.parametrize("agent", list(AgentId))
    def test_lookup(self, agent: AgentId) -> None:
        launcher = get_launcher(agent)

        assert isinstance(launcher, AgentLauncher)
        assert launcher.name == agent.value

    def test_gemini(self) -> None:
        argv = get_launcher(AgentId.GEMINI).build_command(request(AgentId.GEMINI))

        assert argv[0] == "gemini"
        assert argv[argv.index("-m") + 1] == "some-model"
        assert "--yolo" in argv

    def test_claude(self) -> None:
        argv = get_launcher(AgentId.CLAUDE).build_command(request(AgentId.CLAUDE, yolo=False))

        assert argv[:2] == ["claude", "-p"]
        assert "add caching" in argv[2]
        assert argv[argv.index("--output-format") + 1] == "stream-json"
        assert "--dangerously-skip-permissions" not in argv

    def test_codex(self) -> None:
        argv = get_launcher(AgentId.CODEX).build_command(request(AgentId.CODEX))

        assert argv[:2] == ["codex", "exec"]
        assert argv[-1] == "--yolo"

    def test_codex_without_yolo(self) -> None:
        assert codex_exec_command("p", "m", yolo=False)[-1] == "--full-auto"


class TestPrompts:
    """Tests for prompt construction."""

    def test_agent_prompt(self) -> None:
        prompt = agent_prompt(AgentId.CLAUDE, "develop", "add caching")

        assert prompt.startswith(SYSTEM_CONSTRAINTS)
        assert "Task: add caching" in prompt
        assert "Base branch: develop" in prompt
        assert "branch for claude" in prompt

    def test_revision_task(self) -> None:
        task = revision_task("add caching", "cover the eviction path")

        assert task == (
            "add caching\nFollow up from reviewer: cover the eviction path\n"
            "Keep going until checks pass."
        )

    def test_reviewer_prompt(self) -> None:
        branches = {AgentId.GEMINI: "agents/gemini/1", AgentId.CODEX: "agents/codex/1"}

        prompt = reviewer_prompt("main", branches, "add caching", "- gemini: success")

        assert "- gemini: agents/gemini/1" in prompt
        assert "- codex: agents/codex/1" in prompt
        assert '"gemini" | "codex"' in prompt
        assert "claude" not in prompt
        assert "- gemini: success" in prompt
        assert '"mergePlan"' in prompt
