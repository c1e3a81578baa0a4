"""Pydantic models for .gitgang.yaml run configuration."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator

from gitgang.schemas.status import AgentId

IDLE_TIMEOUT_ENV = "GITGANG_AGENT_IDLE_TIMEOUT"
DEFAULT_IDLE_TIMEOUT = 7 * 60.0


def _idle_timeout_from_env() -> float | str:
    # Parsed by the field so a bad value surfaces as a ValidationError.
    return os.environ.get(IDLE_TIMEOUT_ENV) or DEFAULT_IDLE_TIMEOUT


class SupervisorSettings(BaseModel):
    """Health supervision and restart policy for agent processes.

    All durations are in seconds.
    """

    heartbeat_interval: float = Field(default=30.0, gt=0)
    idle_timeout: float = Field(
        default_factory=_idle_timeout_from_env, gt=0, validate_default=True
    )
    nudge_after: float = Field(default=3 * 60.0, gt=0)
    max_restarts: int = Field(default=3, ge=0)
    initial_backoff: float = Field(default=2.5, ge=0)
    max_backoff: float = Field(default=2 * 60.0, ge=0)
    error_loop_threshold: int = Field(default=3, ge=1)
    error_loop_window: float = Field(default=2 * 60.0, ge=0)
    drain_timeout: float = Field(
        default=5.0, ge=0, description="Wait for output pipes after exit"
    )


class ReviewSettings(BaseModel):
    """Reviewer invocation settings."""

    reviewer_timeout: float = Field(default=5 * 60.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)


class MergeSettings(BaseModel):
    """Integration branch and post-merge validation settings."""

    post_merge_checks: list[str] = Field(
        default_factory=lambda: ["git fsck --connectivity-only --no-dangling"],
        description="Fallback checks when the merge plan lists none",
    )
    check_attempts: int = Field(default=3, ge=1)
    check_backoff: float = Field(
        default=0.5, ge=0, description="Linear backoff step between attempts"
    )
    check_timeout: float = Field(default=10 * 60.0, gt=0)


def _default_models() -> dict[AgentId, str]:
    return {
        AgentId.GEMINI: "gemini-2.5-pro",
        AgentId.CLAUDE: "claude-sonnet-4-5",
        AgentId.CODEX: "gpt-5-codex",
    }


class RunConfig(BaseModel):
    """Complete configuration for one gitgang run."""

    rounds: int = Field(default=3, ge=1, le=10, description="Review rounds")
    timeout: float = Field(default=25 * 60.0, gt=0, description="Global run timeout")
    round_timeout: float = Field(
        default=15 * 60.0, gt=0, description="Hard limit for the initial agent round"
    )
    work_root: str = Field(default=".ai-worktrees")
    yolo: bool = Field(default=True, description="Auto-approve agent actions")
    auto_pr: bool = Field(default=True, description="Open a PR for the merge branch")
    models: dict[AgentId, str] = Field(default_factory=_default_models)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)
    review: ReviewSettings = Field(default_factory=ReviewSettings)
    merge: MergeSettings = Field(default_factory=MergeSettings)

    @model_validator(mode="after")
    def _fill_models(self) -> "RunConfig":
        for agent, model in _default_models().items():
            self.models.setdefault(agent, model)
        return self

    @classmethod
    def load(cls, path: str | Path) -> "RunConfig":
        """Load configuration from a YAML file (defaults if it is missing)."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(data)

    def save(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(
                self.model_dump(mode="json", exclude_none=True),
                f,
                default_flow_style=False,
                sort_keys=False,
            )

    def with_overrides(self, **overrides: object) -> "RunConfig":
        """Return a validated copy with the non-None overrides applied."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return type(self).model_validate(data)
