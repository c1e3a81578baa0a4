"""Pydantic models for agent outcomes and run records."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class AgentId(str, Enum):
    """The fixed set of coding agents."""

    GEMINI = "gemini"
    CLAUDE = "claude"
    CODEX = "codex"


AGENT_ORDER: tuple[AgentId, ...] = (AgentId.GEMINI, AgentId.CLAUDE, AgentId.CODEX)


class SupervisorState(str, Enum):
    """Agent supervisor lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    RESTARTING = "restarting"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Terminal status of one supervised agent run."""

    SUCCESS = "success"
    DNF = "dnf"


class AgentRunOutcome(BaseModel):
    """Outcome of a single AgentSupervisor.run() call."""

    status: RunStatus = Field(..., description="success or did-not-finish")
    exit_code: int = Field(..., description="Exit code of the last process")
    restarts: int = Field(default=0, description="Restarts consumed during the run")
    reason: str | None = Field(default=None, description="Why the run did not finish")

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS


class RunRecord(BaseModel):
    """Persisted explanation of a run that did not converge."""

    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        description="ISO timestamp when the record was written",
    )
    task: str = Field(..., description="Task the agents were given")
    base_branch: str = Field(..., description="Branch the workspaces were created from")
    reason: str = Field(..., description="Short reason for the failure")
    details: str | None = Field(default=None, description="Supporting details")
