"""Pydantic schemas for configuration, outcomes and reviewer decisions."""

from gitgang.schemas.config import RunConfig
from gitgang.schemas.review import MergePlan, ReviewDecision, Revision
from gitgang.schemas.status import AgentId, AgentRunOutcome, RunRecord

__all__ = [
    "AgentId",
    "AgentRunOutcome",
    "MergePlan",
    "ReviewDecision",
    "Revision",
    "RunConfig",
    "RunRecord",
]
