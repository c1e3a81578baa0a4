"""Pydantic models for the reviewer's decision object."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gitgang.schemas.status import AgentId


class MergePlan(BaseModel):
    """Ordered branch list plus post-merge validation commands."""

    model_config = ConfigDict(populate_by_name=True)

    order: list[str] = Field(default_factory=list, description="Branches in merge order")
    notes: str | None = Field(default=None, description="Why this order")
    post_merge_checks: list[str] = Field(
        default_factory=list,
        alias="postMergeChecks",
        description="Commands run after all merges succeed",
    )

    @field_validator("order", "post_merge_checks", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return [] if value is None else value


class Revision(BaseModel):
    """Follow-up instructions for one agent."""

    agent: AgentId
    instructions: str


class ReviewDecision(BaseModel):
    """Decision emitted by the reviewer process."""

    model_config = ConfigDict(populate_by_name=True)

    status: Literal["approve", "revise"]
    merge_plan: MergePlan | None = Field(default=None, alias="mergePlan")
    revisions: list[Revision] = Field(default_factory=list)

    @field_validator("revisions", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return [] if value is None else value
