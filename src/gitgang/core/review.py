"""One round of reviewer-driven reconciliation."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Protocol

from pydantic import ValidationError

from gitgang.agents.codex import codex_exec_command
from gitgang.agents.prompts import reviewer_prompt, revision_task
from gitgang.core.supervisor import GLOBAL_TIMEOUT_REACHED, SupervisorBusyError
from gitgang.schemas.review import ReviewDecision, Revision
from gitgang.schemas.status import AgentId, AgentRunOutcome
from gitgang.utils.git import GitError, checkout_branch

if TYPE_CHECKING:
    from gitgang.core.supervisor import AgentSupervisor
    from gitgang.integrator.merge import MergeEngine
    from gitgang.schemas.config import ReviewSettings

logger = logging.getLogger(__name__)


@dataclass
class ReviewerOutput:
    """Captured result of one reviewer process."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


class ReviewerRunner(Protocol):
    """Runs the reviewer process once."""

    async def __call__(self, prompt: str, cwd: Path, timeout: float) -> ReviewerOutput:
        ...


class CodexReviewer:
    """Reviewer backed by `codex exec`."""

    def __init__(self, model: str, yolo: bool = True):
        self.model = model
        self.yolo = yolo

    async def __call__(self, prompt: str, cwd: Path, timeout: float) -> ReviewerOutput:
        argv = codex_exec_command(prompt, self.model, self.yolo)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return ReviewerOutput(exit_code=-1, stderr=f"spawn failed: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ReviewerOutput(exit_code=-1, timed_out=True)

        return ReviewerOutput(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )


class RoundStatus(str, Enum):
    """Result of a review round."""

    APPROVED = "approved"
    REVISIONS = "revisions"
    DNF = "dnf"


@dataclass
class RoundOutcome:
    status: RoundStatus
    branch: str | None = None
    reason: str | None = None
    details: str | None = None
    # Outcomes of the revision runs started this round.
    outcomes: dict[AgentId, AgentRunOutcome] = field(default_factory=dict)


def extract_first_json(text: str) -> dict[str, Any] | None:
    """Return the first JSON object that decodes at any '{' in the text."""
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            obj, _ = decoder.raw_decode(text, index)
        except ValueError:
            index = text.find("{", index + 1)
            continue
        return obj
    return None


def parse_decision(stdout: str, stderr: str = "") -> tuple[ReviewDecision | None, str | None]:
    """Extract the reviewer's decision from its combined output.

    Returns:
        (decision, None) on success, (None, error message) otherwise
    """
    data = extract_first_json(stdout)
    if data is None:
        data = extract_first_json(stderr)
    if data is None:
        return None, "Reviewer did not emit valid JSON"

    try:
        return ReviewDecision.model_validate(data), None
    except ValidationError as e:
        return None, f"Reviewer emitted an invalid decision: {e}"


class ReviewCoordinator:
    """Invokes the reviewer and acts on its decision."""

    def __init__(
        self,
        repo_root: Path,
        base_branch: str,
        task: str,
        merge_engine: MergeEngine,
        settings: ReviewSettings,
        runner: ReviewerRunner,
    ):
        self.repo_root = Path(repo_root)
        self.base_branch = base_branch
        self.task = task
        self.merge_engine = merge_engine
        self.settings = settings
        self.runner = runner

    async def review_round(
        self,
        supervisors: Mapping[AgentId, AgentSupervisor],
        status_summary: str,
        deadline: float | None = None,
    ) -> RoundOutcome:
        """Run the reviewer (with retries) and apply its decision.

        Args:
            supervisors: Agents whose branches are candidates this round
            status_summary: Per-agent outcome text for the reviewer prompt
            deadline: Event-loop time of the run's global timeout; no reviewer
                attempt, merge or revision is started past it
        """
        try:
            await checkout_branch(self.base_branch, self.repo_root)
        except GitError as e:
            return RoundOutcome(
                RoundStatus.DNF, reason=f"Failed to check out {self.base_branch}", details=str(e)
            )

        branches = {agent: sup.workspace.branch for agent, sup in supervisors.items()}
        prompt = reviewer_prompt(self.base_branch, branches, self.task, status_summary)
        last_error: str | None = None

        for attempt in range(1, self.settings.max_attempts + 1):
            remaining = _remaining(deadline)
            if remaining is not None and remaining <= 0:
                return _global_timeout()
            timeout = self.settings.reviewer_timeout
            if remaining is not None:
                timeout = min(timeout, remaining)

            logger.info("Reviewer attempt %d/%d", attempt, self.settings.max_attempts)
            output = await self.runner(prompt, self.repo_root, timeout)
            if _expired(deadline):
                logger.warning("Global timeout reached while the reviewer was running")
                return _global_timeout()

            if output.timed_out:
                last_error = f"Reviewer timed out after {timeout:.0f}s"
            elif output.exit_code != 0:
                last_error = f"Reviewer exited with code {output.exit_code}"
            else:
                decision, last_error = parse_decision(output.stdout, output.stderr)
                if decision is not None:
                    if decision.status == "approve":
                        return await self._approve(decision, list(branches.values()))
                    unknown = [r.agent.value for r in decision.revisions if r.agent not in supervisors]
                    if not decision.revisions:
                        last_error = "Reviewer requested revisions but none listed"
                    elif unknown:
                        last_error = f"Reviewer requested revisions for unavailable agent(s): {', '.join(unknown)}"
                    else:
                        return await self._revise(decision.revisions, supervisors, deadline)

            logger.warning("Reviewer attempt %d failed: %s", attempt, last_error)

        return RoundOutcome(
            RoundStatus.DNF, reason="Reviewer failed to converge", details=last_error
        )

    async def _approve(self, decision: ReviewDecision, default_order: list[str]) -> RoundOutcome:
        result = await self.merge_engine.apply(decision.merge_plan, default_order)
        if not result.ok:
            return RoundOutcome(RoundStatus.DNF, reason=result.reason, details=result.details)
        return RoundOutcome(RoundStatus.APPROVED, branch=result.branch)

    async def _revise(
        self,
        revisions: list[Revision],
        supervisors: Mapping[AgentId, AgentSupervisor],
        deadline: float | None,
    ) -> RoundOutcome:
        outcomes: dict[AgentId, AgentRunOutcome] = {}
        for revision in revisions:
            agent = revision.agent
            remaining = _remaining(deadline)
            if remaining is not None and remaining <= 0:
                return _global_timeout(outcomes)

            logger.info("Sending reviewer instructions to %s", agent.value)
            supervisor = supervisors[agent]
            run = asyncio.create_task(supervisor.run(revision_task(self.task, revision.instructions)))
            try:
                _, pending = await asyncio.wait({run}, timeout=remaining)
            except asyncio.CancelledError:
                run.cancel()
                raise
            if pending:
                supervisor.notify_global_timeout()
            try:
                outcome = await run
            except SupervisorBusyError as e:
                return RoundOutcome(
                    RoundStatus.DNF,
                    reason=f"Agent {agent.value} could not complete reviewer instructions",
                    details=str(e),
                    outcomes=outcomes,
                )

            outcomes[agent] = outcome
            if outcome.reason == GLOBAL_TIMEOUT_REACHED:
                return _global_timeout(outcomes)
            if not outcome.succeeded:
                return RoundOutcome(
                    RoundStatus.DNF,
                    reason=f"Agent {agent.value} could not complete reviewer instructions",
                    details=outcome.reason,
                    outcomes=outcomes,
                )
        return RoundOutcome(RoundStatus.REVISIONS, outcomes=outcomes)


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return deadline - asyncio.get_running_loop().time()


def _expired(deadline: float | None) -> bool:
    remaining = _remaining(deadline)
    return remaining is not None and remaining <= 0


def _global_timeout(outcomes: dict[AgentId, AgentRunOutcome] | None = None) -> RoundOutcome:
    return RoundOutcome(RoundStatus.DNF, reason=GLOBAL_TIMEOUT_REACHED, outcomes=outcomes or {})
