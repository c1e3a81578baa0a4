"""End-to-end coordination of one gitgang run.

The orchestrator creates one workspace per agent, runs the three agents
concurrently on the same task, then drives reviewer rounds until the
reviewer approves a merge or the run is declared did-not-finish.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Mapping

from gitgang.core.environment import ensure_clean_tree
from gitgang.core.review import CodexReviewer, ReviewCoordinator, RoundStatus
from gitgang.core.state import RunRecorder
from gitgang.core.supervisor import GLOBAL_TIMEOUT_REACHED, AgentSupervisor
from gitgang.integrator.merge import MergeEngine
from gitgang.integrator.pull_request import open_pull_request
from gitgang.schemas.config import RunConfig
from gitgang.schemas.status import AGENT_ORDER, AgentId, AgentRunOutcome, RunStatus
from gitgang.worktree.manager import Workspace, WorktreeManager

logger = logging.getLogger(__name__)

GLOBAL_TIMEOUT_GRACE = 15.0

NO_AGENT_COMPLETED = "No agent completed the task"
NOT_APPROVED = "Reviewer did not approve within allotted rounds"
ROUND_TIMEOUT_REACHED = "Round timeout reached"

SupervisorFactory = Callable[[Workspace, RunRecorder], AgentSupervisor]
CoordinatorFactory = Callable[[str, dict[str, str]], ReviewCoordinator]
PullRequestOpener = Callable[[Path, str, str], Awaitable[bool]]


class ResultStatus(str, Enum):
    APPROVED = "approved"
    DNF = "dnf"


@dataclass
class RunResult:
    """Final result of a run."""

    status: ResultStatus
    merge_branch: str | None = None
    reason: str | None = None
    details: str | None = None
    record_path: Path | None = None
    outcomes: dict[AgentId, AgentRunOutcome] = field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.status == ResultStatus.APPROVED


def build_status_summary(
    outcomes: Mapping[AgentId, AgentRunOutcome],
    supervisors: Mapping[AgentId, AgentSupervisor],
) -> str:
    """One line per agent describing how its run went, for the reviewer."""
    lines = []
    for agent in AGENT_ORDER:
        supervisor = supervisors.get(agent)
        if supervisor is None:
            continue
        stats = supervisor.stats
        outcome = outcomes.get(agent)

        if outcome is None:
            line = f"- {agent.value}: not run"
        else:
            line = (
                f"- {agent.value}: {outcome.status.value}, exit {outcome.exit_code}, "
                f"restarts {outcome.restarts}"
            )
            if outcome.reason:
                line += f", reason: {outcome.reason}"
        line += f", commits {stats.commits}, files changed {stats.files_changed}"
        if stats.last_error:
            line += f", last error: {stats.last_error}"
        lines.append(line)
    return "\n".join(lines)


class Orchestrator:
    """Runs the three agents and the reviewer loop for one task."""

    def __init__(
        self,
        config: RunConfig,
        repo_root: Path,
        base_branch: str,
        *,
        worktrees: WorktreeManager | None = None,
        supervisor_factory: SupervisorFactory | None = None,
        coordinator_factory: CoordinatorFactory | None = None,
        pr_opener: PullRequestOpener | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Validated run configuration
            repo_root: Repository root (the base checkout)
            base_branch: Branch the agents start from and merges target
            worktrees: Workspace provider
            supervisor_factory: Builds the supervisor for a workspace
            coordinator_factory: Builds the review coordinator for a task,
                given agent-id to branch aliases
            pr_opener: Opens the pull request on approval
        """
        self.config = config
        self.repo_root = Path(repo_root)
        self.base_branch = base_branch
        self.worktrees = worktrees or WorktreeManager(self.repo_root, config.work_root)
        self._supervisor_factory = supervisor_factory or self._default_supervisor
        self._coordinator_factory = coordinator_factory or self._default_coordinator
        self._pr_opener = pr_opener or open_pull_request
        self.recorder: RunRecorder | None = None
        self._timed_out = False

    async def run(self, task: str) -> RunResult:
        """Run the task to an approved merge branch or a recorded DNF.

        Raises:
            PreflightError: If the working tree is not clean
            GitError: If a workspace cannot be created
        """
        recorder = RunRecorder(self.worktrees.work_root, task, self.base_branch)
        self.recorder = recorder
        self._timed_out = False

        await ensure_clean_tree(self.repo_root)

        workspaces: list[Workspace] = []
        tasks: dict[AgentId, asyncio.Task[AgentRunOutcome]] = {}
        timer: asyncio.TimerHandle | None = None

        try:
            # Sequential: git worktree add mutates shared repository metadata.
            for agent in AGENT_ORDER:
                workspaces.append(await self.worktrees.create_workspace(agent, self.base_branch))

            supervisors = {ws.agent: self._supervisor_factory(ws, recorder) for ws in workspaces}

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.config.timeout + GLOBAL_TIMEOUT_GRACE
            timer = loop.call_at(deadline, self._on_global_timeout, supervisors)

            logger.info("Starting %d agents on %s", len(supervisors), self.base_branch)
            tasks = {
                agent: asyncio.create_task(supervisor.run(task))
                for agent, supervisor in supervisors.items()
            }
            outcomes = await self._initial_round(tasks, supervisors, deadline)

            usable = {
                agent: supervisors[agent]
                for agent, outcome in outcomes.items()
                if outcome.succeeded
            }
            if not usable:
                return self._dnf(
                    NO_AGENT_COMPLETED, build_status_summary(outcomes, supervisors), outcomes
                )

            aliases = {agent.value: sup.workspace.branch for agent, sup in supervisors.items()}
            coordinator = self._coordinator_factory(task, aliases)
            merge_branch = None

            for round_number in range(1, self.config.rounds + 1):
                if self._timed_out:
                    return self._dnf(
                        GLOBAL_TIMEOUT_REACHED,
                        build_status_summary(outcomes, supervisors),
                        outcomes,
                    )

                logger.info("Review round %d/%d", round_number, self.config.rounds)
                round_outcome = await coordinator.review_round(
                    usable, build_status_summary(outcomes, supervisors), deadline
                )
                outcomes.update(round_outcome.outcomes)

                if round_outcome.status == RoundStatus.APPROVED:
                    merge_branch = round_outcome.branch
                    break
                if round_outcome.status == RoundStatus.DNF:
                    return self._dnf(
                        round_outcome.reason or "Review round failed",
                        round_outcome.details or build_status_summary(outcomes, supervisors),
                        outcomes,
                    )
                logger.info("Reviewer issued revisions")
            else:
                return self._dnf(NOT_APPROVED, build_status_summary(outcomes, supervisors), outcomes)
        finally:
            if timer is not None:
                timer.cancel()
            leftovers = [t for t in tasks.values() if not t.done()]
            for t in leftovers:
                t.cancel()
            await asyncio.gather(*leftovers, return_exceptions=True)
            for workspace in workspaces:
                await self.worktrees.remove(workspace)

        logger.info("Approved: %s", merge_branch)
        if self.config.auto_pr and merge_branch:
            await self._pr_opener(self.repo_root, self.base_branch, merge_branch)

        return RunResult(ResultStatus.APPROVED, merge_branch=merge_branch, outcomes=outcomes)

    async def _initial_round(
        self,
        tasks: dict[AgentId, asyncio.Task[AgentRunOutcome]],
        supervisors: Mapping[AgentId, AgentSupervisor],
        deadline: float,
    ) -> dict[AgentId, AgentRunOutcome]:
        """Wait for the first runs, bounded by the round and global timeouts."""
        loop = asyncio.get_running_loop()
        timeout = max(0.0, min(self.config.round_timeout, deadline - loop.time()))
        _, pending = await asyncio.wait(tasks.values(), timeout=timeout)

        if pending and loop.time() >= deadline:
            self._on_global_timeout(supervisors)
        stragglers = [] if self._timed_out else [agent for agent, t in tasks.items() if t in pending]
        for agent in stragglers:
            logger.warning("[%s] still running at round timeout, stopping", agent.value)
            supervisors[agent].terminate()
        await asyncio.gather(*pending, return_exceptions=True)

        outcomes: dict[AgentId, AgentRunOutcome] = {}
        for agent, t in tasks.items():
            if t.cancelled():
                outcomes[agent] = AgentRunOutcome(status=RunStatus.DNF, exit_code=-1, reason="cancelled")
            elif t.exception() is not None:
                logger.error("[%s] supervisor crashed: %s", agent.value, t.exception())
                outcomes[agent] = AgentRunOutcome(
                    status=RunStatus.DNF, exit_code=-1, reason=str(t.exception())
                )
            elif agent in stragglers:
                result = t.result()
                outcomes[agent] = AgentRunOutcome(
                    status=RunStatus.DNF,
                    exit_code=result.exit_code,
                    restarts=result.restarts,
                    reason=ROUND_TIMEOUT_REACHED,
                )
            else:
                outcomes[agent] = t.result()
        return outcomes

    def _on_global_timeout(self, supervisors: Mapping[AgentId, AgentSupervisor]) -> None:
        if self._timed_out:
            return
        logger.error("Global timeout reached, stopping all agents")
        self._timed_out = True
        for supervisor in supervisors.values():
            supervisor.notify_global_timeout()

    def _dnf(
        self,
        reason: str,
        details: str | None,
        outcomes: dict[AgentId, AgentRunOutcome],
    ) -> RunResult:
        record_path = self.recorder.record(reason, details)
        return RunResult(
            ResultStatus.DNF,
            reason=reason,
            details=details,
            record_path=record_path,
            outcomes=outcomes,
        )

    def _default_supervisor(self, workspace: Workspace, recorder: RunRecorder) -> AgentSupervisor:
        return AgentSupervisor(
            workspace.agent,
            workspace,
            self.base_branch,
            model=self.config.models[workspace.agent],
            yolo=self.config.yolo,
            settings=self.config.supervisor,
            recorder=recorder,
        )

    def _default_coordinator(self, task: str, aliases: dict[str, str]) -> ReviewCoordinator:
        engine = MergeEngine(self.repo_root, self.base_branch, self.config.merge, aliases)
        return ReviewCoordinator(
            self.repo_root,
            self.base_branch,
            task,
            engine,
            self.config.review,
            CodexReviewer(self.config.models[AgentId.CODEX], self.config.yolo),
        )
