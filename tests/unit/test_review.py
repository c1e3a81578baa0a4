"""Tests for reviewer output parsing and the review coordinator."""

import asyncio
import json
from pathlib import Path

import pytest

import gitgang.core.review as review_module
from gitgang.agents.prompts import revision_task
from gitgang.core.activity import ActivityStats
from gitgang.core.review import (
    ReviewCoordinator,
    ReviewerOutput,
    RoundStatus,
    extract_first_json,
    parse_decision,
)
from gitgang.core.supervisor import GLOBAL_TIMEOUT_REACHED, SupervisorBusyError
from gitgang.integrator.merge import MergeResult
from gitgang.schemas.config import ReviewSettings
from gitgang.schemas.status import AgentId, AgentRunOutcome, RunStatus
from gitgang.worktree.manager import Workspace

TASK = "add a health endpoint"


class FakeSupervisor:
    def __init__(
        self, agent: AgentId, succeed: bool = True, busy: bool = False, hang: bool = False
    ):
        self.workspace = Workspace(
            agent=agent,
            path=Path(f"/tmp/{agent.value}"),
            branch=f"agents/{agent.value}/20250101-000000-abcdef",
            log_path=Path(f"/tmp/{agent.value}.log"),
        )
        self.stats = ActivityStats()
        self.succeed = succeed
        self.busy = busy
        self.hang = hang
        self.timed_out = False
        self.tasks: list[str] = []
        self._stop = asyncio.Event()

    async def run(self, task: str) -> AgentRunOutcome:
        if self.busy:
            raise SupervisorBusyError("already running")
        self.tasks.append(task)
        if self.hang:
            await self._stop.wait()
            return AgentRunOutcome(
                status=RunStatus.DNF, exit_code=-15, reason=GLOBAL_TIMEOUT_REACHED
            )
        if self.succeed:
            return AgentRunOutcome(status=RunStatus.SUCCESS, exit_code=0)
        return AgentRunOutcome(status=RunStatus.DNF, exit_code=1, reason="exit code 1")

    def notify_global_timeout(self) -> None:
        self.timed_out = True
        self._stop.set()


class FakeMergeEngine:
    def __init__(self, result: MergeResult | None = None):
        self.result = result or MergeResult(ok=True, branch="ai-merge-20250101-000000-beef")
        self.calls: list[tuple] = []

    async def apply(self, plan, default_order):
        self.calls.append((plan, default_order))
        return self.result


class FakeReviewer:
    """Returns the queued outputs in order, repeating the last one."""

    def __init__(self, *outputs: ReviewerOutput):
        self.outputs = list(outputs)
        self.calls: list[tuple] = []

    async def __call__(self, prompt: str, cwd: Path, timeout: float) -> ReviewerOutput:
        self.calls.append((prompt, cwd, timeout))
        return self.outputs[min(len(self.calls), len(self.outputs)) - 1]


class SlowReviewer(FakeReviewer):
    """Answers only after a delay."""

    def __init__(self, delay: float, *outputs: ReviewerOutput):
        super().__init__(*outputs)
        self.delay = delay

    async def __call__(self, prompt: str, cwd: Path, timeout: float) -> ReviewerOutput:
        await asyncio.sleep(self.delay)
        return await super().__call__(prompt, cwd, timeout)


def said(decision: dict, prefix: str = "") -> ReviewerOutput:
    return ReviewerOutput(exit_code=0, stdout=prefix + json.dumps(decision))


def make_coordinator(reviewer: FakeReviewer, engine: FakeMergeEngine | None = None):
    return ReviewCoordinator(
        Path("/repo"),
        "main",
        TASK,
        engine or FakeMergeEngine(),
        ReviewSettings(reviewer_timeout=12.0),
        reviewer,
    )


@pytest.fixture
def supervisors() -> dict[AgentId, FakeSupervisor]:
    return {agent: FakeSupervisor(agent) for agent in AgentId}


@pytest.fixture(autouse=True)
def no_checkout(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    checkouts: list[str] = []

    async def fake_checkout(branch_name, cwd):
        checkouts.append(branch_name)
        return ""

    monkeypatch.setattr(review_module, "checkout_branch", fake_checkout)
    return checkouts


class TestExtractFirstJson:
    """Tests for extract_first_json."""

    def test_object_inside_prose(self) -> None:
        text = 'Reviewed the branches.\n{"status": "approve", "mergePlan": {"order": []}}\nDone.'
        assert extract_first_json(text) == {"status": "approve", "mergePlan": {"order": []}}

    def test_skips_unparseable_braces(self) -> None:
        text = 'Schema: { "status": "approve" | "revise" }\nAnswer: {"status": "revise"}'
        assert extract_first_json(text) == {"status": "revise"}

    def test_first_object_wins(self) -> None:
        assert extract_first_json('{"a": 1} {"b": 2}') == {"a": 1}

    def test_no_json(self) -> None:
        assert extract_first_json("no decision here") is None
        assert extract_first_json("{ broken") is None


class TestParseDecision:
    """Tests for parse_decision."""

    def test_valid(self) -> None:
        decision, error = parse_decision('{"status": "approve"}')
        assert decision.status == "approve"
        assert error is None

    def test_falls_back_to_stderr(self) -> None:
        decision, _ = parse_decision("thinking...", '{"status": "approve"}')
        assert decision is not None

    def test_no_json(self) -> None:
        decision, error = parse_decision("nothing")
        assert decision is None
        assert error == "Reviewer did not emit valid JSON"

    def test_invalid_decision(self) -> None:
        decision, error = parse_decision('{"status": "ship it"}')
        assert decision is None
        assert error.startswith("Reviewer emitted an invalid decision")


class TestReviewRound:
    """Tests for ReviewCoordinator.review_round."""

    @pytest.mark.asyncio
    async def test_approve_merges(self, supervisors, no_checkout) -> None:
        reviewer = FakeReviewer(said({"status": "approve", "mergePlan": {"order": ["claude"]}}))
        engine = FakeMergeEngine()
        coordinator = make_coordinator(reviewer, engine)

        outcome = await coordinator.review_round(supervisors, "- gemini: success")

        assert outcome.status == RoundStatus.APPROVED
        assert outcome.branch == "ai-merge-20250101-000000-beef"
        assert no_checkout == ["main"]
        plan, default_order = engine.calls[0]
        assert plan.order == ["claude"]
        assert default_order == [s.workspace.branch for s in supervisors.values()]

        prompt, cwd, timeout = reviewer.calls[0]
        assert TASK in prompt
        assert "- gemini: success" in prompt
        assert cwd == Path("/repo")
        assert timeout == 12.0

    @pytest.mark.asyncio
    async def test_revise_reruns_only_named_agent(self, supervisors) -> None:
        reviewer = FakeReviewer(
            said({"status": "revise", "revisions": [{"agent": "codex", "instructions": "add tests"}]})
        )
        engine = FakeMergeEngine()
        coordinator = make_coordinator(reviewer, engine)

        outcome = await coordinator.review_round(supervisors, "")

        assert outcome.status == RoundStatus.REVISIONS
        assert supervisors[AgentId.CODEX].tasks == [revision_task(TASK, "add tests")]
        assert supervisors[AgentId.GEMINI].tasks == []
        assert supervisors[AgentId.CLAUDE].tasks == []
        assert engine.calls == []
        assert set(outcome.outcomes) == {AgentId.CODEX}
        assert outcome.outcomes[AgentId.CODEX].succeeded

    @pytest.mark.asyncio
    async def test_failed_revision_is_dnf(self, supervisors) -> None:
        supervisors[AgentId.CLAUDE] = FakeSupervisor(AgentId.CLAUDE, succeed=False)
        reviewer = FakeReviewer(
            said({"status": "revise", "revisions": [{"agent": "claude", "instructions": "fix"}]})
        )

        outcome = await make_coordinator(reviewer).review_round(supervisors, "")

        assert outcome.status == RoundStatus.DNF
        assert outcome.reason == "Agent claude could not complete reviewer instructions"
        assert outcome.details == "exit code 1"
        assert outcome.outcomes[AgentId.CLAUDE].reason == "exit code 1"

    @pytest.mark.asyncio
    async def test_busy_supervisor_is_dnf(self, supervisors) -> None:
        supervisors[AgentId.GEMINI] = FakeSupervisor(AgentId.GEMINI, busy=True)
        reviewer = FakeReviewer(
            said({"status": "revise", "revisions": [{"agent": "gemini", "instructions": "fix"}]})
        )

        outcome = await make_coordinator(reviewer).review_round(supervisors, "")

        assert outcome.status == RoundStatus.DNF
        assert "gemini" in outcome.reason

    @pytest.mark.asyncio
    async def test_retries_until_valid(self, supervisors) -> None:
        reviewer = FakeReviewer(
            ReviewerOutput(exit_code=0, timed_out=True),
            ReviewerOutput(exit_code=0, stdout="I could not decide"),
            said({"status": "approve"}, prefix="Final answer: "),
        )
        engine = FakeMergeEngine()

        outcome = await make_coordinator(reviewer, engine).review_round(supervisors, "")

        assert outcome.status == RoundStatus.APPROVED
        assert len(reviewer.calls) == 3
        assert len(engine.calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted_attempts(self, supervisors) -> None:
        reviewer = FakeReviewer(ReviewerOutput(exit_code=2, stderr="crash"))
        engine = FakeMergeEngine()

        outcome = await make_coordinator(reviewer, engine).review_round(supervisors, "")

        assert outcome.status == RoundStatus.DNF
        assert outcome.reason == "Reviewer failed to converge"
        assert outcome.details == "Reviewer exited with code 2"
        assert len(reviewer.calls) == 3
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_revise_without_revisions_is_retried(self, supervisors) -> None:
        reviewer = FakeReviewer(said({"status": "revise", "revisions": []}))

        outcome = await make_coordinator(reviewer).review_round(supervisors, "")

        assert outcome.status == RoundStatus.DNF
        assert outcome.details == "Reviewer requested revisions but none listed"
        assert len(reviewer.calls) == 3

    @pytest.mark.asyncio
    async def test_revision_for_unavailable_agent_is_retried(self) -> None:
        usable = {AgentId.GEMINI: FakeSupervisor(AgentId.GEMINI)}
        reviewer = FakeReviewer(
            said({"status": "revise", "revisions": [{"agent": "codex", "instructions": "fix"}]}),
            said({"status": "revise", "revisions": [{"agent": "gemini", "instructions": "fix"}]}),
        )

        outcome = await make_coordinator(reviewer).review_round(usable, "")

        assert outcome.status == RoundStatus.REVISIONS
        assert len(reviewer.calls) == 2
        assert len(usable[AgentId.GEMINI].tasks) == 1

    @pytest.mark.asyncio
    async def test_merge_failure_is_not_retried(self, supervisors) -> None:
        engine = FakeMergeEngine(
            MergeResult(ok=False, reason="Merge conflict with b", details="b: CONFLICT")
        )
        reviewer = FakeReviewer(said({"status": "approve"}))

        outcome = await make_coordinator(reviewer, engine).review_round(supervisors, "")

        assert outcome.status == RoundStatus.DNF
        assert outcome.reason == "Merge conflict with b"
        assert outcome.details == "b: CONFLICT"
        assert len(reviewer.calls) == 1


class TestReviewDeadline:
    """Tests for review rounds bounded by the run's global deadline."""

    @pytest.mark.asyncio
    async def test_expired_deadline_skips_reviewer(self, supervisors) -> None:
        reviewer = FakeReviewer(said({"status": "approve"}))
        deadline = asyncio.get_running_loop().time() - 1

        outcome = await make_coordinator(reviewer).review_round(supervisors, "", deadline)

        assert outcome.status == RoundStatus.DNF
        assert outcome.reason == GLOBAL_TIMEOUT_REACHED
        assert reviewer.calls == []

    @pytest.mark.asyncio
    async def test_reviewer_timeout_bounded_by_deadline(self, supervisors) -> None:
        reviewer = FakeReviewer(said({"status": "approve"}))
        deadline = asyncio.get_running_loop().time() + 5

        outcome = await make_coordinator(reviewer).review_round(supervisors, "", deadline)

        assert outcome.status == RoundStatus.APPROVED
        _, _, timeout = reviewer.calls[0]
        assert 0 < timeout <= 5

    @pytest.mark.asyncio
    async def test_no_revision_after_deadline(self, supervisors) -> None:
        reviewer = SlowReviewer(
            0.3,
            said({"status": "revise", "revisions": [{"agent": "gemini", "instructions": "fix"}]}),
        )
        engine = FakeMergeEngine()
        deadline = asyncio.get_running_loop().time() + 0.05

        outcome = await make_coordinator(reviewer, engine).review_round(
            supervisors, "", deadline
        )

        assert outcome.status == RoundStatus.DNF
        assert outcome.reason == GLOBAL_TIMEOUT_REACHED
        assert supervisors[AgentId.GEMINI].tasks == []
        assert len(reviewer.calls) == 1
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_revision_stopped_at_deadline(self, supervisors) -> None:
        supervisors[AgentId.GEMINI] = FakeSupervisor(AgentId.GEMINI, hang=True)
        reviewer = FakeReviewer(
            said(
                {
                    "status": "revise",
                    "revisions": [
                        {"agent": "gemini", "instructions": "fix"},
                        {"agent": "claude", "instructions": "fix"},
                    ],
                }
            )
        )
        deadline = asyncio.get_running_loop().time() + 0.1

        outcome = await asyncio.wait_for(
            make_coordinator(reviewer).review_round(supervisors, "", deadline), timeout=5
        )

        assert outcome.status == RoundStatus.DNF
        assert outcome.reason == GLOBAL_TIMEOUT_REACHED
        assert supervisors[AgentId.GEMINI].timed_out
        assert outcome.outcomes[AgentId.GEMINI].reason == GLOBAL_TIMEOUT_REACHED
        assert supervisors[AgentId.CLAUDE].tasks == []
