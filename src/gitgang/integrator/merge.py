"""Ordered integration of agent branches into a fresh merge branch."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from gitgang.utils.git import (
    GitError,
    branch_exists,
    checkout_branch,
    commit_all,
    create_branch,
    delete_branch,
    get_status_porcelain,
    merge_branch,
    run_command,
)
from gitgang.verification.runner import run_post_merge_checks
from gitgang.worktree.manager import timestamp

if TYPE_CHECKING:
    from gitgang.schemas.config import MergeSettings
    from gitgang.schemas.review import MergePlan

logger = logging.getLogger(__name__)

ADJUSTMENTS_COMMIT_MESSAGE = "chore: apply reviewer adjustments"


@dataclass
class MergeResult:
    """Outcome of applying a merge plan."""

    ok: bool
    branch: str | None = None
    reason: str | None = None
    details: str | None = None


class MergeEngine:
    """Merges approved branches, validates the result, rolls back on failure.

    Invariant: whenever apply() returns ok=False the base branch is checked
    out with a clean tree and the integration branch no longer exists.
    """

    def __init__(
        self,
        repo_root: Path,
        base_branch: str,
        settings: MergeSettings,
        aliases: dict[str, str] | None = None,
    ):
        """Initialize the engine.

        Args:
            repo_root: Repository root (the shared base checkout)
            base_branch: Branch to integrate onto
            settings: Post-merge check settings
            aliases: Names the reviewer may use instead of branch names
                (agent id -> branch)
        """
        self.repo_root = Path(repo_root)
        self.base_branch = base_branch
        self.settings = settings
        self.aliases = dict(aliases or {})

    async def apply(self, plan: MergePlan | None, default_order: list[str]) -> MergeResult:
        """Merge branches in plan order onto a new branch off base.

        Args:
            plan: Reviewer's merge plan (order and post-merge checks)
            default_order: Branches to merge when the plan lists none

        Returns:
            MergeResult naming the integration branch, or the failure
        """
        merge_branch_name = f"ai-merge-{timestamp()}-{uuid.uuid4().hex[:4]}"

        try:
            await checkout_branch(self.base_branch, self.repo_root)
            await create_branch(merge_branch_name, self.repo_root, self.base_branch)
        except GitError as e:
            await self._abandon(merge_branch_name)
            return MergeResult(ok=False, reason="Failed to create merge branch", details=str(e))

        order = [self.aliases.get(b, b) for b in (plan.order if plan else [])] or default_order

        for branch in order:
            if not await branch_exists(branch, self.repo_root):
                await self._abandon(merge_branch_name)
                return MergeResult(
                    ok=False,
                    reason=f"Unknown branch {branch}",
                    details=f"{branch} does not exist in {self.repo_root}",
                )

            logger.info("Merging %s", branch)
            try:
                await merge_branch(
                    branch,
                    self.repo_root,
                    message=f"merge {branch} per reviewer plan",
                )
            except GitError as e:
                logger.error("Merge conflict with %s", branch)
                await self._abandon(merge_branch_name)
                return MergeResult(
                    ok=False,
                    reason=f"Merge conflict with {branch}",
                    details=f"{branch}: {e.output.strip() or e}",
                )

        checks = (plan.post_merge_checks if plan else []) or self.settings.post_merge_checks
        verification = await run_post_merge_checks(
            checks,
            self.repo_root,
            attempts=self.settings.check_attempts,
            backoff=self.settings.check_backoff,
            timeout=self.settings.check_timeout,
        )
        failed = verification.failed
        if failed is not None:
            await self._abandon(merge_branch_name)
            return MergeResult(
                ok=False,
                reason=f"Post-merge check failed ({failed.command})",
                details=f"Exit code {failed.exit_code}\n{failed.error or failed.output}".strip(),
            )

        try:
            if await get_status_porcelain(self.repo_root):
                await commit_all(self.repo_root, ADJUSTMENTS_COMMIT_MESSAGE)
        except GitError as e:
            await self._abandon(merge_branch_name)
            return MergeResult(
                ok=False, reason="Failed to commit post-merge changes", details=str(e)
            )

        logger.info("Merge branch ready: %s", merge_branch_name)
        return MergeResult(ok=True, branch=merge_branch_name)

    async def _abandon(self, merge_branch_name: str) -> None:
        """Return to a clean base checkout and drop the integration branch."""
        steps = [
            ("merge", "--abort"),
            ("reset", "--hard"),
            ("clean", "-fd"),
            ("checkout", self.base_branch),
        ]
        for args in steps:
            result = await run_command("git", *args, cwd=self.repo_root)
            if not result.ok and args[0] == "checkout":
                logger.error("Could not restore %s: %s", self.base_branch, result.stderr.strip())

        await delete_branch(merge_branch_name, self.repo_root, force=True)
