"""Git worktree management for agent isolation."""

from __future__ import annotations

import logging
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from gitgang.schemas.status import AgentId
from gitgang.utils.git import git, run_command

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "agents/"


def timestamp() -> str:
    """Compact local timestamp used in branch and file names."""
    return datetime.now().strftime("%Y%m%d-%H%M%S")


@dataclass
class Workspace:
    """An isolated working copy owned by one agent for one run."""

    agent: AgentId
    path: Path
    branch: str
    log_path: Path


@dataclass
class WorktreeInfo:
    """Information about a git worktree."""

    path: Path
    branch: str
    commit: str
    is_main: bool = False

    @property
    def is_agent(self) -> bool:
        return self.branch.startswith(BRANCH_PREFIX)


class WorktreeManager:
    """Creates and removes agent worktrees under the repository's work root."""

    def __init__(self, repo_root: Path, work_root: str = ".ai-worktrees"):
        """Initialize worktree manager.

        Args:
            repo_root: Root of the git repository
            work_root: Directory for worktrees and logs (relative to repo root)
        """
        self.repo_root = Path(repo_root)
        self.work_root = self.repo_root / work_root
        self.log_dir = self.work_root / "logs"

    async def create_workspace(self, agent: AgentId, base_branch: str) -> Workspace:
        """Create a new worktree on a fresh branch for an agent.

        Raises:
            GitError: If the worktree cannot be created
        """
        stamp = timestamp()
        branch = f"{BRANCH_PREFIX}{agent.value}/{stamp}-{uuid.uuid4().hex[:6]}"
        path = self.work_root / f"{agent.value}-{branch.replace('/', '_')}"

        self.work_root.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        await self._exclude_work_root()

        await git(self.repo_root, "worktree", "add", "-b", branch, str(path), base_branch)
        logger.info("Created worktree for %s on %s", agent.value, branch)

        return Workspace(
            agent=agent,
            path=path,
            branch=branch,
            log_path=self.log_dir / f"{agent.value}-{stamp}.log",
        )

    async def remove(self, target: Workspace | Path) -> None:
        """Remove a worktree directory. Best effort and idempotent."""
        path = target.path if isinstance(target, Workspace) else Path(target)

        result = await run_command(
            "git", "worktree", "remove", "--force", str(path), cwd=self.repo_root
        )
        if not result.ok and path.exists():
            logger.debug("git worktree remove failed for %s: %s", path, result.stderr.strip())
            shutil.rmtree(path, ignore_errors=True)

        await run_command("git", "worktree", "prune", cwd=self.repo_root)

    async def list_worktrees(self) -> list[WorktreeInfo]:
        """List all worktrees of the repository."""
        result = await run_command(
            "git", "worktree", "list", "--porcelain", cwd=self.repo_root
        )
        if not result.ok:
            return []

        worktrees: list[WorktreeInfo] = []
        current: dict[str, str] = {}

        # Entries are separated by blank lines; the trailing sentinel flushes the last one.
        for line in result.stdout.splitlines() + [""]:
            if not line:
                if current:
                    wt_path = Path(current.get("worktree", ""))
                    worktrees.append(
                        WorktreeInfo(
                            path=wt_path,
                            branch=current.get("branch", "").replace("refs/heads/", ""),
                            commit=current.get("HEAD", ""),
                            is_main=wt_path.resolve() == self.repo_root.resolve(),
                        )
                    )
                    current = {}
            elif line.startswith("worktree "):
                current["worktree"] = line[9:]
            elif line.startswith("HEAD "):
                current["HEAD"] = line[5:]
            elif line.startswith("branch "):
                current["branch"] = line[7:]

        return worktrees

    async def cleanup_all(self) -> list[Path]:
        """Remove every agent worktree.

        Returns:
            Paths of the removed worktrees
        """
        removed: list[Path] = []

        for wt in await self.list_worktrees():
            if wt.is_agent and not wt.is_main:
                await self.remove(wt.path)
                removed.append(wt.path)

        return removed

    async def _exclude_work_root(self) -> None:
        """Keep the work root out of `git status` in the base checkout."""
        git_dir = Path(await git(self.repo_root, "rev-parse", "--git-common-dir"))
        if not git_dir.is_absolute():
            git_dir = self.repo_root / git_dir

        try:
            relative = self.work_root.relative_to(self.repo_root)
        except ValueError:
            return

        exclude = git_dir / "info" / "exclude"
        entry = "/" + relative.as_posix() + "/"

        existing = exclude.read_text() if exclude.exists() else ""
        if entry in existing.splitlines():
            return

        exclude.parent.mkdir(parents=True, exist_ok=True)
        with open(exclude, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(entry + "\n")
