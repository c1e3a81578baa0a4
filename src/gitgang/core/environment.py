"""Preflight checks run before any workspace is created."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from gitgang.utils.git import get_current_branch, get_repo_root, get_status_porcelain

logger = logging.getLogger(__name__)

REQUIRED_BINARIES = ("git", "gemini", "claude", "codex")


class PreflightError(Exception):
    """The environment cannot host a run."""


async def resolve_repository(path: str | Path | None = None) -> tuple[Path, str]:
    """Find the repository root and the branch to use as base.

    Args:
        path: Directory inside the repository (defaults to cwd)

    Returns:
        (repository root, current branch)

    Raises:
        PreflightError: Outside a repository or on a detached HEAD
    """
    repo_root = await get_repo_root(path)
    if repo_root is None:
        raise PreflightError("Not inside a git repository")

    branch = await get_current_branch(repo_root)
    if branch is None:
        raise PreflightError("HEAD is detached; check out a branch to use as base")

    return repo_root, branch


async def ensure_clean_tree(repo_root: Path) -> None:
    """Raise PreflightError if the working tree has uncommitted changes."""
    status = await get_status_porcelain(repo_root)
    if status:
        raise PreflightError(
            "Working tree is not clean; commit or stash your changes first\n" + status
        )


def missing_binaries(names: tuple[str, ...] = REQUIRED_BINARIES) -> list[str]:
    return [name for name in names if shutil.which(name) is None]


def ensure_dependencies(auto_pr: bool) -> bool:
    """Check that the agent CLIs are installed.

    Args:
        auto_pr: Whether a pull request should be opened on approval

    Returns:
        Whether auto-PR stays enabled (it needs the gh CLI)

    Raises:
        PreflightError: If a required binary is missing from PATH
    """
    missing = missing_binaries()
    if missing:
        raise PreflightError(f"Missing required binaries on PATH: {', '.join(missing)}")

    if auto_pr and shutil.which("gh") is None:
        logger.warning("gh CLI not found; pull request creation disabled")
        return False
    return auto_pr
