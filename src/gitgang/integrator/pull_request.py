"""Hand the approved merge branch to GitHub."""

from __future__ import annotations

import logging
from pathlib import Path

from gitgang.utils.git import run_command

logger = logging.getLogger(__name__)

PUSH_TIMEOUT = 120.0


async def open_pull_request(repo_root: Path, base_branch: str, head_branch: str) -> bool:
    """Push the merge branch and open a pull request against base.

    Failures are logged, never raised: the merge branch stays available
    locally either way.

    Returns:
        True if the pull request was created
    """
    push = await run_command(
        "git", "push", "-u", "origin", head_branch, cwd=repo_root, timeout=PUSH_TIMEOUT
    )
    if not push.ok:
        logger.warning("Could not push %s: %s", head_branch, push.stderr.strip())
        return False

    pr = await run_command(
        "gh", "pr", "create", "--fill", "--base", base_branch, "--head", head_branch,
        cwd=repo_root,
        timeout=PUSH_TIMEOUT,
    )
    if not pr.ok:
        logger.warning("Could not open pull request: %s", pr.stderr.strip())
        return False

    logger.info("Opened pull request: %s", pr.stdout.strip())
    return True
