"""Git and shell command helpers.

Everything here is async: the orchestrator never blocks the event loop on
subprocess I/O.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path


class GitError(Exception):
    """Raised when a git command exits non-zero."""

    def __init__(self, args: tuple[str, ...], returncode: int, output: str):
        self.git_args = args
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"git {' '.join(args)} failed (exit {returncode}): {output.strip()}"
        )


@dataclass
class CommandResult:
    """Result of a shell command execution."""

    returncode: int
    stdout: str
    stderr: str
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    *argv: str,
    cwd: str | Path | None = None,
    timeout: float | None = 60,
) -> CommandResult:
    """Run a command and return the result.

    Args:
        argv: Program and arguments
        cwd: Working directory for the command
        timeout: Timeout in seconds (None to wait forever)

    Returns:
        CommandResult with returncode, stdout, stderr. A timeout or a
        missing executable is reported as returncode -1.
    """
    start = time.monotonic()

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return CommandResult(returncode=-1, stdout="", stderr=str(e))

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout} seconds",
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        duration_ms=int((time.monotonic() - start) * 1000),
    )


async def run_shell(
    command: str,
    cwd: str | Path | None = None,
    timeout: float | None = 600,
) -> CommandResult:
    """Run a shell command line through a login bash."""
    return await run_command("bash", "-lc", command, cwd=cwd, timeout=timeout)


async def git(cwd: str | Path, *args: str) -> str:
    """Run git and return stripped stdout.

    Raises:
        GitError: If git exits non-zero
    """
    result = await run_command("git", *args, cwd=cwd, timeout=None)
    if not result.ok:
        raise GitError(args, result.returncode, result.stderr or result.stdout)
    return result.stdout.strip()


async def get_repo_root(path: str | Path | None = None) -> Path | None:
    """Get the root directory of a git repository.

    Args:
        path: Path within the repository (defaults to cwd)

    Returns:
        Path to repository root, or None if not in a repo
    """
    result = await run_command("git", "rev-parse", "--show-toplevel", cwd=path)
    if result.ok:
        return Path(result.stdout.strip())
    return None


async def get_current_branch(cwd: str | Path | None = None) -> str | None:
    """Get the current git branch name.

    Returns:
        Branch name, or None if detached or not in a repo
    """
    result = await run_command("git", "rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    if result.ok:
        branch = result.stdout.strip()
        return None if branch == "HEAD" else branch
    return None


async def get_status_porcelain(cwd: str | Path) -> str:
    """Return `git status --porcelain` output (empty when clean)."""
    return await git(cwd, "status", "--porcelain")


async def branch_exists(branch: str, cwd: str | Path) -> bool:
    """Check whether a local branch exists."""
    result = await run_command(
        "git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=cwd
    )
    return result.ok


async def checkout_branch(branch_name: str, cwd: str | Path) -> str:
    """Checkout an existing branch."""
    return await git(cwd, "checkout", branch_name)


async def create_branch(
    branch_name: str,
    cwd: str | Path,
    start_point: str | None = None,
) -> str:
    """Create a new branch and check it out.

    Args:
        branch_name: Name for the new branch
        cwd: Working directory
        start_point: Starting commit/branch (defaults to HEAD)
    """
    args = ["checkout", "-b", branch_name]
    if start_point:
        args.append(start_point)
    return await git(cwd, *args)


async def merge_branch(
    branch_name: str,
    cwd: str | Path,
    message: str | None = None,
    no_ff: bool = True,
) -> str:
    """Merge a branch into the current branch.

    Raises:
        GitError: On conflicts or any other merge failure
    """
    args = ["merge"]
    if no_ff:
        args.append("--no-ff")
    args.append(branch_name)
    if message:
        args.extend(["-m", message])
    return await git(cwd, *args)


async def delete_branch(
    branch_name: str,
    cwd: str | Path,
    force: bool = False,
) -> CommandResult:
    """Delete a branch, reporting rather than raising on failure."""
    flag = "-D" if force else "-d"
    return await run_command("git", "branch", flag, branch_name, cwd=cwd)


async def commit_all(cwd: str | Path, message: str) -> str:
    """Stage every change (including untracked files) and commit."""
    await git(cwd, "add", "-A")
    return await git(cwd, "commit", "-m", message)
