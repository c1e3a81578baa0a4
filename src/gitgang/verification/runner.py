"""Post-merge check execution."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from gitgang.utils.git import run_shell

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    """Result of one post-merge check, across all of its attempts."""

    command: str
    passed: bool
    exit_code: int
    attempts: int
    output: str = ""
    error: str = ""
    duration_ms: int = 0


@dataclass
class VerificationResult:
    """Results of a sequence of checks; stops at the first failure."""

    checks: list[CheckResult] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def failed(self) -> CheckResult | None:
        return next((c for c in self.checks if not c.passed), None)


async def run_check(
    command: str,
    cwd: Path,
    attempts: int = 3,
    backoff: float = 0.5,
    timeout: float = 600,
) -> CheckResult:
    """Run a check, retrying with linear backoff to absorb flakiness.

    Args:
        command: Shell command line
        cwd: Directory to run it in
        attempts: Total attempts before giving up
        backoff: Delay step; attempt n waits n * backoff before the next try
        timeout: Per-attempt timeout in seconds

    Returns:
        CheckResult of the last attempt
    """
    attempt = 1
    while True:
        logger.info("Running post-merge check (attempt %d/%d): %s", attempt, attempts, command)
        result = await run_shell(command, cwd=cwd, timeout=timeout)
        if result.ok or attempt >= attempts:
            break
        logger.warning("Check %r exited %d, retrying", command, result.returncode)
        await asyncio.sleep(backoff * attempt)
        attempt += 1

    return CheckResult(
        command=command,
        passed=result.ok,
        exit_code=result.returncode,
        attempts=attempt,
        output=result.stdout,
        error=result.stderr,
        duration_ms=result.duration_ms,
    )


async def run_post_merge_checks(
    commands: list[str],
    cwd: Path,
    attempts: int = 3,
    backoff: float = 0.5,
    timeout: float = 600,
) -> VerificationResult:
    """Run checks sequentially, stopping at the first that still fails."""
    verification = VerificationResult()

    for command in commands:
        check = await run_check(command, cwd, attempts=attempts, backoff=backoff, timeout=timeout)
        verification.checks.append(check)
        if not check.passed:
            break

    return verification
