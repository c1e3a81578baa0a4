"""Per-agent activity counters and the health supervision policy."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING

from gitgang.core.stream import (
    ExecRecord,
    LineRecord,
    ToolResultRecord,
    ToolUseRecord,
    expand_record,
)

if TYPE_CHECKING:
    from gitgang.schemas.config import SupervisorSettings

# Best-effort heuristics over raw agent text. They depend on the wording of
# the agent CLIs and can silently stop matching when that wording changes.
ERROR_TEXT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\s*error:", re.IGNORECASE),
    re.compile(r"tool (?:call|use) (?:failed|error)", re.IGNORECASE),
    re.compile(r"\bcommand failed with exit code\b", re.IGNORECASE),
)
COMMIT_SUMMARY = re.compile(r"^\[[^\]\s]+(?: \(root-commit\))? [0-9a-f]{7,40}\] ")

WRITE_TOOLS = frozenset(
    {
        "write",
        "edit",
        "multiedit",
        "write_file",
        "edit_file",
        "replace",
        "apply_patch",
        "create_file",
    }
)
PATH_KEYS = ("file_path", "path", "filename", "absolute_path")


@dataclass
class ActivityStats:
    """Counters describing what an agent has been doing.

    Times are ``time.monotonic()`` seconds. Only the owning supervisor
    mutates an instance; everyone else gets a copy.
    """

    started_at: float = 0.0
    last_activity_at: float = 0.0
    last_success_at: float = 0.0
    consecutive_errors: int = 0
    errors: int = 0
    successes: int = 0
    commits: int = 0
    changed_paths: set[str] = field(default_factory=set)
    last_error: str | None = None

    @property
    def files_changed(self) -> int:
        return len(self.changed_paths)

    def reset(self, now: float) -> None:
        self.started_at = now
        self.last_activity_at = now
        self.last_success_at = now
        self.consecutive_errors = 0
        self.errors = 0
        self.successes = 0
        self.commits = 0
        self.changed_paths = set()
        self.last_error = None

    def touch(self, now: float) -> None:
        self.last_activity_at = now

    def record_success(self, now: float) -> None:
        self.successes += 1
        self.consecutive_errors = 0
        self.last_success_at = now

    def record_error(self, text: str) -> None:
        self.errors += 1
        self.consecutive_errors += 1
        self.last_error = text[:500]

    def idle_for(self, now: float) -> float:
        return now - self.last_activity_at

    def copy(self) -> "ActivityStats":
        return replace(self, changed_paths=set(self.changed_paths))


def _command_commits(command: str | None) -> bool:
    return bool(command) and "git commit" in command


def observe_line(stats: ActivityStats, line: LineRecord, now: float) -> None:
    """Update stats from one output line."""
    stats.touch(now)

    if line.record is None:
        text = line.raw
        if any(pattern.search(text) for pattern in ERROR_TEXT_PATTERNS):
            stats.record_error(text)
        elif COMMIT_SUMMARY.match(text):
            stats.commits += 1
        return

    for record in expand_record(line.record):
        if isinstance(record, ToolResultRecord):
            if record.failed:
                stats.record_error(_describe(record.content) or line.raw)
            else:
                stats.record_success(now)
        elif isinstance(record, ExecRecord):
            # A start record carries no exit code; count the commit on completion.
            if _command_commits(record.command) and record.exit_code == 0:
                stats.commits += 1
            if record.exit_code is None:
                continue
            if record.exit_code == 0:
                stats.record_success(now)
            else:
                stats.record_error(f"{record.command or 'command'} exited {record.exit_code}")
        elif isinstance(record, ToolUseRecord):
            args = record.arguments
            if record.tool.lower() in WRITE_TOOLS:
                for key in PATH_KEYS:
                    value = args.get(key)
                    if isinstance(value, str) and value:
                        stats.changed_paths.add(value)
                        break
            command = args.get("command")
            if isinstance(command, str) and _command_commits(command):
                stats.commits += 1


def _describe(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        ]
        return " ".join(p for p in parts if p)
    return ""


class HealthAction(str, Enum):
    """What the heartbeat should do about an agent."""

    NONE = "none"
    NUDGE = "nudge"
    KILL_IDLE = "kill_idle"
    KILL_STUCK = "kill_stuck"


def assess_health(
    stats: ActivityStats,
    now: float,
    settings: SupervisorSettings,
    last_nudge_at: float | None,
) -> HealthAction:
    """Decide the heartbeat action, most severe first."""
    if (
        stats.consecutive_errors >= settings.error_loop_threshold
        and now - stats.last_success_at >= settings.error_loop_window
    ):
        return HealthAction.KILL_STUCK

    idle = stats.idle_for(now)
    if idle > settings.idle_timeout:
        return HealthAction.KILL_IDLE

    nudged_this_window = last_nudge_at is not None and last_nudge_at >= stats.last_activity_at
    if idle > settings.nudge_after and not nudged_this_window:
        return HealthAction.NUDGE

    return HealthAction.NONE


def nudge_message(stats: ActivityStats) -> str:
    """Status request sent to an agent that has gone quiet."""
    message = (
        "Status check: no output for a while. Report your progress, then keep "
        "working on the task. If you are blocked, say what is blocking you and "
        "try a different approach."
    )
    if stats.last_error:
        message += f" The last error seen was: {stats.last_error}"
    return message
