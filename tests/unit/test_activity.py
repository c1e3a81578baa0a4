"""Tests for activity tracking and the health policy."""

import json

from gitgang.core.activity import (
    ActivityStats,
    HealthAction,
    assess_health,
    nudge_message,
    observe_line,
)
from gitgang.core.stream import LineRecord, parse_stream_line
from gitgang.schemas.config import SupervisorSettings

SETTINGS = SupervisorSettings(
    idle_timeout=420,
    nudge_after=180,
    error_loop_threshold=3,
    error_loop_window=120,
)


def line(raw: str | dict) -> LineRecord:
    text = raw if isinstance(raw, str) else json.dumps(raw)
    return LineRecord(source="stdout", raw=text, record=parse_stream_line(text))


def fresh(now: float = 0.0) -> ActivityStats:
    stats = ActivityStats()
    stats.reset(now)
    return stats


class TestObserveLine:
    """Tests for observe_line."""

    def test_any_line_counts_as_activity(self) -> None:
        stats = fresh()
        observe_line(stats, line("thinking about it"), now=5.0)

        assert stats.last_activity_at == 5.0
        assert stats.successes == 0

    def test_tool_result_success_resets_errors(self) -> None:
        stats = fresh()
        observe_line(stats, line({"type": "tool_result", "is_error": True, "content": "x"}), 1.0)
        observe_line(stats, line({"type": "tool_result", "content": "fine"}), 2.0)

        assert stats.errors == 1
        assert stats.successes == 1
        assert stats.consecutive_errors == 0
        assert stats.last_success_at == 2.0

    def test_exec_exit_codes(self) -> None:
        stats = fresh()
        observe_line(stats, line({"type": "exec", "command": "pytest", "exit_code": 1}), 1.0)
        observe_line(stats, line({"type": "exec", "command": "pytest", "exit_code": 1}), 2.0)

        assert stats.consecutive_errors == 2
        assert stats.last_error == "pytest exited 1"

    def test_error_text_heuristic(self) -> None:
        stats = fresh()
        observe_line(stats, line("Error: permission denied"), 1.0)

        assert stats.consecutive_errors == 1
        assert stats.last_error == "Error: permission denied"

    def test_error_content_blocks(self) -> None:
        stats = fresh()
        record = {
            "type": "user",
            "message": {
                "content": [
                    {
                        "type": "tool_result",
                        "is_error": True,
                        "content": [{"type": "text", "text": "file not found"}],
                    }
                ]
            },
        }
        observe_line(stats, line(record), 1.0)

        assert stats.last_error == "file not found"

    def test_write_tools_count_distinct_files(self) -> None:
        stats = fresh()
        for path in ("a.py", "b.py", "a.py"):
            observe_line(
                stats, line({"type": "tool_use", "name": "Edit", "input": {"file_path": path}}), 1.0
            )
        observe_line(stats, line({"type": "tool_use", "name": "Read", "input": {"file_path": "c.py"}}), 1.0)

        assert stats.files_changed == 2

    def test_commits(self) -> None:
        stats = fresh()
        observe_line(stats, line({"type": "exec", "command": "git commit -m x", "exit_code": 0}), 1.0)
        observe_line(
            stats,
            line({"type": "tool_use", "name": "Bash", "input": {"command": "git commit -am y"}}),
            1.0,
        )
        observe_line(stats, line("[agents/claude/x 1a2b3c4] add feature"), 1.0)

        assert stats.commits == 3

    def test_exec_commit_counted_once(self) -> None:
        stats = fresh()
        observe_line(stats, line({"type": "exec", "command": "git commit -m x"}), 1.0)
        observe_line(stats, line({"type": "exec", "command": "git commit -m x", "exit_code": 0}), 2.0)
        observe_line(stats, line({"type": "exec", "command": "git commit -m y", "exit_code": 1}), 3.0)

        assert stats.commits == 1

    def test_copy_is_independent(self) -> None:
        stats = fresh()
        stats.changed_paths.add("a.py")
        snapshot = stats.copy()
        stats.changed_paths.add("b.py")

        assert snapshot.files_changed == 1


class TestAssessHealth:
    """Tests for assess_health."""

    def test_active_agent(self) -> None:
        assert assess_health(fresh(), 10.0, SETTINGS, None) == HealthAction.NONE

    def test_nudge_once_per_idle_window(self) -> None:
        stats = fresh()

        assert assess_health(stats, 200.0, SETTINGS, None) == HealthAction.NUDGE
        assert assess_health(stats, 250.0, SETTINGS, last_nudge_at=200.0) == HealthAction.NONE

        stats.touch(300.0)
        assert assess_health(stats, 500.0, SETTINGS, last_nudge_at=200.0) == HealthAction.NUDGE

    def test_idle_kill(self) -> None:
        assert assess_health(fresh(), 421.0, SETTINGS, last_nudge_at=200.0) == HealthAction.KILL_IDLE

    def test_error_loop_needs_both_conditions(self) -> None:
        stats = fresh()
        for t in (1.0, 2.0, 3.0):
            stats.record_error("boom")
            stats.touch(t)

        assert assess_health(stats, 60.0, SETTINGS, None) == HealthAction.NONE
        stats.touch(125.0)
        assert assess_health(stats, 125.0, SETTINGS, None) == HealthAction.KILL_STUCK

    def test_error_loop_outranks_idle(self) -> None:
        stats = fresh()
        for _ in range(3):
            stats.record_error("boom")

        assert assess_health(stats, 1000.0, SETTINGS, None) == HealthAction.KILL_STUCK


class TestNudgeMessage:
    def test_includes_last_error(self) -> None:
        stats = fresh()
        assert "last error" not in nudge_message(stats)

        stats.record_error("ModuleNotFoundError: foo")
        assert "ModuleNotFoundError: foo" in nudge_message(stats)
