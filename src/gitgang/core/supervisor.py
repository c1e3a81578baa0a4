"""Supervision of one coding-agent process.

An :class:`AgentSupervisor` launches its agent in its workspace, watches the
output stream, nudges or kills the process when it stalls, restarts it with
exponential backoff after failures, and reports exactly one
:class:`AgentRunOutcome` per ``run()`` call.

State machine::

    idle --run()--> running --exit 0--> completed
                       |
                       +--exit != 0, budget left--> restarting --backoff--> running
                       |
                       +--budget exhausted / stopped / global timeout / stuck--> failed
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import TYPE_CHECKING, AsyncIterator, Callable

from gitgang.agents.base import AgentLauncher, LaunchRequest, get_launcher
from gitgang.core.activity import (
    ActivityStats,
    HealthAction,
    assess_health,
    nudge_message,
    observe_line,
)
from gitgang.core.stream import LineChannel, LineRecord, pump_lines
from gitgang.schemas.config import SupervisorSettings
from gitgang.schemas.status import AgentId, AgentRunOutcome, RunStatus, SupervisorState

if TYPE_CHECKING:
    from gitgang.core.state import RunRecorder
    from gitgang.worktree.manager import Workspace

logger = logging.getLogger(__name__)

STREAM_LIMIT = 4 * 1024 * 1024
KILL_GRACE = 10.0

STOPPED_MANUALLY = "Stopped manually"
GLOBAL_TIMEOUT_REACHED = "Global timeout reached"
UNRESPONSIVE = "Agent unresponsive: idle timeout reached twice without progress"


class SupervisorBusyError(RuntimeError):
    """Raised when run() is called while the agent is already running."""


class AgentSupervisor:
    """Owns one external agent process bound to one workspace."""

    def __init__(
        self,
        agent: AgentId,
        workspace: Workspace,
        base_branch: str,
        *,
        model: str = "",
        yolo: bool = True,
        settings: SupervisorSettings | None = None,
        launcher: AgentLauncher | None = None,
        recorder: RunRecorder | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.agent = agent
        self.workspace = workspace
        self.base_branch = base_branch
        self.model = model
        self.yolo = yolo
        self.settings = settings or SupervisorSettings()
        self._launcher = launcher or get_launcher(agent)
        self._recorder = recorder
        self._clock = clock

        self._state = SupervisorState.IDLE
        self._process: asyncio.subprocess.Process | None = None
        self._stats = ActivityStats()
        self._task = ""
        self._restarts = 0
        self._launches = 0
        self._backoff = self.settings.initial_backoff
        self._stop_requested = False
        self._global_timeout = False
        self._kill_reason: str | None = None
        self._give_up: str | None = None
        self._idle_strike_successes: int | None = None
        self._last_nudge_at: float | None = None
        self._last_error: str | None = None
        self._wake = asyncio.Event()

    # ------------------------------------------------------------------
    # Public surface

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def stats(self) -> ActivityStats:
        """Snapshot of the agent's activity counters."""
        return self._stats.copy()

    @property
    def restarts(self) -> int:
        return self._restarts

    @property
    def launches(self) -> int:
        """Processes started since this supervisor was created."""
        return self._launches

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def summary(self) -> str:
        if self._state in (SupervisorState.RUNNING, SupervisorState.RESTARTING):
            return "running"
        if self._state == SupervisorState.FAILED:
            return f"failed ({self._last_error})" if self._last_error else "failed"
        return self._state.value

    async def run(self, task: str) -> AgentRunOutcome:
        """Run the agent on a task until it completes or gives up.

        Raises:
            SupervisorBusyError: If a run is already in progress
        """
        if self._state in (SupervisorState.RUNNING, SupervisorState.RESTARTING):
            raise SupervisorBusyError(f"{self.agent.value} already running")

        self._task = task
        self._restarts = 0
        self._backoff = self.settings.initial_backoff
        self._stop_requested = False
        self._global_timeout = False
        self._give_up = None
        self._idle_strike_successes = None
        self._last_error = None
        self._stats.reset(self._clock())
        self._state = SupervisorState.RUNNING
        logger.info("[%s] launching in %s", self.agent.value, self.workspace.path)

        try:
            return await self._supervise()
        except asyncio.CancelledError:
            self._state = SupervisorState.FAILED
            self._last_error = "cancelled"
            raise

    async def _supervise(self) -> AgentRunOutcome:
        while True:
            exit_code, launch_error = await self._run_once()

            if self._stop_requested:
                logger.info("[%s] stopped by user", self.agent.value)
                return self._finish(RunStatus.DNF, exit_code, STOPPED_MANUALLY)

            if self._global_timeout:
                logger.warning("[%s] aborted due to global timeout", self.agent.value)
                return self._finish(RunStatus.DNF, exit_code, GLOBAL_TIMEOUT_REACHED)

            if self._give_up:
                self._record_give_up(self._give_up)
                return self._finish(RunStatus.DNF, exit_code, self._give_up)

            if exit_code == 0 and self._kill_reason is None:
                if self._restarts:
                    logger.info(
                        "[%s] complete after %d restart(s)", self.agent.value, self._restarts
                    )
                else:
                    logger.info("[%s] complete", self.agent.value)
                return self._finish(RunStatus.SUCCESS, exit_code, None)

            reason = self._kill_reason or launch_error or f"exit code {exit_code}"
            self._last_error = reason

            if self._restarts >= self.settings.max_restarts:
                logger.error("[%s] failed: %s", self.agent.value, reason)
                return self._finish(RunStatus.DNF, exit_code, reason)

            delay = min(self._backoff, self.settings.max_backoff)
            self._restarts += 1
            self._state = SupervisorState.RESTARTING
            self._backoff = min(self._backoff * 2, self.settings.max_backoff)
            logger.warning(
                "[%s] %s. Restart %d/%d in %.1fs",
                self.agent.value,
                reason,
                self._restarts,
                self.settings.max_restarts,
                delay,
            )

            await self._sleep(delay)
            if self._stop_requested:
                return self._finish(RunStatus.DNF, exit_code, STOPPED_MANUALLY)
            if self._global_timeout:
                return self._finish(RunStatus.DNF, exit_code, GLOBAL_TIMEOUT_REACHED)
            self._state = SupervisorState.RUNNING

    async def nudge(self, message: str) -> bool:
        """Write a follow-up message to the agent's stdin.

        Returns:
            False when there is no live process or the write fails
        """
        process = self._process
        if process is None or process.returncode is not None or process.stdin is None:
            return False
        if process.stdin.is_closing():
            return False

        try:
            process.stdin.write(f"\nProxy: {message}\n".encode())
            await process.stdin.drain()
        except (ConnectionError, OSError) as e:
            logger.debug("[%s] nudge failed: %s", self.agent.value, e)
            return False
        return True

    def terminate(self) -> bool:
        """Stop the agent without consuming restart budget.

        Returns:
            False when not running or a stop is already pending
        """
        if self._stop_requested:
            return False
        if self._state not in (SupervisorState.RUNNING, SupervisorState.RESTARTING):
            return False

        self._stop_requested = True
        self._kill()
        self._wake.set()
        return True

    def notify_global_timeout(self) -> None:
        """Tear the agent down because the run's global timeout expired."""
        self._global_timeout = True
        if self.is_alive:
            logger.warning("[%s] global timeout reached, stopping", self.agent.value)
        self._kill()
        self._wake.set()

    # ------------------------------------------------------------------
    # One process lifetime

    async def _run_once(self) -> tuple[int, str | None]:
        self._kill_reason = None
        self._last_nudge_at = None
        self._stats.consecutive_errors = 0
        self._stats.touch(self._clock())

        request = LaunchRequest(
            agent=self.agent,
            workspace=self.workspace.path,
            base_branch=self.base_branch,
            task=self._task,
            model=self.model,
            yolo=self.yolo,
        )
        argv = self._launcher.build_command(request)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.workspace.path,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            return 1, f"spawn failed: {e}"

        self._process = process
        self._launches += 1

        channel = LineChannel()
        consumers = [
            asyncio.create_task(self._write_log(channel.subscribe())),
            asyncio.create_task(self._track_activity(channel.subscribe())),
        ]
        pumps = [
            asyncio.create_task(pump_lines(process.stdout, channel, "stdout")),
            asyncio.create_task(pump_lines(process.stderr, channel, "stderr")),
        ]
        heartbeat = asyncio.create_task(self._heartbeat())

        # A stop may have arrived while the process was being spawned.
        if self._stop_requested or self._global_timeout:
            self._kill()

        try:
            exit_code = await process.wait()
        except asyncio.CancelledError:
            self._kill()
            raise
        finally:
            heartbeat.cancel()
            _, pending = await asyncio.wait(pumps, timeout=self.settings.drain_timeout)
            for task in pending:
                task.cancel()
            channel.close()
            await asyncio.gather(*consumers, *pending, heartbeat, return_exceptions=True)
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            self._process = None

        return exit_code, None

    async def _write_log(self, lines: AsyncIterator[LineRecord]) -> None:
        log_path = self.workspace.log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            async for line in lines:
                f.write(line.raw + "\n")
                f.flush()
                logger.debug("[%s] %s", self.agent.value, line.raw)

    async def _track_activity(self, lines: AsyncIterator[LineRecord]) -> None:
        async for line in lines:
            observe_line(self._stats, line, self._clock())

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            if not self.is_alive or self._kill_reason is not None:
                return

            now = self._clock()
            action = assess_health(self._stats, now, self.settings, self._last_nudge_at)

            if action == HealthAction.KILL_STUCK:
                self._give_up = (
                    f"Stuck in error loop: {self._stats.consecutive_errors} consecutive "
                    f"tool errors without a successful action for "
                    f"{now - self._stats.last_success_at:.0f}s"
                )
                logger.error("[%s] %s", self.agent.value, self._give_up)
                self._kill(self._give_up)
                return

            if action == HealthAction.KILL_IDLE:
                idle = self._stats.idle_for(now)
                if self._idle_strike_successes == self._stats.successes:
                    self._give_up = UNRESPONSIVE
                    logger.error("[%s] idle for %.0fs again, giving up", self.agent.value, idle)
                else:
                    self._idle_strike_successes = self._stats.successes
                    logger.warning("[%s] idle for %.0fs, restarting", self.agent.value, idle)
                self._kill(f"idle for {idle:.0f}s")
                return

            if action == HealthAction.NUDGE:
                self._last_nudge_at = now
                if await self.nudge(nudge_message(self._stats)):
                    logger.info(
                        "[%s] nudged after %.0fs of silence",
                        self.agent.value,
                        self._stats.idle_for(now),
                    )

    # ------------------------------------------------------------------
    # Helpers

    def _kill(self, reason: str | None = None) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        if reason and self._kill_reason is None:
            self._kill_reason = reason

        _signal_group(process, signal.SIGTERM)
        asyncio.get_running_loop().call_later(KILL_GRACE, _force_kill, process)

    async def _sleep(self, delay: float) -> None:
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _finish(self, status: RunStatus, exit_code: int, reason: str | None) -> AgentRunOutcome:
        if status == RunStatus.SUCCESS:
            self._state = SupervisorState.COMPLETED
        else:
            self._state = SupervisorState.FAILED
            self._last_error = reason
        return AgentRunOutcome(
            status=status,
            exit_code=exit_code,
            restarts=self._restarts,
            reason=reason,
        )

    def _record_give_up(self, reason: str) -> None:
        if self._recorder is None:
            return
        details = "\n".join(
            [
                f"Agent: {self.agent.value}",
                f"Branch: {self.workspace.branch}",
                f"Log: {self.workspace.log_path}",
                f"Restarts: {self._restarts}",
                f"Last error: {self._stats.last_error or '-'}",
            ]
        )
        self._recorder.note_incident(f"{self.agent.value}: {reason}", details)


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass


def _force_kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        _signal_group(process, signal.SIGKILL)
