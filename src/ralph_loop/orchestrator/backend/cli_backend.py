"""Subprocess-based agent that runs the coding CLI once per iteration."""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable
from pathlib import Path

from ralph_loop.config import Settings
from ralph_loop.errors import ProcessIoError
from ralph_loop.orchestrator.backend.base import AgentResult, ExitReason
from ralph_loop.orchestrator.monitor import (
    CommandChannel,
    MonitorResult,
    MonitorThreads,
    ProcessCommand,
    spawn_monitors,
)
from ralph_loop.orchestrator.process import AgentProcess
from ralph_loop.orchestrator.state import RunState
from ralph_loop.orchestrator.tokens import TokenEstimator, build_estimator

logger = logging.getLogger(__name__)

_REAP_TIMEOUT_SECONDS = 5.0


class ClaudeCliAgent:
    """Spawn the agent CLI, monitor both streams and race exit against a kill."""

    def __init__(
        self,
        settings: Settings,
        *,
        state: RunState | None = None,
        shutdown_requested: Callable[[], bool] | None = None,
        estimator: TokenEstimator | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.settings = settings
        self.state = state if state is not None else RunState()
        self.shutdown_requested = shutdown_requested
        self.estimator = estimator or build_estimator(settings.context_limit.estimation_method)
        self.cwd = cwd

    def run(self, prompt: str) -> AgentResult:
        channel = CommandChannel()
        logger.debug(
            "Spawning agent: %s %s (prompt via %s)",
            self.settings.claude_path,
            " ".join(self.settings.claude_args),
            self.settings.prompt_mode.value,
        )
        process = AgentProcess.spawn(
            self.settings.claude_path,
            self.settings.claude_args,
            prompt,
            prompt_mode=self.settings.prompt_mode,
            cwd=self.cwd,
        )
        if process.stdout is None or process.stderr is None:  # pragma: no cover
            process.kill()
            raise ProcessIoError("agent process pipes are not available")

        monitors = spawn_monitors(
            completion_promise=self.settings.completion_promise,
            context_limit=self.settings.context_limit,
            state=self.state,
            stdout=process.stdout,
            stderr=process.stderr,
            channel=channel,
            estimator=self.estimator,
        )

        try:
            exit_reason = self._wait_for_exit_or_kill(process, channel)
        except BaseException:
            _kill_and_reap(process)
            raise
        finally:
            monitor_result = _join_monitors(monitors)
            process.close_pipes()

        return AgentResult(
            output=self.state.get_output(),
            promise_found=self.state.get_promise_text(),
            token_count=self.state.get_token_count(),
            exit_reason=exit_reason,
        ).with_monitor_result(monitor_result)

    def _wait_for_exit_or_kill(
        self,
        process: AgentProcess,
        channel: CommandChannel,
    ) -> ExitReason:
        poll_interval = self.settings.poll_interval_seconds
        shutdown_deadline: float | None = None

        while True:
            command = channel.receive(timeout=poll_interval)
            if command == ProcessCommand.KILL:
                logger.info("Killing agent process pid=%s due to context limit", process.pid)
                _kill_and_reap(process)
                return ExitReason.CONTEXT_LIMIT

            returncode = process.poll()
            if returncode is not None:
                logger.info("Agent process exited with status %s", returncode)
                # Ctrl+C from a terminal also reaches the child, which may exit
                # before the grace period starts.
                if self._shutdown_in_progress():
                    return ExitReason.SHUTDOWN
                # The monitor may have queued a kill just as the process exited.
                dropped = channel.drain()
                if dropped:
                    logger.debug("Discarded %d pending command(s) after natural exit", len(dropped))
                return ExitReason.NATURAL

            if self._shutdown_in_progress():
                now = time.monotonic()
                if shutdown_deadline is None:
                    shutdown_deadline = now + self.settings.graceful_shutdown_seconds
                    logger.info(
                        "Shutdown requested; giving agent pid=%s %.1fs to exit",
                        process.pid,
                        self.settings.graceful_shutdown_seconds,
                    )
                if now >= shutdown_deadline:
                    logger.info("Killing agent process pid=%s due to shutdown", process.pid)
                    _kill_and_reap(process)
                    return ExitReason.SHUTDOWN

    def _shutdown_in_progress(self) -> bool:
        return self.shutdown_requested is not None and self.shutdown_requested()


def _kill_and_reap(process: AgentProcess) -> None:
    process.kill()
    try:
        process.wait(timeout=_REAP_TIMEOUT_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("Agent process pid=%s did not exit after kill", process.pid)
    except ProcessIoError as error:
        logger.warning("Error waiting for killed agent process: %s", error)


def _join_monitors(monitors: MonitorThreads) -> MonitorResult:
    result = monitors.join()
    logger.debug(
        "Monitors finished: session_id=%s usage=%s", result.session_id, result.token_usage
    )
    return result
