"""Stdout/stderr monitors for the agent subprocess.

Stdout carries stream-json events; stderr is plain diagnostic text. Each
stream is drained on its own thread until EOF, which arrives once the process
has exited, whether naturally or after a kill.
"""

from __future__ import annotations

import logging
import queue
import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from ralph_loop.config import ContextLimitSettings
from ralph_loop.errors import EventParseError
from ralph_loop.orchestrator.events import (
    AssistantEvent,
    InitEvent,
    ResultEvent,
    TokenUsage,
    event_type_name,
    extract_text,
    parse_event,
)
from ralph_loop.orchestrator.state import RunState
from ralph_loop.orchestrator.tokens import TokenEstimator, build_estimator

logger = logging.getLogger(__name__)

_LOG_PREVIEW_CHARS = 100


class ProcessCommand(str, Enum):
    """Commands a monitor can send to the supervising thread."""

    KILL = "kill"


class CommandChannel:
    """Single-slot command queue from the monitors to the supervisor.

    A send that finds the slot occupied is dropped: the pending command
    already requests the same thing.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[ProcessCommand] = queue.Queue(maxsize=1)

    def send(self, command: ProcessCommand) -> bool:
        try:
            self._queue.put_nowait(command)
        except queue.Full:
            logger.debug("Command %s dropped: channel already holds a pending command", command)
            return False
        return True

    def receive(self, timeout: float = 0.0) -> ProcessCommand | None:
        """Wait up to ``timeout`` seconds for a command; ``None`` if nothing arrived."""

        try:
            if timeout <= 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[ProcessCommand]:
        drained: list[ProcessCommand] = []
        while (command := self.receive()) is not None:
            drained.append(command)
        return drained


@dataclass(slots=True)
class MonitorResult:
    """What the stdout monitor captured during one invocation."""

    session_id: str | None = None
    token_usage: TokenUsage | None = None


class JsonEventMonitor:
    """Consumes stdout events, updates run state and requests kills."""

    def __init__(
        self,
        *,
        completion_promise: str,
        context_limit: ContextLimitSettings,
        state: RunState,
        channel: CommandChannel,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self.completion_promise = completion_promise
        self.context_limit = context_limit
        self.state = state
        self.channel = channel
        self.estimator = estimator or build_estimator(context_limit.estimation_method)
        self._promise_pattern = re.compile(f"<promise>{re.escape(completion_promise)}</promise>")
        self._warning_emitted = False
        self._kill_requested = False
        self._session_id: str | None = None
        self._token_usage: TokenUsage | None = None
        self.line_count = 0
        self.event_count = 0

    def result(self) -> MonitorResult:
        return MonitorResult(session_id=self._session_id, token_usage=self._token_usage)

    def monitor_stream(self, stream: Iterable[str]) -> MonitorResult:
        """Process lines until EOF and return the captured session data."""

        logger.debug("stdout monitor: reading events")
        try:
            for line in stream:
                self.line_count += 1
                self.process_line(line)
        except (OSError, ValueError) as error:
            logger.warning(
                "stdout monitor: read error after %d lines: %s", self.line_count, error
            )
        logger.debug(
            "stdout monitor: stream closed after %d lines, %d events",
            self.line_count,
            self.event_count,
        )
        return self.result()

    def process_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return

        self.state.append_output(stripped)
        self.state.append_output("\n")

        try:
            event = parse_event(stripped)
        except EventParseError as error:
            logger.debug(
                "stdout monitor: skipping unparseable line (%s): %s",
                error,
                stripped[:_LOG_PREVIEW_CHARS],
            )
            return

        self.event_count += 1
        logger.debug(
            "stdout monitor: event #%d type=%s", self.event_count, event_type_name(event)
        )

        if isinstance(event, InitEvent):
            if event.session_id is not None and self._session_id is None:
                logger.debug("Captured session id from init: %s", event.session_id)
                self._session_id = event.session_id
        elif isinstance(event, AssistantEvent):
            self._handle_assistant(event)
        elif isinstance(event, ResultEvent):
            self._handle_result(event)

    def _handle_assistant(self, event: AssistantEvent) -> None:
        text = extract_text(event)
        if text is None:
            return
        self.state.add_tokens(self.estimator.count(text))
        if self._promise_pattern.search(text):
            logger.info("Promise found in output: %s", self.completion_promise)
            self.state.set_promise_found(self.completion_promise)

    def _handle_result(self, event: ResultEvent) -> None:
        if event.session_id is not None:
            logger.debug("Captured session id from result: %s", event.session_id)
            self._session_id = event.session_id

        self._token_usage = event.usage
        total = event.usage.total()
        # The agent reports cumulative totals, so the latest result replaces the count.
        self.state.set_tokens(total)
        logger.debug("Result event: %d total tokens", total)

        if not self._warning_emitted and total >= self.context_limit.warning_threshold:
            logger.warning(
                "Context limit warning: %d tokens (threshold: %d)",
                total,
                self.context_limit.warning_threshold,
            )
            self._warning_emitted = True

        if total >= self.context_limit.max_tokens and not self._kill_requested:
            logger.info(
                "Context limit reached: %d tokens (limit: %d)",
                total,
                self.context_limit.max_tokens,
            )
            self._kill_requested = True
            self.channel.send(ProcessCommand.KILL)


class StderrMonitor:
    """Drains stderr so the child never blocks on a full pipe."""

    def __init__(self) -> None:
        self.line_count = 0

    def monitor_stream(self, stream: Iterable[str]) -> None:
        try:
            for line in stream:
                self.line_count += 1
                stripped = line.strip()
                if stripped:
                    logger.debug("stderr[%d]: %s", self.line_count, stripped)
        except (OSError, ValueError) as error:
            logger.warning(
                "stderr monitor: read error after %d lines: %s", self.line_count, error
            )
        logger.debug("stderr monitor: stream closed after %d lines", self.line_count)


class MonitorThreads:
    """Handles for the two running monitor threads."""

    def __init__(
        self,
        stdout_monitor: JsonEventMonitor,
        stdout_thread: threading.Thread,
        stderr_thread: threading.Thread,
    ) -> None:
        self.stdout_monitor = stdout_monitor
        self._stdout_thread = stdout_thread
        self._stderr_thread = stderr_thread

    def join(self) -> MonitorResult:
        """Wait for both streams to reach EOF and return the stdout snapshot."""

        self._stdout_thread.join()
        self._stderr_thread.join()
        return self.stdout_monitor.result()


def spawn_monitors(  # noqa: PLR0913
    *,
    completion_promise: str,
    context_limit: ContextLimitSettings,
    state: RunState,
    stdout: Iterable[str],
    stderr: Iterable[str],
    channel: CommandChannel,
    estimator: TokenEstimator | None = None,
) -> MonitorThreads:
    """Start the stdout and stderr monitors on daemon threads."""

    stdout_monitor = JsonEventMonitor(
        completion_promise=completion_promise,
        context_limit=context_limit,
        state=state,
        channel=channel,
        estimator=estimator,
    )
    stderr_monitor = StderrMonitor()
    stdout_thread = threading.Thread(
        target=stdout_monitor.monitor_stream,
        args=(stdout,),
        name="ralph-stdout-monitor",
        daemon=True,
    )
    stderr_thread = threading.Thread(
        target=stderr_monitor.monitor_stream,
        args=(stderr,),
        name="ralph-stderr-monitor",
        daemon=True,
    )
    stdout_thread.start()
    stderr_thread.start()
    return MonitorThreads(stdout_monitor, stdout_thread, stderr_thread)
