"""Loop controller: run the agent until it keeps its promise."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from ralph_loop.config import Settings
from ralph_loop.errors import (
    MaxIterationsExceededError,
    ShutdownRequestedError,
    TranscriptWriteError,
)
from ralph_loop.orchestrator.backend.base import Agent, AgentResult, ExitReason
from ralph_loop.orchestrator.state import RunState
from ralph_loop.orchestrator.transcript import (
    IterationEndReason,
    RunExitReason,
    TranscriptWriter,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoopResult:
    """Successful loop outcome."""

    iterations: int
    promise: str


class LoopController:
    """Invoke the agent with the same prompt until the promise appears.

    Stops with ``MaxIterationsExceededError`` once the optional ceiling is
    passed and with ``ShutdownRequestedError`` when a shutdown was requested.
    Metadata failures never stop the loop.
    """

    def __init__(
        self,
        settings: Settings,
        agent: Agent,
        *,
        state: RunState | None = None,
        transcript: TranscriptWriter | None = None,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> None:
        self.settings = settings
        self.agent = agent
        self.state = state if state is not None else RunState()
        self.transcript = transcript
        self.shutdown_requested = shutdown_requested

    def run(self) -> LoopResult:
        prompt = self.settings.require_prompt()
        max_iterations = self.settings.max_iterations

        while True:
            iteration = self.state.increment_iteration()

            if max_iterations is not None and iteration > max_iterations:
                logger.warning("Maximum iterations (%d) reached without promise", max_iterations)
                self._complete(RunExitReason.MAX_ITERATIONS_EXCEEDED)
                raise MaxIterationsExceededError(max_iterations)

            if self.shutdown_requested is not None and self.shutdown_requested():
                logger.info("Shutdown requested before iteration %d; stopping", iteration)
                self._complete(RunExitReason.USER_INTERRUPT)
                raise ShutdownRequestedError

            logger.info(
                "Iteration %d%s starting",
                iteration,
                f"/{max_iterations}" if max_iterations is not None else "",
            )
            self._record(lambda: self.transcript.start_iteration())
            self.state.reset()

            try:
                result = self.agent.run(prompt)
            except Exception:
                logger.exception("Agent failed during iteration %d", iteration)
                self._end_iteration(IterationEndReason.ERROR, None)
                self._complete(RunExitReason.ERROR)
                raise

            if result.session_id is not None:
                session_id = result.session_id
                self._record(lambda: self.transcript.set_session_id(session_id))

            end_reason = _classify_end_reason(result)
            self._end_iteration(end_reason, result)
            logger.info(
                "Iteration %d ended: %s (%d tokens)",
                iteration,
                end_reason.value,
                result.token_count,
            )

            if result.promise_found is not None:
                logger.info("Promise fulfilled after %d iteration(s)", iteration)
                self._complete(RunExitReason.PROMISE_FULFILLED)
                return LoopResult(iterations=iteration, promise=result.promise_found)

            if result.exit_reason == ExitReason.CONTEXT_LIMIT:
                logger.info("Context limit reached; restarting with a fresh session")

    def _end_iteration(self, end_reason: IterationEndReason, result: AgentResult | None) -> None:
        usage = result.token_usage if result is not None else None
        input_tokens = usage.input_tokens if usage is not None else 0
        output_tokens = usage.output_tokens if usage is not None else 0
        self._record(
            lambda: self.transcript.end_iteration(end_reason, input_tokens, output_tokens),
        )

    def _complete(self, exit_reason: RunExitReason) -> None:
        self._record(lambda: self.transcript.complete(exit_reason))

    def _record(self, action: Callable[[], None]) -> None:
        if self.transcript is None:
            return
        try:
            action()
        except TranscriptWriteError as error:
            logger.warning("Failed to update run metadata: %s", error)


def _classify_end_reason(result: AgentResult) -> IterationEndReason:
    if result.exit_reason == ExitReason.CONTEXT_LIMIT:
        return IterationEndReason.CONTEXT_LIMIT
    if result.exit_reason == ExitReason.SHUTDOWN:
        return IterationEndReason.INTERRUPTED
    if result.promise_found is not None:
        return IterationEndReason.PROMISE_FOUND
    return IterationEndReason.NORMAL
