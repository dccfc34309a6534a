"""Agent interface for one loop iteration."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from ralph_loop.orchestrator.events import TokenUsage
from ralph_loop.orchestrator.monitor import MonitorResult


class ExitReason(str, Enum):
    """Why an agent invocation ended."""

    NATURAL = "natural"
    CONTEXT_LIMIT = "context_limit"
    SHUTDOWN = "shutdown"


@dataclass(slots=True)
class AgentResult:
    """Outcome of a single agent invocation."""

    output: str = ""
    promise_found: str | None = None
    token_count: int = 0
    exit_reason: ExitReason = ExitReason.NATURAL
    session_id: str | None = None
    token_usage: TokenUsage | None = None

    @classmethod
    def with_promise(cls, promise: str) -> AgentResult:
        return cls(promise_found=promise)

    @classmethod
    def without_promise(cls) -> AgentResult:
        return cls()

    @property
    def is_fulfilled(self) -> bool:
        return self.promise_found is not None

    def with_monitor_result(self, monitor_result: MonitorResult) -> AgentResult:
        self.session_id = monitor_result.session_id
        self.token_usage = monitor_result.token_usage
        return self


class Agent(Protocol):
    """Protocol implemented by the live CLI agent and its test doubles."""

    def run(self, prompt: str) -> AgentResult:
        """Run the agent once with ``prompt`` and report how it ended."""
