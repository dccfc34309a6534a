"""Deterministic agent double that replays prepared results."""

from __future__ import annotations

from collections.abc import Callable, Sequence

from ralph_loop.orchestrator.backend.base import AgentResult


class ScriptedAgent:
    """Return prepared results in order, repeating the last one when exhausted.

    Results may be ``AgentResult`` values, exceptions to raise, or callables
    producing either, so tests can script side effects per call.
    """

    def __init__(
        self,
        script: Sequence[AgentResult | BaseException | Callable[[], AgentResult]],
    ) -> None:
        if not script:
            raise ValueError("ScriptedAgent needs at least one scripted result.")
        self._script = list(script)
        self.prompts: list[str] = []

    @classmethod
    def promise_on_call(cls, call_number: int, promise: str) -> ScriptedAgent:
        """Agent that only finds ``promise`` on its ``call_number``-th run."""

        misses: list[AgentResult | BaseException | Callable[[], AgentResult]] = [
            AgentResult.without_promise() for _ in range(call_number - 1)
        ]
        return cls([*misses, AgentResult.with_promise(promise)])

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def run(self, prompt: str) -> AgentResult:
        index = min(len(self.prompts), len(self._script) - 1)
        self.prompts.append(prompt)
        step = self._script[index]
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step()
        return step
