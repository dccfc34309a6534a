"""Agent implementations driven by the loop controller."""

from ralph_loop.orchestrator.backend.base import Agent, AgentResult, ExitReason
from ralph_loop.orchestrator.backend.cli_backend import ClaudeCliAgent
from ralph_loop.orchestrator.backend.scripted_agent import ScriptedAgent

__all__ = [
    "Agent",
    "AgentResult",
    "ClaudeCliAgent",
    "ExitReason",
    "ScriptedAgent",
]
