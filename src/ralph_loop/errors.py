"""Error taxonomy for the ralph-loop orchestrator."""

from __future__ import annotations


class RalphLoopError(RuntimeError):
    """Base class for all orchestrator errors."""


class MaxIterationsExceededError(RalphLoopError):
    """Iteration ceiling reached without finding the completion promise."""

    def __init__(self, max_iterations: int) -> None:
        super().__init__(
            f"maximum iterations ({max_iterations}) exceeded without finding promise",
        )
        self.max_iterations = max_iterations


class ShutdownRequestedError(RalphLoopError):
    """External shutdown signal stopped the loop."""

    def __init__(self, signal_name: str | None = None) -> None:
        super().__init__("shutdown requested")
        self.signal_name = signal_name


class ProcessSpawnError(RalphLoopError):
    """The agent subprocess could not be started."""


class ProcessIoError(RalphLoopError):
    """Communication with the agent subprocess failed."""


class ConfigError(RalphLoopError):
    """Configuration could not be read or is invalid."""


class PromptFileError(RalphLoopError):
    """Prompt file could not be read."""


class NoPromptProvidedError(RalphLoopError):
    """Neither a prompt text nor a prompt file was supplied."""

    def __init__(self) -> None:
        super().__init__("no prompt provided: use -p or -f to specify a prompt")


class OutputDirError(RalphLoopError):
    """Output or run directory could not be created."""


class TranscriptWriteError(RalphLoopError):
    """Run metadata could not be persisted."""


class EventParseError(ValueError):
    """A stdout line is not a parseable agent event."""
