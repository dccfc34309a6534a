"""Controllers for ralph-loop CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ralph_loop.config import PromptMode, Settings
from ralph_loop.errors import (
    RalphLoopError,
    ShutdownRequestedError,
)
from ralph_loop.orchestrator.backend import Agent, ClaudeCliAgent
from ralph_loop.orchestrator.loop import LoopController
from ralph_loop.orchestrator.shutdown import ShutdownSignal
from ralph_loop.orchestrator.state import RunState
from ralph_loop.orchestrator.transcript import TranscriptWriter, list_runs

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

AgentFactory = Callable[[Settings, RunState, Callable[[], bool]], Agent]


@dataclass(slots=True)
class RalphRunCommand:
    """CLI input for one loop run."""

    prompt: str | None = None
    prompt_file: Path | None = None
    max_iterations: int | None = None
    completion_promise: str | None = None
    output_dir: Path | None = None
    context_limit: int | None = None
    config_path: Path | None = None
    prompt_mode: PromptMode | None = None
    project_path: Path | None = None


@dataclass(slots=True)
class RalphRunsCommand:
    """CLI input for listing persisted runs."""

    output_dir: Path | None = None
    config_path: Path | None = None


@dataclass(slots=True)
class RalphRunResult:
    lines: list[str]
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == EXIT_OK


def _default_agent_factory(
    settings: Settings,
    state: RunState,
    shutdown_requested: Callable[[], bool],
) -> Agent:
    return ClaudeCliAgent(settings, state=state, shutdown_requested=shutdown_requested)


class RalphCliController:
    """Build settings and collaborators for CLI commands and render outcomes."""

    def __init__(self, agent_factory: AgentFactory | None = None) -> None:
        self.agent_factory = agent_factory or _default_agent_factory

    def run_loop(self, command: RalphRunCommand) -> RalphRunResult:
        """Run the agent loop; exit code 0 on promise, 130 on shutdown, 1 otherwise."""

        shutdown = ShutdownSignal()
        try:
            settings = self._load_settings(command)
            settings.validate()
            prompt = settings.require_prompt()
            project_path = command.project_path or Path.cwd()
            transcript = TranscriptWriter(
                output_dir=settings.output_dir,
                project_path=project_path,
                prompt=prompt,
                prompt_file=str(settings.prompt_file) if settings.prompt_file else None,
                completion_promise=settings.completion_promise,
            )
            state = RunState()
            controller = LoopController(
                settings,
                self.agent_factory(settings, state, shutdown.requested),
                state=state,
                transcript=transcript,
                shutdown_requested=shutdown.requested,
            )
            logger.info(
                "Starting run %s (max iterations: %s, promise: %s)",
                transcript.run_id,
                settings.max_iterations if settings.max_iterations is not None else "unlimited",
                settings.completion_promise,
            )
            with shutdown.install():
                result = controller.run()
        except ShutdownRequestedError:
            return RalphRunResult(
                lines=["Interrupted: shutdown requested."],
                exit_code=EXIT_INTERRUPTED,
            )
        except RalphLoopError as error:
            logger.debug("Run failed", exc_info=True)
            return RalphRunResult(lines=[f"Error: {error}"], exit_code=EXIT_FAILURE)

        return RalphRunResult(
            lines=[
                f"Promise fulfilled after {result.iterations} iteration(s): {result.promise}",
                f"Run metadata: {transcript.metadata_path}",
            ],
            exit_code=EXIT_OK,
        )

    def list_runs(self, command: RalphRunsCommand) -> list[str]:
        """List persisted runs, newest first."""

        settings = Settings.from_env(config_path=command.config_path)
        output_dir = command.output_dir or settings.output_dir
        runs = list_runs(output_dir)
        if not runs:
            return [f"No runs found in {output_dir}"]
        lines = [f"Runs in {output_dir}:"]
        for run in runs:
            exit_reason = run.exit_reason.value if run.exit_reason is not None else "-"
            lines.append(
                f"- {run.run_id} status={run.status.value} "
                f"iterations={run.current_iteration()} tokens={run.total_tokens()} "
                f"exit_reason={exit_reason}",
            )
        return lines

    @staticmethod
    def _load_settings(command: RalphRunCommand) -> Settings:
        return Settings.from_env(config_path=command.config_path).merge_cli_args(
            prompt=command.prompt,
            prompt_file=command.prompt_file,
            max_iterations=command.max_iterations,
            completion_promise=command.completion_promise,
            output_dir=command.output_dir,
            context_limit=command.context_limit,
            prompt_mode=command.prompt_mode,
        )
