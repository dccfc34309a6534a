"""CLI entrypoint for ralph-loop."""

import logging
from pathlib import Path

import rich_click as click
from rich.console import Console
from rich.logging import RichHandler

from ralph_loop import __version__
from ralph_loop.config import PromptMode
from ralph_loop.controllers import RalphCliController, RalphRunCommand, RalphRunsCommand
from ralph_loop.errors import RalphLoopError

click.rich_click.TEXT_MARKUP = "markdown"
RALPH_CONTROLLER = RalphCliController()


@click.group()
@click.version_option(version=__version__, prog_name="ralph-loop")
def ralph_loop() -> None:
    """Run a CLI coding agent in a loop until it keeps its completion promise."""


@ralph_loop.command("run")
@click.option("-p", "--prompt", default=None, help="Prompt text sent on every iteration.")
@click.option(
    "-f",
    "--prompt-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Read the prompt from a file. Takes precedence over --prompt.",
)
@click.option(
    "-m",
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop with exit code 1 after this many iterations. Unlimited by default.",
)
@click.option(
    "-c",
    "--completion-promise",
    default=None,
    help="Text the agent must emit as `<promise>TEXT</promise>` to finish the run.",
)
@click.option(
    "-o",
    "--output-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory for run metadata.",
)
@click.option(
    "--context-limit",
    type=click.IntRange(min=1),
    default=None,
    help="Token budget per iteration; the agent is restarted when it is reached.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="TOML config file.",
)
@click.option(
    "--prompt-mode",
    type=click.Choice([mode.value for mode in PromptMode]),
    default=None,
    help="Pass the prompt via stdin or as the trailing argument.",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def run(  # noqa: PLR0913
    prompt: str | None,
    prompt_file: Path | None,
    max_iterations: int | None,
    completion_promise: str | None,
    output_dir: Path | None,
    context_limit: int | None,
    config_path: Path | None,
    prompt_mode: str | None,
    verbose: bool,
) -> None:
    """Invoke the agent repeatedly until the promise appears.

    Exit codes: `0` promise fulfilled, `1` iteration ceiling or fatal error,
    `130` interrupted by SIGINT/SIGTERM.
    """

    _configure_logging(verbose=verbose)
    result = RALPH_CONTROLLER.run_loop(
        RalphRunCommand(
            prompt=prompt,
            prompt_file=prompt_file,
            max_iterations=max_iterations,
            completion_promise=completion_promise,
            output_dir=output_dir,
            context_limit=context_limit,
            config_path=config_path,
            prompt_mode=PromptMode(prompt_mode) if prompt_mode is not None else None,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise SystemExit(result.exit_code)


@ralph_loop.command("runs")
@click.option(
    "-o",
    "--output-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory with run metadata.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="TOML config file.",
)
def runs(output_dir: Path | None, config_path: Path | None) -> None:
    """List recorded runs, newest first."""

    try:
        lines = RALPH_CONTROLLER.list_runs(
            RalphRunsCommand(output_dir=output_dir, config_path=config_path),
        )
    except RalphLoopError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _configure_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=verbose),
        ],
        force=True,
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph_loop()
