from __future__ import annotations

import os
import signal
import warnings
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from ralph_loop.controllers import (
    EXIT_INTERRUPTED,
    EXIT_OK,
    RalphCliController,
    RalphRunCommand,
    RalphRunsCommand,
)
from ralph_loop.main import ralph_loop
from ralph_loop.orchestrator.backend import AgentResult, ExitReason, ScriptedAgent
from ralph_loop.orchestrator.transcript import IterationEndReason, RunStatus, list_runs

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("CLI"),
]


def test_run_exits_zero_when_promise_found(tmp_path: Path, echo_agent_env) -> None:
    echo_agent_env("--promise", "DONE")
    output_dir = tmp_path / "out"
    runner = CliRunner()

    result = runner.invoke(
        ralph_loop,
        ["run", "-p", "build it", "-c", "DONE", "-o", str(output_dir), "-m", "3"],
    )

    assert result.exit_code == 0, result.output
    assert "Promise fulfilled after 1 iteration(s): DONE" in result.output
    runs = list_runs(output_dir)
    assert len(runs) == 1
    assert runs[0].status == RunStatus.COMPLETED
    assert runs[0].iterations[0].session_id == "echo-session"
    assert runs[0].total_tokens() == 15


def test_run_exits_one_when_ceiling_reached(tmp_path: Path, echo_agent_env) -> None:
    echo_agent_env()
    output_dir = tmp_path / "out"
    runner = CliRunner()

    result = runner.invoke(
        ralph_loop,
        ["run", "-p", "build it", "-o", str(output_dir), "--max-iterations", "2"],
    )

    assert result.exit_code == 1
    assert "maximum iterations (2) exceeded without finding promise" in result.output
    runs = list_runs(output_dir)
    assert runs[0].status == RunStatus.FAILED
    assert runs[0].current_iteration() == 2


def test_run_reads_prompt_file_in_argument_mode(tmp_path: Path, echo_agent_env) -> None:
    echo_agent_env("--promise", "DONE")
    prompt_file = tmp_path / "PROMPT.md"
    prompt_file.write_text("prompt from a file", "utf-8")
    runner = CliRunner()

    result = runner.invoke(
        ralph_loop,
        [
            "run",
            "-f",
            str(prompt_file),
            "-c",
            "DONE",
            "-o",
            str(tmp_path / "out"),
            "--prompt-mode",
            "argument",
            "--verbose",
        ],
    )

    assert result.exit_code == 0, result.output
    runs = list_runs(tmp_path / "out")
    assert runs[0].prompt_file == str(prompt_file)
    assert runs[0].prompt_preview == "prompt from a file"


def test_run_without_prompt_fails_with_one_line(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(ralph_loop, ["run", "-o", str(tmp_path / "out")])

    assert result.exit_code == 1
    assert "Error: no prompt provided: use -p or -f to specify a prompt" in result.output
    assert not (tmp_path / "out").exists()


def test_run_with_missing_agent_binary_fails(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("RALPH_LOOP_CLAUDE_PATH", str(tmp_path / "no-such-claude"))
    runner = CliRunner()

    result = runner.invoke(ralph_loop, ["run", "-p", "hi", "-o", str(tmp_path / "out")])

    assert result.exit_code == 1
    assert "agent command not found" in result.output
    assert list_runs(tmp_path / "out")[0].status == RunStatus.FAILED


def test_run_with_invalid_config_fails(tmp_path: Path) -> None:
    config_path = tmp_path / "ralph.toml"
    config_path.write_text("[context_limit]\nmax_tokens = 10\nwarning_threshold = 20\n", "utf-8")
    runner = CliRunner()

    result = runner.invoke(ralph_loop, ["run", "-p", "hi", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "warning_threshold must not exceed max_tokens" in result.output


def test_runs_lists_newest_first(tmp_path: Path, echo_agent_env) -> None:
    echo_agent_env("--promise", "DONE")
    output_dir = tmp_path / "out"
    runner = CliRunner()
    for _ in range(2):
        runner.invoke(ralph_loop, ["run", "-p", "x", "-c", "DONE", "-o", str(output_dir)])

    result = runner.invoke(ralph_loop, ["runs", "-o", str(output_dir)])

    assert result.exit_code == 0, result.output
    lines = [line for line in result.output.splitlines() if line.startswith("- ")]
    assert len(lines) == 2
    assert all("status=completed" in line for line in lines)
    assert all("exit_reason=promise_fulfilled" in line for line in lines)
    run_ids = [line.split()[1] for line in lines]
    assert run_ids == sorted(run_ids, reverse=True)


def test_runs_with_empty_output_dir(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(ralph_loop, ["runs", "-o", str(tmp_path)])

    assert result.exit_code == 0
    assert f"No runs found in {tmp_path}" in result.output


def test_controller_uses_injected_agent(tmp_path: Path) -> None:
    agent = ScriptedAgent.promise_on_call(2, "TASK COMPLETE")
    controller = RalphCliController(agent_factory=lambda *_: agent)

    result = controller.run_loop(
        RalphRunCommand(prompt="go", output_dir=tmp_path / "out", project_path=tmp_path),
    )

    assert result.exit_code == EXIT_OK
    assert result.lines[0] == "Promise fulfilled after 2 iteration(s): TASK COMPLETE"
    assert controller.list_runs(RalphRunsCommand(output_dir=tmp_path / "out"))[1].startswith(
        "- ",
    )


@pytest.mark.skipif(not hasattr(signal, "SIGINT") or os.name == "nt", reason="POSIX signals")
def test_controller_maps_sigint_to_exit_130(tmp_path: Path) -> None:
    def _interrupted() -> AgentResult:
        os.kill(os.getpid(), signal.SIGINT)
        return AgentResult(exit_reason=ExitReason.SHUTDOWN)

    controller = RalphCliController(agent_factory=lambda *_: ScriptedAgent([_interrupted]))
    original_handler = signal.getsignal(signal.SIGINT)

    result = controller.run_loop(RalphRunCommand(prompt="go", output_dir=tmp_path / "out"))

    assert result.exit_code == EXIT_INTERRUPTED
    assert result.lines == ["Interrupted: shutdown requested."]
    assert signal.getsignal(signal.SIGINT) is original_handler
    runs = list_runs(tmp_path / "out")
    assert runs[0].status == RunStatus.INTERRUPTED


def test_run_with_context_limit_below_default_warning_threshold(
    tmp_path: Path,
    echo_agent_env,
) -> None:
    echo_agent_env("--promise", "DONE")
    runner = CliRunner()

    result = runner.invoke(
        ralph_loop,
        ["run", "-p", "x", "-c", "DONE", "-o", str(tmp_path / "out"), "--context-limit", "100000"],
    )

    assert result.exit_code == 0, result.output
    assert "Promise fulfilled after 1 iteration(s): DONE" in result.output


def test_run_context_limit_option_kills_agent_over_budget(
    tmp_path: Path,
    echo_agent_env,
) -> None:
    echo_agent_env(
        "--promise",
        "DONE",
        "--input-tokens",
        "900",
        "--output-tokens",
        "200",
        "--hang-seconds",
        "30",
    )
    runner = CliRunner()

    result = runner.invoke(
        ralph_loop,
        ["run", "-p", "x", "-c", "DONE", "-o", str(tmp_path / "out"), "--context-limit", "1000"],
    )

    assert result.exit_code == 0, result.output
    iteration = list_runs(tmp_path / "out")[0].iterations[0]
    assert iteration.end_reason == IterationEndReason.CONTEXT_LIMIT
    assert iteration.tokens is not None
    assert iteration.tokens.input == 900


def test_help_renders_without_markdown_deprecation() -> None:
    runner = CliRunner()

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = runner.invoke(ralph_loop, ["run", "--help"])

    assert result.exit_code == 0, result.output
    assert "--context-limit" in result.output
    assert not [item for item in caught if "use_markdown" in str(item.message)]
