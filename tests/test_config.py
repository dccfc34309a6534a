from __future__ import annotations

from pathlib import Path

import allure
import pytest

from ralph_loop.config import (
    DEFAULT_CLAUDE_ARGS,
    ContextLimitSettings,
    PromptMode,
    Settings,
)
from ralph_loop.errors import ConfigError, NoPromptProvidedError, PromptFileError
from ralph_loop.orchestrator.tokens import TokenEstimationMethod

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Configuration"),
]


def test_defaults() -> None:
    settings = Settings()

    assert settings.max_iterations is None
    assert settings.completion_promise == "TASK COMPLETE"
    assert settings.context_limit == ContextLimitSettings(
        max_tokens=180_000,
        warning_threshold=150_000,
        estimation_method=TokenEstimationMethod.BYTE_RATIO,
    )
    assert settings.output_dir == Path(".ralph-loop-output")
    assert settings.claude_path == "claude"
    assert settings.claude_args == DEFAULT_CLAUDE_ARGS
    assert "stream-json" in settings.claude_args
    assert settings.prompt_mode == PromptMode.STDIN
    settings.validate()


def test_from_file_reads_toml_and_keeps_missing_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "ralph.toml"
    config_path.write_text(
        "\n".join(
            [
                'completion_promise = "SHIPPED"',
                "max_iterations = 7",
                'claude_args = ["--print", "--output-format", "stream-json"]',
                'prompt_mode = "argument"',
                "",
                "[context_limit]",
                "max_tokens = 50000",
                'estimation_method = "char_ratio"',
            ],
        ),
        "utf-8",
    )

    settings = Settings.from_file(config_path)

    assert settings.completion_promise == "SHIPPED"
    assert settings.max_iterations == 7
    assert settings.claude_args == ("--print", "--output-format", "stream-json")
    assert settings.prompt_mode == PromptMode.ARGUMENT
    assert settings.context_limit.max_tokens == 50_000
    assert settings.context_limit.warning_threshold == 150_000
    assert settings.context_limit.estimation_method == TokenEstimationMethod.CHAR_RATIO
    assert settings.claude_path == "claude"


@pytest.mark.parametrize(
    "content",
    [
        "max_iterations = ",
        'claude_args = "--print"',
        'prompt_mode = "telepathy"',
        'context_limit = "big"',
    ],
)
def test_from_file_rejects_invalid_documents(tmp_path: Path, content: str) -> None:
    config_path = tmp_path / "bad.toml"
    config_path.write_text(content, "utf-8")

    with pytest.raises(ConfigError):
        Settings.from_file(config_path)


def test_from_file_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Cannot read config file"):
        Settings.from_file(tmp_path / "absent.toml")


def test_env_overrides_file_values(tmp_path: Path, monkeypatch) -> None:
    config_path = tmp_path / "ralph.toml"
    config_path.write_text('completion_promise = "FROM FILE"\nmax_iterations = 3\n', "utf-8")
    monkeypatch.setenv("RALPH_LOOP_COMPLETION_PROMISE", "FROM ENV")
    monkeypatch.setenv("RALPH_LOOP_MAX_TOKENS", "1234")
    monkeypatch.setenv("RALPH_LOOP_WARNING_THRESHOLD", "1000")
    monkeypatch.setenv("RALPH_LOOP_CLAUDE_ARGS", "--print --verbose")
    monkeypatch.setenv("RALPH_LOOP_PROMPT_MODE", "ARGUMENT")
    monkeypatch.setenv("RALPH_LOOP_OUTPUT_DIR", str(tmp_path / "runs-here"))

    settings = Settings.from_env(config_path=config_path)

    assert settings.completion_promise == "FROM ENV"
    assert settings.max_iterations == 3
    assert settings.context_limit.max_tokens == 1234
    assert settings.context_limit.warning_threshold == 1000
    assert settings.claude_args == ("--print", "--verbose")
    assert settings.prompt_mode == PromptMode.ARGUMENT
    assert settings.output_dir == tmp_path / "runs-here"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("RALPH_LOOP_MAX_TOKENS", "many", "Invalid integer value"),
        ("RALPH_LOOP_GRACEFUL_SHUTDOWN_SECONDS", "soon", "Invalid number value"),
        ("RALPH_LOOP_TOKEN_ESTIMATION", "tiktoken", "expected byte_ratio, char_ratio"),
    ],
)
def test_invalid_env_values_raise_config_error(
    monkeypatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigError, match=message):
        Settings.from_env()


def test_cli_args_take_precedence(tmp_path: Path) -> None:
    base = Settings(prompt="from config", completion_promise="FROM CONFIG", max_iterations=9)

    merged = base.merge_cli_args(
        prompt="from cli",
        max_iterations=2,
        completion_promise="FROM CLI",
        output_dir=tmp_path,
        context_limit=5000,
        prompt_mode=PromptMode.ARGUMENT,
    )

    assert merged.prompt == "from cli"
    assert merged.max_iterations == 2
    assert merged.completion_promise == "FROM CLI"
    assert merged.output_dir == tmp_path
    assert merged.context_limit.max_tokens == 5000
    assert merged.prompt_mode == PromptMode.ARGUMENT
    assert base.prompt == "from config"
    assert base.context_limit.max_tokens == 180_000


def test_prompt_file_beats_prompt_text(tmp_path: Path) -> None:
    prompt_file = tmp_path / "PROMPT.md"
    prompt_file.write_text("prompt from file", "utf-8")

    merged = Settings().merge_cli_args(prompt="inline", prompt_file=prompt_file)

    assert merged.prompt == "prompt from file"
    assert merged.prompt_file == prompt_file


def test_prompt_file_from_config_is_read_when_no_cli_prompt(tmp_path: Path) -> None:
    prompt_file = tmp_path / "PROMPT.md"
    prompt_file.write_text("configured prompt", "utf-8")

    merged = Settings(prompt_file=prompt_file).merge_cli_args()

    assert merged.require_prompt() == "configured prompt"


def test_unreadable_prompt_file(tmp_path: Path) -> None:
    with pytest.raises(PromptFileError):
        Settings().merge_cli_args(prompt_file=tmp_path / "missing.md")


def test_require_prompt_rejects_blank() -> None:
    with pytest.raises(NoPromptProvidedError, match="use -p or -f"):
        Settings(prompt="   ").require_prompt()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(context_limit=ContextLimitSettings(max_tokens=0)), "max_tokens"),
        (
            Settings(context_limit=ContextLimitSettings(max_tokens=100, warning_threshold=200)),
            "must not exceed",
        ),
        (Settings(max_iterations=0), "max_iterations"),
        (Settings(completion_promise=" "), "completion_promise"),
        (Settings(claude_path=""), "claude_path"),
        (Settings(poll_interval_seconds=0), "poll_interval_seconds"),
    ],
)
def test_validate_rejects_invalid_settings(settings: Settings, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        settings.validate()


def test_cli_context_limit_lowers_warning_threshold() -> None:
    merged = Settings().merge_cli_args(context_limit=100_000)

    assert merged.context_limit.max_tokens == 100_000
    assert merged.context_limit.warning_threshold == 100_000
    merged.validate()


def test_cli_context_limit_keeps_lower_warning_threshold() -> None:
    base = Settings(context_limit=ContextLimitSettings(max_tokens=50_000, warning_threshold=40_000))

    merged = base.merge_cli_args(context_limit=60_000)

    assert merged.context_limit.warning_threshold == 40_000


def test_configured_prompt_file_beats_configured_prompt_text(tmp_path: Path) -> None:
    prompt_file = tmp_path / "PROMPT.md"
    prompt_file.write_text("prompt from file", "utf-8")

    merged = Settings(prompt="inline from config", prompt_file=prompt_file).merge_cli_args()

    assert merged.prompt == "prompt from file"


def test_cli_prompt_text_overrides_configured_prompt_file(tmp_path: Path) -> None:
    prompt_file = tmp_path / "PROMPT.md"
    prompt_file.write_text("prompt from file", "utf-8")

    merged = Settings(prompt_file=prompt_file).merge_cli_args(prompt="from cli")

    assert merged.prompt == "from cli"
    assert merged.prompt_file is None
