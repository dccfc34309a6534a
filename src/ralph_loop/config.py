"""Runtime configuration for the agent loop."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from ralph_loop.errors import ConfigError, NoPromptProvidedError, PromptFileError
from ralph_loop.orchestrator.tokens import TokenEstimationMethod

DEFAULT_CLAUDE_ARGS: tuple[str, ...] = (
    "--print",
    "--output-format",
    "stream-json",
    "--verbose",
    "--dangerously-skip-permissions",
)


class PromptMode(str, Enum):
    """How the prompt reaches the agent subprocess."""

    STDIN = "stdin"
    ARGUMENT = "argument"


@dataclass(slots=True)
class ContextLimitSettings:
    """Per-iteration token budget."""

    max_tokens: int = 180_000
    warning_threshold: int = 150_000
    estimation_method: TokenEstimationMethod = TokenEstimationMethod.BYTE_RATIO


@dataclass(slots=True)
class Settings:
    """Application settings for one loop run."""

    prompt: str = ""
    prompt_file: Path | None = None
    max_iterations: int | None = None
    completion_promise: str = "TASK COMPLETE"
    context_limit: ContextLimitSettings = field(default_factory=ContextLimitSettings)
    output_dir: Path = Path(".ralph-loop-output")
    claude_path: str = "claude"
    claude_args: tuple[str, ...] = DEFAULT_CLAUDE_ARGS
    prompt_mode: PromptMode = PromptMode.STDIN
    graceful_shutdown_seconds: float = 5.0
    poll_interval_seconds: float = 0.1

    @classmethod
    def from_file(cls, path: Path) -> Settings:
        """Load settings from a TOML file; missing keys keep their defaults."""

        try:
            raw = tomllib.loads(path.read_text("utf-8"))
        except OSError as error:
            raise ConfigError(f"Cannot read config file {path}: {error}") from error
        except tomllib.TOMLDecodeError as error:
            raise ConfigError(f"Invalid TOML in {path}: {error}") from error
        return _settings_from_mapping(raw, source=str(path))

    def with_env_overrides(self) -> Settings:
        """Apply ``RALPH_LOOP_*`` environment variables on top of these settings."""

        context_limit = replace(
            self.context_limit,
            max_tokens=_env_int("RALPH_LOOP_MAX_TOKENS", self.context_limit.max_tokens),
            warning_threshold=_env_int(
                "RALPH_LOOP_WARNING_THRESHOLD",
                self.context_limit.warning_threshold,
            ),
            estimation_method=_env_enum(
                "RALPH_LOOP_TOKEN_ESTIMATION",
                TokenEstimationMethod,
                self.context_limit.estimation_method,
            ),
        )
        claude_args = self.claude_args
        raw_args = os.getenv("RALPH_LOOP_CLAUDE_ARGS")
        if raw_args is not None:
            claude_args = tuple(raw_args.split())
        max_iterations = self.max_iterations
        if os.getenv("RALPH_LOOP_MAX_ITERATIONS", "").strip():
            max_iterations = _env_int("RALPH_LOOP_MAX_ITERATIONS", 0)
        return replace(
            self,
            max_iterations=max_iterations,
            completion_promise=os.getenv(
                "RALPH_LOOP_COMPLETION_PROMISE",
                self.completion_promise,
            ),
            context_limit=context_limit,
            output_dir=Path(os.getenv("RALPH_LOOP_OUTPUT_DIR", str(self.output_dir))),
            claude_path=os.getenv("RALPH_LOOP_CLAUDE_PATH", self.claude_path),
            claude_args=claude_args,
            prompt_mode=_env_enum("RALPH_LOOP_PROMPT_MODE", PromptMode, self.prompt_mode),
            graceful_shutdown_seconds=_env_float(
                "RALPH_LOOP_GRACEFUL_SHUTDOWN_SECONDS",
                self.graceful_shutdown_seconds,
            ),
        )

    @classmethod
    def from_env(cls, config_path: Path | None = None) -> Settings:
        """Load defaults, then the optional TOML file, then environment overrides."""

        base = cls.from_file(config_path) if config_path is not None else cls()
        return base.with_env_overrides()

    def merge_cli_args(  # noqa: PLR0913
        self,
        *,
        prompt: str | None = None,
        prompt_file: Path | None = None,
        max_iterations: int | None = None,
        completion_promise: str | None = None,
        output_dir: Path | None = None,
        context_limit: int | None = None,
        prompt_mode: PromptMode | None = None,
    ) -> Settings:
        """Return settings with CLI options applied; CLI values take precedence."""

        merged = replace(self)
        if prompt_file is not None:
            merged.prompt_file = prompt_file
            merged.prompt = _read_prompt_file(prompt_file)
        elif prompt is not None:
            merged.prompt_file = None
            merged.prompt = prompt
        elif merged.prompt_file is not None:
            merged.prompt = _read_prompt_file(merged.prompt_file)
        if max_iterations is not None:
            merged.max_iterations = max_iterations
        if completion_promise is not None:
            merged.completion_promise = completion_promise
        if output_dir is not None:
            merged.output_dir = output_dir
        if context_limit is not None:
            # The warning threshold never exceeds a lowered budget.
            merged.context_limit = replace(
                merged.context_limit,
                max_tokens=context_limit,
                warning_threshold=min(merged.context_limit.warning_threshold, context_limit),
            )
        if prompt_mode is not None:
            merged.prompt_mode = prompt_mode
        return merged

    def validate(self) -> None:
        """Raise configuration errors before any subprocess is started."""

        if self.context_limit.max_tokens <= 0:
            raise ConfigError("context_limit.max_tokens must be > 0.")
        if self.context_limit.warning_threshold < 0:
            raise ConfigError("context_limit.warning_threshold must be >= 0.")
        if self.context_limit.warning_threshold > self.context_limit.max_tokens:
            raise ConfigError("context_limit.warning_threshold must not exceed max_tokens.")
        if self.max_iterations is not None and self.max_iterations < 1:
            raise ConfigError("max_iterations must be >= 1 when set.")
        if not self.completion_promise.strip():
            raise ConfigError("completion_promise must not be empty.")
        if not self.claude_path.strip():
            raise ConfigError("claude_path must not be empty.")
        if self.poll_interval_seconds <= 0:
            raise ConfigError("poll_interval_seconds must be > 0.")
        if self.graceful_shutdown_seconds < 0:
            raise ConfigError("graceful_shutdown_seconds must be >= 0.")

    def require_prompt(self) -> str:
        if not self.prompt.strip():
            raise NoPromptProvidedError
        return self.prompt


def _settings_from_mapping(raw: dict[str, Any], *, source: str) -> Settings:
    defaults = Settings()
    try:
        limit_raw = raw.get("context_limit", {})
        if not isinstance(limit_raw, dict):
            raise ConfigError(f"{source}: [context_limit] must be a table.")
        context_limit = ContextLimitSettings(
            max_tokens=int(limit_raw.get("max_tokens", defaults.context_limit.max_tokens)),
            warning_threshold=int(
                limit_raw.get("warning_threshold", defaults.context_limit.warning_threshold),
            ),
            estimation_method=TokenEstimationMethod(
                limit_raw.get("estimation_method", defaults.context_limit.estimation_method),
            ),
        )
        claude_args = raw.get("claude_args", list(defaults.claude_args))
        if not isinstance(claude_args, list) or not all(
            isinstance(item, str) for item in claude_args
        ):
            raise ConfigError(f"{source}: claude_args must be a list of strings.")
        max_iterations = raw.get("max_iterations")
        prompt_file = raw.get("prompt_file")
        return Settings(
            prompt=str(raw.get("prompt", defaults.prompt)),
            prompt_file=Path(prompt_file) if prompt_file else None,
            max_iterations=int(max_iterations) if max_iterations is not None else None,
            completion_promise=str(raw.get("completion_promise", defaults.completion_promise)),
            context_limit=context_limit,
            output_dir=Path(raw.get("output_dir", defaults.output_dir)),
            claude_path=str(raw.get("claude_path", defaults.claude_path)),
            claude_args=tuple(claude_args),
            prompt_mode=PromptMode(raw.get("prompt_mode", defaults.prompt_mode)),
            graceful_shutdown_seconds=float(
                raw.get("graceful_shutdown_seconds", defaults.graceful_shutdown_seconds),
            ),
            poll_interval_seconds=float(
                raw.get("poll_interval_seconds", defaults.poll_interval_seconds),
            ),
        )
    except (TypeError, ValueError) as error:
        raise ConfigError(f"{source}: {error}") from error


def _read_prompt_file(path: Path) -> str:
    try:
        return path.read_text("utf-8")
    except OSError as error:
        raise PromptFileError(f"failed to read prompt file {path}: {error}") from error


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ConfigError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ConfigError(f"Invalid number value for {name}: {value!r}") from error


def _env_enum(name: str, enum_type: type[Any], default: Any) -> Any:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return enum_type(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(str(member.value) for member in enum_type)
        raise ConfigError(f"Invalid value for {name}: {value!r} (expected {allowed})") from error
