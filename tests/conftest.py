"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from ralph_loop.config import ContextLimitSettings, Settings

_SRC_DIR = Path(__file__).resolve().parents[1] / "src"
_ECHO_AGENT_MODULE = "ralph_loop.orchestrator.backend.echo_agent"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop RALPH_LOOP_* overrides and let child processes import the package."""

    for name in list(os.environ):
        if name.startswith("RALPH_LOOP_"):
            monkeypatch.delenv(name, raising=False)
    python_path = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([str(_SRC_DIR), python_path]) if python_path else str(_SRC_DIR),
    )


@pytest.fixture()
def echo_agent_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Build settings that run the echo agent instead of the real CLI."""

    def _build(
        *echo_args: str,
        max_tokens: int = 180_000,
        warning_threshold: int = 150_000,
        completion_promise: str = "TASK COMPLETE",
        **overrides,
    ) -> Settings:
        settings = Settings(
            prompt="do the thing",
            completion_promise=completion_promise,
            context_limit=ContextLimitSettings(
                max_tokens=max_tokens,
                warning_threshold=warning_threshold,
            ),
            output_dir=tmp_path / "output",
            claude_path=sys.executable,
            claude_args=("-m", _ECHO_AGENT_MODULE, *echo_args),
            graceful_shutdown_seconds=0.5,
            poll_interval_seconds=0.02,
        )
        for key, value in overrides.items():
            setattr(settings, key, value)
        return settings

    return _build


@pytest.fixture()
def echo_agent_env(monkeypatch) -> Callable[..., None]:
    """Point the CLI at the echo agent through RALPH_LOOP_* variables."""

    def _apply(*echo_args: str) -> None:
        monkeypatch.setenv("RALPH_LOOP_CLAUDE_PATH", sys.executable)
        monkeypatch.setenv(
            "RALPH_LOOP_CLAUDE_ARGS",
            " ".join(["-m", _ECHO_AGENT_MODULE, *echo_args]),
        )

    return _apply
