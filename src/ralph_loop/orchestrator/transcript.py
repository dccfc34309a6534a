"""Run metadata persistence.

Layout under the output directory::

    <output_dir>/
        latest -> runs/<run_id>
        runs/<run_id>/.ralph-meta.json

The agent keeps its own conversation transcripts; a run only records which
session id belongs to which iteration so viewers can find them.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from ralph_loop.errors import OutputDirError, TranscriptWriteError

logger = logging.getLogger(__name__)

METADATA_FILENAME = ".ralph-meta.json"
LATEST_POINTER_NAME = "latest"
RUNS_DIRNAME = "runs"
PROMPT_PREVIEW_CHARS = 100


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class RunExitReason(str, Enum):
    """Why a whole run ended."""

    PROMISE_FULFILLED = "promise_fulfilled"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"
    USER_INTERRUPT = "user_interrupt"
    CONTEXT_LIMIT = "context_limit"
    ERROR = "error"


class IterationEndReason(str, Enum):
    """Why a single iteration ended."""

    CONTEXT_LIMIT = "context_limit"
    PROMISE_FOUND = "promise_found"
    NORMAL = "normal"
    INTERRUPTED = "interrupted"
    ERROR = "error"


@dataclass(slots=True)
class TokenUsageRecord:
    input: int = 0
    output: int = 0


@dataclass(slots=True)
class IterationMetadata:
    """One iteration of a run, 1-indexed."""

    iteration: int
    started_at: datetime
    session_id: str | None = None
    ended_at: datetime | None = None
    end_reason: IterationEndReason | None = None
    tokens: TokenUsageRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "iteration": self.iteration,
            "session_id": self.session_id,
            "started_at": _format_datetime(self.started_at),
        }
        if self.ended_at is not None:
            payload["ended_at"] = _format_datetime(self.ended_at)
        if self.end_reason is not None:
            payload["end_reason"] = self.end_reason.value
        if self.tokens is not None:
            payload["tokens"] = {"input": self.tokens.input, "output": self.tokens.output}
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> IterationMetadata:
        tokens_raw = payload.get("tokens")
        end_reason = payload.get("end_reason")
        ended_at = payload.get("ended_at")
        return cls(
            iteration=int(payload["iteration"]),
            session_id=payload.get("session_id"),
            started_at=_parse_datetime(payload["started_at"]),
            ended_at=_parse_datetime(ended_at) if ended_at else None,
            end_reason=IterationEndReason(end_reason) if end_reason else None,
            tokens=(
                TokenUsageRecord(
                    input=int(tokens_raw.get("input", 0)),
                    output=int(tokens_raw.get("output", 0)),
                )
                if isinstance(tokens_raw, dict)
                else None
            ),
        )


@dataclass(slots=True)
class RunMetadata:
    """Durable record of a run, stored as ``.ralph-meta.json``."""

    run_id: str
    started_at: datetime
    project_path: str
    prompt_preview: str
    completion_promise: str
    status: RunStatus = RunStatus.RUNNING
    completed_at: datetime | None = None
    prompt_file: str | None = None
    exit_reason: RunExitReason | None = None
    iterations: list[IterationMetadata] = field(default_factory=list)

    @classmethod
    def new(  # noqa: PLR0913
        cls,
        *,
        run_id: str,
        project_path: str,
        prompt: str,
        prompt_file: str | None,
        completion_promise: str,
    ) -> RunMetadata:
        return cls(
            run_id=run_id,
            started_at=utc_now(),
            project_path=project_path,
            prompt_preview=prompt_preview(prompt),
            completion_promise=completion_promise,
            prompt_file=prompt_file,
        )

    def current_iteration(self) -> int:
        return len(self.iterations)

    def is_active(self) -> bool:
        return self.status == RunStatus.RUNNING

    def total_input_tokens(self) -> int:
        return sum(item.tokens.input for item in self.iterations if item.tokens is not None)

    def total_output_tokens(self) -> int:
        return sum(item.tokens.output for item in self.iterations if item.tokens is not None)

    def total_tokens(self) -> int:
        """Input plus output tokens over every iteration that recorded usage."""

        return self.total_input_tokens() + self.total_output_tokens()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "run_id": self.run_id,
            "status": self.status.value,
            "started_at": _format_datetime(self.started_at),
            "project_path": self.project_path,
            "prompt_preview": self.prompt_preview,
            "completion_promise": self.completion_promise,
            "iterations": [item.to_dict() for item in self.iterations],
        }
        if self.completed_at is not None:
            payload["completed_at"] = _format_datetime(self.completed_at)
        if self.prompt_file is not None:
            payload["prompt_file"] = self.prompt_file
        if self.exit_reason is not None:
            payload["exit_reason"] = self.exit_reason.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunMetadata:
        completed_at = payload.get("completed_at")
        exit_reason = payload.get("exit_reason")
        return cls(
            run_id=str(payload["run_id"]),
            status=RunStatus(payload["status"]),
            started_at=_parse_datetime(payload["started_at"]),
            completed_at=_parse_datetime(completed_at) if completed_at else None,
            project_path=str(payload["project_path"]),
            prompt_file=payload.get("prompt_file"),
            prompt_preview=str(payload.get("prompt_preview", "")),
            completion_promise=str(payload.get("completion_promise", "")),
            exit_reason=RunExitReason(exit_reason) if exit_reason else None,
            iterations=[
                IterationMetadata.from_dict(item) for item in payload.get("iterations", [])
            ],
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    @classmethod
    def from_json(cls, text: str) -> RunMetadata:
        payload = json.loads(text)
        if not isinstance(payload, dict):
            raise TypeError("Expected JSON object for run metadata")
        return cls.from_dict(payload)


class TranscriptWriter:
    """Owns the metadata document of one run.

    Every mutation rewrites the whole document through a temporary file and
    an atomic rename, so a crash leaves the previous complete version behind.
    """

    def __init__(  # noqa: PLR0913
        self,
        output_dir: Path,
        project_path: Path,
        prompt: str,
        prompt_file: str | None,
        completion_promise: str,
        run_id: str | None = None,
    ) -> None:
        self.output_dir = output_dir
        run_id = run_id or generate_run_id()
        self.run_dir = output_dir / RUNS_DIRNAME / run_id
        try:
            self.run_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise OutputDirError(
                f"failed to create run directory {self.run_dir}: {error}",
            ) from error

        try:
            resolved_project = str(project_path.resolve())
        except OSError:
            resolved_project = str(project_path)

        self.metadata = RunMetadata.new(
            run_id=run_id,
            project_path=resolved_project,
            prompt=prompt,
            prompt_file=prompt_file,
            completion_promise=completion_promise,
        )
        self._write_metadata()
        update_latest_pointer(output_dir, run_id)
        logger.info("Run %s metadata at %s", run_id, self.metadata_path)

    @property
    def run_id(self) -> str:
        return self.metadata.run_id

    @property
    def metadata_path(self) -> Path:
        return self.run_dir / METADATA_FILENAME

    def start_iteration(self) -> int:
        number = len(self.metadata.iterations) + 1
        self.metadata.iterations.append(IterationMetadata(iteration=number, started_at=utc_now()))
        self._write_metadata()
        return number

    def set_session_id(self, session_id: str) -> None:
        if not self.metadata.iterations:
            return
        self.metadata.iterations[-1].session_id = session_id
        self._write_metadata()

    def end_iteration(
        self,
        end_reason: IterationEndReason,
        input_tokens: int,
        output_tokens: int,
    ) -> None:
        if not self.metadata.iterations:
            return
        current = self.metadata.iterations[-1]
        current.ended_at = utc_now()
        current.end_reason = end_reason
        current.tokens = TokenUsageRecord(input=input_tokens, output=output_tokens)
        self._write_metadata()

    def complete(self, exit_reason: RunExitReason) -> None:
        if exit_reason == RunExitReason.PROMISE_FULFILLED:
            self.metadata.status = RunStatus.COMPLETED
        elif exit_reason == RunExitReason.USER_INTERRUPT:
            self.metadata.status = RunStatus.INTERRUPTED
        else:
            self.metadata.status = RunStatus.FAILED
        self.metadata.completed_at = utc_now()
        self.metadata.exit_reason = exit_reason
        self._write_metadata()

    def _write_metadata(self) -> None:
        try:
            _atomic_write_text(self.metadata_path, self.metadata.to_json())
        except OSError as error:
            raise TranscriptWriteError(
                f"failed to write {self.metadata_path}: {error}",
            ) from error


def load_run_metadata(run_dir: Path) -> RunMetadata:
    """Read the metadata document of one run directory."""

    return RunMetadata.from_json((run_dir / METADATA_FILENAME).read_text("utf-8"))


def list_runs(output_dir: Path) -> list[RunMetadata]:
    """Return readable runs under ``output_dir``, newest first."""

    runs_dir = output_dir / RUNS_DIRNAME
    if not runs_dir.is_dir():
        return []
    runs: list[RunMetadata] = []
    for run_dir in sorted(runs_dir.iterdir(), reverse=True):
        if not (run_dir / METADATA_FILENAME).is_file():
            continue
        try:
            runs.append(load_run_metadata(run_dir))
        except (OSError, ValueError, KeyError, TypeError) as error:
            logger.warning("Skipping unreadable run metadata in %s: %s", run_dir, error)
    return runs


def resolve_latest_run(output_dir: Path) -> Path | None:
    latest = output_dir / LATEST_POINTER_NAME
    if not latest.exists():
        return None
    return latest.resolve()


def generate_run_id() -> str:
    """Sortable run id: ``YYYYMMDD-HHMMSS-<8 hex chars>``."""

    return f"{utc_now():%Y%m%d-%H%M%S}-{uuid4().hex[:8]}"


def prompt_preview(prompt: str) -> str:
    if len(prompt) > PROMPT_PREVIEW_CHARS:
        return f"{prompt[:PROMPT_PREVIEW_CHARS]}..."
    return prompt


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _remove_latest_pointer(latest: Path) -> None:
    if latest.is_symlink() or latest.is_file():
        latest.unlink()
    elif latest.is_dir():
        # A junction reports as a directory; rmdir removes the link, not the target.
        os.rmdir(latest)


def _update_latest_symlink(output_dir: Path, run_id: str) -> None:
    latest = output_dir / LATEST_POINTER_NAME
    try:
        _remove_latest_pointer(latest)
        latest.symlink_to(Path(RUNS_DIRNAME) / run_id, target_is_directory=True)
    except OSError as error:
        raise TranscriptWriteError(f"failed to update {latest}: {error}") from error


def _update_latest_junction(output_dir: Path, run_id: str) -> None:
    latest = output_dir / LATEST_POINTER_NAME
    target = (output_dir / RUNS_DIRNAME / run_id).resolve()
    try:
        _remove_latest_pointer(latest)
        subprocess.run(  # noqa: S603
            ["cmd", "/c", "mklink", "/J", str(latest), str(target)],  # noqa: S607
            check=True,
            capture_output=True,
        )
    except (OSError, subprocess.CalledProcessError) as error:
        raise TranscriptWriteError(f"failed to update {latest}: {error}") from error


update_latest_pointer = _update_latest_junction if os.name == "nt" else _update_latest_symlink


def _atomic_write_text(path: Path, text: str) -> None:
    descriptor, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _format_datetime(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
