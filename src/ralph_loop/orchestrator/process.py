"""Subprocess wrapper for the supervised CLI agent."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import IO

from ralph_loop.config import PromptMode
from ralph_loop.errors import ProcessIoError, ProcessSpawnError

logger = logging.getLogger(__name__)


class AgentProcess:
    """One running agent subprocess with captured stdin, stdout and stderr."""

    def __init__(self, process: subprocess.Popen[str]) -> None:
        self._process = process
        self.stdout: IO[str] | None = process.stdout
        self.stderr: IO[str] | None = process.stderr

    @classmethod
    def spawn(
        cls,
        executable: str,
        args: list[str] | tuple[str, ...],
        prompt: str,
        *,
        prompt_mode: PromptMode = PromptMode.STDIN,
        cwd: Path | None = None,
    ) -> AgentProcess:
        """Start the agent and hand it the prompt.

        In ``ARGUMENT`` mode the prompt is the trailing argument and stdin is
        closed right away. In ``STDIN`` mode the prompt is written to stdin
        and stdin is closed to signal end of input.
        """

        argv = [executable, *args]
        if prompt_mode == PromptMode.ARGUMENT:
            argv.append(prompt)
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise ProcessSpawnError(f"agent command not found: {executable}") from error
        except OSError as error:
            raise ProcessSpawnError(f"failed to spawn agent process: {error}") from error

        handle = cls(process)
        logger.debug("Spawned agent process pid=%s argv0=%s", process.pid, executable)
        handle._send_prompt(prompt if prompt_mode == PromptMode.STDIN else None)
        return handle

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def poll(self) -> int | None:
        """Return the exit code if the process has exited, otherwise ``None``."""

        return self._process.poll()

    def wait(self, timeout: float | None = None) -> int:
        """Block until exit; ``subprocess.TimeoutExpired`` propagates when ``timeout`` elapses."""

        try:
            return self._process.wait(timeout=timeout)
        except OSError as error:
            raise ProcessIoError(f"failed waiting for agent process: {error}") from error

    def kill(self) -> None:
        """Forcibly stop the process. Failures are logged, never raised."""

        if self._process.poll() is not None:
            return
        try:
            self._process.kill()
        except OSError as error:
            logger.warning("Failed to kill agent process pid=%s: %s", self.pid, error)

    def _send_prompt(self, prompt: str | None) -> None:
        stdin = self._process.stdin
        if stdin is None:
            return
        try:
            if prompt is not None:
                stdin.write(prompt)
                stdin.flush()
        except OSError as error:
            self.kill()
            self.close_pipes()
            raise ProcessIoError(f"failed to write prompt to agent stdin: {error}") from error
        finally:
            try:
                stdin.close()
            except OSError:
                logger.debug("stdin already closed for pid=%s", self.pid)

    def close_pipes(self) -> None:
        for stream in (self._process.stdout, self._process.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    logger.debug("Pipe already closed for pid=%s", self.pid)
