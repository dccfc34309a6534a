"""Run state shared between the loop controller and the stream monitors."""

from __future__ import annotations

import threading


class RunState:
    """Lock-guarded per-run record.

    The loop controller resets it before every iteration and reads it after;
    the stdout monitor thread writes to it while the iteration runs. Every
    accessor takes the same lock, so a reader never observes the promise flag
    without its text or a half-applied reset.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._token_count = 0
        self._output_parts: list[str] = []
        self._promise_found = False
        self._promise_text: str | None = None
        self._iteration = 0

    def reset(self) -> None:
        """Clear per-iteration fields; the iteration counter is kept."""

        with self._lock:
            self._token_count = 0
            self._output_parts = []
            self._promise_found = False
            self._promise_text = None

    def increment_iteration(self) -> int:
        with self._lock:
            self._iteration += 1
            return self._iteration

    def get_iteration(self) -> int:
        with self._lock:
            return self._iteration

    def get_token_count(self) -> int:
        with self._lock:
            return self._token_count

    def add_tokens(self, count: int) -> None:
        with self._lock:
            self._token_count += count

    def set_tokens(self, count: int) -> None:
        with self._lock:
            self._token_count = count

    def is_promise_found(self) -> bool:
        with self._lock:
            return self._promise_found

    def get_promise_text(self) -> str | None:
        with self._lock:
            return self._promise_text

    def set_promise_found(self, text: str) -> None:
        with self._lock:
            self._promise_found = True
            self._promise_text = text

    def append_output(self, text: str) -> None:
        with self._lock:
            self._output_parts.append(text)

    def get_output(self) -> str:
        with self._lock:
            return "".join(self._output_parts)
