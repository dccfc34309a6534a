"""Process-level shutdown signal shared by the loop and the running agent."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class ShutdownSignal:
    """Set once SIGINT or SIGTERM arrives; observed by polling."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._signal_name: str | None = None

    @property
    def signal_name(self) -> str | None:
        return self._signal_name

    def is_set(self) -> bool:
        return self._event.is_set()

    def requested(self) -> bool:
        """Callable form handed to the agent and the loop controller."""

        return self._event.is_set()

    def request(self, *, signal_name: str = "manual") -> None:
        if self._event.is_set():
            logger.info("Shutdown already in progress (received %s again)", signal_name)
            return
        self._signal_name = signal_name
        self._event.set()
        logger.info("Shutdown requested by %s", signal_name)

    @contextmanager
    def install(self) -> Iterator[ShutdownSignal]:
        """Route SIGINT/SIGTERM to :meth:`request` for the duration of the block."""

        if not hasattr(signal, "SIGINT"):
            yield self
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Handlers can only be installed from the main thread.
            logger.debug("Signal handlers not installed: not running in the main thread")
            yield self
            return

        try:
            yield self
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
