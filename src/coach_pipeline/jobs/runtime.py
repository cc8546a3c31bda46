"""Cooperative stop flag shared by workers, pools and the scheduler loop."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class GracefulStop:
    """Stop request set by SIGINT/SIGTERM; jobs in flight run to completion."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.signal_name: str | None = None

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def request(self, *, signal_name: str = "manual") -> None:
        if not self._event.is_set():
            logger.info("Stop requested signal=%s", signal_name)
        self.signal_name = signal_name
        self._event.set()

    def sleep(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._event.is_set() and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def installed(self) -> Iterator[None]:
        """Route SIGINT/SIGTERM to this flag for the duration of the block."""

        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            logger.debug("Signal handlers not installed outside the main thread")
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
