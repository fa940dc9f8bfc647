"""Defer SIGINT/SIGTERM while a destructive step runs."""
from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from types import FrameType

from .exit_codes import ExitCode

LOGGER = logging.getLogger(__name__)

_DEFERRED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class InterruptedAtBoundary(KeyboardInterrupt):
    """Raised once a deferred interrupt is honoured after a protected step."""

    exit_code = ExitCode.CONSISTENCY

    def __init__(self, signum: int, step: str) -> None:
        """Remember which signal arrived during *step*."""
        super().__init__(f"{signal.Signals(signum).name} received during '{step}'")
        self.signum = signum
        self.step = step


@contextmanager
def deferred_interrupts(step: str) -> Iterator[None]:
    """Hold SIGINT/SIGTERM until the block finishes.

    A signal arriving inside the block is recorded and re-raised as
    :class:`InterruptedAtBoundary` once the block completes successfully. If
    the block raises, that exception wins. Outside the main thread signal
    handlers cannot be installed, so the block simply runs.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    received: list[int] = []

    def _record(signum: int, frame: FrameType | None) -> None:
        LOGGER.warning("Ignoring %s during %s; will stop after this step.", signum, step)
        received.append(signum)

    previous = {signum: signal.signal(signum, _record) for signum in _DEFERRED_SIGNALS}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
    if received:
        raise InterruptedAtBoundary(received[0], step)


__all__ = ["InterruptedAtBoundary", "deferred_interrupts"]
