"""
Cancellation and deadline signal passed through every I/O operation.

A RunContext is created by the caller of BackupEngine.run()/cleanup() (the
scheduler, a CLI command or an HTTP request) and handed down to drivers,
storage backends and the retry wrapper. Long-running loops call check()
between chunks; waits go through wait() so they can be interrupted.
"""

import threading
import time
from typing import Optional

from dbkeeper.exceptions import CancelledError, DeadlineExceeded, OperationCancelled


class RunContext:
    """
    Cancellation flag plus optional deadline.

    Args:
        timeout: Seconds from now after which the context expires (None = never)
    """

    def __init__(self, timeout: Optional[float] = None):
        self._cancelled = threading.Event()
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self):
        """Signal cancellation. Safe to call from any thread."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left until the deadline, or None if there is no deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def error(self) -> Optional[CancelledError]:
        """Return the cancellation error that applies right now, if any."""
        if self._cancelled.is_set():
            return OperationCancelled()
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return DeadlineExceeded()
        return None

    def check(self):
        """
        Raise if the context is cancelled or expired.

        Raises:
            OperationCancelled: If cancel() was called
            DeadlineExceeded: If the deadline has passed
        """
        err = self.error()
        if err is not None:
            raise err

    def wait(self, seconds: float):
        """
        Sleep for up to `seconds`, returning early if cancelled.

        Raises:
            OperationCancelled: If cancelled while waiting
            DeadlineExceeded: If the deadline passed while waiting
        """
        timeout = seconds
        remaining = self.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)

        self._cancelled.wait(max(0.0, timeout))
        self.check()


def ensure_context(ctx: Optional[RunContext]) -> RunContext:
    """Return ctx, or a fresh context that never expires."""
    return ctx if ctx is not None else RunContext()
