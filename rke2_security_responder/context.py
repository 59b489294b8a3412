"""Cancellation and deadline handling for a single collect/deliver run.

Every blocking call in the pipeline (kubectl subprocesses, HTTP requests,
retry back-off) consults a :class:`RunContext` so that a caller can bound
the whole run with one deadline or cancel it from another thread.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field


class OperationCancelled(RuntimeError):
    """The run was cancelled or its deadline passed."""


@dataclass
class RunContext:
    """Deadline and cancellation flag shared by Collector and Reporter.

    Parameters
    ----------
    timeout : float | None
        Seconds from construction until the deadline.  ``None`` means no
        deadline; only explicit :meth:`cancel` stops the run.
    """

    timeout: float | None = None
    _started: float = field(init=False, default_factory=time.monotonic)
    _cancelled: threading.Event = field(init=False, default_factory=threading.Event)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or ``None`` without one."""
        if self.timeout is None:
            return None
        return max(0.0, self.timeout - (time.monotonic() - self._started))

    def done(self) -> bool:
        if self.cancelled:
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        """Raise :class:`OperationCancelled` if the run must stop."""
        if self.cancelled:
            raise OperationCancelled("run cancelled")
        if self.done():
            raise OperationCancelled(f"run deadline of {self.timeout}s exceeded")

    def bound(self, seconds: float) -> float:
        """Clamp a per-operation timeout to the remaining deadline."""
        remaining = self.remaining()
        if remaining is None:
            return seconds
        return min(seconds, remaining)

    def sleep(self, seconds: float) -> None:
        """Wait *seconds*, returning early with an exception on cancellation."""
        self.check()
        if seconds <= 0:
            return
        if self._cancelled.wait(self.bound(seconds)):
            raise OperationCancelled("run cancelled")
        self.check()
