"""
Polling primitives shared by the monitors.

All waiting in deplorch happens here: a blocking sleep on the calling
thread between observations. The CancellationToken is checked at every
poll boundary and interrupts sleeps, so cancelling stops observation
without touching the remote build or rollout.
"""

import threading
import time
from typing import Callable, Optional

from deplorch.errors import SessionCancelledError

Clock = Callable[[], float]
Sleeper = Callable[[float], None]


class CancellationToken:
    """External cancellation signal for one session."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    def check(self, where: str = "") -> None:
        """
        Raise if cancellation was requested.

        Raises:
            SessionCancelledError: If the token fired
        """
        if self._event.is_set():
            location = f" at {where}" if where else ""
            raise SessionCancelledError(f"Session cancelled{location}: {self.reason}")

    def wait(self, seconds: float) -> bool:
        """Sleep up to seconds; return True if cancelled meanwhile."""
        return self._event.wait(max(seconds, 0))


class Deadline:
    """Wall-clock budget for one phase, measured with an injectable clock."""

    def __init__(self, timeout: float, clock: Clock = time.monotonic):
        self.timeout = timeout
        self._clock = clock
        self._start = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._start

    @property
    def remaining(self) -> float:
        return max(self.timeout - self.elapsed, 0.0)

    @property
    def expired(self) -> bool:
        return self.elapsed >= self.timeout


def wait(
    seconds: float,
    cancel: Optional[CancellationToken] = None,
    sleep: Optional[Sleeper] = None,
    where: str = "",
) -> None:
    """
    Block between two observations.

    With an injected sleep the token is checked before and after it;
    otherwise the token's own event is used so cancellation wakes the
    sleeper immediately.

    Raises:
        SessionCancelledError: If cancelled before or during the wait
    """
    if cancel is not None:
        cancel.check(where)
    if sleep is not None:
        sleep(seconds)
    elif cancel is not None:
        cancel.wait(seconds)
    else:
        time.sleep(max(seconds, 0))
    if cancel is not None:
        cancel.check(where)
