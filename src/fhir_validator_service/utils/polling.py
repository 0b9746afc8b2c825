"""Deadline bounded polling built on Tenacity.

The readiness wait is a fixed-interval retry loop with an absolute deadline.
Clock and sleep are injectable so the loop can be driven by a fake clock in
tests without real waiting.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception_type, wait_fixed
from tenacity.stop import stop_base

Clock = Callable[[], float]
Sleeper = Callable[[float], None]


class _NotYet(Exception):
    """Internal signal raised when a probe reports not ready."""


class _DeadlineStop(stop_base):
    """Tenacity stop strategy comparing an injected clock against a deadline."""

    def __init__(self, deadline: float, clock: Clock) -> None:
        self._deadline = deadline
        self._clock = clock

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self._clock() >= self._deadline


def poll_until(
    probe: Callable[[], bool],
    *,
    timeout: float,
    interval: float = 1.0,
    clock: Clock = time.monotonic,
    sleep: Sleeper = time.sleep,
) -> bool:
    """Call ``probe`` until it returns ``True`` or ``timeout`` seconds elapse.

    Attempts never overlap: each probe runs to completion, then the loop sleeps
    ``interval`` seconds. Exceptions raised by ``probe`` abort the loop and
    propagate unchanged, which lets callers stop waiting early.

    Args:
        probe: Callable returning ``True`` once the awaited condition holds.
        timeout: Total wait budget in seconds, measured on ``clock``.
        interval: Fixed pause between attempts.
        clock: Monotonic time source.
        sleep: Function used to pause between attempts.

    Returns:
        ``True`` if the probe succeeded before the deadline, otherwise ``False``.
    """
    deadline = clock() + timeout

    def _attempt() -> None:
        if not probe():
            raise _NotYet()

    retrying = Retrying(
        stop=_DeadlineStop(deadline, clock),
        wait=wait_fixed(interval),
        retry=retry_if_exception_type(_NotYet),
        sleep=sleep,
        reraise=False,
    )
    try:
        retrying(_attempt)
    except RetryError:
        return False
    return True


__all__ = ["Clock", "Sleeper", "poll_until"]
