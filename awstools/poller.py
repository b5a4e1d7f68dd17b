"""Convergence polling: block until a remote resource reaches a target state.

A wait condition maps check names to expected values, e.g.
``{"state": "running", "status": "ok"}``. Each iteration sleeps, takes one
fresh sample of every check and counts the matches; the wait is satisfied
only when all checks match within that same sample. Nothing is carried
over between iterations.
"""

import threading
import time
from typing import Any, Callable, Mapping

from .errors import WaitCancelledError, WaitTimeoutError
from .types import WaitState
from .utils import debug, log

FetchState = Callable[[str], Mapping[str, Any]]


def count_satisfied(condition: Mapping[str, Any], sample: Mapping[str, Any]) -> int:
    """Number of checks in condition whose sampled value equals the expected one."""
    return sum(
        1 for name, expected in condition.items()
        if name in sample and sample[name] == expected
    )


class Poller:
    """Polls a resource until a wait condition holds.

    States move from ``polling`` to exactly one of ``satisfied``,
    ``timed-out`` or ``cancelled``. With the defaults (no timeout, no
    backoff, no cancel event) a wait runs until the condition holds.

    :param interval: Seconds to sleep before each sample
    :param timeout: Give up after this many seconds (None waits forever)
    :param backoff: Multiply the interval by this after each failed sample
    :param max_interval: Upper bound for the interval when backing off
    :param cancel: Event that aborts the wait when set
    :param sleep: Sleep function; defaults to cancel.wait or time.sleep
    :param clock: Monotonic clock used for the deadline
    """

    def __init__(
        self,
        *,
        interval: float = 1.0,
        timeout: float | None = None,
        backoff: float = 1.0,
        max_interval: float | None = None,
        cancel: threading.Event | None = None,
        sleep: Callable[[float], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval < 0:
            raise ValueError(f"Poll interval must not be negative, got {interval}")
        if backoff < 1.0:
            raise ValueError(f"Backoff factor must be >= 1.0, got {backoff}")
        self.interval = interval
        self.timeout = timeout
        self.backoff = backoff
        self.max_interval = max_interval
        self.cancel = cancel
        if sleep is None:
            sleep = cancel.wait if cancel is not None else time.sleep
        self._sleep = sleep
        self._clock = clock
        self.state: WaitState = "polling"
        self.iterations = 0

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def _next_interval(self, current: float) -> float:
        current *= self.backoff
        if self.max_interval is not None:
            current = min(current, self.max_interval)
        return current

    def wait(
        self,
        handle: str,
        condition: Mapping[str, Any],
        fetch_state: FetchState,
    ) -> int:
        """Block until every check in condition matches on one sample.

        :param handle: Resource identifier passed through to fetch_state
        :param condition: Mapping of check name to expected value
        :param fetch_state: Returns the current value of each check for handle
        :return: Number of iterations it took
        :raises WaitTimeoutError: If the deadline passes first
        :raises WaitCancelledError: If the cancel event is set
        """
        condition = dict(condition)
        total = len(condition)
        self.state = "polling"
        self.iterations = 0
        interval = self.interval
        start = self._clock()
        deadline = start + self.timeout if self.timeout is not None else None
        sample: Mapping[str, Any] | None = None

        log(f"Waiting for '{handle}' to reach {condition}...")
        while True:
            if self._cancelled():
                self.state = "cancelled"
                raise WaitCancelledError(handle, condition)
            pause = interval
            if deadline is not None:
                # Never sleep past the deadline
                pause = max(0.0, min(interval, deadline - self._clock()))
            self._sleep(pause)
            if self._cancelled():
                self.state = "cancelled"
                raise WaitCancelledError(handle, condition)

            self.iterations += 1
            sample = fetch_state(handle)
            passed = count_satisfied(condition, sample)
            debug(f"'{handle}' poll {self.iterations}: {dict(sample)} ({passed}/{total})")
            if passed == total:
                self.state = "satisfied"
                log(f"'{handle}' reached {condition}")
                return self.iterations

            if deadline is not None and self._clock() >= deadline:
                self.state = "timed-out"
                raise WaitTimeoutError(
                    handle, condition, dict(sample), self._clock() - start
                )
            interval = self._next_interval(interval)


def wait_until(
    handle: str,
    condition: Mapping[str, Any],
    fetch_state: FetchState,
    poll_interval: float = 1.0,
    *,
    timeout: float | None = None,
    backoff: float = 1.0,
    max_interval: float | None = None,
    cancel: threading.Event | None = None,
    sleep: Callable[[float], Any] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Block until handle satisfies condition. See :class:`Poller`."""
    Poller(
        interval=poll_interval,
        timeout=timeout,
        backoff=backoff,
        max_interval=max_interval,
        cancel=cancel,
        sleep=sleep,
        clock=clock,
    ).wait(handle, condition, fetch_state)
