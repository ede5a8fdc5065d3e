"""Process-wide request pacing."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

MIN_API_INTERVAL_SECONDS = 2.0


class Scheduler:
    """Owns the shared "time of last request" used to pace provider calls.

    The timestamp must be recorded when a request is *issued* (see
    :meth:`mark_request`), not when it completes, so in-flight latency counts
    towards the interval. ``clock`` and ``sleep`` are injectable for tests.
    """

    def __init__(
        self,
        *,
        min_interval: float = MIN_API_INTERVAL_SECONDS,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self.last_request_at = 0.0

    def now(self) -> float:
        return self._clock()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)

    def wait_for_slot(self) -> float:
        """Block until the minimum interval has elapsed; return the wait time."""

        if self.last_request_at <= 0:
            return 0.0
        elapsed = self.now() - self.last_request_at
        if elapsed >= self.min_interval:
            return 0.0
        wait = self.min_interval - elapsed
        logger.debug("Rate limiting: waiting %.2fs before next request", wait)
        self.sleep(wait)
        return wait

    def mark_request(self) -> float:
        self.last_request_at = self.now()
        return self.last_request_at

    def defer(self, seconds: float) -> None:
        """Push the last-request marker forward, e.g. while backing off a 429."""

        self.last_request_at = self.now() + seconds


_DEFAULT_SCHEDULER: Scheduler | None = None


def default_scheduler() -> Scheduler:
    """Return the scheduler shared by every agent loop in this process."""

    global _DEFAULT_SCHEDULER
    if _DEFAULT_SCHEDULER is None:
        _DEFAULT_SCHEDULER = Scheduler()
    return _DEFAULT_SCHEDULER


__all__ = ["MIN_API_INTERVAL_SECONDS", "Scheduler", "default_scheduler"]
