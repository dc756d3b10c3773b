# ============================================================================
# SLP SAFETY - Rate-Limited Queue
# ============================================================================
# Sequential pipeline that starts at most one item per `interval`
# seconds.  The mail provider rate-limits bursts, so company reports
# are drained through this instead of being sent back to back.
# ============================================================================

import logging
import time
from collections import deque
from typing import Callable, Deque, Generic, Iterable, List, Optional, TypeVar

logger = logging.getLogger("reporting.throttle")

T = TypeVar("T")
R = TypeVar("R")


class RateLimitedQueue(Generic[T]):
    """FIFO queue drained one item at a time at a bounded rate.

    ``clock`` and ``sleep`` default to the monotonic clock and
    ``time.sleep``; tests inject fakes.
    """

    def __init__(
        self,
        interval: float,
        items: Optional[Iterable[T]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._items: Deque[T] = deque(items or ())
        self._last_start: Optional[float] = None

    def put(self, item: T) -> None:
        self._items.append(item)

    def __len__(self) -> int:
        return len(self._items)

    def _wait_turn(self) -> None:
        if self._last_start is None:
            return
        remaining = self._last_start + self.interval - self._clock()
        if remaining > 0:
            logger.debug("Throttling %.2fs before next item", remaining)
            self._sleep(remaining)

    def drain(self, handler: Callable[[T], R]) -> List[R]:
        """Run *handler* on every queued item in order and collect results.

        Exceptions from the handler propagate; callers that want the
        loop to continue catch inside the handler.
        """
        results: List[R] = []
        while self._items:
            item = self._items.popleft()
            self._wait_turn()
            self._last_start = self._clock()
            results.append(handler(item))
        return results
