"""Primitives shared by the workers of one run."""

import threading
from collections import deque
from collections.abc import Iterable


class SuiteQueue:
    """Remaining suites of a pooled run, pulled by any number of workers."""

    def __init__(self, suites: Iterable[str] = ()) -> None:
        self._suites = deque(suites)

    def __len__(self) -> int:
        return len(self._suites)

    def pull(self) -> str | None:
        """Take the next suite, or None once the queue is empty."""
        try:
            return self._suites.popleft()
        except IndexError:
            return None


class FailureCountdown:
    """Counts failures down to the skip-after-failure threshold.

    Exactly one call to :meth:`count_down` returns True: the one whose
    decrement reaches zero. A threshold of zero never fires.
    """

    def __init__(self, threshold: int) -> None:
        if threshold < 0:
            raise ValueError(f"Threshold must not be negative, got {threshold}")
        self._remaining = threshold
        self._lock = threading.Lock()

    @property
    def remaining(self) -> int:
        """Failures still allowed before the threshold is reached."""
        return self._remaining

    def count_down(self) -> bool:
        """Record one failure.

        Returns:
            True if this failure reached the threshold

        """
        with self._lock:
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            return self._remaining == 0
