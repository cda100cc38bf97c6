"""Models for test run results."""

from collections.abc import Iterable
from dataclasses import dataclass, replace


@dataclass(frozen=True, kw_only=True)
class RunResult:
    """Summary counters for one execution scope.

    ``completed`` counts every test that ran to an outcome, including failed,
    errored and skipped ones. Results combine with :meth:`merge`, which is
    associative and commutative with ``RunResult()`` as its identity, so the
    order in which workers finish never changes the totals.
    """

    completed: int = 0
    errors: int = 0
    failures: int = 0
    skipped: int = 0
    timeout: bool = False

    def merge(self, other: "RunResult") -> "RunResult":
        """Combine two results into one."""
        return RunResult(
            completed=self.completed + other.completed,
            errors=self.errors + other.errors,
            failures=self.failures + other.failures,
            skipped=self.skipped + other.skipped,
            timeout=self.timeout or other.timeout,
        )

    @classmethod
    def merge_all(cls, results: Iterable["RunResult"]) -> "RunResult":
        """Merge any number of results."""
        total = cls()
        for result in results:
            total = total.merge(result)
        return total

    @classmethod
    def skipped_suite(cls) -> "RunResult":
        """Result recorded for a suite that was never launched."""
        return cls(completed=1, skipped=1)

    def timed_out(self) -> "RunResult":
        """Copy of this result flagged as timed out."""
        return replace(self, timeout=True)

    @property
    def is_success(self) -> bool:
        """Whether the run had no errors, failures or timeout."""
        return not (self.errors or self.failures or self.timeout)
