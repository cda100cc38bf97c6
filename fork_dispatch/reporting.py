"""Report sinks receiving worker events and the final result."""

import logging
from typing import Protocol

from fork_dispatch.models.result import RunResult
from fork_dispatch.protocol import ForkEvent

log = logging.getLogger(__name__)


class ReportSink(Protocol):
    """Receives structured events and the final run result."""

    def event(self, worker_id: int, event: ForkEvent) -> None:
        """A worker reported a lifecycle or test event."""

    def raw_output(self, worker_id: int, line: str) -> None:
        """A worker wrote an ordinary output line."""

    def finished(self, result: RunResult) -> None:
        """The run ended; the result covers everything accumulated so far."""


class LoggingReportSink:
    """Report sink writing everything to the log."""

    def event(self, worker_id: int, event: ForkEvent) -> None:
        """Log test outcomes at INFO and the rest at DEBUG."""
        entry = event.entry
        name = (entry.name or entry.suite) if entry else None
        if event.kind in {"test-failed", "test-error"}:
            log.info(
                "[fork %d] %s: %s %s",
                worker_id,
                event.kind,
                name,
                entry.message if entry and entry.message else "",
            )
        else:
            log.debug("[fork %d] %s: %s", worker_id, event.kind, name)

    def raw_output(self, worker_id: int, line: str) -> None:
        """Log output lines at DEBUG."""
        log.debug("[fork %d] %s", worker_id, line)

    def finished(self, result: RunResult) -> None:
        """Log the totals."""
        log.info(
            "Tests run: %d, Failures: %d, Errors: %d, Skipped: %d%s",
            result.completed,
            result.failures,
            result.errors,
            result.skipped,
            ", Timed out" if result.timeout else "",
        )
