"""Client driving one worker from launch to result."""

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from fork_dispatch.coordination import SuiteQueue
from fork_dispatch.errors import DispatchError, WorkerCrash
from fork_dispatch.fork_slots import ForkSlotAllocator
from fork_dispatch.models.result import RunResult
from fork_dispatch.models.settings import WorkerSettings
from fork_dispatch.protocol import (
    FAILURE_EVENTS,
    ErrorTrace,
    ForkEvent,
    OutputListener,
    OutputParser,
)
from fork_dispatch.reporting import ReportSink
from fork_dispatch.substrates.base import WorkerSubstrate
from fork_dispatch.worker import WorkerHandle, WorkerRegistry

log = logging.getLogger(__name__)

STATISTICS_BY_EVENT: Mapping[str, RunResult] = {
    "test-succeeded": RunResult(completed=1),
    "test-failed": RunResult(completed=1, failures=1),
    "test-error": RunResult(completed=1, errors=1),
    "test-skipped": RunResult(completed=1, skipped=1),
    "test-assumption-failure": RunResult(completed=1, skipped=1),
}

# Builds the settings of one invocation from (fork number, suite, read suites
# from stream).
type SettingsFactory = Callable[[int, str | None, bool], WorkerSettings]


def _ignore_failure() -> None:
    pass


def _no_suite() -> str | None:
    return None


@dataclass(kw_only=True, eq=False)
class WorkerOutput(OutputListener):
    """Applies the output of one worker to its handle."""

    handle: WorkerHandle
    sink: ReportSink = field(repr=False)
    on_failure: Callable[[], None] = field(default=_ignore_failure, repr=False)
    next_suite: Callable[[], str | None] = field(default=_no_suite, repr=False)

    def on_activity(self, timestamp: float) -> None:
        """Refresh the liveness timestamp watched by the monitor."""
        self.handle.record_activity(timestamp)

    def on_event(self, event: ForkEvent) -> None:
        """Count test outcomes, answer suite requests and report the event."""
        if event.kind == "next-test":
            self._feed_next_suite()
            return

        if (statistics := STATISTICS_BY_EVENT.get(event.kind)) is not None:
            self.handle.record(statistics)
        if event.kind in FAILURE_EVENTS:
            self.on_failure()
        self.sink.event(self.handle.id, event)

    def on_goodbye(self) -> None:
        """Note the clean termination and acknowledge it."""
        self.handle.said_goodbye = True
        if self.handle.channel is not None:
            self.handle.channel.acknowledge_goodbye()

    def on_error(self, error: ErrorTrace) -> None:
        """Keep the first error trace reported by the worker."""
        log.error("Worker %d reported an error: %s", self.handle.id, error.message)
        if self.handle.error is None:
            self.handle.error = error

    def on_output(self, line: str) -> None:
        """Pass ordinary output through."""
        self.sink.raw_output(self.handle.id, line)

    def _feed_next_suite(self) -> None:
        channel = self.handle.channel
        if channel is None:
            return

        suite = self.next_suite()
        if suite is None:
            log.debug("No more suites for worker %d", self.handle.id)
            channel.no_more_suites()
        else:
            log.debug("Worker %d runs %s", self.handle.id, suite)
            channel.provide_suite(suite)


@dataclass(kw_only=True, eq=False)
class WorkerClient:
    """Runs one worker and turns its output into a result.

    The worker runs a single suite, everything it discovers itself (``suites``
    is None) or suites pulled from a shared queue. Substrates that stream
    suites are launched once and fed over the command channel; the others
    are invoked once per pulled suite under the same handle and fork slot.
    """

    substrate: WorkerSubstrate
    settings_factory: SettingsFactory = field(repr=False)
    fork_slots: ForkSlotAllocator = field(repr=False)
    registry: WorkerRegistry = field(repr=False)
    sink: ReportSink = field(repr=False)
    timeout: float
    suites: str | SuiteQueue | None = None
    on_failure: Callable[[], None] = field(default=_ignore_failure, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    handle: WorkerHandle | None = field(default=None, init=False)

    @property
    def result(self) -> RunResult:
        """Counts accumulated so far."""
        return self.handle.result if self.handle else RunResult()

    async def run(self) -> RunResult:
        """Run the worker to completion.

        Returns:
            The worker's result, flagged if it timed out

        Raises:
            WorkerCrash: If the worker ended without saying goodbye
            DispatchProtocolError: If the substrate returned no response

        """
        async with self.fork_slots.slot() as fork_number:
            handle = WorkerHandle(id=fork_number, timeout=self.timeout, clock=self.clock)
            self.handle = handle
            self.registry.add(handle)
            try:
                handle.start()
                await self._run_suites(handle)
            finally:
                self.registry.discard(handle)

        if handle.timed_out:
            log.warning("Worker %d timed out after %.1fs", handle.id, self.timeout)
            return handle.result.timed_out()

        handle.complete()
        log.info("Worker %d finished: %s", handle.id, handle.result)
        return handle.result

    async def _run_suites(self, handle: WorkerHandle) -> None:
        if not isinstance(self.suites, SuiteQueue):
            await self._execute(
                handle, self.settings_factory(handle.id, self.suites, False)
            )
        elif self.substrate.streams_suites:
            await self._execute(handle, self.settings_factory(handle.id, None, True))
        else:
            while not handle.timed_out and (suite := self.suites.pull()) is not None:
                await self._execute(
                    handle, self.settings_factory(handle.id, suite, False)
                )

    def _pull_suite(self) -> str | None:
        return self.suites.pull() if isinstance(self.suites, SuiteQueue) else None

    async def _execute(self, handle: WorkerHandle, settings: WorkerSettings) -> None:
        if settings.suite is not None and self.registry.skip_requested:
            log.info("Skipping suite %s after failures", settings.suite)
            handle.record(RunResult.skipped_suite())
            return

        handle.said_goodbye = False
        try:
            invocation = await self.substrate.launch(settings)
        except OSError as e:
            handle.crash()
            raise WorkerCrash(
                f"Error while executing forked tests: {e}", settings=settings
            ) from e

        handle.kill_switch = invocation.kill
        self.registry.bind_channel(handle, invocation.channel)
        output = WorkerOutput(
            handle=handle,
            sink=self.sink,
            on_failure=self.on_failure,
            next_suite=self._pull_suite,
        )
        parser = OutputParser(output, clock=self.clock)
        try:
            async for line in invocation.lines():
                parser.feed_line(line)
        except WorkerCrash:
            if handle.timed_out:
                log.warning("Worker %d failed after timing out", handle.id)
                return
            handle.crash()
            raise
        except DispatchError:
            if not handle.timed_out:
                handle.crash()
            raise
        finally:
            handle.kill_switch = None
            handle.channel = None
            await invocation.close()

        if handle.timed_out:
            return

        if handle.error is not None:
            handle.crash()
            raise WorkerCrash(
                "There was an error in the forked process",
                payload=handle.error.render(),
                settings=settings,
                command=invocation.description,
            )

        if not handle.said_goodbye:
            handle.crash()
            raise WorkerCrash(
                "The forked worker terminated without properly saying goodbye. "
                "Worker crash or exit called?",
                settings=settings,
                command=invocation.description,
            )
