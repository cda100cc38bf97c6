"""Dispatcher running test suites on a pool of workers."""

import asyncio
import enum
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from fork_dispatch.bundle import BundleBuilder
from fork_dispatch.coordination import FailureCountdown, SuiteQueue
from fork_dispatch.errors import DispatchProtocolError, InterruptedWait
from fork_dispatch.fork_slots import ForkSlotAllocator
from fork_dispatch.models.config import DispatchConfig
from fork_dispatch.models.result import RunResult
from fork_dispatch.models.settings import WorkerSettings, build_worker_settings
from fork_dispatch.monitor import (
    PING_INTERVAL_SECONDS,
    TIMEOUT_CHECK_INTERVAL_SECONDS,
    Monitor,
)
from fork_dispatch.reporting import LoggingReportSink, ReportSink
from fork_dispatch.shutdown import DEFAULT_SIGNALS, ShutdownCoordinator
from fork_dispatch.substrates.base import WorkerSubstrate
from fork_dispatch.worker import WorkerRegistry
from fork_dispatch.worker_client import WorkerClient

log = logging.getLogger(__name__)


class Strategy(enum.Enum):
    """How suites are distributed over workers."""

    FORK_ONCE = "fork-once"
    FORK_ONCE_MULTIPLE = "fork-once-multiple"
    FORK_PER_SUITE = "fork-per-suite"


def select_strategy(config: DispatchConfig) -> Strategy:
    """Choose the execution strategy for a configuration.

    Reused workers run everything in one worker when only one may run at a
    time or the suites are defined as a whole (descriptor files, or left to
    the worker to discover). Otherwise reused workers share a queue of
    suites. Without reuse every suite gets its own worker.
    """
    if config.reuse_forks:
        if (
            config.fork_count == 1
            or config.suite_descriptors
            or config.suites is None
        ):
            return Strategy.FORK_ONCE
        return Strategy.FORK_ONCE_MULTIPLE
    return Strategy.FORK_PER_SUITE


@dataclass(kw_only=True, eq=False)
class Dispatcher:
    """Dispatches suites to workers and combines their results.

    ``registry`` and ``clients`` describe the latest call to :meth:`run`.
    """

    config: DispatchConfig
    substrate: WorkerSubstrate
    sink: ReportSink = field(default_factory=LoggingReportSink)
    ping_interval: float = PING_INTERVAL_SECONDS
    timeout_check_interval: float = TIMEOUT_CHECK_INTERVAL_SECONDS
    handle_signals: bool = True
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    registry: WorkerRegistry = field(default_factory=WorkerRegistry, init=False)
    clients: list[WorkerClient] = field(default_factory=list, init=False)

    def kill_orphan_workers(self) -> None:
        """Forcibly stop every active worker."""
        self.registry.kill_all()

    async def run(self, suites: Sequence[str] | None = None) -> RunResult:
        """Run the suites and return the combined result.

        Args:
            suites: Suites to run; defaults to the configured ones

        Returns:
            The merged result of all workers

        Raises:
            BundlingFailure: If the bundle could not be published
            WorkerCrash: If any worker crashed
            DispatchProtocolError: If any worker produced no result
            InterruptedWait: If the dispatch was cancelled

        """
        # Skip requests and clients belong to a single run
        self.registry = WorkerRegistry()
        self.clients = []

        if suites is None:
            suites = self.config.suites
        strategy = select_strategy(self.config.model_copy(update={"suites": suites}))
        log.info(
            "Dispatching %s suite(s) with strategy %s (fork_count=%d)",
            "discovered" if suites is None else len(suites),
            strategy.value,
            self.config.fork_count,
        )

        bundle = await self._publish_bundle()
        fork_slots = ForkSlotAllocator(self.config.fork_count)
        countdown = FailureCountdown(self.config.skip_after_failure_count)

        def on_failure() -> None:
            if countdown.count_down():
                self.registry.request_skip()

        def settings_factory(
            fork_number: int, suite: str | None, read_from_stream: bool
        ) -> WorkerSettings:
            return self._settings(fork_number, suite, read_from_stream, bundle, suites)

        def new_client(suite_source: str | SuiteQueue | None) -> WorkerClient:
            client = WorkerClient(
                substrate=self.substrate,
                settings_factory=settings_factory,
                fork_slots=fork_slots,
                registry=self.registry,
                sink=self.sink,
                timeout=self.config.effective_timeout,
                suites=suite_source,
                on_failure=on_failure,
                clock=self.clock,
            )
            self.clients.append(client)
            return client

        match strategy:
            case Strategy.FORK_ONCE:
                clients = [new_client(None)]
            case Strategy.FORK_ONCE_MULTIPLE:
                queue = SuiteQueue(suites or ())
                clients = [
                    new_client(queue)
                    for _ in range(min(self.config.fork_count, len(queue)))
                ]
            case Strategy.FORK_PER_SUITE:
                clients = [new_client(suite) for suite in suites or ()]

        shutdown = ShutdownCoordinator(
            self.registry,
            self.config.shutdown,
            signals=DEFAULT_SIGNALS if self.handle_signals else (),
        )
        try:
            with shutdown:
                async with Monitor(
                    self.registry,
                    ping_interval=self.ping_interval,
                    timeout_check_interval=self.timeout_check_interval,
                    clock=self.clock,
                ):
                    return await self._run_clients(clients)
        finally:
            self.sink.finished(RunResult.merge_all(c.result for c in self.clients))

    async def _publish_bundle(self) -> str | None:
        blob_store = self.substrate.blob_store
        if blob_store is None:
            return None
        return await BundleBuilder(blob_store=blob_store).build_and_publish(
            self.config.classpath, self.config.suite_descriptors
        )

    def _settings(
        self,
        fork_number: int,
        suite: str | None,
        read_from_stream: bool,
        bundle: str | None,
        suites: Sequence[str] | None,
    ) -> WorkerSettings:
        properties = None
        if suite is None and not read_from_stream and suites is not None:
            properties = {**self.config.provider_properties, "suites": ",".join(suites)}
        return build_worker_settings(
            self.config,
            fork_number,
            bundle=bundle,
            suite=suite,
            read_suites_from_stream=read_from_stream,
            provider_properties=properties,
        )

    async def _run_clients(self, clients: Sequence[WorkerClient]) -> RunResult:
        pool = asyncio.Semaphore(self.config.fork_count)

        async def submit(client: WorkerClient) -> RunResult | None:
            async with pool:
                return await client.run()

        tasks = [
            asyncio.create_task(submit(client), name=f"worker-{index}")
            for index, client in enumerate(clients)
        ]
        return await await_results(tasks)


async def await_results(
    tasks: Sequence[asyncio.Task[RunResult | None]],
) -> RunResult:
    """Merge worker results as they complete.

    The first failure cancels every other worker and propagates. A worker
    without a result is a protocol error, never a success.
    """
    total = RunResult()
    try:
        for next_done in asyncio.as_completed(tasks):
            result = await next_done
            if result is None:
                raise DispatchProtocolError("No results for a worker")
            total = total.merge(result)
    except asyncio.CancelledError as e:
        await _cancel_all(tasks)
        raise InterruptedWait("Interrupted while waiting for workers") from e
    except BaseException:
        await _cancel_all(tasks)
        raise
    return total


async def _cancel_all(tasks: Sequence[asyncio.Task[Any]]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
