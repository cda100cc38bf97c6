"""Background heartbeat and timeout enforcement for active workers."""

import asyncio
import logging
import time
from collections.abc import Callable
from types import TracebackType
from typing import Self

from fork_dispatch.worker import WorkerRegistry

log = logging.getLogger(__name__)

PING_INTERVAL_SECONDS = 10.0
TIMEOUT_CHECK_INTERVAL_SECONDS = 0.1


class Monitor:
    """Runs the ping and timeout-check tasks while the dispatch is active.

    Both tasks only touch the registry snapshot and worker channels, so they
    keep running however busy the workers are. Timing out is cooperative:
    the worker is marked and asked to stop, never killed.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        *,
        ping_interval: float = PING_INTERVAL_SECONDS,
        timeout_check_interval: float = TIMEOUT_CHECK_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.ping_interval = ping_interval
        self.timeout_check_interval = timeout_check_interval
        self.clock = clock
        self._tasks: list[asyncio.Task[None]] = []

    async def __aenter__(self) -> Self:
        self._tasks = [
            asyncio.create_task(
                self._every(self.ping_interval, self.ping), name="ping-timer"
            ),
            asyncio.create_task(
                self._every(self.timeout_check_interval, self.check_timeouts),
                name="timeout-check-timer",
            ),
        ]
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def ping(self) -> None:
        """Send a heartbeat to every active worker."""
        log.debug("Pinging %d worker(s)", len(self.registry))
        self.registry.ping_all()

    def check_timeouts(self) -> None:
        """Mark workers idle for longer than their timeout and stop them."""
        now = self.clock()
        for handle in self.registry:
            if handle.try_to_timeout(now):
                log.warning(
                    "Worker %d exceeded its timeout of %.1fs", handle.id, handle.timeout
                )
                if handle.channel is not None:
                    handle.channel.shutdown("kill")

    async def _every(self, interval: float, action: Callable[[], None]) -> None:
        while True:
            try:
                action()
            except Exception:
                log.exception("Monitor task %s failed", action.__name__)
            await asyncio.sleep(interval)
