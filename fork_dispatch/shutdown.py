"""Stopping workers when the dispatching process is interrupted."""

import asyncio
import atexit
import logging
import signal
from collections.abc import Sequence
from contextlib import suppress
from types import TracebackType
from typing import Self

from fork_dispatch.models.config import ShutdownKind
from fork_dispatch.worker import WorkerRegistry

log = logging.getLogger(__name__)

DEFAULT_SIGNALS: Sequence[signal.Signals] = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    """Broadcasts a shutdown to all workers if the dispatch ends abnormally.

    While entered, the configured signals and interpreter exit trigger the
    broadcast and cancel the dispatching task. Leaving the context restores
    the previous signal handling.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        kind: ShutdownKind = "default",
        *,
        signals: Sequence[signal.Signals] = DEFAULT_SIGNALS,
    ) -> None:
        self.registry = registry
        self.kind = kind
        self.signals = signals
        self.triggered = False
        self._task: asyncio.Task[object] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed: list[signal.Signals] = []

    def __enter__(self) -> Self:
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.current_task()
        for sig in self.signals:
            try:
                self._loop.add_signal_handler(sig, self.trigger)
            except (NotImplementedError, RuntimeError):
                log.debug("Cannot handle %s on this platform", sig.name)
            else:
                self._installed.append(sig)
        atexit.register(self._on_exit)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        atexit.unregister(self._on_exit)
        if self._loop is not None:
            for sig in self._installed:
                with suppress(RuntimeError):
                    self._loop.remove_signal_handler(sig)
        self._installed = []
        self._task = None

    def trigger(self) -> None:
        """Ask every worker to shut down and cancel the dispatch."""
        if self.triggered:
            return
        self.triggered = True
        log.warning("Dispatch interrupted; sending %s shutdown to workers", self.kind)
        self.registry.shutdown_all(self.kind)
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _on_exit(self) -> None:
        if self.triggered:
            return
        self.triggered = True
        self.registry.shutdown_all(self.kind)
