"""Worker handles, their command channels and the registry of active workers."""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum

from fork_dispatch.errors import InvalidStateTransition
from fork_dispatch.models.config import ShutdownKind
from fork_dispatch.models.result import RunResult
from fork_dispatch.protocol import CommandKind, ErrorTrace

log = logging.getLogger(__name__)


class WorkerState(Enum):
    """Lifecycle state of a worker handle."""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CRASHED = "crashed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return self in TERMINAL_STATES


TERMINAL_STATES: frozenset[WorkerState] = frozenset(
    [WorkerState.COMPLETED, WorkerState.TIMED_OUT, WorkerState.CRASHED]
)

ALLOWED_TRANSITIONS: dict[WorkerState, frozenset[WorkerState]] = {
    WorkerState.CREATED: frozenset([WorkerState.RUNNING]),
    WorkerState.RUNNING: TERMINAL_STATES,
    WorkerState.COMPLETED: frozenset(),
    WorkerState.TIMED_OUT: frozenset(),
    WorkerState.CRASHED: frozenset(),
}


class CommandChannel(ABC):
    """Channel carrying commands from the dispatcher to one worker."""

    @abstractmethod
    def send(self, kind: CommandKind, argument: str | None = None) -> None:
        """Send a command; must not block."""

    def noop(self) -> None:
        """Heartbeat keeping an idle worker alive."""
        self.send("noop")

    def skip_since_next_test(self) -> None:
        """Ask the worker to skip every test after the current one."""
        self.send("skip-since-next-test")

    def shutdown(self, kind: ShutdownKind) -> None:
        """Ask the worker to stop."""
        self.send("shutdown", kind)

    def provide_suite(self, suite: str) -> None:
        """Hand the worker its next suite."""
        self.send("run-suite", suite)

    def no_more_suites(self) -> None:
        """Tell the worker the suite queue is exhausted."""
        self.send("test-set-finished")

    def acknowledge_goodbye(self) -> None:
        """Confirm the worker's goodbye."""
        self.send("bye-ack")


@dataclass(kw_only=True, eq=False)
class WorkerHandle:
    """State of one worker, shared by its client and the monitor.

    State only moves forward:
    ``CREATED -> RUNNING -> COMPLETED | TIMED_OUT | CRASHED``.
    """

    id: int
    timeout: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    state: WorkerState = WorkerState.CREATED
    started_at: float | None = None
    last_activity: float | None = None
    said_goodbye: bool = False
    error: ErrorTrace | None = None
    result: RunResult = field(default_factory=RunResult)
    channel: CommandChannel | None = field(default=None, repr=False)
    kill_switch: Callable[[], None] | None = field(default=None, repr=False)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def _transition(self, target: WorkerState) -> None:
        with self._lock:
            if target not in ALLOWED_TRANSITIONS[self.state]:
                raise InvalidStateTransition(
                    f"Worker {self.id} cannot move from {self.state.value} "
                    f"to {target.value}"
                )
            self.state = target

    def start(self) -> None:
        """Mark the worker as running."""
        self._transition(WorkerState.RUNNING)
        self.started_at = self.clock()

    def complete(self) -> None:
        """Mark a clean completion."""
        self._transition(WorkerState.COMPLETED)

    def crash(self) -> None:
        """Mark a crash."""
        self._transition(WorkerState.CRASHED)

    @property
    def timed_out(self) -> bool:
        """Whether the worker was marked as timed out."""
        return self.state is WorkerState.TIMED_OUT

    def record_activity(self, timestamp: float) -> None:
        """Note that the worker produced output."""
        self.last_activity = timestamp

    def record(self, result: RunResult) -> None:
        """Add counts to the worker's accumulated result."""
        with self._lock:
            self.result = self.result.merge(result)

    def try_to_timeout(self, now: float) -> bool:
        """Mark the worker as timed out if it has been idle too long.

        Returns:
            True if this call marked the worker as timed out

        """
        with self._lock:
            if self.state is not WorkerState.RUNNING:
                return False
            reference = (
                self.started_at if self.last_activity is None else self.last_activity
            )
            if reference is None or now - reference < self.timeout:
                return False
            self.state = WorkerState.TIMED_OUT
        return True


class WorkerRegistry:
    """Set of active worker handles.

    Mutations swap in a new immutable snapshot, so iterating never needs a
    lock and never sees a half-applied change. A skip request is remembered
    and replayed to channels bound after it was made.
    """

    def __init__(self) -> None:
        self._handles: frozenset[WorkerHandle] = frozenset()
        self._lock = threading.Lock()
        self._skip_requested = False

    def __iter__(self) -> Iterator[WorkerHandle]:
        return iter(self._handles)

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, handle: object) -> bool:
        return handle in self._handles

    @property
    def skip_requested(self) -> bool:
        """Whether remaining tests should be skipped."""
        return self._skip_requested

    def add(self, handle: WorkerHandle) -> None:
        """Register an active worker."""
        with self._lock:
            self._handles = self._handles | {handle}

    def discard(self, handle: WorkerHandle) -> None:
        """Unregister a worker; unknown handles are ignored."""
        with self._lock:
            self._handles = self._handles - {handle}

    def bind_channel(self, handle: WorkerHandle, channel: CommandChannel) -> None:
        """Attach a worker's command channel, replaying a pending skip."""
        handle.channel = channel
        if self._skip_requested:
            channel.skip_since_next_test()

    def channels(self) -> list[CommandChannel]:
        """Channels of all active workers that have one."""
        return [handle.channel for handle in self._handles if handle.channel]

    def request_skip(self) -> None:
        """Ask every current and future worker to skip remaining tests."""
        self._skip_requested = True
        channels = self.channels()
        log.warning("Skipping remaining tests on %d worker(s)", len(channels))
        for channel in channels:
            channel.skip_since_next_test()

    def shutdown_all(self, kind: ShutdownKind) -> None:
        """Ask every active worker to stop."""
        for channel in self.channels():
            channel.shutdown(kind)

    def ping_all(self) -> None:
        """Send a heartbeat to every active worker."""
        for channel in self.channels():
            channel.noop()

    def kill_all(self) -> None:
        """Forcibly stop every active worker that can be killed."""
        for handle in self._handles:
            if handle.kill_switch is not None:
                log.warning("Killing worker %d", handle.id)
                handle.kill_switch()
