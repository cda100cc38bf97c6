"""Line-oriented wire protocol spoken between the dispatcher and its workers.

Workers write events to standard output, one per line::

    :fork:test-failed:{"suite": "com.example.FooTest", "name": "testBar"}
    :fork:bye

Any other line is ordinary output and passes through untouched. Commands
travel the other way on the worker's command channel::

    :fork-command:run-suite:com.example.FooTest
"""

import json
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Literal, get_args

from pydantic import BaseModel, ValidationError

log = logging.getLogger(__name__)

EVENT_PREFIX = ":fork:"
COMMAND_PREFIX = ":fork-command:"

type EventKind = Literal[
    "testset-starting",
    "testset-completed",
    "test-starting",
    "test-succeeded",
    "test-failed",
    "test-error",
    "test-skipped",
    "test-assumption-failure",
    "next-test",
    "bye",
    "error",
]

type CommandKind = Literal[
    "noop",
    "skip-since-next-test",
    "shutdown",
    "run-suite",
    "test-set-finished",
    "bye-ack",
]

EVENT_KINDS: frozenset[str] = frozenset(get_args(EventKind.__value__))
COMMAND_KINDS: frozenset[str] = frozenset(get_args(CommandKind.__value__))

LIFECYCLE_EVENTS: frozenset[str] = frozenset(
    ["testset-starting", "testset-completed", "test-starting"]
)
FAILURE_EVENTS: frozenset[str] = frozenset(["test-failed", "test-error"])
REPORT_EVENTS: frozenset[str] = frozenset(
    [
        "test-succeeded",
        "test-failed",
        "test-error",
        "test-skipped",
        "test-assumption-failure",
    ]
)


class ReportEntry(BaseModel):
    """Payload of a lifecycle or report event."""

    suite: str | None = None
    name: str | None = None
    message: str | None = None
    elapsed: float | None = None


class ErrorTrace(BaseModel):
    """Payload of an error event."""

    message: str
    trace: str | None = None

    def render(self) -> str:
        """Render the trace for error messages."""
        return f"{self.message}\n{self.trace}" if self.trace else self.message


class ForkEvent(BaseModel):
    """A decoded worker event."""

    kind: EventKind
    entry: ReportEntry | None = None
    error: ErrorTrace | None = None


def encode_event(kind: EventKind, payload: Mapping[str, Any] | None = None) -> str:
    """Encode an event line, without the trailing newline."""
    if payload is None:
        return f"{EVENT_PREFIX}{kind}"
    return f"{EVENT_PREFIX}{kind}:{json.dumps(payload)}"


def parse_line(line: str) -> ForkEvent | None:
    """Decode an event line.

    Returns:
        The event, or None if the line is ordinary output

    """
    line = line.rstrip("\r\n")
    if not line.startswith(EVENT_PREFIX):
        return None

    kind, _, payload = line[len(EVENT_PREFIX) :].partition(":")
    if kind not in EVENT_KINDS:
        return None

    try:
        data = json.loads(payload) if payload else {}
        if kind == "error":
            return ForkEvent(kind=kind, error=ErrorTrace.model_validate(data))
        if kind in LIFECYCLE_EVENTS or kind in REPORT_EVENTS:
            return ForkEvent(kind=kind, entry=ReportEntry.model_validate(data))
        return ForkEvent(kind=kind)
    except (ValueError, ValidationError):
        log.debug("Undecodable %s event treated as output: %r", kind, line)
        return None


def encode_command(kind: CommandKind, argument: str | None = None) -> str:
    """Encode a command line, including the trailing newline."""
    if argument is None:
        return f"{COMMAND_PREFIX}{kind}\n"
    return f"{COMMAND_PREFIX}{kind}:{argument}\n"


def parse_command(line: str) -> tuple[str, str | None] | None:
    """Decode a command line into its kind and argument."""
    line = line.rstrip("\r\n")
    if not line.startswith(COMMAND_PREFIX):
        return None
    kind, sep, argument = line[len(COMMAND_PREFIX) :].partition(":")
    if kind not in COMMAND_KINDS:
        return None
    return kind, argument if sep else None


class OutputListener:
    """Receives what the parser recognises in a worker's output.

    Every method is a no-op; override the ones of interest.
    """

    def on_activity(self, timestamp: float) -> None:
        """Any line arrived."""

    def on_event(self, event: ForkEvent) -> None:
        """A lifecycle, report or control event arrived."""

    def on_goodbye(self) -> None:
        """The worker announced a clean termination."""

    def on_error(self, error: ErrorTrace) -> None:
        """The worker reported an error trace."""

    def on_output(self, line: str) -> None:
        """An ordinary output line arrived."""


class OutputParser:
    """Decodes an ordered sequence of lines into listener callbacks.

    The parser does not care whether lines arrive one at a time from a live
    stream or all at once from captured output.
    """

    def __init__(
        self,
        listener: OutputListener,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.listener = listener
        self.clock = clock

    def feed(self, lines: Iterable[str]) -> None:
        """Feed lines in order."""
        for line in lines:
            self.feed_line(line)

    def feed_line(self, line: str) -> None:
        """Feed one line."""
        self.listener.on_activity(self.clock())

        event = parse_line(line)
        if event is None:
            self.listener.on_output(line.rstrip("\r\n"))
        elif event.kind == "bye":
            self.listener.on_goodbye()
        elif event.error is not None:
            self.listener.on_error(event.error)
        else:
            self.listener.on_event(event)
