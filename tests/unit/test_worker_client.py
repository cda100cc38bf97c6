"""Tests for the worker client."""

import asyncio
from dataclasses import dataclass
from unittest.mock import MagicMock

import pytest

from fork_dispatch.coordination import SuiteQueue
from fork_dispatch.errors import DispatchProtocolError, WorkerCrash
from fork_dispatch.fork_slots import ForkSlotAllocator
from fork_dispatch.models.config import DispatchConfig
from fork_dispatch.models.result import RunResult
from fork_dispatch.models.settings import WorkerSettings, build_worker_settings
from fork_dispatch.monitor import Monitor
from fork_dispatch.protocol import ForkEvent, encode_event
from fork_dispatch.testing.payloads import suite_output, worker_stdout
from fork_dispatch.testing.substrate import (
    RecordingChannel,
    ScriptedInvocation,
    ScriptedSubstrate,
)
from fork_dispatch.worker import WorkerHandle, WorkerRegistry, WorkerState
from fork_dispatch.worker_client import WorkerClient, WorkerOutput


@dataclass(frozen=True, kw_only=True)
class StreamingSubstrate(ScriptedSubstrate):
    """Scripted substrate whose workers pull suites themselves."""

    @property
    def streams_suites(self) -> bool:
        return True


def settings_factory(
    fork_number: int, suite: str | None, read_from_stream: bool
) -> WorkerSettings:
    return build_worker_settings(
        DispatchConfig(provider_properties={"suites": "A,B"}),
        fork_number,
        suite=suite,
        read_suites_from_stream=read_from_stream,
    )


def make_client(
    substrate: ScriptedSubstrate,
    *,
    suites: str | SuiteQueue | None = None,
    registry: WorkerRegistry | None = None,
    fork_slots: ForkSlotAllocator | None = None,
    timeout: float = 60.0,
    on_failure: MagicMock | None = None,
) -> WorkerClient:
    return WorkerClient(
        substrate=substrate,
        settings_factory=settings_factory,
        fork_slots=fork_slots or ForkSlotAllocator(1),
        registry=WorkerRegistry() if registry is None else registry,
        sink=MagicMock(),
        timeout=timeout,
        suites=suites,
        on_failure=on_failure or MagicMock(),
    )


def scripted(*lines: str, **kwargs: object) -> ScriptedSubstrate:
    return ScriptedSubstrate(script=lambda _: ScriptedInvocation(lines, **kwargs))


async def test_single_suite_completes() -> None:
    """A worker that says goodbye completes with its counts."""
    substrate = ScriptedSubstrate()
    registry = WorkerRegistry()
    slots = ForkSlotAllocator(1)
    client = make_client(substrate, suites="A", registry=registry, fork_slots=slots)

    result = await client.run()

    assert result == RunResult(completed=1)
    assert client.handle is not None
    assert client.handle.state is WorkerState.COMPLETED
    assert len(registry) == 0
    assert slots.in_use == frozenset()
    (settings,) = substrate.launched
    assert settings.suite == "A"
    (invocation,) = substrate.invocations
    assert invocation.channel.kinds() == ["bye-ack"]
    assert invocation.closed


async def test_discovering_worker_runs_all_suites() -> None:
    """Without a suite the worker runs what its properties list."""
    client = make_client(ScriptedSubstrate())

    assert await client.run() == RunResult(completed=2)


async def test_reports_events_and_output() -> None:
    """Events and ordinary output reach the sink."""
    client = make_client(scripted("hello", *suite_output("A"), encode_event("bye")))

    await client.run()

    client.sink.raw_output.assert_called_once_with(1, "hello")
    kinds = [call.args[1].kind for call in client.sink.event.call_args_list]
    assert kinds == [
        "testset-starting",
        "test-starting",
        "test-succeeded",
        "testset-completed",
    ]


async def test_failures_are_counted_and_signalled() -> None:
    """Failed and errored tests count and trigger the failure callback."""
    lines = [
        *suite_output("A", outcome="test-failed"),
        *suite_output("B", outcome="test-error"),
        encode_event("bye"),
    ]
    on_failure = MagicMock()
    client = make_client(scripted(*lines), on_failure=on_failure)

    result = await client.run()

    assert result == RunResult(completed=2, failures=1, errors=1)
    assert on_failure.call_count == 2


async def test_missing_goodbye_is_a_crash() -> None:
    """A worker ending without goodbye crashed."""
    slots = ForkSlotAllocator(1)
    client = make_client(
        scripted(*worker_stdout(["A"], goodbye=False).splitlines()), fork_slots=slots
    )

    with pytest.raises(WorkerCrash, match="without properly saying goodbye") as info:
        await client.run()

    assert "Command was scripted worker" in str(info.value)
    assert info.value.settings is not None
    assert client.handle is not None
    assert client.handle.state is WorkerState.CRASHED
    assert slots.in_use == frozenset()


async def test_error_trace_is_a_crash() -> None:
    """An error trace fails the worker even after a goodbye."""
    lines = [
        encode_event("error", {"message": "Cannot load A", "trace": "at Loader"}),
        encode_event("bye"),
    ]
    client = make_client(scripted(*lines))

    with pytest.raises(WorkerCrash, match="error in the forked process") as info:
        await client.run()

    assert info.value.payload == "Cannot load A\nat Loader"


async def test_launch_failure_is_a_crash() -> None:
    """A worker that cannot be started crashed."""

    def refuse(settings: WorkerSettings) -> ScriptedInvocation:
        raise FileNotFoundError("java")

    client = make_client(ScriptedSubstrate(script=refuse), suites="A")

    with pytest.raises(WorkerCrash, match="Error while executing forked tests"):
        await client.run()

    assert client.handle is not None
    assert client.handle.state is WorkerState.CRASHED


async def test_protocol_error_propagates() -> None:
    """A missing response is reported as a protocol error."""
    substrate = scripted(error=DispatchProtocolError("Null response"))
    client = make_client(substrate)

    with pytest.raises(DispatchProtocolError, match="Null response"):
        await client.run()

    assert client.handle is not None
    assert client.handle.state is WorkerState.CRASHED
    assert substrate.invocations[0].closed


async def test_silent_worker_times_out() -> None:
    """A worker going silent is timed out and asked to stop."""
    substrate = scripted(*suite_output("A"), hang=True)
    registry = WorkerRegistry()
    client = make_client(substrate, registry=registry, timeout=0.05)

    async with Monitor(registry, timeout_check_interval=0.01):
        result = await asyncio.wait_for(client.run(), timeout=5)

    assert result == RunResult(completed=1, timeout=True)
    assert client.handle is not None
    assert client.handle.state is WorkerState.TIMED_OUT
    assert ("shutdown", "kill") in substrate.invocations[0].channel.sent


async def test_pooled_suites_run_one_invocation_each() -> None:
    """Without streaming every pulled suite is a separate invocation."""
    substrate = ScriptedSubstrate()
    client = make_client(substrate, suites=SuiteQueue(["A", "B", "C"]))

    result = await client.run()

    assert result == RunResult(completed=3)
    assert [s.suite for s in substrate.launched] == ["A", "B", "C"]
    assert {s.fork_number for s in substrate.launched} == {1}


async def test_streaming_worker_is_fed_from_queue() -> None:
    """Streaming workers get one suite per request, then the end marker."""
    substrate = StreamingSubstrate(
        script=lambda _: ScriptedInvocation(
            [
                encode_event("next-test"),
                *suite_output("A"),
                encode_event("next-test"),
                encode_event("bye"),
            ]
        )
    )
    client = make_client(substrate, suites=SuiteQueue(["A"]))

    assert await client.run() == RunResult(completed=1)

    (settings,) = substrate.launched
    assert settings.read_suites_from_stream
    assert substrate.invocations[0].channel.sent == [
        ("run-suite", "A"),
        ("test-set-finished", None),
        ("bye-ack", None),
    ]


async def test_suites_after_skip_request_are_skipped() -> None:
    """Once skipping was requested queued suites are not launched."""
    registry = WorkerRegistry()
    registry.request_skip()
    substrate = ScriptedSubstrate()
    client = make_client(substrate, suites=SuiteQueue(["A", "B"]), registry=registry)

    result = await client.run()

    assert result == RunResult(completed=2, skipped=2)
    assert substrate.launched == []


def test_output_answers_suite_requests_until_exhausted() -> None:
    """Suite requests are answered from the supplier, then with end of tests."""
    channel = RecordingChannel()
    handle = WorkerHandle(id=1, timeout=60.0, channel=channel)
    suites = iter(["A"])
    output = WorkerOutput(
        handle=handle, sink=MagicMock(), next_suite=lambda: next(suites, None)
    )

    output.on_event(ForkEvent(kind="next-test"))
    output.on_event(ForkEvent(kind="next-test"))

    assert channel.sent == [("run-suite", "A"), ("test-set-finished", None)]


def test_output_without_channel_ignores_suite_requests() -> None:
    """A worker that never opened a channel is not fed suites."""
    next_suite = MagicMock()
    output = WorkerOutput(
        handle=WorkerHandle(id=1, timeout=60.0), sink=MagicMock(), next_suite=next_suite
    )

    output.on_event(ForkEvent(kind="next-test"))

    next_suite.assert_not_called()
