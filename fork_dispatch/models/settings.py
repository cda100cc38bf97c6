"""Per-worker settings built by the dispatcher."""

import json
from collections.abc import Mapping, Sequence

from pydantic import Field

from fork_dispatch.models.base import Model
from fork_dispatch.models.config import DispatchConfig

FORK_NUMBER_PLACEHOLDER = "${forkNumber}"


class WorkerSettings(Model):
    """Everything one worker invocation needs to run."""

    fork_number: int = Field(..., ge=1, description="Fork slot of the worker")
    properties: str = Field(..., description="Serialized provider properties (JSON)")
    bundle: str | None = Field(
        default=None, description="Address of the code bundle (remote only)"
    )
    arguments: Sequence[str] = Field(
        default_factory=list, description="Worker arguments, fork number substituted"
    )
    system_properties: Mapping[str, str] = Field(
        default_factory=dict, description="Forwarded system properties"
    )
    timeout_seconds: float = Field(..., gt=0, description="Effective worker timeout")
    suite: str | None = Field(default=None, description="Single suite to run")
    read_suites_from_stream: bool = Field(
        default=False, description="Worker requests suites over its command channel"
    )


def replace_fork_number(value: str, fork_number: int) -> str:
    """Substitute the fork number placeholder in a value."""
    return value.replace(FORK_NUMBER_PLACEHOLDER, str(fork_number))


def build_worker_settings(
    config: DispatchConfig,
    fork_number: int,
    *,
    bundle: str | None = None,
    suite: str | None = None,
    read_suites_from_stream: bool = False,
    provider_properties: Mapping[str, str] | None = None,
) -> WorkerSettings:
    """Build the settings of one worker from the run configuration.

    Args:
        config: Run configuration
        fork_number: Fork slot checked out for the worker
        bundle: Address of the published bundle, if the substrate needs one
        suite: Single suite to run, or None
        read_suites_from_stream: Whether the worker pulls suites itself
        provider_properties: Properties overriding the configured ones

    """
    properties = dict(
        config.provider_properties if provider_properties is None else provider_properties
    )
    properties["forkNumber"] = str(fork_number)
    if suite is not None:
        properties["suite"] = suite

    return WorkerSettings(
        fork_number=fork_number,
        properties=json.dumps(properties, sort_keys=True),
        bundle=bundle,
        arguments=[replace_fork_number(arg, fork_number) for arg in config.arg_line],
        system_properties={
            key: replace_fork_number(value, fork_number)
            for key, value in config.system_properties.items()
        },
        timeout_seconds=config.effective_timeout,
        suite=suite,
        read_suites_from_stream=read_suites_from_stream,
    )
