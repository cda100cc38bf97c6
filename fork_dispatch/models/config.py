"""Models for dispatch configuration."""

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Literal, Self

from pydantic import Field, model_validator

from fork_dispatch.models.base import Model

# Applied when no timeout is configured; workers are never allowed to run forever.
DEFAULT_TIMEOUT_SECONDS = 15 * 60 * 60

type ShutdownKind = Literal["default", "exit", "kill"]


class DispatchConfig(Model):
    """Configuration of one dispatch run."""

    fork_count: int = Field(default=1, ge=1, description="Maximum concurrent workers")
    reuse_forks: bool = Field(
        default=True, description="Whether one worker may run several suites"
    )
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Per-worker inactivity timeout (None applies the ceiling)",
    )
    skip_after_failure_count: int = Field(
        default=0,
        ge=0,
        description="Skip remaining tests after this many failures (0 disables)",
    )
    provider_properties: Mapping[str, str] = Field(
        default_factory=dict, description="Serialized test provider configuration"
    )
    system_properties: Mapping[str, str] = Field(
        default_factory=dict, description="System properties forwarded to workers"
    )
    arg_line: Sequence[str] = Field(
        default_factory=list,
        description="Extra worker arguments; ${forkNumber} is substituted",
    )
    suites: Sequence[str] | None = Field(
        default=None,
        description="Suites to run (None means the worker discovers them)",
    )
    suite_descriptors: Sequence[Path] = Field(
        default_factory=list, description="Suite descriptor files shipped to workers"
    )
    classpath: Sequence[Path] = Field(
        default_factory=list, description="Ordered classpath entries to bundle"
    )
    shutdown: ShutdownKind = Field(
        default="default", description="Signal sent to workers on abnormal exit"
    )

    @model_validator(mode="after")
    def check_suites_enumerable(self) -> Self:
        """Reject per-suite forking when the suites are not known up front."""
        if not self.reuse_forks and self.suites is None:
            raise ValueError("reuse_forks=False requires an explicit list of suites")
        return self

    @property
    def effective_timeout(self) -> float:
        """Timeout applied to each worker, in seconds."""
        if self.timeout_seconds is None:
            return DEFAULT_TIMEOUT_SECONDS
        return self.timeout_seconds
