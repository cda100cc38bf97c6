"""Pydantic models for the remote compute endpoint."""

from collections.abc import Mapping, Sequence

from pydantic import BaseModel


class InvocationRequest(BaseModel):
    """Body of a function invocation."""

    properties: str
    bundle: str | None
    arguments: Sequence[str]
    system_properties: Mapping[str, str]
    timeout_seconds: float


class InvocationResponse(BaseModel):
    """Captured output of a finished invocation."""

    stdout: str
