"""Configuration for the local process substrate."""

from collections.abc import Mapping, Sequence
from pathlib import Path

from pydantic import BaseModel, Field


class LocalConfig(BaseModel):
    """Configuration for the local process substrate."""

    command: Sequence[str] = Field(..., min_length=1)
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    # Read buffer size for worker output, in bytes; longer lines are joined
    line_limit: int = 1024 * 1024
