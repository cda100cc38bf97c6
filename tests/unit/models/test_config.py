"""Tests for dispatch configuration."""

import pytest
from pydantic import ValidationError

from fork_dispatch.models.config import DEFAULT_TIMEOUT_SECONDS, DispatchConfig


def test_defaults() -> None:
    """Defaults to one reused worker without failure threshold."""
    config = DispatchConfig()

    assert config.fork_count == 1
    assert config.reuse_forks
    assert config.skip_after_failure_count == 0
    assert config.suites is None
    assert config.shutdown == "default"


def test_effective_timeout_applies_ceiling_when_unset() -> None:
    """An unset timeout means the ceiling, not no timeout."""
    assert DispatchConfig().effective_timeout == DEFAULT_TIMEOUT_SECONDS
    assert DispatchConfig(timeout_seconds=30).effective_timeout == 30


@pytest.mark.parametrize(
    "data",
    [
        {"fork_count": 0},
        {"timeout_seconds": 0},
        {"skip_after_failure_count": -1},
        {"shutdown": "later"},
        {"unknown": True},
    ],
)
def test_rejects_invalid_values(data: dict[str, object]) -> None:
    """Rejects values outside their domain."""
    with pytest.raises(ValidationError):
        DispatchConfig.model_validate(data)


def test_per_suite_forking_requires_suites() -> None:
    """Workers cannot be forked per suite when suites are not known."""
    with pytest.raises(ValidationError, match="requires an explicit list of suites"):
        DispatchConfig(reuse_forks=False)


def test_parses_json() -> None:
    """Loads from JSON as given on the command line."""
    config = DispatchConfig.model_validate_json(
        '{"fork_count": 2, "suites": ["A", "B"], "classpath": ["lib/a.jar"]}'
    )

    assert config.fork_count == 2
    assert list(config.suites or []) == ["A", "B"]
    assert [path.name for path in config.classpath] == ["a.jar"]
