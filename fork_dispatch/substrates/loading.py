"""Lookup of installed substrates by key."""

from importlib.metadata import entry_points
from typing import Any

from fork_dispatch.substrates.manifest import SubstrateManifest

# Packages register their substrates under this group, keyed by name
ENTRY_POINT_GROUP = "fork_dispatch.substrates"


class SubstrateNotFoundError(LookupError):
    """No installed package provides the requested substrate."""


def installed_substrates() -> list[str]:
    """Keys of every installed substrate, sorted."""
    return sorted({entry.name for entry in entry_points(group=ENTRY_POINT_GROUP)})


def load_substrate_manifest(key: str) -> SubstrateManifest[Any]:
    """Resolve the manifest of the substrate workers run on.

    Args:
        key: Substrate key, ``local`` and ``remote`` ship with the package

    Raises:
        SubstrateNotFoundError: If no installed package provides ``key``

    """
    matches = entry_points(group=ENTRY_POINT_GROUP, name=key)
    if not matches:
        raise SubstrateNotFoundError(
            f"Unknown substrate '{key}', installed substrates: "
            + ", ".join(installed_substrates())
        )

    manifest: SubstrateManifest[Any] = next(iter(matches)).load()
    return manifest
