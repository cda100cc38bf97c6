"""Local process substrate module."""

from fork_dispatch.substrates.local.config import LocalConfig
from fork_dispatch.substrates.local.manifest import local_manifest
from fork_dispatch.substrates.local.substrate import LocalSubstrate

__all__ = ["LocalConfig", "LocalSubstrate", "local_manifest"]
