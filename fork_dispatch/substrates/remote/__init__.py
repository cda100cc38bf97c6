"""Remote compute substrate module."""

from fork_dispatch.substrates.remote.config import RemoteConfig
from fork_dispatch.substrates.remote.manifest import remote_manifest
from fork_dispatch.substrates.remote.substrate import RemoteSubstrate

__all__ = ["RemoteConfig", "RemoteSubstrate", "remote_manifest"]
