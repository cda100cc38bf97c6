"""Remote compute substrate manifest."""

from fork_dispatch.substrates.manifest import SubstrateManifest
from fork_dispatch.substrates.remote.config import RemoteConfig
from fork_dispatch.substrates.remote.substrate import RemoteSubstrate

remote_manifest = SubstrateManifest(
    config_cls=RemoteConfig,
    substrate_factory=RemoteSubstrate.from_config,
)
