"""Local process substrate manifest."""

from fork_dispatch.substrates.local.config import LocalConfig
from fork_dispatch.substrates.local.substrate import LocalSubstrate
from fork_dispatch.substrates.manifest import SubstrateManifest

local_manifest = SubstrateManifest(
    config_cls=LocalConfig,
    substrate_factory=LocalSubstrate.from_config,
)
