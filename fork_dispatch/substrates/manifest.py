"""Registration record of a worker substrate."""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

from pydantic import BaseModel

from fork_dispatch.substrates.base import WorkerSubstrate


@dataclass(frozen=True, kw_only=True)
class SubstrateManifest[ConfigT: BaseModel]:
    """What the CLI needs to open a substrate from its JSON configuration."""

    config_cls: type[ConfigT]
    substrate_factory: Callable[
        [ConfigT], AbstractAsyncContextManager[WorkerSubstrate]
    ]

    def parse_config(self, config_json: str) -> ConfigT:
        """Validate the substrate configuration given on the command line.

        Raises:
            ValidationError: If the JSON is malformed or does not fit the
                substrate's configuration

        """
        return self.config_cls.model_validate_json(config_json)
