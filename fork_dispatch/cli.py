"""CLI entry point for dispatching test suites to workers."""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from pydantic import ValidationError

from fork_dispatch.dispatcher import Dispatcher
from fork_dispatch.errors import DispatchError
from fork_dispatch.models.config import DispatchConfig
from fork_dispatch.models.result import RunResult
from fork_dispatch.substrates.loading import (
    SubstrateNotFoundError,
    load_substrate_manifest,
)

EXIT_SUCCESS = 0
EXIT_TEST_FAILURE = 1
EXIT_DISPATCH_ERROR = 2


def format_output(result: RunResult) -> dict[str, Any]:
    """Format the run result for JSON output."""
    return {
        "completed": result.completed,
        "errors": result.errors,
        "failures": result.failures,
        "skipped": result.skipped,
        "timeout": result.timeout,
    }


async def run(
    substrate_key: str,
    substrate_config_json: str,
    dispatch_config_json: str,
) -> int:
    """Dispatch the configured suites and return exit code."""
    log = logging.getLogger("fork_dispatch")

    try:
        log.info("Loading substrate: %s", substrate_key)
        manifest = load_substrate_manifest(substrate_key)
        substrate_config = manifest.parse_config(substrate_config_json)
        config = DispatchConfig.model_validate_json(dispatch_config_json)
    except (SubstrateNotFoundError, ValidationError) as e:
        log.error("Invalid configuration: %s", e)
        return EXIT_DISPATCH_ERROR

    try:
        async with manifest.substrate_factory(substrate_config) as substrate:
            dispatcher = Dispatcher(config=config, substrate=substrate)
            result = await dispatcher.run()
    except DispatchError as e:
        log.error("Dispatch failed: %s", e, exc_info=e)
        return EXIT_DISPATCH_ERROR

    print(json.dumps(format_output(result), indent=2))

    return EXIT_SUCCESS if result.is_success else EXIT_TEST_FAILURE


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Dispatch test suites to local or remote workers"
    )
    parser.add_argument(
        "--substrate",
        required=True,
        help="Substrate key (local, remote)",
    )
    parser.add_argument(
        "--substrate-config",
        required=True,
        help="JSON configuration for the substrate",
    )
    parser.add_argument(
        "--dispatch-config",
        required=True,
        help="JSON configuration for the dispatch run",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log worker output and protocol traffic",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    exit_code = asyncio.run(
        run(
            substrate_key=args.substrate,
            substrate_config_json=args.substrate_config,
            dispatch_config_json=args.dispatch_config,
        )
    )
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
