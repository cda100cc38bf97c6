"""Packaging of classpath and suite descriptors into a deterministic bundle."""

import asyncio
import logging
import os
import stat
import tempfile
import uuid
import zipfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from fork_dispatch.blob_store import BlobStore, BlobStoreError
from fork_dispatch.errors import BundlingFailure

log = logging.getLogger(__name__)

SUITE_DESCRIPTOR_PREFIX = "suiteXml/"

# Earliest timestamp a zip entry can carry; used for every entry.
ENTRY_DATE_TIME = (1980, 1, 1, 0, 0, 0)
ENTRY_MODE = 0o644


def collect_bundle_entries(
    classpath: Sequence[Path], suite_descriptors: Sequence[Path] = ()
) -> Mapping[str, Path]:
    """Map archive paths to the files that make up a bundle.

    Regular files on the classpath are stored under their basename.
    Directories are walked and their files stored relative to the directory
    root, later directories overwriting earlier ones on collision. Suite
    descriptors are stored under ``suiteXml/``. Missing entries are ignored.

    Args:
        classpath: Ordered classpath entries (files and directories)
        suite_descriptors: Suite descriptor files

    Returns:
        Archive path to source file, sorted by archive path

    """
    directories = [entry for entry in classpath if entry.is_dir()]
    files = [entry for entry in classpath if entry.is_file()]

    targets: dict[str, Path] = {}
    for file in files:
        targets[file.name] = file

    for directory in directories:
        for path in sorted(directory.rglob("*")):
            if path.is_file():
                targets[path.relative_to(directory).as_posix()] = path

    for descriptor in suite_descriptors:
        targets[f"{SUITE_DESCRIPTOR_PREFIX}{descriptor.name}"] = descriptor

    return dict(sorted(targets.items()))


def write_bundle(entries: Mapping[str, Path], output: Path) -> None:
    """Write entries into a zip archive, identical for identical inputs."""
    with zipfile.ZipFile(output, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name in sorted(entries):
            info = zipfile.ZipInfo(name, date_time=ENTRY_DATE_TIME)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = (stat.S_IFREG | ENTRY_MODE) << 16
            archive.writestr(info, entries[name].read_bytes())


@dataclass(frozen=True, kw_only=True)
class BundleBuilder:
    """Builds the code bundle once per run and publishes it."""

    blob_store: BlobStore

    async def build_and_publish(
        self, classpath: Sequence[Path], suite_descriptors: Sequence[Path] = ()
    ) -> str:
        """Build the bundle, upload it and return its address.

        Raises:
            BundlingFailure: If any step fails; no worker can run without it

        """
        entries = collect_bundle_entries(classpath, suite_descriptors)
        log.info("Bundling %d file(s)", len(entries))

        try:
            data = await asyncio.to_thread(self._build, entries)
            address = await self.blob_store.put(f"bundle-{uuid.uuid4()}.zip", data)
        except (OSError, BlobStoreError) as e:
            raise BundlingFailure(f"Failed to build or publish bundle: {e}") from e

        log.info("Published bundle to %s", address)
        return address

    @staticmethod
    def _build(entries: Mapping[str, Path]) -> bytes:
        # mkstemp creates the file readable and writable by the owner only
        fd, name = tempfile.mkstemp(prefix="forkbundle", suffix=".zip")
        os.close(fd)
        path = Path(name)
        try:
            write_bundle(entries, path)
            return path.read_bytes()
        finally:
            path.unlink(missing_ok=True)
