"""Blob stores that bundles are published to."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

import aiohttp

log = logging.getLogger(__name__)


class BlobStoreError(Exception):
    """Raised when a blob cannot be stored."""


class BlobStore(ABC):
    """Store for immutable named blobs.

    Implementations must accept concurrent independent writes. Callers avoid
    overwriting each other by putting a per-run unique component in the name.
    """

    @abstractmethod
    async def put(self, name: str, data: bytes) -> str:
        """Store a blob and return its address."""


@dataclass(frozen=True, kw_only=True)
class FileBlobStore(BlobStore):
    """Blob store backed by a local directory."""

    root: Path

    async def put(self, name: str, data: bytes) -> str:
        """Write the blob under the root directory and return a file URI."""
        target = self.root / name
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as e:
            raise BlobStoreError(f"Failed to write blob {target}: {e}") from e
        return target.resolve().as_uri()

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)


@dataclass(frozen=True, kw_only=True)
class HttpBlobStore(BlobStore):
    """Blob store accepting HTTP PUT uploads, such as a presigned bucket URL."""

    session: aiohttp.ClientSession = field(repr=False)
    base_url: str

    async def put(self, name: str, data: bytes) -> str:
        """Upload the blob and return its URL."""
        url = f"{self.base_url.rstrip('/')}/{name}"
        log.info("Uploading %d bytes to %s", len(data), url)

        try:
            async with self.session.put(
                url,
                data=data,
                headers={"Content-Type": "application/zip"},
            ) as response:
                if response.status not in {200, 201, 204}:
                    text = await response.text()
                    raise BlobStoreError(
                        f"Failed to upload blob: {response.status} {text}"
                    )
        except aiohttp.ClientError as e:
            raise BlobStoreError(f"Failed to upload blob: {e}") from e

        return url
