"""Abstract base classes for worker execution substrates."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass

from fork_dispatch.blob_store import BlobStore
from fork_dispatch.models.settings import WorkerSettings
from fork_dispatch.worker import CommandChannel


class WorkerInvocation(ABC):
    """One running execution of a worker.

    The output is exposed as an ordered sequence of lines whether it arrives
    live from a process or at once from a captured response.
    """

    channel: CommandChannel
    description: str

    @abstractmethod
    def lines(self) -> AsyncIterator[str]:
        """Iterate over the worker's output lines until it ends."""

    @abstractmethod
    def kill(self) -> None:
        """Forcibly stop the worker, if the substrate allows it."""

    async def close(self) -> None:
        """Release resources held by the invocation."""


@dataclass(frozen=True, kw_only=True)
class WorkerSubstrate(ABC):
    """Abstract base for the places workers run.

    Substrates that stream suites keep one worker alive for many suites and
    feed it over its command channel. The others run one suite per
    invocation.
    """

    @property
    def streams_suites(self) -> bool:
        """Whether a worker can receive suites while it runs."""
        return False

    @property
    def blob_store(self) -> BlobStore | None:
        """Store to publish the code bundle to, if workers need one."""
        return None

    @abstractmethod
    async def launch(self, settings: WorkerSettings) -> WorkerInvocation:
        """Start a worker with the given settings.

        Args:
            settings: Settings of the worker

        Returns:
            The running invocation

        """
