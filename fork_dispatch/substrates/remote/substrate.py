"""Remote compute substrate implementation."""

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field

import aiohttp
from pydantic import ValidationError

from fork_dispatch.blob_store import BlobStore, HttpBlobStore
from fork_dispatch.errors import DispatchProtocolError, WorkerCrash
from fork_dispatch.models.settings import WorkerSettings
from fork_dispatch.protocol import CommandKind
from fork_dispatch.substrates.base import WorkerInvocation, WorkerSubstrate
from fork_dispatch.substrates.remote.config import RemoteConfig
from fork_dispatch.substrates.remote.models import (
    InvocationRequest,
    InvocationResponse,
)
from fork_dispatch.worker import CommandChannel

log = logging.getLogger(__name__)


class RemoteCommandChannel(CommandChannel):
    """Command channel of a one-shot invocation.

    A running invocation cannot receive input, so commands are only recorded.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[CommandKind, str | None]] = []

    def send(self, kind: CommandKind, argument: str | None = None) -> None:
        """Record the command."""
        log.debug("Remote worker cannot receive %s command", kind)
        self.sent.append((kind, argument))


class RemoteInvocation(WorkerInvocation):
    """A synchronous call to the compute endpoint.

    Output becomes available only when the call returns; it is then replayed
    line by line.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        url: str,
        settings: WorkerSettings,
        request_timeout: float,
    ) -> None:
        self.session = session
        self.url = url
        self.settings = settings
        self.request_timeout = request_timeout
        self.description = f"POST {url} (fork {settings.fork_number})"
        self.channel = RemoteCommandChannel()

    async def lines(self) -> AsyncIterator[str]:
        """Invoke the function and yield its captured output lines."""
        request = InvocationRequest(
            properties=self.settings.properties,
            bundle=self.settings.bundle,
            arguments=self.settings.arguments,
            system_properties=self.settings.system_properties,
            timeout_seconds=self.settings.timeout_seconds,
        )

        log.info("Invoking %s", self.description)
        try:
            async with self.session.post(
                self.url,
                json=request.model_dump(mode="json"),
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as response:
                if response.status != 200:
                    text = await response.text()
                    raise WorkerCrash(
                        f"Remote invocation failed: {response.status} {text}",
                        settings=self.settings,
                        command=self.description,
                    )
                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise DispatchProtocolError(
                        f"Malformed response from {self.description}: {e}"
                    ) from e
        except (aiohttp.ClientError, TimeoutError) as e:
            raise WorkerCrash(
                f"Remote invocation failed: {e!r}",
                settings=self.settings,
                command=self.description,
            ) from e

        if data is None:
            raise DispatchProtocolError(f"Null response from {self.description}")

        try:
            result = InvocationResponse.model_validate(data)
        except ValidationError as e:
            raise DispatchProtocolError(
                f"Malformed response from {self.description}: {e}"
            ) from e

        lines = result.stdout.split("\n")
        if lines[-1] == "":
            lines.pop()
        for line in lines:
            yield line

    def kill(self) -> None:
        """Remote invocations run to completion; nothing to kill."""
        log.warning("Cannot kill %s; waiting for it to return", self.description)


@dataclass(frozen=True, kw_only=True)
class RemoteSubstrate(WorkerSubstrate):
    """Runs each worker as one invocation of a remote function."""

    config: RemoteConfig
    session: aiohttp.ClientSession = field(repr=False)
    upload_session: aiohttp.ClientSession | None = field(default=None, repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: RemoteConfig
    ) -> AsyncGenerator["RemoteSubstrate", None]:
        """Create substrate with managed session lifecycle."""
        headers = {"Authorization": f"Bearer {config.token.get_secret_value()}"}
        async with AsyncExitStack() as stack:
            session = await stack.enter_async_context(
                aiohttp.ClientSession(base_url=config.api_base_url, headers=headers)
            )
            upload_session = None
            if config.bundle_store_url is not None:
                upload_session = await stack.enter_async_context(
                    aiohttp.ClientSession()
                )
            yield cls(config=config, session=session, upload_session=upload_session)

    @property
    def blob_store(self) -> BlobStore | None:
        """Bundles are uploaded to the configured bundle store."""
        if self.upload_session is None or self.config.bundle_store_url is None:
            return None
        return HttpBlobStore(
            session=self.upload_session, base_url=self.config.bundle_store_url
        )

    async def launch(self, settings: WorkerSettings) -> WorkerInvocation:
        """Prepare the invocation; the call is made when output is read."""
        return RemoteInvocation(
            self.session,
            f"functions/{self.config.function_name}/invocations",
            settings,
            request_timeout=settings.timeout_seconds
            + self.config.request_timeout_margin,
        )
