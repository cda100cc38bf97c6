"""Local process substrate implementation."""

import asyncio
import logging
import os
import shlex
import tempfile
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from pathlib import Path

from fork_dispatch.models.settings import WorkerSettings
from fork_dispatch.protocol import CommandKind, encode_command
from fork_dispatch.substrates.base import WorkerInvocation, WorkerSubstrate
from fork_dispatch.substrates.local.config import LocalConfig
from fork_dispatch.worker import CommandChannel

log = logging.getLogger(__name__)


class ProcessCommandChannel(CommandChannel):
    """Writes commands to a worker process's standard input."""

    def __init__(self, stdin: asyncio.StreamWriter | None) -> None:
        self.stdin = stdin

    def send(self, kind: CommandKind, argument: str | None = None) -> None:
        """Write a command line unless the pipe is already closed."""
        if self.stdin is None or self.stdin.is_closing():
            log.debug("Dropping %s command for a closed worker", kind)
            return
        self.stdin.write(encode_command(kind, argument).encode())


class LocalInvocation(WorkerInvocation):
    """A worker running as a child process."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        settings_file: Path,
        description: str,
    ) -> None:
        self.process = process
        self.settings_file = settings_file
        self.description = description
        self.channel = ProcessCommandChannel(process.stdin)

    async def lines(self) -> AsyncIterator[str]:
        """Yield output lines as the process writes them."""
        stdout = self.process.stdout
        if stdout is None:
            return
        while line := await read_line(stdout):
            yield line.decode(errors="replace")
        returncode = await self.process.wait()
        log.debug("Worker process %s exited with %s", self.process.pid, returncode)

    def kill(self) -> None:
        """Kill the process if it is still running."""
        if self.process.returncode is None:
            with suppress(ProcessLookupError):
                self.process.kill()

    async def close(self) -> None:
        """Close the pipes, reap the process and remove its settings file."""
        try:
            if self.process.stdin is not None and not self.process.stdin.is_closing():
                self.process.stdin.close()
            if self.process.returncode is None:
                self.kill()
                await self.process.wait()
        finally:
            self.settings_file.unlink(missing_ok=True)


@dataclass(frozen=True, kw_only=True)
class LocalSubstrate(WorkerSubstrate):
    """Runs workers as local child processes.

    The worker command receives the path of a JSON settings file as its last
    argument and speaks the wire protocol on stdin and stdout.
    """

    config: LocalConfig

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: LocalConfig
    ) -> AsyncGenerator["LocalSubstrate", None]:
        """Create substrate from configuration."""
        yield cls(config=config)

    @property
    def streams_suites(self) -> bool:
        """Local workers read suites from their standard input."""
        return True

    async def launch(self, settings: WorkerSettings) -> WorkerInvocation:
        """Write the settings file and spawn the worker process."""
        settings_file = await asyncio.to_thread(write_settings_file, settings)
        command = [*self.config.command, *settings.arguments, str(settings_file)]
        env = None if self.config.env is None else {**os.environ, **self.config.env}
        description = shlex.join(command)

        log.info("Forking worker %d: %s", settings.fork_number, description)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self.config.cwd,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=self.config.line_limit,
            )
        except OSError:
            settings_file.unlink(missing_ok=True)
            raise

        return LocalInvocation(process, settings_file, description)


def write_settings_file(settings: WorkerSettings) -> Path:
    """Write settings to a temporary file readable by the owner only."""
    fd, name = tempfile.mkstemp(
        prefix=f"fork{settings.fork_number}-", suffix=".json"
    )
    with os.fdopen(fd, "w", encoding="utf-8") as file:
        file.write(settings.model_dump_json())
    return Path(name)


async def read_line(stream: asyncio.StreamReader) -> bytes:
    """Read one line of any length from a stream.

    Lines longer than the stream limit are read in chunks instead of failing.

    Returns:
        The line including its newline, the unterminated rest of the stream,
        or an empty bytes object at end of stream

    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
        except asyncio.IncompleteReadError as e:
            chunks.append(e.partial)
        except asyncio.LimitOverrunError as e:
            chunks.append(await stream.readexactly(e.consumed))
            continue
        return b"".join(chunks)
