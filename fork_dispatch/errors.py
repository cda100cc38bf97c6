"""Errors raised while dispatching workers."""

from fork_dispatch.models.settings import WorkerSettings


class DispatchError(Exception):
    """Base exception for fatal dispatch errors."""


class BundlingFailure(DispatchError):
    """Raised when the code bundle cannot be built or published."""


class DispatchProtocolError(DispatchError):
    """Raised when a worker produces no result or a malformed response."""


class InterruptedWait(DispatchError):
    """Raised when the dispatch is cancelled while awaiting workers."""


class WorkerCrash(DispatchError):
    """Raised when a worker stops without saying goodbye or reports an error.

    Attributes:
        payload: Error trace reported by the worker, if any
        settings: Settings of the invocation that crashed
        command: Description of the invocation, for diagnosis

    """

    def __init__(
        self,
        message: str,
        *,
        payload: str | None = None,
        settings: WorkerSettings | None = None,
        command: str | None = None,
    ) -> None:
        details = [message]
        if payload:
            details.append(payload)
        if command:
            details.append(f"Command was {command}")
        super().__init__("\n".join(details))
        self.payload = payload
        self.settings = settings
        self.command = command


class InvalidStateTransition(ValueError):
    """Raised when a worker handle is moved to an illegal state."""
