"""Exception hierarchy for the sync engine."""

from __future__ import annotations


class ChatSyncError(Exception):
    """Base class for all chatsync errors."""


class ValidationError(ChatSyncError):
    """Malformed input handed to a cache mutator or controller action."""


class NetworkError(ChatSyncError):
    """The server could not be reached (timeout, refused connection, ...)."""


class ServerError(ChatSyncError):
    """The server answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"HTTP {status_code}")

    @property
    def retryable(self) -> bool:
        """5xx responses are worth retrying; 4xx responses are not."""
        return self.status_code >= 500


class EndpointNotImplementedError(ServerError):
    """The server does not implement the endpoint (404/405/501)."""

    @property
    def retryable(self) -> bool:
        return False


class PayloadError(ChatSyncError):
    """A successful response carried a body of the wrong shape."""


def is_retryable(exc: BaseException) -> bool:
    """Return True if *exc* should drive backoff rather than fail fast."""
    if isinstance(exc, NetworkError):
        return True
    if isinstance(exc, ServerError):
        return exc.retryable
    return False
