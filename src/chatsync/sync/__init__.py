"""Session tracking, the HTTP client, and the polling sync controller."""

from chatsync.sync.client import ChatApiClient
from chatsync.sync.controller import CancellationToken, ChatService, SyncController
from chatsync.sync.retry import backoff_delay, retry_with_backoff
from chatsync.sync.session import SessionTracker
from chatsync.sync.states import ConnectionState, SyncPhase

__all__ = [
    "CancellationToken",
    "ChatApiClient",
    "ChatService",
    "ConnectionState",
    "SessionTracker",
    "SyncController",
    "SyncPhase",
    "backoff_delay",
    "retry_with_backoff",
]
