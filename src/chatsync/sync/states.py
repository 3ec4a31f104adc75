"""State enums for the session tracker and sync controller."""

from enum import Enum


class ConnectionState(Enum):
    """Reachability of the chat server as seen by the session tracker."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


class SyncPhase(Enum):
    """Where the polling loop currently is."""

    IDLE = "idle"
    POLLING = "polling"
    BACKOFF = "backoff"
