"""Session tracking: server epoch, connectivity and the sync cursor."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping

from chatsync.cache.base import Clock, ObservableStore
from chatsync.cache.messages import MessageCache
from chatsync.cache.participants import ParticipantCache
from chatsync.cache.persistence import PersistenceAdapter
from chatsync.errors import PayloadError
from chatsync.sync.states import ConnectionState

logger = logging.getLogger(__name__)

ResetListener = Callable[[], None]


class SessionTracker(ObservableStore):
    """Holds the server session id, API version and ``last_sync_cursor``.

    The tracker is the only writer of the cursor.  When the server reports
    a session id different from the stored one, its backing state has been
    reset: both caches are cleared, the cursor restarts at the current time
    and reset listeners (the sync controller) are told to restart polling.
    """

    storage_key = "session"
    schema_version = 1

    def __init__(
        self,
        messages: MessageCache,
        participants: ParticipantCache,
        persistence: PersistenceAdapter | None = None,
        namespace: str = "chat",
        clock: Clock = time.time,
    ) -> None:
        super().__init__(persistence=persistence, namespace=namespace, clock=clock)
        self._messages = messages
        self._participants = participants
        self._reset_listeners: list[ResetListener] = []
        self.session_id = ""
        self.api_version = 0
        self.state = ConnectionState.DISCONNECTED
        self.consecutive_failures = 0
        self._cursor = self._now_ms()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self.state in (ConnectionState.CONNECTED, ConnectionState.DEGRADED)

    @property
    def last_sync_cursor(self) -> int:
        return self._cursor

    def on_reset(self, listener: ResetListener) -> Callable[[], None]:
        """Register a callback run after a session rollover invalidation."""
        self._reset_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._reset_listeners:
                self._reset_listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def begin_connect(self) -> None:
        self._transition(ConnectionState.CONNECTING)

    def apply_info(self, info: Any) -> bool:
        """Record a ``GET /info`` response.

        Returns True if the session rolled over and caches were invalidated.
        """
        if not isinstance(info, Mapping):
            raise PayloadError(f"server info is not an object: {info!r}")
        session_id = info.get("sessionUuid") or info.get("sessionId")
        if not session_id:
            raise PayloadError(f"server info without session id: {info!r}")
        session_id = str(session_id)

        api_version = info.get("apiVersion", 0)
        if not isinstance(api_version, int) or isinstance(api_version, bool):
            api_version = 0
        if self.api_version and api_version != self.api_version:
            logger.warning("Server API version changed: %d -> %d", self.api_version, api_version)

        rolled_over = bool(self.session_id) and session_id != self.session_id
        previous = self.session_id
        self.session_id = session_id
        self.api_version = api_version

        if rolled_over:
            logger.warning("Session rollover %s -> %s, invalidating caches", previous[:8], session_id[:8])
            self.invalidate()
        else:
            logger.info("Session %s (api v%d)", session_id[:8], api_version)

        self._transition(ConnectionState.CONNECTED)
        return rolled_over

    def invalidate(self) -> None:
        """Clear both caches, restart the cursor and notify reset listeners."""
        self._participants.clear()
        self._messages.clear()
        self._cursor = self._now_ms()
        self.consecutive_failures = 0
        self._committed()
        for listener in list(self._reset_listeners):
            listener()

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self._transition(ConnectionState.CONNECTED)

    def record_failure(self, ceiling: int) -> ConnectionState:
        """Count a failed sync attempt against *ceiling*.

        Reaching the ceiling degrades the connection; exceeding it
        disconnects.
        """
        self.consecutive_failures += 1
        if self.consecutive_failures > ceiling:
            self._transition(ConnectionState.DISCONNECTED)
        elif self.consecutive_failures >= ceiling:
            self._transition(ConnectionState.DEGRADED)
        return self.state

    def mark_disconnected(self) -> None:
        self._transition(ConnectionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------------

    def advance_cursor(self, timestamp: int | None) -> int:
        """Move the cursor forward to *timestamp*; it never moves back."""
        if timestamp is not None and timestamp > self._cursor:
            self._cursor = timestamp
            self._committed()
        return self._cursor

    def reset_cursor(self) -> None:
        self._cursor = self._now_ms()
        self._committed()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "apiVersion": self.api_version,
            "lastSyncCursor": self._cursor,
        }

    def restore(self, state: dict[str, Any]) -> None:
        self.session_id = str(state.get("sessionId") or "")
        self.api_version = int(state.get("apiVersion") or 0)
        self._cursor = int(state["lastSyncCursor"])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        logger.info("Connection %s -> %s", self.state.value, state.value)
        self.state = state
        self._committed()
