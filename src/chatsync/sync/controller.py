"""Polling loop that keeps the caches in step with the server."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Mapping, Protocol, TypeVar

from chatsync.cache.messages import MessageCache
from chatsync.cache.participants import ParticipantCache
from chatsync.config.schema import BootstrapConfig, PollingConfig
from chatsync.entities.message import LocalOnly, Message, MessageStatus
from chatsync.entities.normalizer import message_timestamp, normalize_message
from chatsync.entities.participant import LOCAL_USER_ID
from chatsync.entities.reactions import has_reacted
from chatsync.errors import (
    ChatSyncError,
    EndpointNotImplementedError,
    NetworkError,
    PayloadError,
    ServerError,
    is_retryable,
)
from chatsync.sync.retry import backoff_delay, retry_with_backoff
from chatsync.sync.session import SessionTracker
from chatsync.sync.states import ConnectionState, SyncPhase

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONNECTION_LOST = "Connection lost. Trying to reconnect..."
SEND_FAILED = "Failed to send message. Please try again."
SEND_RATE_LIMITED = "Too many messages sent. Please wait a moment."


class ChatService(Protocol):
    """The slice of the API client the controller depends on."""

    async def get_info(self) -> dict[str, Any]: ...

    async def get_messages(self, since: int | None = None) -> list[Any]: ...

    async def get_participants(self, since: int | None = None) -> list[Any]: ...

    async def send_message(self, text: str) -> dict[str, Any]: ...

    async def add_reaction(self, message_id: str, emoji: str) -> Any: ...

    async def remove_reaction(self, message_id: str, emoji: str) -> Any: ...


class CancellationToken:
    """Marks one polling epoch.  Results from a cancelled epoch are dropped."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class SyncController:
    """Drives delta polling and the network side of local actions.

    At most one sync cycle runs at a time.  Network awaits are the only
    suspension points; every cache write happens synchronously after the
    cycle has checked that its cancellation token is still current.
    """

    def __init__(
        self,
        client: ChatService,
        messages: MessageCache,
        participants: ParticipantCache,
        session: SessionTracker,
        config: PollingConfig | None = None,
        bootstrap_config: BootstrapConfig | None = None,
        request_timeout: float = 10.0,
        local_user_id: str = LOCAL_USER_ID,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._messages = messages
        self._participants = participants
        self._session = session
        self.config = config or PollingConfig()
        self.bootstrap_config = bootstrap_config or BootstrapConfig()
        self.request_timeout = request_timeout
        self.local_user_id = local_user_id
        self._clock = clock

        self.phase = SyncPhase.IDLE
        self.retry_count = 0
        self.last_error: str | None = None
        self.last_exception: Exception | None = None

        self._token = CancellationToken()
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._restart_requested = False
        self._task: asyncio.Task[None] | None = None
        self._last_info_check: float | None = None
        self._reactions_supported = True
        self._closed = False

        session.on_reset(self._on_session_reset)

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def connected(self) -> bool:
        return self._session.connected

    @property
    def connection_state(self) -> ConnectionState:
        return self._session.state

    def next_delay(self) -> float:
        """Seconds until the next scheduled cycle."""
        if self.retry_count == 0:
            return self.config.poll_interval
        return backoff_delay(
            self.config.poll_interval,
            self.config.backoff_multiplier,
            self.retry_count,
            self.config.max_retries,
            self.config.max_backoff,
        )

    def status(self) -> dict[str, Any]:
        return {
            "connection": self._session.state.value,
            "phase": self.phase.value,
            "polling": self.is_polling,
            "retry_count": self.retry_count,
            "last_sync_cursor": self._session.last_sync_cursor,
            "last_error": self.last_error,
            "messages": len(self._messages),
            "participants": len(self._participants),
        }

    # ------------------------------------------------------------------
    # Polling lifecycle
    # ------------------------------------------------------------------

    def start_polling(self) -> None:
        """Start the background polling task (no-op if already running)."""
        if self._closed:
            logger.warning("start_polling called on a closed controller")
            return
        if not self.config.enabled:
            logger.info("Polling disabled by configuration")
            return
        if self.is_polling:
            return

        logger.info("Starting polling (%.1fs interval)", self.config.poll_interval)
        self._token = CancellationToken()
        self._wake.clear()
        self._restart_requested = False
        self._task = asyncio.get_running_loop().create_task(
            self._poll_loop(), name="chatsync-poll"
        )

    async def stop_polling(self) -> None:
        """Stop polling; results of an in-flight cycle will be discarded."""
        self._token.cancel()
        self._token = CancellationToken()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            logger.info("Stopping polling")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.phase = SyncPhase.IDLE

    async def close(self) -> None:
        """Tear down: stop polling and ignore any late network results."""
        self._closed = True
        await self.stop_polling()

    async def sync_once(self) -> bool:
        """Run one cycle now (after any cycle already in flight)."""
        async with self._lock:
            return await self._run_cycle()

    async def force_sync(self) -> bool:
        """Sync immediately, bypassing the backoff timer.

        The retry counter is reset only if the cycle succeeds.  The polling
        loop re-arms its timer afterwards.
        """
        logger.info("Forcing immediate sync")
        ok = await self.sync_once()
        self._wake.set()
        return ok

    async def _poll_loop(self) -> None:
        while not self._closed:
            try:
                await self.sync_once()
            except Exception:
                logger.exception("Unexpected error during sync cycle")
            # The cycle that just ran already used the current epoch.
            self._restart_requested = False

            while True:
                delay = self.next_delay()
                woken = await self._sleep(delay)
                if not woken or self._restart_requested:
                    self._restart_requested = False
                    break
                # Woken by force_sync: wait a full interval from now.

    async def _sleep(self, delay: float) -> bool:
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _on_session_reset(self) -> None:
        """Start a new epoch after a session rollover cleared the caches."""
        self._token.cancel()
        self._token = CancellationToken()
        self.retry_count = 0
        if self.is_polling:
            self._restart_requested = True
            self._wake.set()

    # ------------------------------------------------------------------
    # Sync cycle
    # ------------------------------------------------------------------

    async def bootstrap(self) -> bool:
        """Handshake and load the full message and participant lists."""
        async with self._lock:
            self.phase = SyncPhase.POLLING
            try:
                return await self._bootstrap()
            finally:
                self.phase = SyncPhase.IDLE

    async def _bootstrap(self) -> bool:
        try:
            if not await self._refresh_session(force=True):
                return False
        except ChatSyncError as exc:
            self.last_exception = exc
            logger.error("Bootstrap handshake failed: %s", exc)
            self._session.mark_disconnected()
            return False

        token = self._token
        policy = self.bootstrap_config
        results = await asyncio.gather(
            retry_with_backoff(
                self._bounded_call,
                self._client.get_messages,
                max_attempts=policy.max_attempts,
                base_delay=policy.base_delay,
                max_delay=policy.max_delay,
            ),
            retry_with_backoff(
                self._bounded_call,
                self._client.get_participants,
                max_attempts=policy.max_attempts,
                base_delay=policy.base_delay,
                max_delay=policy.max_delay,
            ),
            return_exceptions=True,
        )
        if not self._is_current(token):
            logger.info("Discarding bootstrap results from a cancelled epoch")
            return False

        messages, participants = _raise_cancellations(results)
        if isinstance(participants, Exception):
            logger.warning("Loading participants failed: %s", participants)
        else:
            self._participants.replace_all(participants)

        if isinstance(messages, Exception):
            self.last_exception = messages
            logger.error("Loading messages failed: %s", messages)
            return False

        self._messages.replace_all(messages)
        self._session.advance_cursor(_newest_timestamp(messages))
        self._session.record_success()
        logger.info(
            "Bootstrap loaded %d messages and %d participants",
            len(self._messages),
            len(self._participants),
        )
        return True

    async def _run_cycle(self) -> bool:
        self.phase = SyncPhase.POLLING
        started = time.monotonic()

        try:
            if not await self._refresh_session():
                self.phase = SyncPhase.IDLE
                return False
        except ChatSyncError as exc:
            return self._cycle_failed([exc])

        token = self._token
        cursor = self._session.last_sync_cursor
        results = await asyncio.gather(
            self._bounded(self._client.get_messages(since=cursor)),
            self._bounded(self._client.get_participants(since=cursor)),
            return_exceptions=True,
        )
        if not self._is_current(token):
            logger.info("Discarding sync results from a cancelled epoch")
            self.phase = SyncPhase.IDLE
            return False

        messages, participants = _raise_cancellations(results)
        errors: list[Exception] = []

        # Both deltas are applied in the same synchronous step.
        if isinstance(messages, Exception):
            errors.append(messages)
        else:
            inserted, updated = self._messages.apply_delta(messages)
            self._session.advance_cursor(_newest_timestamp(messages))
            if inserted or updated:
                logger.info("Received %d new and %d updated messages", inserted, updated)

        if isinstance(participants, Exception):
            errors.append(participants)
        else:
            changed = self._participants.apply_delta(participants)
            if changed:
                logger.info("Received %d participant updates", changed)

        if len(errors) == 2:
            return self._cycle_failed(errors)
        if errors:
            logger.warning("Partial sync failure: %s", errors[0])

        self._cycle_succeeded()
        logger.debug("Sync completed in %.0fms", (time.monotonic() - started) * 1000)
        return True

    async def _refresh_session(self, force: bool = False) -> bool:
        """Check ``/info`` when due.  Returns False if the epoch was cancelled."""
        now = self._clock()
        due = (
            force
            or not self._session.connected
            or self._last_info_check is None
            or now - self._last_info_check >= self.config.info_interval
        )
        if not due:
            return True

        if not self._session.connected:
            self._session.begin_connect()

        token = self._token
        info = await self._bounded(self._client.get_info())
        if not self._is_current(token):
            return False

        self._last_info_check = now
        self._session.apply_info(info)
        return True

    def _cycle_succeeded(self) -> None:
        if self.retry_count:
            logger.info("Sync recovered after %d failed attempt(s)", self.retry_count)
        self.retry_count = 0
        self._session.record_success()
        if self.last_error == CONNECTION_LOST:
            self.last_error = None
        self.phase = SyncPhase.IDLE

    def _cycle_failed(self, errors: list[Exception]) -> bool:
        self.last_exception = errors[0]

        if not any(is_retryable(exc) for exc in errors):
            logger.error("Sync failed with a non-retryable error: %s", errors[0])
            self.phase = SyncPhase.IDLE
            return False

        self.retry_count += 1
        state = self._session.record_failure(self.config.max_retries)
        if state is ConnectionState.DISCONNECTED:
            if self.last_error != CONNECTION_LOST:
                logger.warning("Too many sync failures, marking as disconnected")
            self.last_error = CONNECTION_LOST

        self.phase = SyncPhase.BACKOFF
        logger.warning(
            "Sync failed (attempt %d/%d): %s -- next attempt in %.1fs",
            self.retry_count,
            self.config.max_retries,
            errors[0],
            self.next_delay(),
        )
        return False

    # ------------------------------------------------------------------
    # Local actions
    # ------------------------------------------------------------------

    async def send_message(self, text: str) -> Message | None:
        """Insert *text* optimistically and send it.

        Returns the confirmed message, the ``failed`` message if delivery
        failed, or ``None`` if *text* was rejected.
        """
        if not isinstance(text, str) or not text.strip():
            logger.warning("send_message: message text is required")
            return None

        text = text.strip()
        local = Message(
            identity=LocalOnly(f"local-{uuid.uuid4().hex}"),
            text=text,
            author_id=self.local_user_id,
            created_at=int(self._clock() * 1000),
            status=MessageStatus.SENDING,
        )
        if not self._messages.insert_optimistic(local):
            return None
        return await self._deliver(local.id, text)

    async def retry_send(self, message_id: str) -> Message | None:
        """Send a ``failed`` local message again."""
        message = self._messages.get(message_id)
        if message is None or not message.is_local or message.status is not MessageStatus.FAILED:
            logger.warning("retry_send: %s is not a failed local message", message_id)
            return None
        self._messages.set_status(message_id, MessageStatus.SENDING)
        return await self._deliver(message_id, message.text)

    def discard_message(self, message_id: str) -> bool:
        """Drop a local message that is not currently being sent."""
        message = self._messages.get(message_id)
        if message is None or not message.is_local or message.status is MessageStatus.SENDING:
            logger.warning("discard_message: %s cannot be discarded", message_id)
            return False
        return self._messages.remove(message_id)

    async def _deliver(self, temp_id: str, text: str) -> Message | None:
        try:
            record = await self._bounded(self._client.send_message(text))
            server = normalize_message(record, int(self._clock() * 1000))
            if server is None:
                raise PayloadError(f"unusable send response: {record!r}")
        except ChatSyncError as exc:
            if self._closed:
                return None
            self.last_exception = exc
            rate_limited = isinstance(exc, ServerError) and exc.status_code == 429
            self.last_error = SEND_RATE_LIMITED if rate_limited else SEND_FAILED
            logger.warning("Sending %s failed: %s", temp_id, exc)
            self._messages.set_status(temp_id, MessageStatus.FAILED)
            return self._messages.get(temp_id)

        if self._closed:
            logger.info("Controller closed, dropping confirmation for %s", temp_id)
            return None

        self._messages.reconcile_optimistic(temp_id, server)
        logger.info("Message %s confirmed as %s", temp_id, server.id)
        return self._messages.get(server.id)

    async def toggle_reaction(self, message_id: str, emoji: str) -> bool:
        """Toggle the local user's *emoji* reaction.

        The local state changes immediately.  The server is told afterwards;
        if it has no reaction endpoint the reaction simply stays local.
        """
        message = self._messages.get(message_id)
        if message is None:
            logger.warning("toggle_reaction: message %s not found", message_id)
            return False

        adding = not has_reacted(message.reactions, emoji, self.local_user_id)
        if not self._messages.toggle_reaction(message_id, emoji, self.local_user_id):
            return False
        if message.is_local or not self._reactions_supported:
            return True

        try:
            if adding:
                await self._bounded(self._client.add_reaction(message_id, emoji))
            else:
                await self._bounded(self._client.remove_reaction(message_id, emoji))
        except EndpointNotImplementedError:
            logger.info("Reaction endpoint not implemented, keeping reactions local")
            self._reactions_supported = False
        except ChatSyncError as exc:
            logger.warning("Reaction sync for %s failed, kept locally: %s", message_id, exc)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_current(self, token: CancellationToken) -> bool:
        return not self._closed and not token.cancelled and token is self._token

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        """Await a network call under the request timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise NetworkError(f"request timed out after {self.request_timeout:.1f}s") from exc

    async def _bounded_call(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await self._bounded(fn())


def _raise_cancellations(results: list[Any]) -> list[Any]:
    """Re-raise non-Exception outcomes (cancellation) from a gather."""
    for result in results:
        if isinstance(result, BaseException) and not isinstance(result, Exception):
            raise result
    return results


def _newest_timestamp(records: list[Any]) -> int | None:
    """Largest explicit creation time among raw message records."""
    stamps = [message_timestamp(record) for record in records if isinstance(record, Mapping)]
    valid = [s for s in stamps if s is not None]
    return max(valid) if valid else None
