"""Assembly of the caches, session tracker and sync controller."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import httpx

from chatsync.cache.messages import MessageCache
from chatsync.cache.participants import ParticipantCache
from chatsync.cache.persistence import JsonFilePersistence, PersistenceAdapter
from chatsync.config.schema import ChatSyncConfig
from chatsync.sync.client import ChatApiClient
from chatsync.sync.controller import ChatService, SyncController
from chatsync.sync.session import SessionTracker

logger = logging.getLogger(__name__)


@dataclass
class ChatRuntime:
    """One client instance: the services renderers and commands talk to.

    Built once by :func:`build_runtime` and passed by reference; nothing
    here is a module-level singleton.
    """

    config: ChatSyncConfig
    client: ChatService
    messages: MessageCache
    participants: ParticipantCache
    session: SessionTracker
    controller: SyncController
    owns_client: bool = True

    def load_state(self) -> bool:
        """Rehydrate all stores.  Returns True if any message was restored."""
        self.session.load()
        self.participants.load()
        self.messages.load()
        return len(self.messages) > 0

    async def start(self, poll: bool = True) -> bool:
        """Load persisted state, catch up with the server, start polling.

        With restored messages only a delta sync is needed (the session
        check inside it still catches a server reset); otherwise the full
        history is loaded.
        """
        if self.load_state():
            logger.info("Resuming from %d cached messages", len(self.messages))
            ok = await self.controller.sync_once()
        else:
            ok = await self.controller.bootstrap()

        if not ok:
            logger.warning("Initial sync failed, showing cached state")
        if poll:
            self.controller.start_polling()
        return ok

    async def close(self) -> None:
        await self.controller.close()
        if self.owns_client and isinstance(self.client, ChatApiClient):
            await self.client.close()


def build_runtime(
    config: ChatSyncConfig | None = None,
    client: ChatService | None = None,
    persistence: PersistenceAdapter | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], float] = time.time,
) -> ChatRuntime:
    """Wire up a :class:`ChatRuntime` from *config*.

    *client*, *persistence*, *transport* and *clock* are injection points;
    by default a real HTTP client and file persistence are used.
    """
    config = config or ChatSyncConfig()

    if persistence is None and config.persistence.enabled:
        persistence = JsonFilePersistence(config.persistence.directory)
    namespace = config.persistence.namespace

    owns_client = client is None
    if client is None:
        client = ChatApiClient(config.server, transport=transport)

    messages = MessageCache(persistence=persistence, namespace=namespace, clock=clock)
    participants = ParticipantCache(persistence=persistence, namespace=namespace, clock=clock)
    session = SessionTracker(
        messages,
        participants,
        persistence=persistence,
        namespace=namespace,
        clock=clock,
    )
    controller = SyncController(
        client,
        messages,
        participants,
        session,
        config=config.polling,
        bootstrap_config=config.bootstrap,
        request_timeout=config.server.request_timeout,
        local_user_id=config.local_user_id,
        clock=clock,
    )
    return ChatRuntime(
        config=config,
        client=client,
        messages=messages,
        participants=participants,
        session=session,
        controller=controller,
        owns_client=owns_client,
    )
