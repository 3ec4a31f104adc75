"""Message entity and its local identity/status dimensions."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Union

from chatsync.entities.reactions import ReactionEvent, ReactionTally, aggregate

UNKNOWN_AUTHOR_ID = "unknown"


class MessageStatus(Enum):
    """Delivery status of a message.  Never exchanged with the server."""

    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class LocalOnly:
    """Identity of a message the server has not confirmed yet."""

    temp_id: str

    @property
    def id(self) -> str:
        return self.temp_id


@dataclass(frozen=True)
class Confirmed:
    """Identity issued by the server."""

    server_id: str

    @property
    def id(self) -> str:
        return self.server_id


MessageIdentity = Union[LocalOnly, Confirmed]


@dataclass(frozen=True)
class Attachment:
    """A file or image attached to a message."""

    type: str
    url: str
    width: int | None = None
    height: int | None = None


@dataclass(frozen=True)
class Message:
    """Immutable chat message.

    ``tally`` is derived from ``reactions`` in ``__post_init__`` and is not
    an init parameter, so neither the constructor nor
    :func:`dataclasses.replace` can set it independently.
    """

    identity: MessageIdentity
    text: str = ""
    author_id: str = UNKNOWN_AUTHOR_ID
    created_at: int = 0
    edited_at: int | None = None
    status: MessageStatus = MessageStatus.SENT
    reactions: tuple[ReactionEvent, ...] = ()
    attachments: tuple[Attachment, ...] = ()
    reply_to_id: str | None = None
    tally: dict[str, ReactionTally] = field(init=False, compare=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "tally", aggregate(self.reactions))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self.identity.id

    @property
    def is_local(self) -> bool:
        """True until the server has confirmed this message."""
        return isinstance(self.identity, LocalOnly)

    @property
    def is_edited(self) -> bool:
        return self.edited_at is not None

    @property
    def has_reactions(self) -> bool:
        return bool(self.tally)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def confirm(self, server: Message) -> Message:
        """Return the confirmed form of this local message.

        Server-owned fields come from *server*; the author falls back to the
        local one when the server leaves it unset.
        """
        author = server.author_id
        if not author or author == UNKNOWN_AUTHOR_ID:
            author = self.author_id
        return replace(
            server,
            identity=Confirmed(server.id),
            author_id=author,
            status=MessageStatus.SENT,
        )

    def with_status(self, status: MessageStatus) -> Message:
        return replace(self, status=status)

    def with_reactions(self, reactions: tuple[ReactionEvent, ...]) -> Message:
        return replace(self, reactions=reactions)
