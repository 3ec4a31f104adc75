"""Canonical entities and the normalizer that produces them."""

from chatsync.entities.message import (
    UNKNOWN_AUTHOR_ID,
    Attachment,
    Confirmed,
    LocalOnly,
    Message,
    MessageIdentity,
    MessageStatus,
)
from chatsync.entities.normalizer import (
    coerce_participant_input,
    normalize_message,
    normalize_messages,
    normalize_participant,
    normalize_participants,
    parse_timestamp,
)
from chatsync.entities.participant import (
    LOCAL_USER_ID,
    LOCAL_USER_NAME,
    UNKNOWN_USER_NAME,
    Participant,
)
from chatsync.entities.reactions import (
    ReactionEvent,
    ReactionTally,
    aggregate,
    has_reacted,
    toggle_reaction,
)

__all__ = [
    "LOCAL_USER_ID",
    "LOCAL_USER_NAME",
    "UNKNOWN_AUTHOR_ID",
    "UNKNOWN_USER_NAME",
    "Attachment",
    "Confirmed",
    "LocalOnly",
    "Message",
    "MessageIdentity",
    "MessageStatus",
    "Participant",
    "ReactionEvent",
    "ReactionTally",
    "aggregate",
    "coerce_participant_input",
    "has_reacted",
    "normalize_message",
    "normalize_messages",
    "normalize_participant",
    "normalize_participants",
    "parse_timestamp",
    "toggle_reaction",
]
