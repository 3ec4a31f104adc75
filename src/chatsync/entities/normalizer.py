"""Turn raw server records into canonical entities.

Every ingestion path (full load, delta sync, send confirmation) goes
through these functions.  Bad records are dropped with a log line; they are
never raised, so a single malformed record cannot abort a batch.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence, Union

from chatsync.entities.message import (
    UNKNOWN_AUTHOR_ID,
    Attachment,
    Confirmed,
    Message,
    MessageStatus,
)
from chatsync.entities.participant import UNKNOWN_USER_NAME, Participant
from chatsync.entities.reactions import ReactionEvent

logger = logging.getLogger(__name__)

SYNTHETIC_ID_PREFIX = "synthetic-"

# Epoch values below this are taken to be seconds rather than milliseconds.
_SECONDS_THRESHOLD = 100_000_000_000

ParticipantRecord = Union[Mapping[str, Any], Participant]
ParticipantInput = Union[Sequence[ParticipantRecord], Mapping[str, ParticipantRecord]]


# ------------------------------------------------------------------
# Scalars
# ------------------------------------------------------------------


def parse_timestamp(value: Any) -> int | None:
    """Convert a server timestamp to epoch milliseconds.

    Accepts integer/float epochs (seconds or milliseconds), numeric strings
    and ISO-8601 strings.  Returns ``None`` for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                logger.debug("Unparseable timestamp %r", value)
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return int(parsed.timestamp() * 1000)
    else:
        return None

    if number < 0:
        return None
    if number < _SECONDS_THRESHOLD:
        number *= 1000
    return int(number)


def synthesize_id() -> str:
    """Return an identifier for a server record that arrived without one."""
    return f"{SYNTHETIC_ID_PREFIX}{uuid.uuid4().hex}"


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def message_timestamp(raw: Mapping[str, Any]) -> int | None:
    """Creation time of a raw message record, from ``createdAt`` or ``sentAt``."""
    return parse_timestamp(_first(raw, "createdAt", "sentAt"))


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


# ------------------------------------------------------------------
# Reactions and attachments
# ------------------------------------------------------------------


def normalize_reaction(raw: Any) -> ReactionEvent | None:
    """Normalize one reaction record.

    Two shapes are understood: grouped records
    (``{"emoji", "participants", "count"}``) and the per-participant records
    the server emits (``{"value", "participantUuid"}``).
    """
    if not isinstance(raw, Mapping):
        logger.warning("Dropping reaction record that is not an object: %r", raw)
        return None

    emoji = _first(raw, "emoji", "type", "value")
    if not emoji:
        logger.warning("Dropping reaction record without emoji: %r", raw)
        return None

    participants = _first(raw, "participantIds", "participants", "participantUuids")
    if participants is None:
        single = _first(raw, "participantId", "participantUuid", "authorUuid")
        participants = [single] if single else []
    if not isinstance(participants, (list, tuple)):
        logger.warning("Dropping reaction record with bad participants: %r", raw)
        return None

    ids: list[str] = []
    for pid in participants:
        if pid and str(pid) not in ids:
            ids.append(str(pid))

    count = raw.get("count")
    if not isinstance(count, int) or isinstance(count, bool):
        count = len(ids)

    return ReactionEvent(emoji=str(emoji), participant_ids=tuple(ids), count=count)


def normalize_reactions(raw: Any) -> tuple[ReactionEvent, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    events = (normalize_reaction(item) for item in raw)
    return tuple(event for event in events if event is not None)


def normalize_attachments(raw: Any) -> tuple[Attachment, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    attachments: list[Attachment] = []
    for item in raw:
        if not isinstance(item, Mapping) or not item.get("url"):
            logger.debug("Skipping attachment without url: %r", item)
            continue
        attachments.append(
            Attachment(
                type=str(item.get("type") or "file"),
                url=str(item["url"]),
                width=item.get("width") if isinstance(item.get("width"), int) else None,
                height=item.get("height") if isinstance(item.get("height"), int) else None,
            )
        )
    return tuple(attachments)


# ------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------


def normalize_message(raw: Any, now_ms: int) -> Message | None:
    """Build a :class:`Message` from a raw server record.

    Server-origin messages are always ``sent``.  Missing fields get
    defaults; a missing identifier is synthesized.  Returns ``None`` (and
    logs) if *raw* is not an object.
    """
    if not isinstance(raw, Mapping):
        logger.warning("Dropping message record that is not an object: %r", raw)
        return None

    message_id = _first(raw, "id", "uuid")
    if not message_id:
        message_id = synthesize_id()
        logger.warning("Message record without id, assigned %s", message_id)

    author = _first(raw, "authorId", "authorUuid")
    if not author and isinstance(raw.get("participant"), Mapping):
        author = _first(raw["participant"], "id", "uuid")

    created_at = message_timestamp(raw)
    if created_at is None:
        created_at = now_ms

    edited_at = parse_timestamp(_first(raw, "editedAt", "updatedAt"))
    if edited_at is not None and edited_at <= created_at:
        edited_at = None

    reply = raw.get("replyToMessage")
    reply_to_id = _first(reply, "id", "uuid") if isinstance(reply, Mapping) else None
    if reply_to_id is None:
        reply_to_id = _first(raw, "replyToId", "replyToMessageUuid")

    text = raw.get("text")
    return Message(
        identity=Confirmed(str(message_id)),
        text=text if isinstance(text, str) else ("" if text is None else str(text)),
        author_id=str(author) if author else UNKNOWN_AUTHOR_ID,
        created_at=created_at,
        edited_at=edited_at,
        status=MessageStatus.SENT,
        reactions=normalize_reactions(raw.get("reactions")),
        attachments=normalize_attachments(raw.get("attachments")),
        reply_to_id=_optional_str(reply_to_id),
    )


def normalize_messages(records: Iterable[Any], now_ms: int) -> list[Message]:
    """Normalize a batch, dropping records that cannot be normalized."""
    messages = (normalize_message(raw, now_ms) for raw in records)
    return [message for message in messages if message is not None]


# ------------------------------------------------------------------
# Participants
# ------------------------------------------------------------------


def normalize_participant(raw: Any) -> Participant | None:
    """Build a :class:`Participant`; records without an id are dropped."""
    if isinstance(raw, Participant):
        return raw
    if not isinstance(raw, Mapping):
        logger.warning("Dropping participant record that is not an object: %r", raw)
        return None

    participant_id = _first(raw, "id", "uuid")
    if not participant_id:
        logger.warning("Dropping participant record without id: %r", raw)
        return None

    return Participant(
        id=str(participant_id),
        name=_optional_str(raw.get("name")) or UNKNOWN_USER_NAME,
        title=_optional_str(_first(raw, "title", "jobTitle", "role")),
        bio=_optional_str(raw.get("bio")),
        avatar_url=_optional_str(raw.get("avatarUrl")),
        email=_optional_str(raw.get("email")),
        updated_at=parse_timestamp(raw.get("updatedAt")),
    )


def normalize_participants(records: Iterable[Any]) -> list[Participant]:
    participants = (normalize_participant(raw) for raw in records)
    return [p for p in participants if p is not None]


def coerce_participant_input(value: ParticipantInput) -> list[Participant]:
    """Flatten a participant list or id-keyed map into participants.

    This is the only place that distinguishes the two input shapes.  For a
    map, a record lacking its own id inherits the key.
    """
    if isinstance(value, Mapping):
        records: list[Any] = []
        for key, record in value.items():
            if isinstance(record, Mapping) and not _first(record, "id", "uuid"):
                record = {**record, "id": key}
            records.append(record)
        return normalize_participants(records)

    if isinstance(value, (list, tuple)):
        return normalize_participants(value)

    logger.warning("Expected a participant list or map, got %s", type(value).__name__)
    return []
