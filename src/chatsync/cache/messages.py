"""Ordered, deduplicated message cache."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Iterable, Mapping, Union

from chatsync.cache.base import ObservableStore, guarded, require_id
from chatsync.entities.message import (
    UNKNOWN_AUTHOR_ID,
    Confirmed,
    LocalOnly,
    Message,
    MessageStatus,
)
from chatsync.entities.normalizer import (
    normalize_attachments,
    normalize_message,
    normalize_reactions,
    parse_timestamp,
)
from chatsync.entities.reactions import ReactionEvent, aggregate, toggle_reaction
from chatsync.errors import ValidationError

logger = logging.getLogger(__name__)

MessageRecord = Union[Mapping[str, Any], Message]

# Fields merge_update accepts, mapped from their wire names.
_FIELD_ALIASES = {
    "text": "text",
    "authorId": "author_id",
    "authorUuid": "author_id",
    "author_id": "author_id",
    "createdAt": "created_at",
    "sentAt": "created_at",
    "created_at": "created_at",
    "editedAt": "edited_at",
    "updatedAt": "edited_at",
    "edited_at": "edited_at",
    "status": "status",
    "reactions": "reactions",
    "attachments": "attachments",
    "replyToId": "reply_to_id",
    "reply_to_id": "reply_to_id",
}


class MessageCache(ObservableStore):
    """Messages ordered newest first, unique by id.

    The cache is the only owner of message lifecycle.  Every mutator
    installs its result in one synchronous step, so readers never see a
    half-applied batch.
    """

    storage_key = "messages"
    schema_version = 1

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._messages: list[Message] = []
        self._ids: set[str] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def messages(self) -> tuple[Message, ...]:
        """Read-only snapshot, newest first."""
        return tuple(self._messages)

    def get(self, message_id: str) -> Message | None:
        if not isinstance(message_id, str) or message_id not in self._ids:
            return None
        return self._messages[self._index_of(message_id)]

    def by_author(self, author_id: str) -> list[Message]:
        return [m for m in self._messages if m.author_id == author_id]

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return isinstance(message_id, str) and message_id in self._ids

    def validate_integrity(self) -> list[str]:
        """Return a list of consistency problems; empty when healthy."""
        issues: list[str] = []
        seen: set[str] = set()
        for index, message in enumerate(self._messages):
            if not message.id:
                issues.append(f"Message at index {index} has no id")
            if message.id in seen:
                issues.append(f"Duplicate message id {message.id}")
            seen.add(message.id)
            if message.tally != aggregate(message.reactions):
                issues.append(f"Message {message.id} tally does not match its reactions")
            if message.is_local and message.status is MessageStatus.SENT:
                issues.append(f"Message {message.id} is sent but still local")
        if seen != self._ids:
            issues.append("Id index out of sync with message list")

        if issues:
            logger.warning("Message cache integrity issues: %s", issues)
        return issues

    # ------------------------------------------------------------------
    # Bulk ingestion
    # ------------------------------------------------------------------

    @guarded
    def replace_all(self, records: Iterable[MessageRecord]) -> bool:
        """Install a full ordered set, replacing everything."""
        if isinstance(records, (str, bytes, Mapping)):
            raise ValidationError("replace_all expects a sequence of message records")

        installed: list[Message] = []
        ids: set[str] = set()
        for message in self._normalize(records):
            if message.id in ids:
                logger.debug("replace_all: dropping duplicate id %s", message.id)
                continue
            ids.add(message.id)
            installed.append(message)

        self._messages = installed
        self._ids = ids
        logger.info("Installed %d messages", len(installed))
        self._committed()
        return True

    @guarded
    def upsert_many(self, records: Iterable[MessageRecord]) -> bool:
        """Insert unseen messages at the head; ids already cached are skipped."""
        if isinstance(records, (str, bytes, Mapping)):
            raise ValidationError("upsert_many expects a sequence of message records")

        fresh = self._dedupe_new(self._normalize(records))
        if not fresh:
            return False

        self._messages = fresh + self._messages
        self._ids.update(m.id for m in fresh)
        logger.debug("Inserted %d new messages", len(fresh))
        self._committed()
        return True

    def apply_delta(self, records: Iterable[MessageRecord]) -> tuple[int, int]:
        """Apply a sync batch as one transition.

        Records for cached ids are update records and are merged in place;
        the rest are inserted at the head.  Returns ``(inserted, updated)``.
        """
        if isinstance(records, (str, bytes, Mapping)):
            logger.warning("apply_delta expects a sequence of message records")
            return (0, 0)

        incoming = self._normalize(records)
        updated = 0
        messages = list(self._messages)
        for message in incoming:
            if message.id not in self._ids:
                continue
            index = self._index_of(message.id, messages)
            merged = _merge_server_copy(messages[index], message)
            if merged != messages[index]:
                messages[index] = merged
                updated += 1

        fresh = self._dedupe_new(incoming)
        if not fresh and not updated:
            return (0, 0)

        self._messages = fresh + messages
        self._ids.update(m.id for m in fresh)
        logger.debug("Delta applied: %d inserted, %d updated", len(fresh), updated)
        self._committed()
        return (len(fresh), updated)

    # ------------------------------------------------------------------
    # Optimistic writes
    # ------------------------------------------------------------------

    @guarded
    def insert_optimistic(self, message: Message) -> bool:
        """Insert a locally authored message at the head as ``sending``."""
        if not isinstance(message, Message):
            raise ValidationError(f"insert_optimistic expects a Message, got {message!r}")
        require_id(message.id)
        if message.id in self._ids:
            raise ValidationError(f"message {message.id} already exists")

        local = replace(message, status=MessageStatus.SENDING)
        self._messages.insert(0, local)
        self._ids.add(local.id)
        logger.debug("Optimistic insert %s", local.id)
        self._committed()
        return True

    @guarded
    def reconcile_optimistic(self, temp_id: str, server_record: MessageRecord) -> bool:
        """Swap the local message *temp_id* for its confirmed server copy.

        The confirmed copy takes the local message's position.  If *temp_id*
        is gone the server copy is upserted; if a background sync already
        delivered the server id, the local entry is dropped instead.
        """
        require_id(temp_id, "temp_id")
        confirmed = self._normalize([server_record])
        if not confirmed:
            raise ValidationError(f"unusable server record for {temp_id}: {server_record!r}")
        server = confirmed[0]

        if temp_id not in self._ids:
            logger.info("reconcile: %s not found, upserting %s", temp_id, server.id)
            return self.upsert_many([server])

        index = self._index_of(temp_id)
        local = self._messages[index]
        self._ids.discard(temp_id)

        if server.id in self._ids:
            logger.info("reconcile: %s already synced, dropping %s", server.id, temp_id)
            del self._messages[index]
        else:
            self._messages[index] = local.confirm(server)
            self._ids.add(server.id)

        self._committed()
        return True

    # ------------------------------------------------------------------
    # Single-message mutators
    # ------------------------------------------------------------------

    @guarded
    def merge_update(self, message_id: str, fields: Mapping[str, Any]) -> bool:
        """Apply a partial update to an existing message."""
        require_id(message_id)
        if not isinstance(fields, Mapping):
            raise ValidationError(f"fields must be a mapping, got {fields!r}")
        if message_id not in self._ids:
            logger.warning("merge_update: message %s not found", message_id)
            return False

        index = self._index_of(message_id)
        current = self._messages[index]
        changes = _coerce_fields(fields)

        if "author_id" in changes and (
            not changes["author_id"] or current.author_id != UNKNOWN_AUTHOR_ID
        ):
            if changes["author_id"] != current.author_id:
                logger.debug("merge_update: keeping author of %s", message_id)
            del changes["author_id"]

        if not changes:
            return False

        # replace() re-runs __post_init__, so the tally follows the reactions.
        updated = replace(current, **changes)
        if updated == current:
            return False
        self._messages[index] = updated
        self._committed()
        return True

    @guarded
    def set_status(self, message_id: str, status: MessageStatus) -> bool:
        return self.merge_update(message_id, {"status": status})

    @guarded
    def toggle_reaction(self, message_id: str, emoji: str, participant_id: str) -> bool:
        """Flip *participant_id*'s *emoji* reaction on a message."""
        require_id(message_id)
        require_id(emoji, "emoji")
        require_id(participant_id, "participant_id")
        if message_id not in self._ids:
            logger.warning("toggle_reaction: message %s not found", message_id)
            return False

        index = self._index_of(message_id)
        current = self._messages[index]
        self._messages[index] = current.with_reactions(
            toggle_reaction(current.reactions, emoji, participant_id)
        )
        self._committed()
        return True

    @guarded
    def remove(self, message_id: str) -> bool:
        require_id(message_id)
        if message_id not in self._ids:
            logger.debug("remove: message %s not found", message_id)
            return False
        del self._messages[self._index_of(message_id)]
        self._ids.discard(message_id)
        self._committed()
        return True

    def clear(self) -> None:
        self._messages = []
        self._ids = set()
        self._committed(touched=False)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        return {
            "messages": [
                _dump_message(m) for m in self._messages if m.status is not MessageStatus.SENDING
            ],
            "lastUpdateTime": self.last_update_time,
        }

    def restore(self, state: dict[str, Any]) -> None:
        messages: list[Message] = []
        ids: set[str] = set()
        for record in state["messages"]:
            message = _load_message(record, self._now_ms())
            if message is None or message.id in ids:
                continue
            ids.add(message.id)
            messages.append(message)
        self._messages = messages
        self._ids = ids
        self.last_update_time = state.get("lastUpdateTime")
        logger.info("Restored %d messages from storage", len(messages))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _normalize(self, records: Iterable[MessageRecord]) -> list[Message]:
        now = self._now_ms()
        result: list[Message] = []
        for record in records:
            if isinstance(record, Message):
                result.append(record)
                continue
            message = normalize_message(record, now)
            if message is not None:
                result.append(message)
        return result

    def _dedupe_new(self, messages: list[Message]) -> list[Message]:
        fresh: list[Message] = []
        seen: set[str] = set()
        for message in messages:
            if message.id in self._ids or message.id in seen:
                continue
            seen.add(message.id)
            fresh.append(message)
        return fresh

    def _index_of(self, message_id: str, messages: list[Message] | None = None) -> int:
        source = self._messages if messages is None else messages
        for index, message in enumerate(source):
            if message.id == message_id:
                return index
        raise KeyError(message_id)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _coerce_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Translate wire or attribute names into Message constructor values."""
    changes: dict[str, Any] = {}
    for key, value in fields.items():
        name = _FIELD_ALIASES.get(key)
        if name is None:
            logger.debug("merge_update: ignoring unknown field %r", key)
            continue
        if name == "status":
            if not isinstance(value, MessageStatus):
                try:
                    value = MessageStatus(value)
                except ValueError:
                    raise ValidationError(f"unknown message status {value!r}") from None
        elif name in ("created_at", "edited_at"):
            value = parse_timestamp(value)
            if name == "created_at" and value is None:
                continue
        elif name == "reactions":
            if isinstance(value, (list, tuple)) and all(
                isinstance(r, ReactionEvent) for r in value
            ):
                value = tuple(value)
            else:
                value = normalize_reactions(value)
        elif name == "attachments":
            if not isinstance(value, tuple):
                value = normalize_attachments(value)
        elif name == "text":
            value = "" if value is None else str(value)
        elif name == "author_id":
            value = str(value) if value else ""
        changes[name] = value
    return changes


def _merge_server_copy(current: Message, incoming: Message) -> Message:
    """Fold a server update record into the cached message.

    The author is kept once known and the local status is preserved.
    """
    author = current.author_id
    if author == UNKNOWN_AUTHOR_ID and incoming.author_id != UNKNOWN_AUTHOR_ID:
        author = incoming.author_id
    return replace(
        incoming,
        identity=current.identity,
        author_id=author,
        status=current.status,
        created_at=current.created_at,
    )


def _dump_message(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "local": message.is_local,
        "text": message.text,
        "authorId": message.author_id,
        "createdAt": message.created_at,
        "editedAt": message.edited_at,
        "status": message.status.value,
        "reactions": [
            {"emoji": r.emoji, "participantIds": list(r.participant_ids), "count": r.count}
            for r in message.reactions
        ],
        "attachments": [
            {"type": a.type, "url": a.url, "width": a.width, "height": a.height}
            for a in message.attachments
        ],
        "replyToId": message.reply_to_id,
    }


def _load_message(record: Any, now_ms: int) -> Message | None:
    message = normalize_message(record, now_ms)
    if message is None:
        return None
    identity = LocalOnly(message.id) if record.get("local") else Confirmed(message.id)
    status = MessageStatus(record.get("status", MessageStatus.SENT.value))
    return replace(message, identity=identity, status=status)
