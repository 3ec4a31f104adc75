"""Participant lookup table keyed by id."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from chatsync.cache.base import ObservableStore, guarded, require_id
from chatsync.entities.normalizer import (
    ParticipantInput,
    coerce_participant_input,
    normalize_participant,
)
from chatsync.entities.participant import (
    LOCAL_USER_ID,
    LOCAL_USER_NAME,
    UNKNOWN_USER_NAME,
    Participant,
)
from chatsync.errors import ValidationError

logger = logging.getLogger(__name__)


class ParticipantCache(ObservableStore):
    """Participants by id.  Lookups never create entries."""

    storage_key = "participants"
    schema_version = 1

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._participants: dict[str, Participant] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, participant_id: str) -> Participant | None:
        """Return the participant or ``None``; never raises."""
        if not isinstance(participant_id, str):
            return None
        return self._participants.get(participant_id)

    def get_display_name(self, participant_id: str) -> str:
        """Name to render for *participant_id*.

        ``"You"`` for the local user, the participant's name when known,
        ``"Unknown User"`` otherwise.
        """
        if participant_id == LOCAL_USER_ID:
            return LOCAL_USER_NAME
        participant = self.get(participant_id)
        if participant is None or not participant.name:
            return UNKNOWN_USER_NAME
        return participant.name

    def all(self) -> tuple[Participant, ...]:
        return tuple(self._participants.values())

    def __len__(self) -> int:
        return len(self._participants)

    def __contains__(self, participant_id: object) -> bool:
        return isinstance(participant_id, str) and participant_id in self._participants

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    @guarded
    def replace_all(self, value: ParticipantInput) -> bool:
        """Replace the table from a participant list or an id-keyed map."""
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, Mapping)):
            raise ValidationError(f"expected a participant list or map, got {type(value).__name__}")

        self._participants = {p.id: p for p in coerce_participant_input(value)}
        logger.info("Installed %d participants", len(self._participants))
        self._committed()
        return True

    @guarded
    def upsert(self, record: Mapping[str, Any] | Participant) -> bool:
        participant = normalize_participant(record)
        if participant is None:
            raise ValidationError(f"unusable participant record {record!r}")
        if self._participants.get(participant.id) == participant:
            return False
        self._participants[participant.id] = participant
        self._committed()
        return True

    @guarded
    def upsert_many(self, records: ParticipantInput) -> int:
        """Upsert a batch in one transition; returns how many changed."""
        changed = 0
        for participant in coerce_participant_input(records):
            if self._participants.get(participant.id) != participant:
                self._participants[participant.id] = participant
                changed += 1
        if changed:
            self._committed()
        return changed

    @guarded
    def apply_delta(self, records: ParticipantInput) -> int:
        """Merge a delta batch in one transition; returns how many changed.

        Records for participants already in the table are partial updates
        merged over the stored fields, the same way :meth:`update` merges.
        Unknown ids are inserted.
        """
        if isinstance(records, (str, bytes)) or not isinstance(records, (list, tuple, Mapping)):
            raise ValidationError(f"expected a participant list or map, got {type(records).__name__}")

        if isinstance(records, Mapping):
            items = list(records.items())
        else:
            items = [(None, record) for record in records]

        changed = 0
        for key, record in items:
            merged = self._merged_delta(key, record)
            if merged is None:
                logger.debug("apply_delta: skipping unusable record %r", record)
                continue
            if self._participants.get(merged.id) != merged:
                self._participants[merged.id] = merged
                changed += 1
        if changed:
            self._committed()
        return changed

    def _merged_delta(self, key: str | None, record: Any) -> Participant | None:
        if not isinstance(record, Mapping):
            return normalize_participant(record)
        participant_id = record.get("id") or record.get("uuid") or key
        if not participant_id:
            return None
        current = self._participants.get(str(participant_id))
        if current is None:
            return normalize_participant({**record, "id": participant_id})
        return _merge_participant(current, record)

    @guarded
    def update(self, participant_id: str, changes: Mapping[str, Any]) -> bool:
        """Merge *changes* into an existing participant; no-op if absent."""
        require_id(participant_id)
        if not isinstance(changes, Mapping):
            raise ValidationError(f"changes must be a mapping, got {changes!r}")

        current = self._participants.get(participant_id)
        if current is None:
            logger.debug("update: participant %s not found", participant_id)
            return False

        merged = _merge_participant(current, changes)
        if merged is None or merged == current:
            return False
        self._participants[participant_id] = merged
        self._committed()
        return True

    @guarded
    def remove(self, participant_id: str) -> bool:
        require_id(participant_id)
        if self._participants.pop(participant_id, None) is None:
            return False
        self._committed()
        return True

    def clear(self) -> None:
        self._participants = {}
        self._committed(touched=False)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        return {
            "participants": {pid: _dump_participant(p) for pid, p in self._participants.items()},
            "lastUpdateTime": self.last_update_time,
        }

    def restore(self, state: dict[str, Any]) -> None:
        self._participants = {p.id: p for p in coerce_participant_input(state["participants"])}
        self.last_update_time = state.get("lastUpdateTime")
        logger.info("Restored %d participants from storage", len(self._participants))


def _merge_participant(current: Participant, changes: Mapping[str, Any]) -> Participant | None:
    record = {**_dump_participant(current), **changes, "id": current.id}
    for alias in ("jobTitle", "role"):
        if alias in changes:
            record["title"] = changes[alias]
    return normalize_participant(record)


def _dump_participant(participant: Participant) -> dict[str, Any]:
    return {
        "id": participant.id,
        "name": participant.name,
        "title": participant.title,
        "bio": participant.bio,
        "avatarUrl": participant.avatar_url,
        "email": participant.email,
        "updatedAt": participant.updated_at,
    }

