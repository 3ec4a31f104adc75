"""Reaction events and the emoji tally derived from them."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable


@dataclass(frozen=True)
class ReactionEvent:
    """A raw reaction record as it arrives from the server or a local toggle.

    ``count`` is the server's own counter for the emoji.  It normally equals
    ``len(participant_ids)``, but the server is allowed to report reactions
    from participants it does not enumerate.  When omitted it defaults to
    the number of participants; an explicit zero is kept.
    """

    emoji: str
    participant_ids: tuple[str, ...] = ()
    count: int | None = None

    def __post_init__(self) -> None:
        if self.count is None:
            object.__setattr__(self, "count", len(self.participant_ids))


@dataclass(frozen=True)
class ReactionTally:
    """Aggregated view of one emoji on one message."""

    count: int
    participant_ids: tuple[str, ...]


def aggregate(reactions: Iterable[ReactionEvent]) -> dict[str, ReactionTally]:
    """Fold raw reaction events into a per-emoji tally.

    Events sharing an emoji are merged: participant sets are unioned and
    counts summed.  Groups that end up with a non-positive count or no
    participants are dropped.  Participant ids are sorted so the result
    depends only on the multiset of events, never on their order.
    """
    counts: dict[str, int] = {}
    members: dict[str, set[str]] = {}

    for event in reactions:
        counts[event.emoji] = counts.get(event.emoji, 0) + event.count
        members.setdefault(event.emoji, set()).update(event.participant_ids)

    tally: dict[str, ReactionTally] = {}
    for emoji, count in counts.items():
        participants = members[emoji]
        if count <= 0 or not participants:
            continue
        tally[emoji] = ReactionTally(count=count, participant_ids=tuple(sorted(participants)))
    return tally


def has_reacted(
    reactions: Iterable[ReactionEvent], emoji: str, participant_id: str
) -> bool:
    """Return True if *participant_id* reacted with *emoji*."""
    return any(
        event.emoji == emoji and participant_id in event.participant_ids
        for event in reactions
    )


def toggle_reaction(
    reactions: tuple[ReactionEvent, ...], emoji: str, participant_id: str
) -> tuple[ReactionEvent, ...]:
    """Flip *participant_id*'s *emoji* reaction and return the new events.

    Removing the last participant of an event deletes the event.  Adding
    joins the first event already carrying *emoji*, or appends a new one.
    """
    if has_reacted(reactions, emoji, participant_id):
        updated: list[ReactionEvent] = []
        for event in reactions:
            if event.emoji != emoji or participant_id not in event.participant_ids:
                updated.append(event)
                continue
            remaining = tuple(p for p in event.participant_ids if p != participant_id)
            if remaining:
                updated.append(
                    replace(event, participant_ids=remaining, count=max(event.count - 1, len(remaining)))
                )
        return tuple(updated)

    for index, event in enumerate(reactions):
        if event.emoji == emoji:
            joined = replace(
                event,
                participant_ids=event.participant_ids + (participant_id,),
                count=event.count + 1,
            )
            return reactions[:index] + (joined,) + reactions[index + 1 :]

    return reactions + (ReactionEvent(emoji=emoji, participant_ids=(participant_id,), count=1),)
