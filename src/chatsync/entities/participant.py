"""Participant entity."""

from __future__ import annotations

from dataclasses import dataclass

LOCAL_USER_ID = "you"
UNKNOWN_USER_NAME = "Unknown User"
LOCAL_USER_NAME = "You"


@dataclass(frozen=True)
class Participant:
    """A chat participant as known to this client."""

    id: str
    name: str = UNKNOWN_USER_NAME
    title: str | None = None
    bio: str | None = None
    avatar_url: str | None = None
    email: str | None = None
    updated_at: int | None = None

    @property
    def is_local_user(self) -> bool:
        return self.id == LOCAL_USER_ID
