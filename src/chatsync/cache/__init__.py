"""In-memory caches for messages and participants, with persistence."""

from chatsync.cache.messages import MessageCache
from chatsync.cache.participants import ParticipantCache
from chatsync.cache.persistence import (
    JsonFilePersistence,
    MemoryPersistence,
    PersistenceAdapter,
    load_versioned,
    save_versioned,
)

__all__ = [
    "JsonFilePersistence",
    "MemoryPersistence",
    "MessageCache",
    "ParticipantCache",
    "PersistenceAdapter",
    "load_versioned",
    "save_versioned",
]
