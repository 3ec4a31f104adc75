"""Tests for chatsync.cache.participants -- the participant lookup table."""

from __future__ import annotations

import pytest

from chatsync.cache.participants import ParticipantCache
from chatsync.cache.persistence import MemoryPersistence
from chatsync.entities.participant import Participant


@pytest.fixture
def cache() -> ParticipantCache:
    return ParticipantCache(clock=lambda: 1_700_000_000.0)


# ======================================================================
# Lookups
# ======================================================================


class TestLookups:
    """Tests for get and get_display_name."""

    def test_get_unknown_returns_none(self, cache: ParticipantCache) -> None:
        assert cache.get("nobody") is None
        assert len(cache) == 0

    def test_display_name_local_user(self, cache: ParticipantCache) -> None:
        assert cache.get_display_name("you") == "You"

    def test_display_name_known(self, cache: ParticipantCache) -> None:
        cache.replace_all([{"id": "p1", "name": "Ada"}])
        assert cache.get_display_name("p1") == "Ada"

    def test_display_name_unknown(self, cache: ParticipantCache) -> None:
        assert cache.get_display_name("p404") == "Unknown User"
        assert "p404" not in cache

    def test_get_unhashable_id_returns_none(self, cache: ParticipantCache) -> None:
        cache.replace_all([{"id": "p1", "name": "Ada"}])
        assert cache.get(["p1"]) is None  # type: ignore[arg-type]
        assert cache.get_display_name({"id": "p1"}) == "Unknown User"  # type: ignore[arg-type]
        assert ["p1"] not in cache


# ======================================================================
# Mutators
# ======================================================================


class TestMutators:
    """Tests for replace_all, upsert, update and remove."""

    def test_replace_all_list(self, cache: ParticipantCache) -> None:
        assert cache.replace_all([{"id": "p1", "name": "Ada"}, {"uuid": "p2", "name": "Bob"}])
        assert {p.id for p in cache.all()} == {"p1", "p2"}

    def test_replace_all_map(self, cache: ParticipantCache) -> None:
        assert cache.replace_all({"p1": {"name": "Ada"}})
        assert cache.get("p1") == Participant(id="p1", name="Ada")

    def test_replace_all_rejects_string(self, cache: ParticipantCache) -> None:
        assert cache.replace_all("p1") is False  # type: ignore[arg-type]

    def test_replace_all_discards_previous(self, cache: ParticipantCache) -> None:
        cache.replace_all([{"id": "p1"}])
        cache.replace_all([{"id": "p2"}])
        assert "p1" not in cache

    def test_upsert(self, cache: ParticipantCache) -> None:
        assert cache.upsert({"id": "p1", "name": "Ada"})
        assert cache.upsert({"id": "p1", "name": "Ada"}) is False
        assert cache.upsert({"id": "p1", "name": "Ada L."})
        assert cache.get("p1").name == "Ada L."

    def test_upsert_without_id_rejected(self, cache: ParticipantCache) -> None:
        assert cache.upsert({"name": "Ghost"}) is False
        assert len(cache) == 0

    def test_upsert_many_counts_changes(self, cache: ParticipantCache) -> None:
        cache.replace_all([{"id": "p1", "name": "Ada"}])
        changed = cache.upsert_many([{"id": "p1", "name": "Ada"}, {"id": "p2", "name": "Bob"}])
        assert changed == 1
        assert len(cache) == 2

    def test_upsert_many_single_notification(self, cache: ParticipantCache) -> None:
        calls: list[int] = []
        cache.subscribe(lambda: calls.append(len(cache)))
        cache.upsert_many({"p1": {"name": "Ada"}, "p2": {"name": "Bob"}})
        assert calls == [2]

    def test_update_merges(self, cache: ParticipantCache) -> None:
        cache.replace_all([{"id": "p1", "name": "Ada", "email": "ada@example.com"}])
        assert cache.update("p1", {"jobTitle": "CTO"})
        participant = cache.get("p1")
        assert participant.title == "CTO"
        assert participant.email == "ada@example.com"

    def test_apply_delta_merges_known_participants(self, cache: ParticipantCache) -> None:
        cache.replace_all([{"id": "p1", "name": "Alice", "email": "alice@example.com"}])
        changed = cache.apply_delta([{"uuid": "p1", "jobTitle": "CTO"}, {"uuid": "p2", "name": "Bob"}])
        assert changed == 2
        alice = cache.get("p1")
        assert alice.name == "Alice"
        assert alice.email == "alice@example.com"
        assert alice.title == "CTO"
        assert cache.get_display_name("p2") == "Bob"

    def test_apply_delta_map_input(self, cache: ParticipantCache) -> None:
        cache.replace_all([{"id": "p1", "name": "Alice"}])
        calls: list[int] = []
        cache.subscribe(lambda: calls.append(len(cache)))
        assert cache.apply_delta({"p1": {"bio": "Founder"}, "p2": {"name": "Bob"}}) == 2
        assert cache.get("p1").name == "Alice"
        assert cache.get("p1").bio == "Founder"
        assert calls == [2]

    def test_apply_delta_unchanged_is_noop(self, cache: ParticipantCache) -> None:
        cache.replace_all([{"id": "p1", "name": "Alice"}])
        assert cache.apply_delta([{"uuid": "p1", "name": "Alice"}, {"name": "no id"}]) == 0
        assert len(cache) == 1

    def test_update_missing_is_noop(self, cache: ParticipantCache) -> None:
        assert cache.update("p9", {"name": "X"}) is False
        assert "p9" not in cache

    def test_update_cannot_change_id(self, cache: ParticipantCache) -> None:
        cache.replace_all([{"id": "p1", "name": "Ada"}])
        cache.update("p1", {"id": "p2", "name": "Eve"})
        assert cache.get("p1").name == "Eve"
        assert "p2" not in cache

    def test_remove(self, cache: ParticipantCache) -> None:
        cache.replace_all([{"id": "p1"}])
        assert cache.remove("p1")
        assert cache.remove("p1") is False

    def test_clear(self, cache: ParticipantCache) -> None:
        cache.replace_all([{"id": "p1"}])
        cache.clear()
        assert len(cache) == 0
        assert cache.last_update_time is None


# ======================================================================
# Persistence
# ======================================================================


class TestParticipantPersistence:
    """Tests for snapshot and rehydration."""

    def test_round_trip(self) -> None:
        storage = MemoryPersistence()
        cache = ParticipantCache(persistence=storage)
        cache.replace_all([{"id": "p1", "name": "Ada", "title": "CTO", "avatarUrl": "https://a"}])

        restored = ParticipantCache(persistence=storage)
        assert restored.load()
        assert restored.get("p1") == cache.get("p1")
        assert restored.last_update_time == cache.last_update_time

    def test_storage_key(self) -> None:
        storage = MemoryPersistence()
        ParticipantCache(persistence=storage, namespace="team").upsert({"id": "p1"})
        assert storage.keys() == ["team-participants"]
