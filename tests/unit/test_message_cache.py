"""Tests for chatsync.cache.messages -- the ordered message cache."""

from __future__ import annotations

import pytest

from chatsync.cache.messages import MessageCache
from chatsync.cache.persistence import MemoryPersistence
from chatsync.entities.message import Confirmed, LocalOnly, Message, MessageStatus
from chatsync.entities.reactions import ReactionEvent, ReactionTally


def _clock() -> float:
    return 1_700_000_000.0


@pytest.fixture
def cache() -> MessageCache:
    return MessageCache(clock=_clock)


def _local(temp_id: str = "temp-1", text: str = "hi") -> Message:
    return Message(
        identity=LocalOnly(temp_id),
        text=text,
        author_id="you",
        created_at=1_700_000_000_000,
        status=MessageStatus.SENDING,
    )


def _ids(cache: MessageCache) -> list[str]:
    return [m.id for m in cache.messages]


# ======================================================================
# replace_all / upsert_many
# ======================================================================


class TestBulkIngestion:
    """Tests for full loads and inserts."""

    def test_replace_all_keeps_order(self, cache: MessageCache) -> None:
        assert cache.replace_all([{"id": "m3"}, {"id": "m2"}, {"id": "m1"}])
        assert _ids(cache) == ["m3", "m2", "m1"]

    def test_replace_all_drops_duplicates(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1", "text": "a"}, {"id": "m1", "text": "b"}])
        assert len(cache) == 1
        assert cache.get("m1").text == "a"

    def test_replace_all_discards_previous(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        cache.replace_all([{"id": "m2"}])
        assert _ids(cache) == ["m2"]
        assert "m1" not in cache

    def test_replace_all_rejects_mapping(self, cache: MessageCache) -> None:
        assert cache.replace_all({"id": "m1"}) is False
        assert len(cache) == 0

    def test_upsert_many_inserts_at_head(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        cache.upsert_many([{"id": "m2"}])
        assert _ids(cache) == ["m2", "m1"]

    def test_upsert_many_twice_same_size(self, cache: MessageCache) -> None:
        record = {"id": "m1", "text": "hello", "authorId": "p1"}
        assert cache.upsert_many([record])
        size = len(cache)
        assert cache.upsert_many([record]) is False
        assert len(cache) == size == 1

    def test_upsert_many_dedupes_within_batch(self, cache: MessageCache) -> None:
        cache.upsert_many([{"id": "m1"}, {"id": "m1"}])
        assert len(cache) == 1

    def test_bad_records_skipped(self, cache: MessageCache) -> None:
        cache.upsert_many([{"id": "m1"}, None, 42])
        assert _ids(cache) == ["m1"]

    def test_by_author(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1", "authorId": "a"}, {"id": "m2", "authorId": "b"}])
        assert [m.id for m in cache.by_author("a")] == ["m1"]

    def test_get_unhashable_id_returns_none(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        assert cache.get(["m1"]) is None  # type: ignore[arg-type]
        assert {"id": "m1"} not in cache


# ======================================================================
# apply_delta
# ======================================================================


class TestApplyDelta:
    """Tests for applying a sync batch."""

    def test_inserts_and_updates(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1", "text": "old", "authorId": "p1"}])
        inserted, updated = cache.apply_delta(
            [{"id": "m2", "text": "new"}, {"id": "m1", "text": "edited"}]
        )
        assert (inserted, updated) == (1, 1)
        assert _ids(cache) == ["m2", "m1"]
        assert cache.get("m1").text == "edited"

    def test_update_keeps_known_author(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1", "authorId": "p1"}])
        cache.apply_delta([{"id": "m1", "authorId": "p2", "text": "x"}])
        assert cache.get("m1").author_id == "p1"

    def test_update_fills_unknown_author(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        cache.apply_delta([{"id": "m1", "authorId": "p2"}])
        assert cache.get("m1").author_id == "p2"

    def test_update_recomputes_tally(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        cache.apply_delta([{"id": "m1", "reactions": [{"emoji": "🎉", "participants": ["a"]}]}])
        assert cache.get("m1").tally == {"🎉": ReactionTally(1, ("a",))}

    def test_unchanged_batch_is_noop(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1", "text": "x", "createdAt": 1}])
        calls: list[int] = []
        cache.subscribe(lambda: calls.append(1))
        assert cache.apply_delta([{"id": "m1", "text": "x", "createdAt": 1}]) == (0, 0)
        assert calls == []

    def test_rejects_mapping(self, cache: MessageCache) -> None:
        assert cache.apply_delta({"id": "m1"}) == (0, 0)


# ======================================================================
# Optimistic writes
# ======================================================================


class TestOptimistic:
    """Tests for optimistic insertion and reconciliation."""

    def test_insert_optimistic(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        assert cache.insert_optimistic(_local())
        assert _ids(cache) == ["temp-1", "m1"]
        assert cache.get("temp-1").status is MessageStatus.SENDING
        assert cache.get("temp-1").is_local

    def test_insert_optimistic_duplicate_rejected(self, cache: MessageCache) -> None:
        cache.insert_optimistic(_local())
        assert cache.insert_optimistic(_local()) is False
        assert len(cache) == 1

    def test_insert_optimistic_requires_message(self, cache: MessageCache) -> None:
        assert cache.insert_optimistic({"id": "temp-1"}) is False  # type: ignore[arg-type]

    def test_reconcile_replaces_temp(self, cache: MessageCache) -> None:
        cache.insert_optimistic(_local())
        assert cache.reconcile_optimistic("temp-1", {"id": "srv-9", "text": "hi", "authorId": "you"})
        assert _ids(cache) == ["srv-9"]
        assert "temp-1" not in cache
        message = cache.get("srv-9")
        assert message.identity == Confirmed("srv-9")
        assert message.status is MessageStatus.SENT

    def test_reconcile_keeps_position(self, cache: MessageCache) -> None:
        cache.insert_optimistic(_local())
        cache.upsert_many([{"id": "m5"}])
        cache.reconcile_optimistic("temp-1", {"id": "srv-9"})
        assert _ids(cache) == ["m5", "srv-9"]

    def test_reconcile_keeps_local_author(self, cache: MessageCache) -> None:
        cache.insert_optimistic(_local())
        cache.reconcile_optimistic("temp-1", {"id": "srv-9", "text": "hi"})
        assert cache.get("srv-9").author_id == "you"

    def test_reconcile_server_id_already_synced(self, cache: MessageCache) -> None:
        cache.insert_optimistic(_local())
        cache.upsert_many([{"id": "srv-9", "text": "hi"}])
        cache.reconcile_optimistic("temp-1", {"id": "srv-9", "text": "hi"})
        assert _ids(cache) == ["srv-9"]

    def test_reconcile_missing_temp_upserts(self, cache: MessageCache) -> None:
        assert cache.reconcile_optimistic("temp-x", {"id": "srv-9"})
        assert _ids(cache) == ["srv-9"]

    def test_reconcile_unusable_record(self, cache: MessageCache) -> None:
        cache.insert_optimistic(_local())
        assert cache.reconcile_optimistic("temp-1", None) is False  # type: ignore[arg-type]
        assert _ids(cache) == ["temp-1"]

    def test_no_duplicate_ids_across_operations(self, cache: MessageCache) -> None:
        cache.upsert_many([{"id": "m1"}, {"id": "m2"}])
        cache.insert_optimistic(_local("temp-1"))
        cache.insert_optimistic(_local("temp-2"))
        cache.reconcile_optimistic("temp-1", {"id": "m2"})
        cache.upsert_many([{"id": "m3"}, {"id": "m1"}])
        cache.reconcile_optimistic("temp-2", {"id": "m3"})
        cache.reconcile_optimistic("temp-gone", {"id": "m1"})
        ids = _ids(cache)
        assert len(ids) == len(set(ids))
        assert cache.validate_integrity() == []


# ======================================================================
# Single-message mutators
# ======================================================================


class TestMutators:
    """Tests for merge_update, set_status, toggle_reaction and remove."""

    def test_merge_update_text(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1", "text": "a"}])
        assert cache.merge_update("m1", {"text": "b", "editedAt": 1_800_000_000_000})
        message = cache.get("m1")
        assert message.text == "b"
        assert message.is_edited

    def test_merge_update_missing_message(self, cache: MessageCache) -> None:
        assert cache.merge_update("nope", {"text": "b"}) is False

    def test_merge_update_author_only_fills_unknown(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1", "authorId": "p1"}, {"id": "m2"}])
        cache.merge_update("m1", {"authorId": "p2"})
        cache.merge_update("m2", {"authorId": "p3"})
        assert cache.get("m1").author_id == "p1"
        assert cache.get("m2").author_id == "p3"

    def test_merge_update_empty_author_ignored(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        assert cache.merge_update("m1", {"authorId": ""}) is False

    def test_merge_update_reactions_recompute_tally(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        cache.merge_update("m1", {"reactions": [ReactionEvent("👍", ("a", "b"))]})
        assert cache.get("m1").tally["👍"].count == 2

    def test_merge_update_bad_status(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        assert cache.merge_update("m1", {"status": "lost"}) is False
        assert cache.get("m1").status is MessageStatus.SENT

    def test_merge_update_rejects_empty_id(self, cache: MessageCache) -> None:
        assert cache.merge_update("", {"text": "b"}) is False

    def test_set_status(self, cache: MessageCache) -> None:
        cache.insert_optimistic(_local())
        assert cache.set_status("temp-1", MessageStatus.FAILED)
        assert cache.get("temp-1").status is MessageStatus.FAILED

    def test_toggle_reaction_twice(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        cache.toggle_reaction("m1", "👍", "you")
        assert cache.get("m1").tally == {"👍": ReactionTally(count=1, participant_ids=("you",))}
        cache.toggle_reaction("m1", "👍", "you")
        assert cache.get("m1").tally == {}

    def test_toggle_reaction_missing_message(self, cache: MessageCache) -> None:
        assert cache.toggle_reaction("nope", "👍", "you") is False

    def test_toggle_reaction_rejects_empty_emoji(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        assert cache.toggle_reaction("m1", "", "you") is False

    def test_remove(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}, {"id": "m2"}])
        assert cache.remove("m1")
        assert _ids(cache) == ["m2"]
        assert cache.remove("m1") is False

    def test_clear(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        cache.clear()
        assert len(cache) == 0
        assert cache.last_update_time is None


# ======================================================================
# Subscriptions
# ======================================================================


class TestSubscriptions:
    """Tests for change notification."""

    def test_listener_sees_committed_state(self, cache: MessageCache) -> None:
        seen: list[list[str]] = []
        cache.subscribe(lambda: seen.append(_ids(cache)))
        cache.upsert_many([{"id": "m1"}, {"id": "m2"}])
        assert seen == [["m1", "m2"]]

    def test_unsubscribe(self, cache: MessageCache) -> None:
        calls: list[int] = []
        unsubscribe = cache.subscribe(lambda: calls.append(1))
        cache.upsert_many([{"id": "m1"}])
        unsubscribe()
        cache.upsert_many([{"id": "m2"}])
        assert calls == [1]

    def test_mutation_from_listener_not_reentrant(self, cache: MessageCache) -> None:
        depth = {"current": 0, "max": 0}
        calls: list[int] = []

        def listener() -> None:
            depth["current"] += 1
            depth["max"] = max(depth["max"], depth["current"])
            calls.append(len(cache))
            if len(cache) == 1:
                cache.upsert_many([{"id": "m2"}])
            depth["current"] -= 1

        cache.subscribe(listener)
        cache.upsert_many([{"id": "m1"}])
        assert depth["max"] == 1
        assert calls == [1, 2]
        assert len(cache) == 2

    def test_last_update_time(self, cache: MessageCache) -> None:
        assert cache.last_update_time is None
        cache.upsert_many([{"id": "m1"}])
        assert cache.last_update_time == 1_700_000_000_000


# ======================================================================
# Persistence
# ======================================================================


class TestMessagePersistence:
    """Tests for snapshot and rehydration."""

    def test_round_trip_skips_sending(self) -> None:
        storage = MemoryPersistence()
        cache = MessageCache(persistence=storage, clock=_clock)
        cache.replace_all(
            [{"id": "m1", "text": "a", "reactions": [{"emoji": "👍", "participants": ["p"]}]}]
        )
        cache.insert_optimistic(_local("temp-1"))
        cache.insert_optimistic(_local("temp-2"))
        cache.set_status("temp-2", MessageStatus.FAILED)

        restored = MessageCache(persistence=storage, clock=_clock)
        assert restored.load()
        assert _ids(restored) == ["temp-2", "m1"]
        failed = restored.get("temp-2")
        assert failed.is_local
        assert failed.status is MessageStatus.FAILED
        assert restored.get("m1").tally["👍"].count == 1

    def test_storage_key(self) -> None:
        storage = MemoryPersistence()
        cache = MessageCache(persistence=storage, namespace="chat", clock=_clock)
        cache.upsert_many([{"id": "m1"}])
        assert storage.keys() == ["chat-messages"]

    def test_load_without_storage(self, cache: MessageCache) -> None:
        assert cache.load() is False


# ======================================================================
# Integrity
# ======================================================================


class TestValidateIntegrity:
    """Tests for validate_integrity."""

    def test_healthy(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}, {"id": "m2"}])
        assert cache.validate_integrity() == []

    def test_detects_duplicate(self, cache: MessageCache) -> None:
        cache.replace_all([{"id": "m1"}])
        cache._messages.append(cache.get("m1"))
        issues = cache.validate_integrity()
        assert any("Duplicate" in issue for issue in issues)
