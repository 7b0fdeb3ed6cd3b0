"""Tests for MemoryStore -- the SQLite storage backend."""
import os
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from mind import sqlite_store
from mind.quantize import quantize
from mind.sqlite_store import MemoryStore, fts_query
from mind.types import CategoryCount, EmotionType, Memory, MemoryKind, Role

from conftest import TEST_DIM


def _memory(text, persona_id="p1", chat_id="c1", user_id="u1", created_at=None,
            kind=MemoryKind.OTHER, importance=0.5):
    created_at = created_at or datetime.now(timezone.utc)
    return Memory(
        id=str(uuid.uuid4()),
        persona_id=persona_id,
        user_id=user_id,
        chat_id=chat_id,
        role=Role.USER,
        text=text,
        kind=kind,
        emotion=EmotionType.NEUTRAL,
        importance=importance,
        created_at=created_at,
        last_accessed=created_at,
    )


def _row_counts(store):
    c = store._conn
    counts = [
        c.execute("SELECT COUNT(*) FROM memories").fetchone()[0],
        c.execute("SELECT COUNT(*) FROM memories_fts").fetchone()[0],
        c.execute("SELECT COUNT(*) FROM memory_vectors").fetchone()[0],
    ]
    if store.vec_available:
        counts.append(c.execute(f"SELECT COUNT(*) FROM {store._vec_table}").fetchone()[0])
    return counts


class TestStoreBasics:
    """Core insert/get/delete operations."""

    def test_insert_and_get(self, store, add_memory):
        memory = add_memory(store, "I love hiking in Colorado")
        got = store.get(memory.id)
        assert got == memory
        assert got.kind == MemoryKind.PREFERENCE
        assert got.created_at.tzinfo is not None

    def test_get_missing(self, store):
        assert store.get("nope") is None

    def test_insert_writes_every_index(self, store, add_memory):
        add_memory(store, "I love hiking in Colorado")
        assert set(_row_counts(store)) == {1}

    def test_vector_round_trip(self, store, embedder):
        memory = _memory("vectors are stored as int8")
        vector = quantize(embedder.embed(memory.text))
        store.insert_memory(memory, vector)
        assert store.get_vector(memory.id) == vector

    def test_failed_write_leaves_nothing_behind(self, store, add_memory):
        store._conn.execute(
            "CREATE TRIGGER fail_vectors BEFORE INSERT ON memory_vectors "
            "BEGIN SELECT RAISE(ABORT, 'vector write failed'); END"
        )
        store._conn.commit()
        version = store.version
        with pytest.raises(sqlite3.DatabaseError):
            add_memory(store, "I love hiking in Colorado")
        assert set(_row_counts(store)) == {0}
        assert store.version == version

    def test_failed_commit_is_rolled_back(self, store, add_memory, monkeypatch):
        real_retry = sqlite_store._retry_on_locked

        def failing_commit(fn, *args, **kwargs):
            if getattr(fn, "__name__", "") == "commit":
                raise sqlite3.OperationalError("database is locked")
            return real_retry(fn, *args, **kwargs)

        monkeypatch.setattr(sqlite_store, "_retry_on_locked", failing_commit)
        version = store.version
        with pytest.raises(sqlite3.OperationalError):
            add_memory(store, "apples and pears")
        monkeypatch.setattr(sqlite_store, "_retry_on_locked", real_retry)
        assert store.version == version

        kept = add_memory(store, "quantum field theory")
        assert [m.text for m in store.list_by_persona("p1")] == [kept.text]
        assert set(_row_counts(store)) == {1}

    def test_rejects_wrong_dimension(self, store):
        with pytest.raises(ValueError, match="dimensions"):
            store.insert_memory(_memory("short vector"), quantize([0.1] * (TEST_DIM // 2)))

    def test_rejects_empty_text(self, store, embedder):
        with pytest.raises(ValueError):
            store.insert_memory(_memory(""), quantize(embedder.embed("x")))

    def test_rejects_oversized_text(self, store, embedder):
        with pytest.raises(ValueError):
            store.insert_memory(_memory("x" * 2001), quantize(embedder.embed("x")))

    def test_per_persona_capacity(self, store, embedder):
        for text in ("apples and pears", "quantum field theory"):
            store.insert_memory(_memory(text), quantize(embedder.embed(text)), max_per_persona=2)
        with pytest.raises(ValueError, match="limit"):
            store.insert_memory(_memory("third wheel"), quantize(embedder.embed("third wheel")),
                                max_per_persona=2)
        assert store.count("p1") == 2

    def test_delete(self, store, add_memory):
        memory = add_memory(store, "I love hiking in Colorado")
        assert store.delete(memory.id) is True
        assert store.get(memory.id) is None
        assert set(_row_counts(store)) == {0}
        assert store.delete(memory.id) is False

    def test_deleted_memory_not_searchable(self, store, add_memory, embedder):
        memory = add_memory(store, "I love hiking in Colorado")
        store.delete(memory.id)
        assert store.search_fts("p1", "hiking") == []
        assert store.search_vectors("p1", embedder.embed("hiking"), 10) == []

    def test_delete_all_for_persona(self, store, add_memory):
        add_memory(store, "apples and pears", persona_id="p1")
        add_memory(store, "quantum field theory", persona_id="p1")
        add_memory(store, "apples and pears", persona_id="p2")
        assert store.delete_all_for_persona("p1") == 2
        assert store.count("p1") == 0
        assert store.count("p2") == 1

    def test_delete_all_for_user(self, store, add_memory):
        add_memory(store, "apples and pears", user_id="alice", persona_id="p1")
        add_memory(store, "quantum field theory", user_id="alice", persona_id="p2")
        add_memory(store, "river boats at dawn", user_id="bob", persona_id="p1")
        assert store.delete_all_for_user("alice") == 2
        assert store.count("p1") == 1
        assert store.count("p2") == 0

    def test_version_bumps_on_write(self, store, add_memory):
        before = store.version
        memory = add_memory(store, "apples and pears")
        assert store.version > before
        after_insert = store.version
        store.get(memory.id)
        assert store.version == after_insert


class TestDedupe:
    """Write-time collapse of near-duplicate vectors."""

    def test_near_duplicate_collapses(self, store, embedder):
        first = _memory("I love hiking in Colorado")
        vector = quantize(embedder.embed(first.text))
        assert store.insert_memory(first, vector, dedupe_threshold=0.97) == (first.id, True)

        later = first.created_at + timedelta(hours=1)
        second = _memory("I love hiking in Colorado", created_at=later)
        assert store.insert_memory(second, vector, dedupe_threshold=0.97) == (first.id, False)
        assert store.count("p1") == 1
        assert store.get(second.id) is None
        assert store.get(first.id).last_accessed == later

    def test_distinct_texts_both_stored(self, store, embedder):
        for text in ("I love hiking in Colorado", "My sister lives in Tokyo"):
            _, created = store.insert_memory(_memory(text), quantize(embedder.embed(text)),
                                             dedupe_threshold=0.97)
            assert created
        assert store.count("p1") == 2

    def test_dedupe_is_per_persona(self, store, embedder):
        vector = quantize(embedder.embed("I love hiking in Colorado"))
        store.insert_memory(_memory("I love hiking in Colorado", persona_id="p1"), vector,
                            dedupe_threshold=0.97)
        _, created = store.insert_memory(_memory("I love hiking in Colorado", persona_id="p2"),
                                         vector, dedupe_threshold=0.97)
        assert created

    def test_recent_vectors_newest_first(self, store, embedder):
        older, newer = _memory("apples and pears"), _memory("quantum field theory")
        store.insert_memory(older, quantize(embedder.embed(older.text)))
        newer_vector = quantize(embedder.embed(newer.text))
        store.insert_memory(newer, newer_vector)
        assert store.recent_vectors("p1", limit=1) == [(newer.id, newer_vector)]
        assert len(store.recent_vectors("p1")) == 2

    def test_no_threshold_no_dedupe(self, store, embedder):
        vector = quantize(embedder.embed("same again"))
        store.insert_memory(_memory("same again"), vector)
        store.insert_memory(_memory("same again"), vector)
        assert store.count("p1") == 2


class TestListing:
    """Chronological and filtered listings."""

    def test_list_recent_for_chat(self, store, add_memory):
        base = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        texts = ["alpha apples", "bravo bananas", "charlie cherries", "delta dates", "echo elderberries"]
        for i, text in enumerate(texts):
            add_memory(store, text, created_at=base + timedelta(minutes=i))
        add_memory(store, "other chat entirely", chat_id="c2", created_at=base + timedelta(hours=1))

        recent = store.list_recent_for_chat("p1", "c1", limit=3)
        assert [m.text for m in recent] == texts[2:]

    def test_list_by_persona_newest_first(self, store, add_memory):
        base = datetime(2024, 6, 1, tzinfo=timezone.utc)
        add_memory(store, "I love hiking in Colorado", created_at=base)
        add_memory(store, "My name is Alex", created_at=base + timedelta(days=1))
        add_memory(store, "I prefer tea over coffee", created_at=base + timedelta(days=2))

        listed = store.list_by_persona("p1")
        assert [m.text for m in listed] == [
            "I prefer tea over coffee", "My name is Alex", "I love hiking in Colorado",
        ]
        prefs = store.list_by_persona("p1", kind=MemoryKind.PREFERENCE)
        assert {m.text for m in prefs} == {"I prefer tea over coffee", "I love hiking in Colorado"}
        assert [m.text for m in store.list_by_persona("p1", text_query="HIKING")] == [
            "I love hiking in Colorado",
        ]
        assert len(store.list_by_persona("p1", limit=2)) == 2

    def test_counts_by_kind(self, store, add_memory):
        add_memory(store, "I love hiking in Colorado")
        add_memory(store, "I prefer tea over coffee")
        add_memory(store, "My name is Alex")
        add_memory(store, "I love sailing", persona_id="p2")
        assert store.counts_by_kind("p1") == [
            CategoryCount(MemoryKind.FACT, 1),
            CategoryCount(MemoryKind.PREFERENCE, 2),
        ]

    def test_count_by_user(self, store, add_memory):
        add_memory(store, "apples and pears", user_id="alice")
        add_memory(store, "quantum field theory", user_id="bob")
        assert store.count("p1") == 2
        assert store.count("p1", user_id="alice") == 1
        assert store.counts_by_kind("p1", user_id="bob") == [CategoryCount(MemoryKind.OTHER, 1)]

    def test_chat_titles(self, store, add_memory):
        add_memory(store, "apples and pears", chat_title="Fruit talk")
        assert store.get_chat_titles(["c1", "missing", None]) == {"c1": "Fruit talk"}
        store.set_chat_title("c1", "Renamed")
        assert store.get_chat_titles(["c1"]) == {"c1": "Renamed"}


class TestSearch:
    """Lexical and vector search."""

    def test_fts_persona_isolation(self, store, add_memory):
        mine = add_memory(store, "I love hiking in Colorado", persona_id="p1")
        add_memory(store, "hiking is my favorite hobby", persona_id="p2")
        results = store.search_fts("p1", "hiking")
        assert [m.id for m, _ in results] == [mine.id]
        assert 0 < results[0][1] <= 1.0

    def test_fts_ranks_fuller_match_first(self, store, add_memory):
        add_memory(store, "hiking boots need new laces")
        both = add_memory(store, "hiking trip to Colorado next summer")
        results = store.search_fts("p1", "hiking colorado")
        assert results[0][0].id == both.id
        assert results[0][1] > results[1][1]

    def test_fts_stemming(self, store, add_memory):
        memory = add_memory(store, "I love hiking in Colorado")
        assert [m.id for m, _ in store.search_fts("p1", "hikes")] == [memory.id]

    def test_fts_query_syntax_is_escaped(self, store, add_memory):
        add_memory(store, "I love hiking in Colorado")
        results = store.search_fts("p1", 'hiking" OR * (NEAR')
        assert len(results) == 1

    def test_fts_query_without_words(self, store):
        assert store.search_fts("p1", "?!") == []

    def test_vector_search_self_match(self, store, add_memory, embedder):
        add_memory(store, "apples and pears")
        target = add_memory(store, "quantum field theory")
        results = store.search_vectors("p1", embedder.embed("quantum field theory"), 10)
        assert results[0][0].id == target.id
        assert results[0][1] == pytest.approx(1.0, abs=1e-3)

    def test_vector_search_persona_isolation(self, store, add_memory, embedder):
        add_memory(store, "quantum field theory", persona_id="p2")
        assert store.search_vectors("p1", embedder.embed("quantum field theory"), 10) == []

    def test_vector_search_dimension_mismatch(self, store):
        with pytest.raises(ValueError):
            store.search_vectors("p1", [0.1] * (TEST_DIM + 1), 10)

    def test_brute_force_search(self, brute_store, add_memory, embedder):
        assert not brute_store.vec_available
        add_memory(brute_store, "apples and pears")
        target = add_memory(brute_store, "quantum field theory")
        results = brute_store.search_vectors("p1", embedder.embed("quantum field theory"), 1)
        assert len(results) == 1
        assert results[0][0].id == target.id
        assert results[0][1] == pytest.approx(1.0, abs=1e-3)

    def test_brute_force_skips_mismatched_vectors(self, brute_store, add_memory, embedder):
        good = add_memory(brute_store, "apples and pears")
        bad = add_memory(brute_store, "quantum field theory")
        brute_store._conn.execute(
            "UPDATE memory_vectors SET dim = ?, q8 = ? WHERE memory_id = ?",
            (TEST_DIM // 2, bytes(TEST_DIM // 2), bad.id),
        )
        brute_store._conn.commit()
        results = brute_store.search_vectors("p1", embedder.embed("quantum field theory"), 10)
        assert [m.id for m, _ in results] == [good.id]


class TestVecIndex:
    """sqlite-vec vec0 index lifecycle."""

    def test_backfill_on_reopen(self, tmp_mind_dir, add_memory):
        path = tmp_mind_dir / "backfill.db"
        plain = MemoryStore(path, dim=TEST_DIM, use_vec_index=False)
        add_memory(plain, "apples and pears")
        add_memory(plain, "quantum field theory")
        plain.close()

        indexed = MemoryStore(path, dim=TEST_DIM)
        try:
            if not indexed.vec_available:
                pytest.skip("sqlite-vec extension not loadable here")
            assert _row_counts(indexed) == [2, 2, 2, 2]
        finally:
            indexed.close()


class TestMaintenance:
    """Pruning, access tracking and settings."""

    def test_prune_low_importance(self, store, add_memory):
        now = datetime.now(timezone.utc)
        old_low = add_memory(store, "apples and pears", created_at=now - timedelta(days=400), importance=0.01)
        old_high = add_memory(store, "quantum field theory", created_at=now - timedelta(days=400), importance=0.9)
        new_low = add_memory(store, "river boats at dawn", importance=0.01)

        pruned = store.prune_low_importance(now - timedelta(days=365), 0.05)
        assert pruned == 1
        assert store.get(old_low.id) is None
        assert store.get(old_high.id) is not None
        assert store.get(new_low.id) is not None

    def test_prune_scoped_to_persona(self, store, add_memory):
        old = datetime.now(timezone.utc) - timedelta(days=400)
        add_memory(store, "apples and pears", persona_id="p1", created_at=old, importance=0.01)
        add_memory(store, "apples and pears", persona_id="p2", created_at=old, importance=0.01)
        assert store.prune_low_importance(old + timedelta(days=1), 0.05, persona_id="p1") == 1
        assert store.count("p2") == 1

    def test_touch(self, store, add_memory):
        memory = add_memory(store, "apples and pears")
        when = memory.created_at + timedelta(days=3)
        store.touch([memory.id], when)
        assert store.get(memory.id).last_accessed == when

    def test_enablement(self, store):
        assert store.is_enabled("p1") is True
        store.set_enabled("p1", False)
        assert store.is_enabled("p1") is False
        assert store.is_enabled("p2") is True
        store.clear_persona_settings()
        assert store.is_enabled("p1") is True

    def test_clear_one_persona_setting(self, store):
        store.set_enabled("p1", False)
        store.set_enabled("p2", False)
        store.clear_persona_settings("p1")
        assert store.is_enabled("p1") is True
        assert store.is_enabled("p2") is False

    def test_stats(self, store, add_memory):
        add_memory(store, "apples and pears", persona_id="p1")
        add_memory(store, "apples and pears", persona_id="p2")
        stats = store.stats()
        assert stats["memories"] == 2
        assert stats["personas"] == 2
        assert stats["dim"] == TEST_DIM
        assert stats["fts_available"] is True


class TestLifecycle:
    """Persistence, permissions and schema checks."""

    def test_persists_across_reopen(self, tmp_mind_dir, add_memory):
        path = tmp_mind_dir / "persist.db"
        first = MemoryStore(path, dim=TEST_DIM)
        memory = add_memory(first, "I love hiking in Colorado")
        first.close()

        second = MemoryStore(path, dim=TEST_DIM)
        try:
            assert second.get(memory.id) == memory
            assert len(second.search_fts("p1", "hiking")) == 1
        finally:
            second.close()

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permissions")
    def test_file_is_owner_only(self, store):
        assert store.db_path.stat().st_mode & 0o777 == 0o600

    def test_in_memory_store(self, add_memory):
        with MemoryStore(":memory:", dim=TEST_DIM) as mem_store:
            memory = add_memory(mem_store, "I love hiking in Colorado")
            assert mem_store.get(memory.id) is not None
            assert mem_store.stats()["db_size_bytes"] == 0

    def test_closed_store_raises(self, tmp_mind_dir):
        closed = MemoryStore(tmp_mind_dir / "closed.db", dim=TEST_DIM)
        closed.close()
        with pytest.raises(sqlite3.ProgrammingError):
            closed.get("anything")

    def test_newer_schema_rejected(self, tmp_mind_dir):
        path = tmp_mind_dir / "future.db"
        MemoryStore(path, dim=TEST_DIM).close()
        conn = sqlite3.connect(str(path))
        conn.execute("UPDATE schema_version SET version = 99")
        conn.commit()
        conn.close()
        with pytest.raises(RuntimeError, match="newer"):
            MemoryStore(path, dim=TEST_DIM)

    def test_rejects_bad_dim(self, tmp_mind_dir):
        with pytest.raises(ValueError):
            MemoryStore(tmp_mind_dir / "bad.db", dim=0)


class TestFtsQuery:
    def test_quotes_words(self):
        expression, words = fts_query("Hiking in Colorado")
        assert expression == '"hiking" OR "colorado"'
        assert words == ["hiking", "colorado"]

    def test_keeps_short_words_when_nothing_else(self):
        assert fts_query("go up")[1] == ["go", "up"]

    def test_dedupes_words(self):
        assert fts_query("tea tea TEA")[1] == ["tea"]
