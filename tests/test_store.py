"""
Tests for memvault.store — MemoryStore CRUD, search pipeline, transactions.
"""

import threading

import pytest

from memvault.errors import ConflictError, InvalidInput, NotFound, StorageFailure
from memvault.migrations import SCHEMA_VERSION
from memvault.store import MemoryStore
from memvault.types import content_hash


@pytest.fixture
def store():
    """Create an in-memory store for testing."""
    s = MemoryStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def disk_store(tmp_path):
    """Create a disk-backed store for testing."""
    s = MemoryStore(db_path=str(tmp_path / "test.db"))
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_schema_version(self, store):
        assert store.schema.current_version() == SCHEMA_VERSION
        assert store._conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION

    def test_all_tables_exist(self, store):
        tables = {
            r["name"] for r in store._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        required = {"memories", "tags", "relationships", "memories_fts", "schema_migrations"}
        assert required.issubset(tables), f"Missing: {required - tables}"

    def test_wal_mode_on_disk(self, disk_store):
        mode = disk_store._conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode.lower() == "wal"

    def test_cloud_safe_uses_delete_journal(self, tmp_path):
        s = MemoryStore(db_path=str(tmp_path / "cloud.db"), cloud_safe=True)
        try:
            mode = s._conn.execute("PRAGMA journal_mode").fetchone()[0]
            assert mode.lower() == "delete"
        finally:
            s.close()

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "memory.db"
        with MemoryStore(db_path=str(path)) as s:
            s.store("hello")
        assert path.exists()


# ---------------------------------------------------------------------------
# Store / get
# ---------------------------------------------------------------------------


class TestStore:
    def test_store_returns_content_hash(self, store):
        h = store.store("Remember the build flag", ["build"])
        assert h == content_hash("Remember the build flag")

    def test_store_then_get(self, store):
        h = store.store("Some content", ["a", "b"])
        m = store.get_by_hash(h)
        assert m is not None
        assert m.content == "Some content"
        assert m.tags == ["a", "b"]
        assert m.hash == h

    def test_unicode_content_round_trip(self, store):
        text = "Café — naïve résumé \U0001F600"
        h = store.store(text)
        assert store.get_by_hash(h).content == text

    def test_tags_normalized(self, store):
        h = store.store("content", ["  Build ", "build", "TimeOut", ""])
        assert store.get_by_hash(h).tags == ["build", "timeout"]

    def test_metadata_preserved(self, store):
        h = store.store("content", metadata={"source": "cli", "n": [1, 2]})
        assert store.get_by_hash(h).metadata == {"source": "cli", "n": [1, 2]}

    def test_empty_content_rejected(self, store):
        with pytest.raises(InvalidInput):
            store.store("")
        with pytest.raises(InvalidInput):
            store.store("   \n\t")

    def test_oversized_content_rejected(self):
        s = MemoryStore(":memory:", max_content_size=10)
        try:
            with pytest.raises(InvalidInput):
                s.store("x" * 11)
            assert s.stats()["total_memories"] == 0
        finally:
            s.close()

    def test_non_dict_metadata_rejected(self, store):
        with pytest.raises(InvalidInput):
            store.store("content", metadata=["not", "a", "dict"])

    def test_duplicate_store_returns_existing_hash(self, store):
        h1 = store.store("same content", ["first"])
        h2 = store.store("same content", ["second"])
        assert h1 == h2
        assert store.stats()["total_memories"] == 1
        assert store.get_by_hash(h1).tags == ["first"]

    def test_get_missing_returns_none(self, store):
        assert store.get_by_hash(content_hash("nothing")) is None

    def test_get_empty_hash_rejected(self, store):
        with pytest.raises(InvalidInput):
            store.get_by_hash("")

    def test_explicit_created_at(self, store):
        h = store.store("dated", created_at="2020-05-01T10:00:00Z")
        assert store.get_by_hash(h).created_at == "2020-05-01T10:00:00.000000+00:00"

    def test_ids_not_reused_after_delete(self, store):
        h1 = store.store("first")
        id1 = store.get_by_hash(h1).id
        store.delete(h1)
        h2 = store.store("second")
        assert store.get_by_hash(h2).id > id1


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdate:
    def test_update_changes_identity(self, store):
        old = store.store("v1", ["t"])
        new = store.update(old, "v2")
        assert new == content_hash("v2")
        assert store.get_by_hash(old) is None
        assert store.get_by_hash(new).content == "v2"

    def test_update_keeps_tags_when_omitted(self, store):
        old = store.store("v1", ["keep", "me"])
        new = store.update(old, "v2")
        assert store.get_by_hash(new).tags == ["keep", "me"]

    def test_update_replaces_tags_when_given(self, store):
        old = store.store("v1", ["a"])
        new = store.update(old, "v2", ["b", "c"])
        assert store.get_by_hash(new).tags == ["b", "c"]

    def test_update_empty_tags_clears(self, store):
        old = store.store("v1", ["a"])
        new = store.update(old, "v2", [])
        assert store.get_by_hash(new).tags == []

    def test_update_keeps_id_and_created_at(self, store):
        old = store.store("v1")
        before = store.get_by_hash(old)
        after = store.get_by_hash(store.update(old, "v2"))
        assert after.id == before.id
        assert after.created_at == before.created_at

    def test_update_metadata_only_when_given(self, store):
        old = store.store("v1", metadata={"k": 1})
        mid = store.update(old, "v2")
        assert store.get_by_hash(mid).metadata == {"k": 1}
        new = store.update(mid, "v3", metadata={"k": 2})
        assert store.get_by_hash(new).metadata == {"k": 2}

    def test_update_unknown_hash(self, store):
        with pytest.raises(NotFound):
            store.update(content_hash("ghost"), "new")

    def test_update_empty_content(self, store):
        h = store.store("v1")
        with pytest.raises(InvalidInput):
            store.update(h, "  ")

    def test_update_conflict_leaves_original(self, store):
        a = store.store("alpha", ["a"])
        b = store.store("beta", ["b"])
        with pytest.raises(ConflictError):
            store.update(a, "beta")
        assert store.get_by_hash(a).content == "alpha"
        assert store.get_by_hash(b).tags == ["b"]

    def test_update_same_content_returns_same_hash(self, store):
        h = store.store("same", ["x"])
        assert store.update(h, "same", ["y"]) == h
        assert store.get_by_hash(h).tags == ["y"]

    def test_update_reindexes(self, store):
        h = store.store("apples are red")
        store.update(h, "bananas are yellow")
        assert store.search(query="apples") == []
        assert [m.content for m in store.search(query="bananas")] == ["bananas are yellow"]


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDelete:
    def test_delete_existing(self, store):
        h = store.store("to delete", ["x"])
        assert store.delete(h) is True
        assert store.get_by_hash(h) is None
        assert store.search(query="delete") == []

    def test_delete_missing(self, store):
        assert store.delete(content_hash("nope")) is False

    def test_delete_empty_hash(self, store):
        with pytest.raises(InvalidInput):
            store.delete("")

    def test_delete_by_tag(self, store):
        store.store("one", ["temp"])
        store.store("two", ["Temp", "other"])
        keep = store.store("three", ["other"])
        assert store.delete_by_tag("TEMP") == 2
        assert store.search(tags=["temp"]) == []
        assert [m.hash for m in store.list_memories()] == [keep]

    def test_delete_by_unknown_tag(self, store):
        store.store("one", ["a"])
        assert store.delete_by_tag("zzz") == 0

    def test_delete_by_empty_tag(self, store):
        with pytest.raises(InvalidInput):
            store.delete_by_tag("  ")

    def test_delete_cascades_tags(self, store):
        h = store.store("tagged", ["a", "b"])
        store.delete(h)
        assert store._conn.execute("SELECT COUNT(*) FROM tags").fetchone()[0] == 0


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class TestSearch:
    def test_tag_search_most_recent_first(self, store):
        a = store.store("Build failed with a timeout", ["build", "timeout"])
        b = store.store("Build succeeded", ["build"])
        results = store.search(tags=["build"])
        assert [m.hash for m in results] == [b, a]

    def test_query_filters_non_matching(self, store):
        a = store.store("The job hit a timeout", ["build", "timeout"])
        store.store("Build succeeded", ["build"])
        results = store.search(query="timeout")
        assert [m.hash for m in results] == [a]

    def test_query_matches_tags(self, store):
        h = store.store("nothing special here", ["kubernetes"])
        assert [m.hash for m in store.search(query="kubernetes")] == [h]

    def test_query_any_word_matches(self, store):
        a = store.store("git reset hard")
        b = store.store("cherry pick commits")
        store.store("unrelated note")
        hashes = {m.hash for m in store.search(query="reset cherry")}
        assert hashes == {a, b}

    def test_relevance_bounded(self, store):
        store.store("python python python testing")
        store.store("java testing")
        store.store("rust compiler")
        for m in store.search(query="python testing"):
            assert m.relevance is not None
            assert 0.0 <= m.relevance < 1.0

    def test_higher_relevance_first(self, store):
        store.store("database tuning notes for postgres and other things entirely")
        best = store.store("database database database")
        store.store("unrelated entry one")
        store.store("unrelated entry two")
        results = store.search(query="database")
        assert results[0].hash == best
        assert results[0].relevance >= results[-1].relevance

    def test_no_query_has_no_relevance(self, store):
        store.store("something")
        assert store.search()[0].relevance is None

    def test_min_relevance_filters_everything(self, store):
        store.store("cache invalidation is hard")
        store.store("naming things is hard")
        assert store.search(query="hard", min_relevance=0.9) == []

    def test_min_relevance_clamped(self, store):
        store.store("cache invalidation")
        assert store.search(query="cache", min_relevance=5) == []
        assert len(store.search(query="cache", min_relevance=-3)) == 1

    def test_min_relevance_without_query_filters_unscored(self, store):
        store.store("one")
        store.store("two")
        assert store.search(min_relevance=0.9) == []
        assert len(store.search(min_relevance=0)) == 2

    def test_punctuation_only_query_matches_nothing(self, store):
        store.store("alpha note")
        store.store("beta note")
        assert store.search(query="???") == []
        assert store.search(query="( - )") == []

    def test_blank_query_lists_everything(self, store):
        store.store("alpha note")
        store.store("beta note")
        assert len(store.search(query="   ")) == 2

    def test_blank_tag_filter_rejected(self, store):
        store.store("tagged", ["build"])
        with pytest.raises(InvalidInput):
            store.search(tags=["  "])
        with pytest.raises(InvalidInput):
            store.list_memories(tags=["", " "])

    def test_empty_tag_list_means_no_filter(self, store):
        store.store("tagged", ["build"])
        assert len(store.search(tags=[])) == 1

    def test_limit_clamped_to_one(self, store):
        store.store("one")
        store.store("two")
        assert len(store.search(limit=0)) == 1
        assert len(store.search(limit=-5)) == 1

    def test_limit_applied_last(self, store):
        for i in range(5):
            store.store(f"note number {i}", ["n"])
        assert len(store.search(query="note", tags=["n"], limit=3)) == 3

    def test_query_and_tags_combined(self, store):
        a = store.store("deploy to staging", ["ops"])
        store.store("deploy to laptop", ["personal"])
        assert [m.hash for m in store.search(query="deploy", tags=["ops"])] == [a]

    def test_tag_filter_any_match(self, store):
        a = store.store("one", ["x"])
        b = store.store("two", ["y"])
        store.store("three", ["z"])
        assert {m.hash for m in store.search(tags=["x", "Y"])} == {a, b}

    def test_start_date_filter(self, store):
        store.store("old entry", created_at="2020-01-01T00:00:00Z")
        new = store.store("new entry", created_at="2024-06-15T12:00:00Z")
        assert [m.hash for m in store.search(start_date="2024-01-01")] == [new]

    def test_end_date_date_only_is_inclusive(self, store):
        old = store.store("old entry", created_at="2020-01-01T23:30:00Z")
        store.store("new entry", created_at="2024-06-15T12:00:00Z")
        assert [m.hash for m in store.search(end_date="2020-01-01")] == [old]

    def test_days_ago(self, store):
        store.store("ancient", created_at="2001-01-01T00:00:00Z")
        recent = store.store("recent")
        assert [m.hash for m in store.search(days_ago=1)] == [recent]

    def test_start_date_overrides_days_ago(self, store):
        old = store.store("ancient", created_at="2001-01-01T00:00:00Z")
        store.store("recent")
        results = store.search(days_ago=0, start_date="2000-01-01")
        assert old in {m.hash for m in results}

    def test_invalid_date_rejected(self, store):
        with pytest.raises(InvalidInput):
            store.search(start_date="not-a-date")

    def test_negative_days_ago_rejected(self, store):
        with pytest.raises(InvalidInput):
            store.search(days_ago=-1)

    def test_blank_query_is_no_query(self, store):
        store.store("one")
        results = store.search(query="   ")
        assert len(results) == 1
        assert results[0].relevance is None

    def test_fts_operators_are_literal(self, store):
        store.store("plain text")
        assert store.search(query='"unbalanced AND (') == []

    def test_accent_insensitive_default(self, store):
        h = store.store("Le café est prêt")
        assert [m.hash for m in store.search(query="cafe")] == [h]

    def test_relevance_ties_break_by_recency(self, store):
        a = store.store("alpha token", created_at="2021-01-01T00:00:00Z")
        b = store.store("token alpha", created_at="2022-01-01T00:00:00Z")
        results = store.search(query="token")
        assert results[0].relevance == results[1].relevance
        assert [m.hash for m in results] == [b, a]


# ---------------------------------------------------------------------------
# Listing, stats, maintenance
# ---------------------------------------------------------------------------


class TestListAndStats:
    def test_list_newest_first(self, store):
        a = store.store("a", created_at="2020-01-01")
        b = store.store("b", created_at="2021-01-01")
        assert [m.hash for m in store.list_memories()] == [b, a]
        assert [m.hash for m in store.list_memories(ascending=True)] == [a, b]

    def test_list_pagination(self, store):
        for i in range(5):
            store.store(f"item {i}", created_at=f"2020-01-0{i + 1}")
        page = store.list_memories(limit=2, offset=1)
        assert [m.content for m in page] == ["item 3", "item 2"]

    def test_stats(self, store):
        a = store.store("a")
        b = store.store("b")
        store.graph.link(a, b)
        stats = store.stats()
        assert stats["total_memories"] == 2
        assert stats["total_relationships"] == 1
        assert stats["storage_size"] > 0
        assert stats["schema_version"] == SCHEMA_VERSION
        assert stats["fts_tokenizer"] == "unicode61 remove_diacritics 2"
        assert "backup_enabled" not in stats

    def test_integrity_ok(self, store):
        a = store.store("a", ["x"])
        b = store.store("b")
        store.graph.link(a, b)
        store.update(a, "a2")
        store.delete(b)
        report = store.check_integrity()
        assert report["ok"] is True

    def test_integrity_detects_missing_index_row(self, store):
        h = store.store("indexed")
        mid = store.get_by_hash(h).id
        store._conn.execute("DELETE FROM memories_fts WHERE rowid=?", (mid,))
        report = store.check_integrity()
        assert report["ok"] is False
        assert report["missing_index_rows"] == 1

    def test_rebuild_index_restores_search(self, store):
        h = store.store("recoverable")
        store._conn.execute("DELETE FROM memories_fts")
        assert store.search(query="recoverable") == []
        assert store.rebuild_index() == 1
        assert [m.hash for m in store.search(query="recoverable")] == [h]

    def test_rebuild_index_with_new_tokenizer(self, store):
        h = store.store("running the tests")
        assert store.search(query="run") == []
        store.rebuild_index("porter unicode61 remove_diacritics 2")
        assert store.stats()["fts_tokenizer"] == "porter unicode61 remove_diacritics 2"
        assert [m.hash for m in store.search(query="run")] == [h]

    def test_optimize_index(self, store):
        store.store("one")
        store.optimize_index()
        assert len(store.search(query="one")) == 1

    def test_unsafe_tokenizer_rejected(self):
        with pytest.raises(ValueError):
            MemoryStore(":memory:", fts_tokenizer="unicode61'); DROP TABLE memories; --")


# ---------------------------------------------------------------------------
# Transactions & concurrency
# ---------------------------------------------------------------------------


class TestTransactions:
    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.store("never committed", ["x"])
                raise RuntimeError("boom")
        assert store.stats()["total_memories"] == 0
        assert store.search(query="committed") == []

    def test_nested_savepoint_rolls_back_alone(self, store):
        with store.transaction():
            keep = store.store("kept")
            try:
                with store.transaction():
                    store.store("discarded")
                    raise RuntimeError("inner")
            except RuntimeError:
                pass
        assert store.get_by_hash(keep) is not None
        assert store.get_by_hash(content_hash("discarded")) is None

    def test_storage_error_surfaces_as_storage_failure(self, store):
        with pytest.raises(StorageFailure):
            with store.transaction() as conn:
                conn.execute("INSERT INTO no_such_table VALUES (1)")

    def test_concurrent_writers(self, disk_store):
        errors = []

        def worker(n):
            try:
                for i in range(20):
                    disk_store.store(f"thread {n} note {i}", [f"t{n}"])
            except Exception as exc:  # collected for the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert disk_store.stats()["total_memories"] == 80
        assert disk_store.check_integrity()["ok"] is True


class TestPersistence:
    def test_reopen_same_state(self, tmp_path):
        path = str(tmp_path / "persist.db")
        with MemoryStore(db_path=path) as s:
            a = s.store("first", ["x"], metadata={"k": "v"})
            b = s.store("second")
            s.graph.link(a, b, "follows")
        with MemoryStore(db_path=path) as s:
            m = s.get_by_hash(a)
            assert m.tags == ["x"]
            assert m.metadata == {"k": "v"}
            related = s.graph.get_related(a)
            assert [r.hash for r in related] == [b]
            assert related[0].relationship_type == "follows"
            assert [r.hash for r in s.search(query="first")] == [a]
