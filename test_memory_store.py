"""Tests for the LanceDB-backed MemoryStore."""

import itertools
import math

import lancedb
import pytest

import memory_store as memory_store_module
from conftest import DIM, axis, unit
from memory_store import (
    DatasetNotFoundError,
    DimensionMismatchError,
    InvalidEmbeddingError,
    MemoryStore,
    MemoryStoreError,
)
from models import MemoryRow, MetadataRow
from utils import encode_vector


@pytest.fixture
def clock(monkeypatch):
    """Strictly increasing created_at values so recency order is deterministic."""
    ticks = itertools.count(1_000, 10)
    monkeypatch.setattr(memory_store_module, "now_ms", lambda: next(ticks))


def add_raw_row(store: MemoryStore, memory_id: str, embedding_text: str) -> None:
    store._table.add(
        [
            MemoryRow(
                id=memory_id,
                content=f"raw {memory_id}",
                embedding=embedding_text,
                tags="[]",
                created_at=1,
            ).model_dump()
        ]
    )


# =============================================================================
# Open / Dimension Contract
# =============================================================================


class TestOpen:
    def test_creates_missing_parent_directories(self, db_path):
        assert not db_path.parent.exists()
        with MemoryStore(db_path, DIM):
            pass
        assert db_path.parent.is_dir()

    def test_rejects_non_positive_dimension(self, db_path):
        with pytest.raises(ValueError):
            MemoryStore(db_path, 0)

    def test_reopen_with_same_dimension_keeps_data(self, db_path):
        with MemoryStore(db_path, DIM) as first:
            stored = first.store("prefers tabs over spaces", axis(0))
            first.increment_capture_count()

        with MemoryStore(db_path, DIM) as second:
            stats = second.stats()
            assert stats.total_memories == 1
            assert stats.capture_count == 1
            assert second.search(axis(0))[0].record.id == stored.record.id

    def test_dimension_mismatch_fails_at_open(self, db_path):
        with MemoryStore(db_path, 384) as small:
            small.store("a 384-dim memory", [1.0] + [0.0] * 383)

        with pytest.raises(DimensionMismatchError) as excinfo:
            MemoryStore(db_path, 1536)

        err = excinfo.value
        assert err.found == 384
        assert err.expected == 1536
        message = str(err)
        assert "384" in message and "1536" in message
        assert "OPENAI_API_KEY" in message
        assert "LOCAL_MEMORY_DB_PATH" in message
        assert "Delete the existing database" in message

    def test_empty_dataset_accepts_any_dimension(self, db_path):
        with MemoryStore(db_path, 384):
            pass
        with MemoryStore(db_path, 1536) as store:
            assert store.dimension == 1536

    def test_undecodable_probe_row_is_skipped(self, db_path):
        with MemoryStore(db_path, DIM) as store:
            add_raw_row(store, "corrupt", "{not json")
            store.store("valid memory", axis(1))

        with pytest.raises(DimensionMismatchError):
            MemoryStore(db_path, DIM * 2)
        with MemoryStore(db_path, DIM) as reopened:
            assert reopened.stats().total_memories == 2

    def test_closed_store_refuses_operations(self, store):
        store.close()
        assert store.closed
        with pytest.raises(MemoryStoreError):
            store.stats()
        with pytest.raises(MemoryStoreError):
            store.store("after close", axis(0))
        with pytest.raises(MemoryStoreError):
            store.search(axis(0))
        with pytest.raises(MemoryStoreError):
            store.delete("anything")


# =============================================================================
# Store / Dedup
# =============================================================================


class TestStore:
    def test_store_new_record(self, store, clock):
        result = store.store(
            "prefers tabs over spaces",
            axis(0),
            tags=["style", "editor", "style"],
            category="preference",
            source="chat",
        )
        assert result.is_duplicate is False
        assert result.updated_id is None
        record = result.record
        assert len(record.id) == 36
        assert record.content == "prefers tabs over spaces"
        assert record.embedding == axis(0)
        assert record.tags == ["style", "editor", "style"]
        assert record.category == "preference"
        assert record.source == "chat"
        assert record.created_at == 1_000

    def test_round_trips_all_fields(self, store):
        stored = store.store("a memory", axis(2), tags=["x"], category="", source="cli")
        found = store.search(axis(2))[0].record
        assert found.id == stored.record.id
        assert found.embedding == axis(2)
        assert found.tags == ["x"]
        assert found.category == ""
        assert found.source == "cli"
        assert found.created_at == stored.record.created_at

    def test_absent_category_stays_distinct_from_empty(self, store):
        store.store("no category", axis(0))
        store.store("empty category", axis(1), category="")
        by_content = {r.record.content: r.record for r in store.search(axis(0), min_score=-1.0, limit=10)}
        assert by_content["no category"].category is None
        assert by_content["empty category"].category == ""

    def test_defaults(self, store):
        record = store.store("bare memory", axis(3)).record
        assert record.tags == []
        assert record.category is None
        assert record.source == ""

    def test_ids_are_unique(self, store):
        ids = {store.store(f"memory {i}", axis(i)).record.id for i in range(DIM)}
        assert len(ids) == DIM

    def test_wrong_dimension_fails_before_persisting(self, store):
        with pytest.raises(InvalidEmbeddingError):
            store.store("too short", [1.0, 0.0])
        with pytest.raises(InvalidEmbeddingError):
            store.store("too long", axis(0) + [0.0])
        assert store.stats().total_memories == 0

    def test_invalid_embedding_is_a_value_error(self, store):
        with pytest.raises(ValueError):
            store.store("too short", [1.0])

    def test_non_finite_values_rejected(self, store):
        with pytest.raises(InvalidEmbeddingError):
            store.store("nan", unit(math.nan))
        with pytest.raises(InvalidEmbeddingError):
            store.store("inf", unit(math.inf))

    def test_empty_content_rejected(self, store):
        with pytest.raises(ValueError):
            store.store("", axis(0))

    def test_same_embedding_twice_is_duplicate(self, store, clock):
        first = store.store("prefers tabs over spaces", axis(0), tags=["a"], category="pref")
        second = store.store("prefers tabs over spaces", axis(0), dedupe_threshold=1.0)

        assert second.is_duplicate is True
        assert second.updated_id == first.record.id
        assert second.record.id == first.record.id
        assert store.stats().total_memories == 1

    def test_duplicate_overwrites_every_field(self, store, clock):
        first = store.store("uses vim", unit(1.0, 0.1), tags=["old"], category="pref", source="a")
        second = store.store("uses neovim", unit(1.0, 0.12), tags=["new"], source="b")

        assert second.is_duplicate is True
        assert second.record.created_at > first.record.created_at

        stored = store.search(unit(1.0, 0.12), limit=10)
        assert len(stored) == 1
        record = stored[0].record
        assert record.id == first.record.id
        assert record.content == "uses neovim"
        assert record.embedding == unit(1.0, 0.12)
        assert record.tags == ["new"]
        assert record.category is None
        assert record.source == "b"
        assert record.created_at == second.record.created_at

    def test_below_threshold_creates_new_record(self, store):
        store.store("first", axis(0))
        result = store.store("second", unit(1.0, 1.0))  # cosine ~0.707
        assert result.is_duplicate is False
        assert store.stats().total_memories == 2

    def test_store_does_not_touch_capture_count(self, store):
        store.store("one", axis(0))
        store.store("one again", axis(0))
        assert store.stats().capture_count == 0


# =============================================================================
# Search
# =============================================================================


class TestSearch:
    def test_exact_match(self, store):
        stored = store.store("prefers tabs over spaces", axis(0))
        results = store.search(axis(0), limit=5, min_score=0.3)
        assert len(results) == 1
        assert results[0].record.id == stored.record.id
        assert results[0].score == pytest.approx(1.0)

    def test_orthogonal_query_is_excluded(self, store):
        store.store("prefers tabs over spaces", axis(0))
        assert store.search(axis(1), limit=5, min_score=0.3) == []

    def test_empty_store(self, store):
        assert store.search(axis(0)) == []

    def test_ranking_threshold_and_limit(self, store):
        # memory i = e0 + w * e(i+1): score against e0 falls as w grows
        for i, weight in enumerate([0.0, 0.5, 1.0, 2.0, 4.0, 8.0]):
            vector = axis(0)
            vector[i + 1] = weight
            store.store(f"memory {i}", vector)
        store.store("opposite", unit(-1.0))

        results = store.search(axis(0), limit=4, min_score=0.2)
        scores = [r.score for r in results]
        assert len(results) == 4
        assert scores == sorted(scores, reverse=True)
        assert all(s >= 0.2 for s in scores)
        assert results[0].record.content == "memory 0"

        everything = store.search(axis(0), limit=50, min_score=-1.0)
        assert len(everything) == 7
        assert everything[-1].record.content == "opposite"
        assert everything[-1].score == pytest.approx(-1.0)

    def test_ties_keep_storage_order(self, store):
        never_dedupe = 1.01
        a = store.store("first", axis(0), dedupe_threshold=never_dedupe)
        b = store.store("second", axis(0), dedupe_threshold=never_dedupe)
        results = store.search(axis(0))
        assert [r.record.id for r in results] == [a.record.id, b.record.id]

    def test_non_positive_limit_returns_nothing(self, store):
        store.store("memory", axis(0))
        assert store.search(axis(0), limit=0) == []

    def test_wrong_query_dimension_raises(self, store):
        store.store("memory", axis(0))
        with pytest.raises(InvalidEmbeddingError):
            store.search([1.0, 0.0, 0.0])

    def test_corrupt_rows_are_skipped_with_warning(self, store, capsys):
        store.store("healthy", axis(0))
        add_raw_row(store, "bad-json", "[1.0, 2.0")
        add_raw_row(store, "bad-length", encode_vector([1.0, 0.0]))

        results = store.search(axis(0))

        assert [r.record.content for r in results] == ["healthy"]
        err = capsys.readouterr().err
        assert "bad-json" in err
        assert "bad-length" in err
        assert "WARNING" in err

    def test_zero_query_scores_zero(self, store):
        store.store("memory", axis(0))
        results = store.search([0.0] * DIM, min_score=0.0)
        assert [r.score for r in results] == [0.0]


# =============================================================================
# Delete
# =============================================================================


class TestDelete:
    def test_delete_by_id(self, store):
        stored = store.store("to delete", axis(0))
        kept = store.store("to keep", axis(1))

        assert store.delete(stored.record.id) == 1
        assert store.search(axis(0)) == []
        assert store.search(axis(1))[0].record.id == kept.record.id

    def test_delete_is_idempotent(self, store):
        stored = store.store("to delete", axis(0))
        assert store.delete(stored.record.id) == 1
        assert store.delete(stored.record.id) == 0
        assert store.stats().total_memories == 0

    def test_delete_unknown_id_is_noop(self, store):
        store.store("survivor", axis(0))
        assert store.delete("does-not-exist") == 0
        assert store.delete("it's quoted") == 0
        assert store.stats().total_memories == 1

    def test_delete_by_query_bulk(self, store):
        # Each scores ~0.857 against e0 and ~0.735 against each other
        store.store("close a", unit(1.0, 0.6))
        store.store("close b", unit(1.0, 0.0, 0.6))
        store.store("close c", unit(1.0, 0.0, 0.0, 0.6))
        far = store.store("far", unit(0.5, 0.0, 0.0, 0.0, math.sqrt(0.75)))

        deleted = store.delete_by_query(axis(0), threshold=0.8)

        assert deleted == 3
        remaining = store.search(axis(0), min_score=-1.0, limit=10)
        assert [r.record.id for r in remaining] == [far.record.id]
        assert remaining[0].score == pytest.approx(0.5)

    def test_delete_by_query_respects_cap(self, store):
        for i in range(1, 6):
            vector = axis(0)
            vector[i] = 0.5  # ~0.894 against e0, 0.8 against each other
            store.store(f"near {i}", vector)
        assert store.delete_by_query(axis(0), threshold=0.5, max_matches=2) == 2
        assert store.stats().total_memories == 3

    def test_delete_by_query_without_matches(self, store):
        store.store("memory", axis(0))
        assert store.delete_by_query(axis(1), threshold=0.8) == 0
        assert store.stats().total_memories == 1


# =============================================================================
# Stats / Recall / Profile
# =============================================================================


class TestStatsAndRecall:
    def test_stats_on_empty_store(self, store):
        assert store.stats().as_dict() == {"totalMemories": 0, "captureCount": 0, "dimension": DIM}

    def test_capture_count_is_monotonic_and_persistent(self, db_path):
        with MemoryStore(db_path, DIM) as store:
            assert store.increment_capture_count() == 1
            assert store.increment_capture_count() == 2
        with MemoryStore(db_path, DIM) as store:
            assert store.stats().capture_count == 2
            assert store.increment_capture_count() == 3

    def test_capture_count_survives_deletes(self, store):
        stored = store.store("memory", axis(0))
        store.increment_capture_count()
        store.delete(stored.record.id)
        assert store.stats().as_dict() == {"totalMemories": 0, "captureCount": 1, "dimension": DIM}

    def test_get_all_content_is_newest_first(self, store, clock):
        for i in range(5):
            store.store(f"memory {i}", axis(i))
        assert store.get_all_content(3) == ["memory 4", "memory 3", "memory 2"]
        assert store.get_all_content(20) == [f"memory {i}" for i in reversed(range(5))]

    def test_dedup_update_moves_record_to_front(self, store, clock):
        store.store("old wording", axis(0))
        store.store("other", axis(1))
        store.store("new wording", axis(0))
        assert store.get_all_content() == ["new wording", "other"]

    def test_recent_returns_records(self, store, clock):
        store.store("first", axis(0), tags=["t"])
        store.store("second", axis(1), category="c")
        records = store.recent(10)
        assert [r.content for r in records] == ["second", "first"]
        assert records[0].category == "c"
        assert records[1].tags == ["t"]

    def test_recent_on_empty_store(self, store):
        assert store.get_all_content() == []
        assert store.recent(0) == []

    def test_profile_absent_by_default(self, store):
        assert store.get_profile() is None

    def test_profile_returned_verbatim(self, store):
        blob = '{"name": "Ada", "likes": ["tabs"]}\n'
        store._metadata.add([MetadataRow(name="profile", data=blob).model_dump()])
        assert store.get_profile() == blob

    def test_profile_written_by_another_connection_is_visible(self, store, db_path):
        assert store.get_profile() is None
        other = lancedb.connect(str(db_path))
        other.open_table("metadata").add([MetadataRow(name="profile", data="hello").model_dump()])
        assert store.get_profile() == "hello"

    def test_writes_from_another_store_are_visible(self, store, db_path):
        assert store.stats().total_memories == 0
        with MemoryStore(db_path, DIM) as writer:
            writer.store("written elsewhere", axis(0))
            writer.increment_capture_count()

        assert store.stats().total_memories == 1
        assert store.stats().capture_count == 1
        assert [r.record.content for r in store.search(axis(0))] == ["written elsewhere"]
        # Dedup sees the other writer's record too
        assert store.store("written elsewhere again", axis(0)).is_duplicate


# =============================================================================
# Read-only open
# =============================================================================


class TestReadOnlyOpen:
    def test_missing_dataset_is_not_created(self, db_path):
        with pytest.raises(DatasetNotFoundError):
            MemoryStore(db_path, DIM, create=False)
        assert not db_path.exists()
        assert not db_path.parent.exists()

    def test_reads_existing_dataset_without_writing(self, store, db_path):
        store.store("prefers tabs over spaces", axis(0))
        version = store._metadata.version

        with MemoryStore(db_path, DIM, create=False) as reader:
            assert reader.get_all_content() == ["prefers tabs over spaces"]
            assert reader.stats().capture_count == 0

        assert store._metadata.version == version

    def test_dimension_gate_still_applies(self, store, db_path):
        store.store("prefers tabs over spaces", axis(0))
        with pytest.raises(DimensionMismatchError):
            MemoryStore(db_path, DIM * 2, create=False)
