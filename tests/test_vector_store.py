import threading

import numpy as np
import pytest

from docs_rag.chunking.schemas import ChunkMetadata
from docs_rag.embedding.vector_store import (
    CURRENT_FILE,
    FaissVectorStore,
    UpsertItem,
    l2_normalise,
)
from docs_rag.errors import StoreError


def item(chunk_id, embedding, local_path="docs/a.md", index=0, text=None, section=None):
    return UpsertItem(
        id=chunk_id,
        embedding=embedding,
        document=text or f"text of {chunk_id}",
        metadata=ChunkMetadata(
            source_url=f"https://kotlinlang.org/{local_path}",
            local_path=local_path,
            title="Title",
            chunk_index=index,
            section=section,
        ),
    )


def test_query_orders_by_cosine_similarity(store):
    store.upsert(
        [
            item("orthogonal", [0.0, 1.0, 0.0], index=0),
            item("diagonal", [1.0, 1.0, 0.0], index=1),
            item("scaled-same", [5.0, 0.0, 0.0], index=2),
        ]
    )

    result = store.query([2.0, 0.0, 0.0], top_k=3)

    assert result.ids == ["scaled-same", "diagonal", "orthogonal"]
    assert result.scores == pytest.approx([1.0, 1 / np.sqrt(2), 0.0], abs=1e-5)
    assert all(a >= b for a, b in zip(result.scores, result.scores[1:]))


def test_query_returns_at_most_top_k(store):
    store.upsert([item(f"c{i}", [1.0, float(i)], index=i) for i in range(6)])
    assert len(store.query([1.0, 0.0], top_k=4)) == 4
    assert len(store.query([1.0, 0.0], top_k=50)) == 6


def test_filter_never_returns_other_documents(store):
    store.upsert(
        [
            item("a#0", [1.0, 0.0], local_path="docs/a.md", index=0),
            item("a#1", [0.9, 0.1], local_path="docs/a.md", index=1),
            item("b#0", [0.0, 1.0], local_path="docs/b.md", index=0),
        ]
    )

    # b is the only close match, but the filter pins the search to a
    result = store.query([0.0, 1.0], top_k=5, where={"localPath": "docs/a.md"})

    assert set(result.ids) == {"a#0", "a#1"}
    assert all(m.local_path == "docs/a.md" for m in result.metadatas)


def test_filter_on_unknown_key_or_value_matches_nothing(store):
    store.upsert([item("a#0", [1.0, 0.0])])
    assert len(store.query([1.0, 0.0], 5, where={"localPath": "docs/missing.md"})) == 0
    assert len(store.query([1.0, 0.0], 5, where={"nope": "x"})) == 0


def test_filter_compares_chunk_index_as_string(store):
    store.upsert([item("a#0", [1.0, 0.0], index=0), item("a#1", [1.0, 0.1], index=1)])
    result = store.query([1.0, 0.0], 5, where={"chunkIndex": "1"})
    assert result.ids == ["a#1"]


def test_empty_index_returns_empty_result(store):
    result = store.query([1.0, 2.0, 3.0], top_k=5)
    assert len(result) == 0
    assert result.ids == [] and result.scores == []


def test_upsert_same_id_overwrites(store):
    store.upsert([item("a#0", [1.0, 0.0], text="old")])
    store.upsert([item("a#0", [0.0, 1.0], text="new")])

    assert store.count() == 1
    result = store.query([0.0, 1.0], top_k=1)
    assert result.documents == ["new"]
    assert result.scores[0] == pytest.approx(1.0, abs=1e-5)


def test_last_item_wins_for_duplicate_ids_in_one_batch(store):
    store.upsert([item("a#0", [1.0, 0.0], text="first"), item("a#0", [1.0, 0.0], text="second")])
    assert store.count() == 1
    assert store.query([1.0, 0.0], 1).documents == ["second"]


def test_replace_documents_drops_stale_chunks_of_the_page(store):
    store.upsert([item(f"docs/a.md#{i}", [1.0, float(i)], index=i) for i in range(4)])
    store.upsert([item("docs/b.md#0", [0.0, 1.0], local_path="docs/b.md")])

    store.upsert(
        [item(f"docs/a.md#{i}", [1.0, float(i)], index=i) for i in range(2)],
        replace_documents=True,
    )

    assert store.count(where={"localPath": "docs/a.md"}) == 2
    assert store.count(where={"localPath": "docs/b.md"}) == 1


def test_plain_upsert_keeps_other_chunks_of_the_page(store):
    store.upsert([item(f"docs/a.md#{i}", [1.0, float(i)], index=i) for i in range(3)])
    store.upsert([item("docs/a.md#0", [1.0, 0.0], index=0, text="changed")])
    assert store.count() == 3


def test_zero_vectors_normalise_to_zero(store):
    assert np.array_equal(l2_normalise([0.0, 0.0, 0.0]), np.zeros((1, 3), dtype=np.float32))

    store.upsert([item("zero", [0.0, 0.0]), item("unit", [0.0, 3.0], index=1)])
    result = store.query([0.0, 0.0], top_k=2)
    assert result.scores == [0.0, 0.0]

    result = store.query([0.0, 1.0], top_k=2)
    assert result.ids[0] == "unit"
    assert result.scores[1] == 0.0


def test_list_distinct_values(store):
    store.upsert(
        [
            item("a#0", [1.0, 0.0], local_path="docs/a.md"),
            item("a#1", [1.0, 0.0], local_path="docs/a.md", index=1, section="Intro"),
            item("b#0", [0.0, 1.0], local_path="docs/b.md"),
        ]
    )
    assert store.list_distinct_values("localPath") == {"docs/a.md", "docs/b.md"}
    assert store.list_distinct_values("section") == {"Intro"}
    assert store.list_distinct_values("unknown") == set()


def test_dimension_mismatch_fails_without_changing_state(store):
    store.upsert([item("a#0", [1.0, 0.0])])
    generation = store.generation

    with pytest.raises(StoreError):
        store.upsert([item("b#0", [1.0, 0.0, 0.0], local_path="docs/b.md")])
    with pytest.raises(StoreError):
        store.upsert([item("c#0", [1.0, 0.0]), item("c#1", [1.0], index=1)])
    with pytest.raises(StoreError):
        store.query([1.0, 0.0, 0.0], top_k=1)

    assert store.generation == generation
    assert store.count() == 1


def test_top_k_must_be_positive(store):
    with pytest.raises(ValueError):
        store.query([1.0], top_k=0)


def test_reopen_restores_committed_state(index_dir):
    with FaissVectorStore(index_dir) as first:
        first.upsert([item("a#0", [1.0, 0.0]), item("b#0", [0.0, 1.0], local_path="docs/b.md")])
        first.upsert([item("a#0", [1.0, 0.2], text="updated")])

    with FaissVectorStore(index_dir) as reopened:
        assert reopened.count() == 2
        assert reopened.dimensions == 2
        assert reopened.list_distinct_values("localPath") == {"docs/a.md", "docs/b.md"}
        result = reopened.query([1.0, 0.0], top_k=1)
        assert result.documents == ["updated"]
        assert result.metadatas[0].title == "Title"

    segments = [p.name for p in index_dir.glob("seg-*")]
    assert len(segments) == 1
    assert (index_dir / CURRENT_FILE).exists()


def test_closed_store_rejects_calls(index_dir):
    s = FaissVectorStore(index_dir)
    s.close()
    with pytest.raises(StoreError):
        s.query([1.0], top_k=1)
    with pytest.raises(StoreError):
        s.upsert([item("a#0", [1.0])])
    s.close()


def test_readers_never_see_a_partial_document(store):
    chunks_per_version = 4

    def version(v):
        return [
            item(f"docs/a.md#{i}", [1.0, float(i)], index=i, text=f"v{v} chunk {i}")
            for i in range(chunks_per_version)
        ]

    store.upsert(version(0), replace_documents=True)
    stop = threading.Event()
    errors = []

    def writer():
        for v in range(1, 40):
            store.upsert(version(v), replace_documents=True)
        stop.set()

    def reader():
        while not stop.is_set():
            result = store.query([1.0, 1.0], top_k=10, where={"localPath": "docs/a.md"})
            versions = {doc.split()[0] for doc in result.documents}
            if len(result) != chunks_per_version or len(versions) != 1:
                errors.append((len(result), versions))

    threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert store.count() == chunks_per_version


def test_commit_writes_only_the_batch_and_merged_segments(index_dir, monkeypatch):
    import docs_rag.embedding.vector_store as vector_store

    written = []
    real_save_json = vector_store.save_json

    def counting_save_json(data, path):
        if str(path).endswith(vector_store.CHUNKS_FILE):
            written.append(len(data))
        real_save_json(data, path)

    monkeypatch.setattr(vector_store, "save_json", counting_save_json)

    pages, chunks_per_page = 200, 5
    with FaissVectorStore(index_dir) as s:
        for p in range(pages):
            path = f"docs/page-{p}.md"
            s.upsert(
                [item(f"{path}#{i}", [1.0, float(p), float(i)], local_path=path, index=i) for i in range(chunks_per_page)],
                replace_documents=True,
            )
        assert s.count() == pages * chunks_per_page
        assert s.segment_count <= 8

    total = pages * chunks_per_page
    assert len(written) == pages
    # Odd-numbered commits never merge: they write exactly their own batch
    assert all(n == chunks_per_page for n in written[::2])
    # Binary-counter merging keeps the total far below one full rewrite per page
    assert sum(written) <= 5 * total


def test_tombstoned_rows_stay_hidden_after_reopen(index_dir):
    with FaissVectorStore(index_dir) as s:
        s.upsert([item(f"docs/a.md#{i}", [1.0, float(i)], index=i) for i in range(4)])
        s.upsert([item("docs/b.md#0", [0.0, 1.0], local_path="docs/b.md")])
        s.upsert([item("docs/a.md#0", [1.0, 0.0], index=0, text="updated")])
        # the original page-a segment is still live, with one tombstoned row
        assert s.segment_count == 2

    with FaissVectorStore(index_dir) as reopened:
        assert reopened.count() == 5
        assert reopened.count(where={"localPath": "docs/a.md"}) == 4
        result = reopened.query([1.0, 0.0], top_k=5)
        assert result.ids.count("docs/a.md#0") == 1
        assert result.documents[0] == "updated"


def test_max_segments_forces_a_merge(index_dir):
    with FaissVectorStore(index_dir, max_segments=2) as s:
        s.upsert([item(f"docs/a.md#{i}", [1.0, float(i)], index=i) for i in range(8)])
        s.upsert([item(f"docs/b.md#{i}", [0.0, 1.0], local_path="docs/b.md", index=i) for i in range(4)])
        assert s.segment_count == 2
        s.upsert([item("docs/c.md#0", [1.0, 1.0], local_path="docs/c.md")])
        assert s.segment_count == 2
        assert s.count() == 13
        assert s.list_distinct_values("localPath") == {"docs/a.md", "docs/b.md", "docs/c.md"}


def test_query_merges_hits_across_segments(store):
    store.upsert([item(f"docs/a.md#{i}", [1.0, 0.1 * i], index=i) for i in range(4)])
    store.upsert([item("docs/b.md#0", [1.0, 0.0], local_path="docs/b.md")])
    assert store.segment_count == 2

    result = store.query([1.0, 0.0], top_k=3)

    assert set(result.ids) == {"docs/a.md#0", "docs/b.md#0", "docs/a.md#1"}
    assert result.ids[2] == "docs/a.md#1"
    assert all(a >= b for a, b in zip(result.scores, result.scores[1:]))
