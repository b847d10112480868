"""
FAISS Vector Store
-------------------
Persistent chunk store over faiss.IndexFlatIP (inner product == cosine
similarity after L2 normalisation) with upsert-by-id and exact-match
metadata filtering.

Chunks live in immutable segments, each a FAISS IndexFlatIP whose row i is
chunk i of that segment.  A commit writes exactly one new segment: the
batch itself, or the batch merged with the trailing segments that are not
larger than it.  Overwritten chunks are tombstoned in the segment holding
them and physically dropped when that segment is merged, so a commit costs
the size of its batch plus an amortised logarithmic share of merging.

Every committed state is an immutable snapshot (segment list + tombstones).
Writers build the next snapshot, persist it and only then publish it.
Readers grab the current snapshot reference and search it without locking,
so a query sees either the whole previous commit or the whole new one,
never a mix.

Persistence (one directory per deployment):
  - data/index/CURRENT.json                -> generation, live segments, tombstones
  - data/index/seg-00000N/vectors.faiss    -> FAISS index
  - data/index/seg-00000N/chunks.json      -> ids, texts, metadata (row order)
  - data/index/seg-00000N/segment_manifest.json
"""
from __future__ import annotations

import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

import faiss
import numpy as np
from loguru import logger

from docs_rag.chunking.schemas import ChunkMetadata
from docs_rag.errors import StoreError
from docs_rag.utils.helpers import load_json, save_json

INDEX_DIR = Path("data/index")
CURRENT_FILE = "CURRENT.json"
VECTORS_FILE = "vectors.faiss"
CHUNKS_FILE = "chunks.json"
MANIFEST_FILE = "segment_manifest.json"
SEGMENT_PREFIX = "seg-"
MAX_SEGMENTS = 32


def l2_normalise(vectors) -> np.ndarray:
    """Row-wise L2 normalisation to float32; an all-zero row stays all-zero."""
    matrix = np.atleast_2d(np.asarray(vectors, dtype=np.float32))
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)  # avoid div-by-zero
    return (matrix / norms).astype(np.float32)


@dataclass
class UpsertItem:
    id: str
    embedding: Sequence[float]
    document: str
    metadata: ChunkMetadata


@dataclass
class QueryResult:
    """Parallel lists ordered by descending similarity."""

    ids: list[str] = field(default_factory=list)
    documents: list[str] = field(default_factory=list)
    metadatas: list[ChunkMetadata] = field(default_factory=list)
    scores: list[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.ids)


@dataclass(frozen=True)
class _Segment:
    name: str
    ids: list[str]
    documents: list[str]
    metadatas: list[ChunkMetadata]
    fields: list[dict[str, str]]
    vectors: np.ndarray
    index: faiss.IndexFlatIP
    row_of: dict[str, int]
    rows_by_path: dict[str, list[int]]

    @classmethod
    def build(
        cls,
        name: str,
        ids: list[str],
        documents: list[str],
        metadatas: list[ChunkMetadata],
        vectors: np.ndarray,
        index: Optional[faiss.IndexFlatIP] = None,
    ) -> "_Segment":
        vectors = np.ascontiguousarray(vectors, dtype=np.float32)
        if index is None:
            index = faiss.IndexFlatIP(vectors.shape[1])
            index.add(vectors)
        rows_by_path: dict[str, list[int]] = {}
        for row, metadata in enumerate(metadatas):
            rows_by_path.setdefault(metadata.local_path, []).append(row)
        return cls(
            name=name,
            ids=ids,
            documents=documents,
            metadatas=metadatas,
            fields=[m.as_fields() for m in metadatas],
            vectors=vectors,
            index=index,
            row_of={chunk_id: row for row, chunk_id in enumerate(ids)},
            rows_by_path=rows_by_path,
        )

    def __len__(self) -> int:
        return len(self.ids)


@dataclass(frozen=True)
class _Snapshot:
    generation: int
    segments: tuple[_Segment, ...] = ()
    deleted: dict[str, frozenset[int]] = field(default_factory=dict)

    @property
    def dimensions(self) -> Optional[int]:
        return int(self.segments[0].index.d) if self.segments else None

    @property
    def size(self) -> int:
        return sum(self.live_count(s) for s in self.segments)

    def live_count(self, segment: _Segment) -> int:
        return len(segment) - len(self.deleted.get(segment.name, ()))

    def live_rows(self, segment: _Segment, where: Optional[dict[str, str]] = None) -> list[int]:
        dead = self.deleted.get(segment.name, frozenset())
        return [
            row
            for row, fields in enumerate(segment.fields)
            if row not in dead
            and (not where or all(fields.get(key) == str(value) for key, value in where.items()))
        ]


class FaissVectorStore:
    """
    Thread-safe vector store: one writer at a time, any number of readers.

    Open once per process against a directory; call close() on shutdown.

    Args:
        index_dir:    Directory holding CURRENT.json and the segment directories.
        max_segments: Upper bound on live segments; a commit past it merges
                      trailing segments regardless of their size.
    """

    def __init__(self, index_dir: str | Path = INDEX_DIR, max_segments: int = MAX_SEGMENTS) -> None:
        if max_segments < 1:
            raise StoreError(f"max_segments must be >= 1, got {max_segments}")
        self.index_dir = Path(index_dir)
        self.max_segments = max_segments
        self._write_lock = threading.Lock()
        self._closed = False
        try:
            self.index_dir.mkdir(parents=True, exist_ok=True)
            self._snapshot = self._load_current()
        except StoreError:
            raise
        except Exception as exc:
            logger.error(f"[VectorStore] Failed to open {self.index_dir}: {exc}")
            raise StoreError(f"Failed to open vector index at {self.index_dir}: {exc}") from exc

        logger.info(
            f"[VectorStore] Opened {self.index_dir} | generation {self._snapshot.generation} | "
            f"{len(self._snapshot.segments)} segments | {self._snapshot.size} chunks"
        )

    # --- Write ----------------------------------------------------------------

    def upsert(self, items: list[UpsertItem], replace_documents: bool = False) -> None:
        """
        Insert or replace chunks by id and commit before returning.

        The batch is atomic: the next snapshot is built beside the committed
        one, its new segment is persisted, and it is published to readers
        only after CURRENT.json has been switched.  On failure nothing is
        published and the previous state stays current on disk.

        Args:
            items: Chunks to write; a later item wins over an earlier one with the same id.
            replace_documents: Also drop existing chunks of every localPath in the
                batch whose ids are not part of the batch.
        """
        if not items:
            return
        self._check_open()

        with self._write_lock:
            self._check_open()
            current = self._snapshot
            try:
                batch: dict[str, UpsertItem] = {}
                for item in items:
                    batch.pop(item.id, None)
                    batch[item.id] = item
                new_vectors = self._batch_vectors(list(batch.values()), current.dimensions)

                deleted = self._tombstones(current, batch, replace_documents)
                replaced = sum(len(rows) for rows in deleted.values()) - sum(
                    len(rows) for rows in current.deleted.values()
                )
                staged = _Snapshot(current.generation, current.segments, deleted)

                segments = [s for s in current.segments if staged.live_count(s) > 0]
                merged: list[_Segment] = []
                tail_size = len(batch)
                while segments and (
                    staged.live_count(segments[-1]) <= tail_size
                    or len(segments) >= self.max_segments
                ):
                    segment = segments.pop()
                    merged.insert(0, segment)
                    tail_size += staged.live_count(segment)

                generation = current.generation + 1
                new_segment = self._merge_segment(
                    f"{SEGMENT_PREFIX}{generation:06d}", staged, merged, batch, new_vectors
                )
                segments.append(new_segment)
                live_names = {s.name for s in segments}
                snapshot = _Snapshot(
                    generation=generation,
                    segments=tuple(segments),
                    deleted={
                        name: rows for name, rows in deleted.items() if name in live_names and rows
                    },
                )
                self._commit(snapshot, new_segment)
            except StoreError:
                raise
            except Exception as exc:
                logger.error(f"[VectorStore] Upsert of {len(items)} chunks failed: {exc}")
                raise StoreError(f"Vector index upsert failed: {exc}") from exc

            # Refresh point: readers see the new generation from here on.
            self._snapshot = snapshot
            self._remove_stale_segments(live_names)

        logger.info(
            f"[VectorStore] Committed generation {snapshot.generation} | "
            f"{len(batch)} upserted, {replaced} replaced, {len(merged)} segments merged | "
            f"{len(snapshot.segments)} segments, {snapshot.size} chunks total"
        )

    @staticmethod
    def _batch_vectors(items: list[UpsertItem], dimensions: Optional[int]) -> np.ndarray:
        lengths = {len(item.embedding) for item in items}
        if len(lengths) != 1 or 0 in lengths:
            raise StoreError(f"Embeddings in one batch must share a non-zero dimension, got {sorted(lengths)}")
        (dim,) = lengths
        if dimensions is not None and dim != dimensions:
            raise StoreError(f"Embedding dimension {dim} does not match index dimension {dimensions}")
        return l2_normalise(np.array([item.embedding for item in items], dtype=np.float32))

    @staticmethod
    def _tombstones(
        current: _Snapshot, batch: dict[str, UpsertItem], replace_documents: bool
    ) -> dict[str, frozenset[int]]:
        """Rows of existing segments that the batch overwrites, merged into the current tombstones."""
        replaced_paths = (
            {item.metadata.local_path for item in batch.values()} if replace_documents else set()
        )
        deleted = dict(current.deleted)
        for segment in current.segments:
            dead = set(deleted.get(segment.name, ()))
            before = len(dead)
            for chunk_id in batch:
                row = segment.row_of.get(chunk_id)
                if row is not None:
                    dead.add(row)
            for path in replaced_paths:
                dead.update(segment.rows_by_path.get(path, ()))
            if len(dead) != before:
                deleted[segment.name] = frozenset(dead)
        return deleted

    @staticmethod
    def _merge_segment(
        name: str,
        staged: _Snapshot,
        merged: list[_Segment],
        batch: dict[str, UpsertItem],
        new_vectors: np.ndarray,
    ) -> _Segment:
        """Live rows of the merged segments (oldest first), then the batch."""
        ids: list[str] = []
        documents: list[str] = []
        metadatas: list[ChunkMetadata] = []
        blocks: list[np.ndarray] = []
        for segment in merged:
            rows = staged.live_rows(segment)
            ids.extend(segment.ids[r] for r in rows)
            documents.extend(segment.documents[r] for r in rows)
            metadatas.extend(segment.metadatas[r] for r in rows)
            blocks.append(segment.vectors[np.asarray(rows, dtype=np.int64)])
        ids.extend(batch)
        documents.extend(item.document for item in batch.values())
        metadatas.extend(item.metadata for item in batch.values())
        blocks.append(new_vectors)
        return _Segment.build(name, ids, documents, metadatas, np.vstack(blocks))

    # --- Search ---------------------------------------------------------------

    def query(
        self,
        embedding: Sequence[float],
        top_k: int,
        where: Optional[dict[str, str]] = None,
    ) -> QueryResult:
        """
        k-NN search by cosine similarity.

        Each segment is searched for its own top_k live rows, then the hits
        are merged by score.

        Args:
            embedding: Query vector (normalised here, like stored vectors).
            top_k: Maximum number of results, at least 1.
            where: Exact-match metadata filter applied inside the search,
                e.g. {"localPath": "docs/flow.md"}.

        Returns: QueryResult sorted by descending similarity.
        """
        if top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {top_k}")
        self._check_open()
        snapshot = self._snapshot
        if not snapshot.segments:
            return QueryResult()

        qv = l2_normalise(np.asarray(embedding, dtype=np.float32).reshape(1, -1))
        if qv.shape[1] != snapshot.dimensions:
            raise StoreError(
                f"Query dimension {qv.shape[1]} does not match index dimension {snapshot.dimensions}"
            )

        hits: list[tuple[float, int, int, _Segment, int]] = []
        try:
            for position, segment in enumerate(snapshot.segments):
                rows = snapshot.live_rows(segment, where)
                if not rows:
                    continue
                k = min(top_k, len(rows))
                if len(rows) == len(segment):
                    scores, indices = segment.index.search(qv, k)
                else:
                    row_ids = np.asarray(rows, dtype=np.int64)
                    selector = faiss.IDSelectorBatch(row_ids.size, faiss.swig_ptr(row_ids))
                    params = faiss.SearchParameters()
                    params.sel = selector
                    scores, indices = segment.index.search(qv, k, params=params)
                for rank, (score, idx) in enumerate(zip(scores[0], indices[0])):
                    if idx >= 0:
                        hits.append((-float(score), position, rank, segment, int(idx)))
        except Exception as exc:
            logger.error(f"[VectorStore] Query failed: {exc}")
            raise StoreError(f"Vector index query failed: {exc}") from exc

        hits.sort(key=lambda hit: hit[:3])
        result = QueryResult()
        for neg_score, _, _, segment, row in hits[:top_k]:
            result.ids.append(segment.ids[row])
            result.documents.append(segment.documents[row])
            result.metadatas.append(segment.metadatas[row])
            result.scores.append(-neg_score)
        return result

    def list_distinct_values(self, metadata_key: str) -> set[str]:
        """Distinct values of one metadata field across all committed chunks."""
        self._check_open()
        snapshot = self._snapshot
        return {
            segment.fields[row][metadata_key]
            for segment in snapshot.segments
            for row in snapshot.live_rows(segment)
            if metadata_key in segment.fields[row]
        }

    def count(self, where: Optional[dict[str, str]] = None) -> int:
        self._check_open()
        snapshot = self._snapshot
        if not where:
            return snapshot.size
        return sum(len(snapshot.live_rows(s, where)) for s in snapshot.segments)

    @property
    def dimensions(self) -> Optional[int]:
        return self._snapshot.dimensions

    @property
    def generation(self) -> int:
        return self._snapshot.generation

    @property
    def segment_count(self) -> int:
        return len(self._snapshot.segments)

    # --- Persistence ----------------------------------------------------------

    def _commit(self, snapshot: _Snapshot, new_segment: _Segment) -> None:
        """Write the new segment, then switch CURRENT.json to the snapshot naming it."""
        seg_dir = self.index_dir / new_segment.name
        if seg_dir.exists():
            # Leftover of a commit that failed before CURRENT was switched
            shutil.rmtree(seg_dir)
        seg_dir.mkdir(parents=True)

        faiss.write_index(new_segment.index, str(seg_dir / VECTORS_FILE))
        save_json(
            [
                {"id": chunk_id, "document": document, "metadata": fields}
                for chunk_id, document, fields in zip(
                    new_segment.ids, new_segment.documents, new_segment.fields
                )
            ],
            seg_dir / CHUNKS_FILE,
        )
        save_json(
            {
                "segment": new_segment.name,
                "total_vectors": new_segment.index.ntotal,
                "dimensions": int(new_segment.index.d),
                "total_chunks": len(new_segment),
                "total_documents": len(new_segment.rows_by_path),
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
            seg_dir / MANIFEST_FILE,
        )
        save_json(
            {
                "generation": snapshot.generation,
                "segments": [
                    {"name": s.name, "deleted": sorted(snapshot.deleted.get(s.name, ()))}
                    for s in snapshot.segments
                ],
                "total_chunks": snapshot.size,
                "committed_at": datetime.now(timezone.utc).isoformat(),
            },
            self.index_dir / CURRENT_FILE,
        )

    def _load_current(self) -> _Snapshot:
        current_path = self.index_dir / CURRENT_FILE
        if not current_path.exists():
            return _Snapshot(0)

        current = load_json(current_path)
        generation = int(current["generation"])
        segments = []
        deleted: dict[str, frozenset[int]] = {}
        for entry in current["segments"]:
            segment = self._load_segment(entry["name"])
            if segments and segment.index.d != segments[0].index.d:
                raise StoreError(
                    f"Corrupt index generation {generation}: segment {segment.name} has "
                    f"dimension {segment.index.d}, expected {segments[0].index.d}"
                )
            segments.append(segment)
            if entry["deleted"]:
                deleted[segment.name] = frozenset(int(row) for row in entry["deleted"])
        return _Snapshot(generation, tuple(segments), deleted)

    def _load_segment(self, name: str) -> _Segment:
        seg_dir = self.index_dir / name
        index = faiss.read_index(str(seg_dir / VECTORS_FILE))
        records = load_json(seg_dir / CHUNKS_FILE)
        if index.ntotal != len(records) or not records:
            raise StoreError(
                f"Corrupt index segment {name}: {index.ntotal} vectors vs {len(records)} chunk records"
            )
        metadatas = [ChunkMetadata.from_fields(r["metadata"]) for r in records]
        return _Segment.build(
            name,
            ids=[r["id"] for r in records],
            documents=[r["document"] for r in records],
            metadatas=metadatas,
            vectors=index.reconstruct_n(0, index.ntotal),
            index=index,
        )

    def _remove_stale_segments(self, live_names: set[str]) -> None:
        for path in self.index_dir.glob(f"{SEGMENT_PREFIX}*"):
            if path.is_dir() and path.name not in live_names:
                try:
                    shutil.rmtree(path)
                except OSError as exc:
                    logger.warning(f"[VectorStore] Could not remove stale {path.name}: {exc}")

    # --- Lifecycle ------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise StoreError(f"Vector index at {self.index_dir} is closed")

    def close(self) -> None:
        """Release the index.  Every upsert is already committed, so nothing is flushed here."""
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            chunks = self._snapshot.size
            self._snapshot = _Snapshot(self._snapshot.generation)
        logger.info(f"[VectorStore] Closed {self.index_dir} ({chunks} chunks)")

    def __enter__(self) -> "FaissVectorStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __len__(self) -> int:
        return self._snapshot.size
