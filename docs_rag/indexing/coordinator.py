"""
Indexing Coordinator
---------------------
Decides when a documentation page gets chunked, embedded and stored, and
guarantees it happens at most once per page:

    NotIndexed --ensure_indexed--> Indexing --upsert ok--> Indexed
         ^                             |
         +-------- any failure --------+

A page is marked Indexed only after its chunks were committed to the vector
store, so IndexedPaths never names a page that has no stored chunks.  A
failed pass leaves the page NotIndexed and the next call retries it.

Concurrent callers for the same page serialise on a per-page lock and
re-check after acquiring it, so the embedding provider sees each page once.
Different pages index in parallel.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from loguru import logger

from docs_rag.chunking.chunker import MarkdownChunker
from docs_rag.embedding.vector_store import FaissVectorStore, UpsertItem
from docs_rag.errors import IndexingError, RagError
from docs_rag.retrieval.urls import DocsUrlMapper

LOCAL_PATH_KEY = "localPath"


class IndexedPaths:
    """
    Process-wide set of fully indexed page paths.

    Initialised once from the vector store (restart recovery); mutated only
    by IndexingCoordinator after a successful upsert.
    """

    def __init__(self) -> None:
        self._paths: set[str] = set()
        self._lock = threading.Lock()

    def load_from(self, store: FaissVectorStore) -> int:
        paths = store.list_distinct_values(LOCAL_PATH_KEY)
        with self._lock:
            self._paths.update(paths)
        return len(paths)

    def mark(self, local_path: str) -> None:
        with self._lock:
            self._paths.add(local_path)

    def __contains__(self, local_path: object) -> bool:
        with self._lock:
            return local_path in self._paths

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._paths)


@dataclass
class CorpusIndexReport:
    """Outcome of one ensure_corpus_indexed() run."""

    total: int = 0
    already_indexed: int = 0
    indexed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


@dataclass
class _PathLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class IndexingCoordinator:
    """
    Indexes documentation pages on demand.

    Args:
        source:     Page source with read_text(local_path) and list_all_paths().
        embedder:   Embedding provider with embed_batch(texts).
        store:      Vector store receiving the chunks.
        chunker:    Configured MarkdownChunker.
        url_mapper: Derives a page's public URL when the caller gives none.
    """

    def __init__(
        self,
        source,
        embedder,
        store: FaissVectorStore,
        chunker: MarkdownChunker,
        url_mapper: DocsUrlMapper,
    ) -> None:
        self.source = source
        self.embedder = embedder
        self.store = store
        self.chunker = chunker
        self.url_mapper = url_mapper

        self.indexed = IndexedPaths()
        self._path_locks: dict[str, _PathLock] = {}
        self._path_locks_guard = threading.Lock()

        # Restart recovery: trust pages already present in the index
        try:
            preloaded = self.indexed.load_from(store)
        except RagError as exc:
            logger.warning(f"[Indexer] Failed to preload indexed pages from the vector store: {exc}")
        else:
            if preloaded:
                logger.info(f"[Indexer] Preloaded {preloaded} indexed pages from the vector store")
            else:
                logger.info("[Indexer] No pre-indexed pages found in the vector store")

    def is_indexed(self, local_path: str) -> bool:
        return local_path in self.indexed

    def indexed_paths(self) -> frozenset[str]:
        return self.indexed.snapshot()

    @contextmanager
    def _path_lock(self, local_path: str) -> Iterator[None]:
        """
        Hold the lock of one page.  The table entry lives only while some
        thread holds or waits on it, so unknown paths leave nothing behind.
        """
        with self._path_locks_guard:
            entry = self._path_locks.get(local_path)
            if entry is None:
                entry = self._path_locks[local_path] = _PathLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._path_locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._path_locks[local_path]

    def ensure_indexed(self, source_url: str | None, local_path: str) -> None:
        """
        Index local_path unless it is already indexed.

        Raises:
            IndexingError: reading, chunking, embedding or storing failed;
                the page stays unindexed.
        """
        self._ensure(source_url, local_path)

    def _ensure(self, source_url: str | None, local_path: str) -> bool:
        """Returns True when this call performed the indexing pass."""
        if local_path in self.indexed:
            return False
        with self._path_lock(local_path):
            if local_path in self.indexed:
                return False
            chunk_count = self._index_document(source_url, local_path)
            self.indexed.mark(local_path)
        logger.info(f"[Indexer] Indexed {local_path} ({chunk_count} chunks)")
        return True

    def _index_document(self, source_url: str | None, local_path: str) -> int:
        try:
            text = self.source.read_text(local_path)
            if text is None:
                raise IndexingError(f"Failed to fetch page content for {local_path}", local_path)

            url = source_url or self.url_mapper.to_source_url(local_path)
            chunks = self.chunker.chunk_document(local_path, text, url)
            if not chunks:
                raise IndexingError(f"Page {local_path} has no content to index", local_path)

            vectors = self.embedder.embed_batch([c.text for c in chunks])
            if len(vectors) != len(chunks):
                raise IndexingError(
                    f"Got {len(vectors)} embeddings for {len(chunks)} chunks of {local_path}",
                    local_path,
                )

            self.store.upsert(
                [
                    UpsertItem(id=c.id, embedding=vector, document=c.text, metadata=c.metadata)
                    for c, vector in zip(chunks, vectors)
                ],
                replace_documents=True,
            )
        except IndexingError as exc:
            logger.error(f"[Indexer] Indexing failed for {local_path}: {exc.message}")
            raise
        except Exception as exc:
            logger.error(f"[Indexer] Indexing failed for {local_path}: {exc}")
            raise IndexingError(f"Failed to index document {local_path}: {exc}", local_path) from exc
        return len(chunks)

    def ensure_corpus_indexed(self) -> CorpusIndexReport:
        """
        Index every page the source lists that is not indexed yet.

        A page that fails is logged and skipped; the remaining pages are
        still indexed.
        """
        try:
            paths = self.source.list_all_paths()
        except Exception as exc:
            raise IndexingError(f"Failed to list documentation pages: {exc}") from exc

        report = CorpusIndexReport(total=len(paths))
        for path in paths:
            try:
                if self._ensure(None, path):
                    report.indexed.append(path)
                else:
                    report.already_indexed += 1
            except IndexingError as exc:
                report.failed[path] = exc.message
                logger.warning(f"[Indexer] Skipping {path} due to indexing error: {exc.message}")

        if report.indexed or report.failed:
            logger.info(
                f"[Indexer] Corpus pass | {len(report.indexed)} indexed, "
                f"{report.already_indexed} already indexed, {len(report.failed)} failed"
            )
        return report
