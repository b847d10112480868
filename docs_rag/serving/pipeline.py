"""
Retrieval Pipeline
-------------------
Builds the retrieval core from Settings and owns its lifetime:

    PagesSource (directory or unpacked archive)
    Embedder (OpenAI)
    FaissVectorStore (data/index)
        |
        v
    IndexingCoordinator  -- preloads indexed pages from the store
        |
        v
    RetrievalService.get_context()

One pipeline per process.  The host calls warm_up() once at startup to index
the corpus, and close() on shutdown.
"""
from __future__ import annotations

from typing import Optional

from loguru import logger

from docs_rag.chunking.chunker import MarkdownChunker
from docs_rag.documents.pages import PagesSource
from docs_rag.embedding.embedder import Embedder
from docs_rag.embedding.vector_store import FaissVectorStore
from docs_rag.indexing.coordinator import CorpusIndexReport, IndexingCoordinator
from docs_rag.retrieval.service import RetrievalService
from docs_rag.retrieval.urls import DocsUrlMapper
from docs_rag.settings import Settings, load_settings


class RetrievalPipeline:
    """
    End-to-end retrieval core.

    Usage:
        with RetrievalPipeline(load_settings()) as pipeline:
            pipeline.warm_up()
            context = pipeline.get_context("How do I launch a coroutine?")

    Args:
        settings: Loaded Settings (defaults to load_settings()).
        embedder: Embedding provider override; defaults to the OpenAI Embedder.
        source:   Page source override; defaults to the configured pages directory/archive.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        embedder=None,
        source=None,
    ) -> None:
        self.settings = settings or load_settings()
        rag = self.settings.rag
        docs = self.settings.documents

        self.chunker = MarkdownChunker(
            chunk_size=rag.chunk_size,
            overlap=rag.chunk_overlap,
            default_title=rag.default_title,
        )
        self.url_mapper = DocsUrlMapper(site_root=docs.site_root)
        self.embedder = embedder or Embedder(
            model=self.settings.embedding.model,
            batch_size=self.settings.embedding.batch_size,
        )

        owns_source = source is None
        if owns_source:
            source = (
                PagesSource.from_archive(docs.archive, docs.root_dir)
                if docs.archive
                else PagesSource(docs.root_dir)
            )
        self.source = source

        store = None
        try:
            logger.info(f"[Pipeline] Opening vector index at {self.settings.index.dir}...")
            store = FaissVectorStore(self.settings.index.dir)
            self.store = store
            self.coordinator = IndexingCoordinator(
                source=self.source,
                embedder=self.embedder,
                store=self.store,
                chunker=self.chunker,
                url_mapper=self.url_mapper,
            )
            self.service = RetrievalService(
                coordinator=self.coordinator,
                embedder=self.embedder,
                store=self.store,
                url_mapper=self.url_mapper,
                max_results=rag.max_results,
            )
        except BaseException:
            # close() never runs for a half-built pipeline
            if store is not None:
                store.close()
            if owns_source:
                source.close()
            raise

        logger.info(
            f"[Pipeline] Ready | {len(self.store)} chunks | "
            f"{len(self.coordinator.indexed)} pages indexed | "
            f"chunk_size={rag.chunk_size} overlap={rag.chunk_overlap} max_results={rag.max_results}"
        )

    def get_context(self, query: str, scope_url: Optional[str] = None) -> str:
        return self.service.get_context(query, scope_url)

    def warm_up(self) -> Optional[CorpusIndexReport]:
        """
        Index every page not indexed yet.

        Never raises: a server must come up even when indexing cannot run,
        and queries retry the missing pages later.
        """
        try:
            report = self.coordinator.ensure_corpus_indexed()
        except Exception as exc:
            logger.warning(f"[Pipeline] Failed to index all documents on startup: {exc}")
            return None
        logger.info(
            f"[Pipeline] Startup indexing done | {len(report.indexed)} indexed, "
            f"{report.already_indexed} already indexed, {len(report.failed)} failed"
        )
        return report

    def close(self) -> None:
        self.store.close()
        close_source = getattr(self.source, "close", None)
        if close_source is not None:
            close_source()
        logger.info("[Pipeline] Closed")

    def __enter__(self) -> "RetrievalPipeline":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
