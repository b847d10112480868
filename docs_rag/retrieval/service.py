"""
Retrieval Service
------------------
The single entry point the chat layer calls to augment a prompt:

    get_context(query, scope_url)
        |
        v
    IndexingCoordinator  (whole corpus, or just the scoped page)
        |
        v
    Embedder.embed(query)
        |
        v
    FaissVectorStore.query(top max_results, filter localPath when scoped)
        |
        v
    formatted context string ("" when nothing matched)

The service holds no state of its own; call it from as many request threads
as you like.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from langsmith import traceable
from loguru import logger

from docs_rag.chunking.schemas import ChunkMetadata
from docs_rag.embedding.vector_store import FaissVectorStore
from docs_rag.errors import ConfigError, EmbeddingError
from docs_rag.indexing.coordinator import LOCAL_PATH_KEY, IndexingCoordinator
from docs_rag.retrieval import prompts
from docs_rag.retrieval.urls import DocsUrlMapper
from docs_rag.utils.helpers import truncate_text

MAX_RESULTS = 5


@dataclass
class RetrievedChunk:
    id: str
    text: str
    metadata: ChunkMetadata
    score: float


def format_context(chunks: list[RetrievedChunk]) -> str:
    """Render retrieved chunks as one context block; empty input gives ""."""
    if not chunks:
        return ""

    lines = [prompts.CONTEXT_HEADER.format(count=len(chunks))]
    for chunk in chunks:
        meta = chunk.metadata
        section_info = prompts.SECTION_INFO.format(section=meta.section) if meta.section else ""
        lines.append(prompts.CHUNK_DIVIDER)
        lines.append(prompts.SOURCE_LINE.format(source_url=meta.source_url, section_info=section_info))
        lines.append(prompts.TITLE_LINE.format(title=meta.title))
        if meta.section:
            lines.append(prompts.SECTION_HEADING.format(section=meta.section))
        lines.append(chunk.text.strip())
    return "\n".join(lines) + "\n"


class RetrievalService:
    """
    Ensures relevant pages are indexed, then runs a similarity search.

    Args:
        coordinator: Indexes pages on demand.
        embedder:    Embedding provider with embed(text).
        store:       Vector store to query.
        url_mapper:  Maps a scope URL to its local page path.
        max_results: Number of chunks returned per query.
    """

    def __init__(
        self,
        coordinator: IndexingCoordinator,
        embedder,
        store: FaissVectorStore,
        url_mapper: DocsUrlMapper,
        max_results: int = MAX_RESULTS,
    ) -> None:
        if max_results < 1:
            raise ConfigError(f"max_results must be >= 1, got {max_results}")
        self.coordinator = coordinator
        self.embedder = embedder
        self.store = store
        self.url_mapper = url_mapper
        self.max_results = max_results

    @traceable(name="retrieve", run_type="retriever")
    def retrieve(self, query: str, scope_url: Optional[str] = None) -> list[RetrievedChunk]:
        """
        Top chunks for query, restricted to the scoped page when a URL is given.

        Raises:
            ConfigError: scope_url does not map to a documentation page.
            IndexingError: the scoped page could not be indexed.
            EmbeddingError: the query could not be embedded.
            StoreError: the vector store could not be queried.
        """
        logger.debug(f"[Retrieval] Query: {truncate_text(query, 80)!r} | scope={scope_url!r}")

        where: Optional[dict[str, str]] = None
        scope_url = (scope_url or "").strip()
        if not scope_url:
            self.coordinator.ensure_corpus_indexed()
        else:
            local_path = self.url_mapper.to_local_path(scope_url)
            self.coordinator.ensure_indexed(scope_url, local_path)
            where = {LOCAL_PATH_KEY: local_path}

        try:
            query_vec = self.embedder.embed(query)
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"Failed to embed query: {exc}") from exc

        result = self.store.query(query_vec, self.max_results, where)
        chunks = [
            RetrievedChunk(id=chunk_id, text=text, metadata=meta, score=score)
            for chunk_id, text, meta, score in zip(
                result.ids, result.documents, result.metadatas, result.scores
            )
        ]

        if chunks:
            logger.info(f"[Retrieval] Retrieved {len(chunks)} chunks (top score: {chunks[0].score:.4f})")
        else:
            logger.info("[Retrieval] No results")
        return chunks

    def get_context(self, query: str, scope_url: Optional[str] = None) -> str:
        """Formatted context for prompt injection; "" when nothing matched."""
        return format_context(self.retrieve(query, scope_url))
