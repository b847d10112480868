import re
import sys
import threading
import time
import zlib
from pathlib import Path

import numpy as np
import pytest
from loguru import logger

from docs_rag.chunking.chunker import MarkdownChunker
from docs_rag.documents.pages import PagesSource
from docs_rag.embedding.vector_store import FaissVectorStore
from docs_rag.errors import EmbeddingError
from docs_rag.indexing.coordinator import IndexingCoordinator
from docs_rag.retrieval.service import RetrievalService
from docs_rag.retrieval.urls import DocsUrlMapper

DIM = 64

PAGES = {
    "docs/coroutines.md": (
        "# Coroutines basics\n\n"
        "A coroutine is an instance of a suspendable computation.\n\n"
        "## Your first coroutine\n\n"
        "Use launch to start a coroutine inside a coroutine scope. "
        "The launch builder starts a new coroutine concurrently.\n\n"
        "## Structured concurrency\n\n"
        "Coroutines follow structured concurrency: a scope waits for all its children.\n"
    ),
    "docs/flow.md": (
        "# Asynchronous Flow\n\n"
        "A flow emits multiple values sequentially.\n\n"
        "## Flow builders\n\n"
        "Use flowOf or asFlow or the flow builder to create a flow. "
        "Collect the flow with collect.\n"
    ),
    "docs/collections.md": (
        "# Collections overview\n\n"
        "Lists, sets and maps are the basic collection types.\n\n"
        "## List\n\n"
        "A list stores elements in a specified order and provides indexed access.\n"
    ),
}


class FakeEmbedder:
    """Deterministic bag-of-words embedder that records every call."""

    def __init__(self, delay: float = 0.0, fail_on: str | None = None) -> None:
        self.delay = delay
        self.fail_on = fail_on
        self.batch_calls: list[list[str]] = []
        self.query_calls: list[str] = []
        self._lock = threading.Lock()

    @staticmethod
    def vector(text: str) -> np.ndarray:
        vec = np.zeros(DIM, dtype=np.float32)
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            vec[zlib.crc32(word.encode()) % DIM] += 1.0
        return vec

    def embed_batch(self, texts):
        with self._lock:
            self.batch_calls.append(list(texts))
        if self.delay:
            time.sleep(self.delay)
        if self.fail_on and any(self.fail_on in t for t in texts):
            raise EmbeddingError(f"provider refused text containing {self.fail_on!r}")
        return np.array([self.vector(t) for t in texts], dtype=np.float32)

    def embed(self, text):
        with self._lock:
            self.query_calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise EmbeddingError(f"provider refused text containing {self.fail_on!r}")
        return self.vector(text)

    def calls_for(self, marker: str) -> int:
        with self._lock:
            return sum(1 for batch in self.batch_calls if any(marker in t for t in batch))


def write_pages(root: Path, pages: dict[str, str]) -> Path:
    for rel, text in pages.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    return root


@pytest.fixture(autouse=True)
def _restore_log_sink():
    # CLI tests reconfigure loguru against streams that CliRunner closes afterwards
    yield
    logger.remove()
    logger.add(sys.stderr, level="DEBUG")


@pytest.fixture
def pages_dir(tmp_path):
    return write_pages(tmp_path / "pages", PAGES)


@pytest.fixture
def source(pages_dir):
    return PagesSource(pages_dir)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def index_dir(tmp_path):
    return tmp_path / "index"


@pytest.fixture
def store(index_dir):
    s = FaissVectorStore(index_dir)
    yield s
    s.close()


@pytest.fixture
def chunker():
    return MarkdownChunker(chunk_size=120, overlap=30)


@pytest.fixture
def url_mapper():
    return DocsUrlMapper()


@pytest.fixture
def make_coordinator(source, embedder, store, chunker, url_mapper):
    def _make(**overrides):
        kwargs = dict(
            source=source,
            embedder=embedder,
            store=store,
            chunker=chunker,
            url_mapper=url_mapper,
        )
        kwargs.update(overrides)
        return IndexingCoordinator(**kwargs)

    return _make


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture
def service(coordinator, embedder, store, url_mapper):
    return RetrievalService(
        coordinator=coordinator,
        embedder=embedder,
        store=store,
        url_mapper=url_mapper,
        max_results=5,
    )
