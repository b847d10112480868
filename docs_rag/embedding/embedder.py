"""
OpenAI Embedding Client
------------------------
Wraps the OpenAI embeddings API with:
  - Batching (up to 2048 texts per API call)
  - LangSmith run tracing for cost / latency observability
  - Retry on transient API errors via tenacity
  - Token usage logging

This is the retry boundary for embeddings: callers above it (indexing,
retrieval) never retry, they only see EmbeddingError once retries are spent.
Vectors are returned as the provider produced them; the vector store owns
normalisation.
"""
from __future__ import annotations

import os
import threading
import time
from typing import Optional

import numpy as np
from langsmith import traceable
from loguru import logger
from openai import (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    OpenAIError,
    RateLimitError,
)
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from docs_rag.errors import ConfigError, EmbeddingError

MODEL = "text-embedding-3-small"
BATCH_SIZE = 512           # OpenAI allows up to 2048; 512 keeps requests < 1 MB

_TRANSIENT_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)


class Embedder:
    """
    Generates embeddings with an OpenAI embedding model.

    Safe to share between request threads; usage counters are lock-protected.
    """

    def __init__(
        self,
        model: str = MODEL,
        batch_size: int = BATCH_SIZE,
        api_key: Optional[str] = None,
        client: Optional[OpenAI] = None,
    ) -> None:
        if batch_size <= 0:
            raise ConfigError(f"embedding batch_size must be positive, got {batch_size}")
        self.model = model
        self.batch_size = batch_size
        if client is None:
            try:
                client = OpenAI(api_key=api_key or os.getenv("OPENAI_API_KEY"))
            except OpenAIError as exc:
                raise ConfigError(f"OpenAI client could not be created: {exc}") from exc
        self._client = client
        self._usage_lock = threading.Lock()
        self.total_tokens_used: int = 0
        self.total_api_calls: int = 0

    @traceable(name="embed_batch", run_type="embedding")
    def embed_batch(self, texts: list[str]) -> np.ndarray:
        """
        Embed a list of strings and return an (N, dimensions) float32 array.
        Texts are processed in batches to stay within API limits.
        """
        if not texts:
            return np.empty((0, 0), dtype=np.float32)

        all_embeddings: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i: i + self.batch_size]
            try:
                embeddings, tokens = self._embed_batch(batch)
            except Exception as exc:
                logger.error(f"[Embedder] Embedding API error: {exc}")
                raise EmbeddingError(
                    f"Failed to get embeddings: {exc}",
                    details={"model": self.model, "batch_size": len(batch)},
                ) from exc

            if len(embeddings) != len(batch):
                raise EmbeddingError(
                    f"Provider returned {len(embeddings)} embeddings for {len(batch)} texts",
                    details={"model": self.model},
                )
            all_embeddings.extend(embeddings)
            with self._usage_lock:
                self.total_tokens_used += tokens
                self.total_api_calls += 1
                running_total = self.total_tokens_used

            logger.debug(
                f"[Embedder] Batch {i // self.batch_size + 1} | "
                f"{len(batch)} texts | {tokens} tokens | "
                f"Running total: {running_total} tokens"
            )

        return np.array(all_embeddings, dtype=np.float32)

    def embed(self, text: str) -> np.ndarray:
        """Embed a single string. Returns a (dimensions,) float32 array."""
        return self.embed_batch([text])[0]

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    def _embed_batch(self, texts: list[str]) -> tuple[list[list[float]], int]:
        """Call the OpenAI Embeddings API for a single batch."""
        # Replace empty strings with a space to avoid API errors
        safe_texts = [t if t.strip() else " " for t in texts]
        start = time.perf_counter()
        response = self._client.embeddings.create(model=self.model, input=safe_texts)
        elapsed = time.perf_counter() - start

        embeddings = [item.embedding for item in sorted(response.data, key=lambda x: x.index)]
        tokens_used = response.usage.total_tokens if response.usage else 0
        logger.debug(f"[Embedder] API call: {len(texts)} texts, {tokens_used} tokens, {elapsed:.2f}s")
        return embeddings, tokens_used

    def usage_summary(self) -> dict:
        with self._usage_lock:
            return {
                "model": self.model,
                "total_api_calls": self.total_api_calls,
                "total_tokens_used": self.total_tokens_used,
            }
