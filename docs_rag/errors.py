"""
Error taxonomy for the retrieval core.

Every failure the core raises is one of four kinds so the HTTP layer can map
them without inspecting messages:

  ConfigError     invalid settings or a malformed scope URL   -> client error
  EmbeddingError  the embedding provider call failed          -> retryable
  IndexingError   one document's indexing pass failed         -> retryable
  StoreError      the vector index could not be read/written  -> retryable
"""
from __future__ import annotations

from typing import Any, Optional


class RagError(Exception):
    """Base class for all retrieval-core errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.__class__.__name__,
                "message": self.message,
                "details": self.details,
            }
        }


class ConfigError(RagError):
    """Invalid chunking/retrieval configuration or a malformed scope URL."""


class EmbeddingError(RagError):
    """The embedding provider failed to return vectors."""


class IndexingError(RagError):
    """A document could not be chunked, embedded or stored."""

    def __init__(
        self,
        message: str,
        local_path: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = dict(details or {})
        if local_path:
            details["local_path"] = local_path
        self.local_path = local_path
        super().__init__(message, details)


class StoreError(RagError):
    """The vector index could not be read or written."""
