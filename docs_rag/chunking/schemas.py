"""
Chunk schema - the atomic unit that gets embedded and indexed.

Every chunk carries a fixed metadata record so a retrieved passage can be
cited back to its page and section without touching the source files.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def chunk_id_for(local_path: str, chunk_index: int) -> str:
    """Deterministic chunk id; re-indexing a page overwrites the same ids."""
    return f"{local_path}#{chunk_index}"


class ChunkMetadata(BaseModel):
    """
    Provenance of a chunk.

    Stored and filtered on as a flat string mapping using the wire names
    (sourceUrl, localPath, title, chunkIndex, section).
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    source_url: str = Field(alias="sourceUrl")
    local_path: str = Field(alias="localPath")
    title: str
    chunk_index: int = Field(alias="chunkIndex", ge=0)
    section: Optional[str] = None

    def as_fields(self) -> dict[str, str]:
        """Flat string mapping used for storage and exact-match filtering."""
        fields = {
            "sourceUrl": self.source_url,
            "localPath": self.local_path,
            "title": self.title,
            "chunkIndex": str(self.chunk_index),
        }
        if self.section is not None:
            fields["section"] = self.section
        return fields

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> "ChunkMetadata":
        return cls.model_validate(fields)


class DocumentChunk(BaseModel):
    """A single embeddable text window produced from one documentation page."""

    id: str
    text: str
    metadata: ChunkMetadata
