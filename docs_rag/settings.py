"""
Settings for the retrieval core.

Values come from config/config.yaml (every key optional, defaults below);
secrets such as OPENAI_API_KEY come from the environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from docs_rag.errors import ConfigError

DEFAULT_CONFIG_PATH = Path("config/config.yaml")


class RagSettings(BaseModel):
    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=200, ge=0)
    max_results: int = Field(default=5, ge=1)
    default_title: str = "Kotlin Docs"


class EmbeddingSettings(BaseModel):
    model: str = "text-embedding-3-small"
    batch_size: int = Field(default=512, gt=0, le=2048)


class DocumentsSettings(BaseModel):
    root_dir: str = "data/pages"
    archive: Optional[str] = None          # zip of markdown pages, unpacked at startup
    site_root: str = "https://kotlinlang.org/"


class IndexSettings(BaseModel):
    dir: str = "data/index"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "logs/docs_rag.log"


class Settings(BaseModel):
    rag: RagSettings = Field(default_factory=RagSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    documents: DocumentsSettings = Field(default_factory=DocumentsSettings)
    index: IndexSettings = Field(default_factory=IndexSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(path: Optional[str | Path] = None) -> Settings:
    """
    Load settings from YAML.

    With no path, config/config.yaml is used when present, otherwise the
    defaults.  An explicit path must exist.
    """
    load_dotenv()

    if path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return Settings()
        path = DEFAULT_CONFIG_PATH

    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {path} is not valid YAML: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")

    try:
        return Settings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings in {path}: {exc}") from exc
