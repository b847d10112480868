"""
Documentation pages on local disk.

The deployment ships the markdown sources of the documentation site either as
a directory or as a bundled zip archive.  PagesSource exposes both through
the two calls the indexer needs: read one page by its relative path, and
list every page.
"""
from __future__ import annotations

import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Optional

from loguru import logger

from docs_rag.errors import ConfigError, RagError

PAGE_GLOB = "*.md"


def _extract(archive: Path, root: Path) -> None:
    try:
        with zipfile.ZipFile(archive) as zf:
            for entry in zf.infolist():
                resolved = (root / entry.filename).resolve()
                # Zip Slip: every entry must stay inside the target
                if not resolved.is_relative_to(root):
                    raise ConfigError(f"Bad zip entry: {entry.filename}")
                if entry.is_dir():
                    resolved.mkdir(parents=True, exist_ok=True)
                    continue
                resolved.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(entry) as src, open(resolved, "wb") as dst:
                    shutil.copyfileobj(src, dst)
    except zipfile.BadZipFile as exc:
        raise ConfigError(f"Pages archive is not a valid zip: {archive}") from exc
    except OSError as exc:
        logger.error(f"[Pages] Unpacking {archive.name} failed: {exc}")
        raise RagError(f"Failed to unpack pages archive {archive}: {exc}") from exc


class PagesSource:
    """
    Markdown pages under one root directory.

    Paths are POSIX-style and relative to the root, e.g. "docs/flow.md".
    """

    def __init__(self, root_dir: str | Path, _owns_root: bool = False) -> None:
        self.root_dir = Path(root_dir).resolve()
        self._owns_root = _owns_root

    @classmethod
    def from_archive(cls, archive: str | Path, target_dir: Optional[str | Path] = None) -> "PagesSource":
        """
        Unpack a zip of markdown pages and serve it.

        When no target_dir is given the archive is unpacked into a temporary
        directory that close() removes.
        """
        archive = Path(archive)
        if not archive.is_file():
            raise ConfigError(f"Pages archive not found: {archive}")

        owns_root = target_dir is None
        root = Path(tempfile.mkdtemp(prefix="pages-unpack-")) if owns_root else Path(target_dir)
        try:
            root.mkdir(parents=True, exist_ok=True)
            root = root.resolve()
            logger.info(f"[Pages] Unpacking {archive.name} -> {root}")
            _extract(archive, root)
        except BaseException:
            if owns_root:
                shutil.rmtree(root, ignore_errors=True)
            raise

        logger.info("[Pages] Unpack complete")
        return cls(root, _owns_root=owns_root)

    def _resolve(self, local_path: str) -> Path:
        path = (self.root_dir / local_path).resolve()
        if not path.is_relative_to(self.root_dir):
            raise ConfigError(f"Page path escapes the docs root: {local_path}")
        return path

    def read_text(self, local_path: str) -> Optional[str]:
        """Page text, or None when the page does not exist."""
        path = self._resolve(local_path)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def list_all_paths(self) -> list[str]:
        """Every markdown page under the root, sorted."""
        if not self.root_dir.is_dir():
            return []
        return sorted(
            p.relative_to(self.root_dir).as_posix()
            for p in self.root_dir.rglob(PAGE_GLOB)
            if p.is_file()
        )

    def close(self) -> None:
        if self._owns_root and self.root_dir.exists():
            shutil.rmtree(self.root_dir, ignore_errors=True)
            logger.debug(f"[Pages] Removed {self.root_dir}")
