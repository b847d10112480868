"""
Mapping between public documentation URLs and local page paths.

    https://kotlinlang.org/docs/coroutines-basics.html  <->  docs/coroutines-basics.md

The convention belongs to one documentation layout, so it lives here and
nowhere else; swap the mapper to serve a different site.
"""
from __future__ import annotations

import re
from pathlib import PurePosixPath
from urllib.parse import quote, unquote, urljoin, urlsplit

from docs_rag.errors import ConfigError

SITE_ROOT = "https://kotlinlang.org/"
PAGE_EXTENSION = ".html"
TEXT_EXTENSION = ".md"

# A trailing ".pdf" is a file type; a trailing ".9" (release-1.9) is part of the name
_FILE_EXTENSION = re.compile(r"\.[A-Za-z][A-Za-z0-9]*$")


class DocsUrlMapper:
    def __init__(
        self,
        site_root: str = SITE_ROOT,
        page_extension: str = PAGE_EXTENSION,
        text_extension: str = TEXT_EXTENSION,
    ) -> None:
        if not urlsplit(site_root).scheme:
            raise ConfigError(f"site_root must be an absolute URL, got {site_root!r}")
        self.site_root = site_root if site_root.endswith("/") else site_root + "/"
        self.page_extension = page_extension
        self.text_extension = text_extension

    def to_local_path(self, url: str) -> str:
        """
        Local page path for a documentation URL.

        Percent-escapes are decoded; query strings and fragments are ignored.
        URLs without a page path, pointing at a directory, carrying a foreign
        file extension or containing '.'/'..' segments are rejected with
        ConfigError.
        """
        try:
            path = unquote(urlsplit(url.strip()).path, errors="strict")
        except (ValueError, UnicodeDecodeError) as exc:
            raise ConfigError(f"Malformed documentation URL: {url!r}") from exc

        path = path.lstrip("/")
        if not path or path.endswith("/"):
            raise ConfigError(f"Documentation URL has no page path: {url!r}")

        parts = PurePosixPath(path).parts
        if any(part in ("..", ".") for part in parts) or "\x00" in path:
            raise ConfigError(f"Documentation URL path is not canonical: {url!r}")

        if path.endswith(self.page_extension):
            path = path[: -len(self.page_extension)]
        elif _FILE_EXTENSION.search(parts[-1]):
            raise ConfigError(
                f"Documentation URL must point at a {self.page_extension} page: {url!r}"
            )
        if not path or path.endswith("/"):
            raise ConfigError(f"Documentation URL has no page path: {url!r}")
        return path + self.text_extension

    def to_source_url(self, local_path: str) -> str:
        """Public URL of a local page; inverse of to_local_path."""
        path = local_path.lstrip("/")
        if path.endswith(self.text_extension):
            path = path[: -len(self.text_extension)]
        return urljoin(self.site_root, quote(path + self.page_extension))
