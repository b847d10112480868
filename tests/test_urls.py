import pytest

from docs_rag.errors import ConfigError
from docs_rag.retrieval.urls import DocsUrlMapper


@pytest.fixture
def mapper():
    return DocsUrlMapper("https://kotlinlang.org/")


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://kotlinlang.org/docs/coroutines-basics.html", "docs/coroutines-basics.md"),
        ("https://kotlinlang.org/docs/flow.html#flow-builders", "docs/flow.md"),
        ("https://kotlinlang.org/docs/flow.html?lang=en", "docs/flow.md"),
        ("https://kotlinlang.org/docs/flow", "docs/flow.md"),
        ("/docs/flow.html", "docs/flow.md"),
        ("https://kotlinlang.org/docs/my%20page.html", "docs/my page.md"),
        ("https://kotlinlang.org/docs/whatsnew%2Dkotlin.html", "docs/whatsnew-kotlin.md"),
        ("https://kotlinlang.org/docs/release-1.9", "docs/release-1.9.md"),
        ("https://kotlinlang.org/docs/release-1.9.20.html", "docs/release-1.9.20.md"),
    ],
)
def test_to_local_path(mapper, url, expected):
    assert mapper.to_local_path(url) == expected


@pytest.mark.parametrize(
    "url",
    [
        "https://kotlinlang.org",
        "https://kotlinlang.org/",
        "#flow-builders",
        "https://kotlinlang.org/docs/",
        "https://kotlinlang.org/docs/guide.pdf",
        "https://kotlinlang.org/docs/../secrets.html",
        "https://kotlinlang.org/docs/%2E%2E/secrets.html",
        "https://kotlinlang.org/docs/page.md",
        "https://kotlinlang.org/docs/.html",
    ],
)
def test_unusual_urls_are_rejected(mapper, url):
    with pytest.raises(ConfigError):
        mapper.to_local_path(url)


def test_to_source_url_inverts_the_mapping(mapper):
    url = "https://kotlinlang.org/docs/coroutines-basics.html"
    assert mapper.to_source_url(mapper.to_local_path(url)) == url


def test_site_root_without_trailing_slash():
    assert DocsUrlMapper("https://example.com").to_source_url("guide/intro.md") == (
        "https://example.com/guide/intro.html"
    )


def test_site_root_must_be_absolute():
    with pytest.raises(ConfigError):
        DocsUrlMapper("kotlinlang.org")


def test_to_source_url_escapes_what_to_local_path_decodes(mapper):
    url = "https://kotlinlang.org/docs/my%20page.html"
    assert mapper.to_local_path(url) == "docs/my page.md"
    assert mapper.to_source_url("docs/my page.md") == url
