"""
Templates for the documentation context injected into chat prompts.

Keeping templates in a separate module makes them easy to iterate on
without touching retrieval logic.
"""

# ---------------------------------------------------------------------------
# Context block
# ---------------------------------------------------------------------------

CONTEXT_HEADER = "Retrieved documentation context (top {count}):"

CHUNK_DIVIDER = "\n---\n"

SOURCE_LINE = "Source: {source_url}{section_info}"

SECTION_INFO = " - Section: {section}"

TITLE_LINE = "Title: {title}"

SECTION_HEADING = "## {section}"
