"""MCP Server exposing verse search tools.

- search_verses  (paginated, deduplicated verse search)
- get_verse      (all translations of one verse)
- list_authors   (translators/narrators in the corpus)
"""

from __future__ import annotations

import argparse
import logging

from mcp.server.fastmcp import FastMCP

from kitaab_search.config import SearchConfig, Strategy
from kitaab_search.es_engine import VerseEngine
from kitaab_search.models import WorkType

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

mcp = FastMCP("kitaab-search")

# Shared engine instance used by the tools; the ES client connects lazily
engine = VerseEngine(SearchConfig.from_env())


@mcp.tool()
def search_verses(
    query: str,
    page: int = 1,
    size: int = 10,
    author: str | None = None,
    chapter: int | None = None,
    work_types: list[str] | None = None,
    strategy: str | None = None,
) -> dict:
    """Search Quran and hadith verses across all translations.

    Results are deduplicated: each (chapter, verse) appears once, with its
    best-scoring translation as the representative and every translation
    of the same work in ``translations``.

    Args:
        query: Free-text query (e.g. "mercy", "patience in hardship")
        page: 1-based page number
        size: Results per page (default 10)
        author: Only rows by this translator/narrator (exact name)
        chapter: Only rows in this chapter (sura or book number)
        work_types: Restrict to "scripture" or "narrative"
        strategy: "composite" (one result per verse, default) or
                  "row_window" (one result per translator row)
    """
    result = engine.search(
        query,
        page=page,
        size=size,
        author=author,
        chapter=chapter,
        work_types=[WorkType(t) for t in work_types] if work_types else None,
        strategy=Strategy(strategy) if strategy else None,
    )
    return result.model_dump()


@mcp.tool()
def get_verse(chapter: int, verse: int, work_type: str | None = None) -> dict:
    """Get every translation of a single verse, sorted by author.

    Chapter/verse numbers can exist in both the Quran and a hadith
    collection. Without ``work_type`` the work with the most translations
    at that coordinate is returned.

    Args:
        chapter: Chapter number
        verse: Verse number
        work_type: "scripture" or "narrative"
    """
    result = engine.get_verse(chapter, verse, WorkType(work_type) if work_type else None)
    if result is None:
        return {"error": f"Verse not found: {chapter}:{verse}"}
    return result.model_dump()


@mcp.tool()
def list_authors() -> list[dict]:
    """List translators and narrators in the corpus with their row counts."""
    return engine.list_authors()


# ============================================================================
# Entry point
# ============================================================================


def main():
    """Run the MCP server."""
    parser = argparse.ArgumentParser(description="Kitaab verse search MCP server")
    parser.add_argument(
        "--sse",
        type=int,
        metavar="PORT",
        help="Run with SSE transport on specified port",
    )
    parser.add_argument(
        "--http",
        type=int,
        metavar="PORT",
        help="Run with Streamable HTTP transport on specified port",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.sse:
        transport = "sse"
        port = args.sse
    elif args.http:
        transport = "http"
        port = args.http
    else:
        transport = "stdio"
        port = None

    logger.info(
        "Starting Kitaab MCP server (transport: %s, index: %s)...",
        transport,
        engine.config.index,
    )

    if transport == "stdio":
        mcp.run(transport="stdio")
    elif transport == "sse":
        mcp.settings.host = "0.0.0.0"
        mcp.settings.port = port
        mcp.run(transport="sse")
    elif transport == "http":
        mcp.settings.host = "0.0.0.0"
        mcp.settings.port = port
        mcp.run(transport="streamable-http")


if __name__ == "__main__":
    main()
