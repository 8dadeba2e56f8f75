"""Curation pipeline: topic query -> Story with every translation per verse."""

from __future__ import annotations

import logging

from kitaab_search.es_engine import VerseEngine
from kitaab_search.exceptions import InvalidQueryError
from kitaab_search.models import Story
from kitaab_search.query import compose_query
from kitaab_search.story_xml import story_title

logger = logging.getLogger(__name__)


def parse_chapter(chapter: str | int | None) -> int | None:
    """Chapter filters arrive as strings from the command line."""
    if chapter is None or chapter == "":
        return None
    try:
        return int(chapter)
    except (TypeError, ValueError):
        raise InvalidQueryError(f"Chapter filter must be an integer, got {chapter!r}")


def generate_story(
    engine: VerseEngine,
    query: str,
    author: str | None = None,
    chapter: str | int | None = None,
) -> Story:
    """Run one fetch-all aggregation for ``query`` and build a Story.

    Verses are in textual order (chapter, verse), not ranked order. Each
    verse carries all translations of its dominant work type, sorted by
    author.
    """
    composed = compose_query(
        query,
        author=author,
        chapter=parse_chapter(chapter),
        boosts=engine.config.boosts,
    )
    logger.info(
        "Generating story for %r%s%s",
        composed.text,
        f" by {author}" if author else "",
        f" in chapter {composed.chapter}" if composed.chapter else "",
    )
    verses = engine.fetch_all(composed)
    story = Story(query=composed.text, title=story_title(composed.text), verses=verses)
    logger.info(
        "Story has %d verses and %d translations",
        story.verses_count,
        story.translations_count,
    )
    return story
